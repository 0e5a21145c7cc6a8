from __future__ import annotations

from sqlalchemy import Boolean, Integer
from sqlalchemy.orm import Mapped, mapped_column


class ScopedResourceMixin:
    """
    Columns the resource layer denormalizes onto every protected table.

    Tables using this mixin are pre-filtered by `scopeguard/db/filters.py`
    whenever a request scope is attached to the session.
    """

    company_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    school_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    branch_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    department_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    # Publication state belongs to the resource; students and parents only see published rows.
    is_published: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
