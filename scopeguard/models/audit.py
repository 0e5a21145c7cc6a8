from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Integer, String, event
from sqlalchemy.orm import Mapped, Session, mapped_column

from scopeguard.db.base import Base


class AuditRecord(Base):
    __tablename__ = "audit_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    # The real caller. During test mode this is the System Administrator.
    actor_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    effective_principal_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    action: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False, index=True)


class AuditRecordImmutable(RuntimeError):
    """Raised when a flush would update or delete an audit row."""


@event.listens_for(Session, "before_flush")
def _reject_audit_mutation(session: Session, flush_context, instances) -> None:
    for obj in session.deleted:
        if isinstance(obj, AuditRecord):
            raise AuditRecordImmutable(f"audit record {obj.id} cannot be deleted")
    for obj in session.dirty:
        if isinstance(obj, AuditRecord) and session.is_modified(obj):
            raise AuditRecordImmutable(f"audit record {obj.id} cannot be updated")
