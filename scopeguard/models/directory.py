from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Integer, String, UniqueConstraint, event
from sqlalchemy.orm import Mapped, Session, mapped_column

from scopeguard.core.types import AdminLevel, NodeKind, RoleKind
from scopeguard.db.base import Base


def _enum_column(enum_cls: type) -> Enum:
    return Enum(enum_cls, native_enum=False, values_callable=lambda e: [m.value for m in e], length=32)


class Principal(Base):
    __tablename__ = "principals"
    __table_args__ = (UniqueConstraint("auth_subject"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    auth_subject: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[RoleKind] = mapped_column(_enum_column(RoleKind), nullable=False)

    # Deactivated, never deleted: audit rows keep pointing at it.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class EntityUser(Base):
    __tablename__ = "entity_users"

    principal_id: Mapped[int] = mapped_column(ForeignKey("principals.id"), primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    admin_level: Mapped[AdminLevel] = mapped_column(
        _enum_column(AdminLevel), default=AdminLevel.NONE, nullable=False
    )
    is_company_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class ScopeAssignment(Base):
    __tablename__ = "scope_assignments"
    __table_args__ = (UniqueConstraint("entity_user_id", "node_kind", "node_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entity_user_id: Mapped[int] = mapped_column(ForeignKey("entity_users.principal_id"), nullable=False, index=True)
    node_kind: Mapped[NodeKind] = mapped_column(_enum_column(NodeKind), nullable=False)
    node_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    assigned_by: Mapped[int | None] = mapped_column(ForeignKey("principals.id"), nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class Affiliation(Base):
    """School/branch a teacher or student belongs to."""

    __tablename__ = "affiliations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    principal_id: Mapped[int] = mapped_column(ForeignKey("principals.id"), nullable=False, index=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False)
    school_id: Mapped[int] = mapped_column(ForeignKey("schools.id"), nullable=False)
    branch_id: Mapped[int | None] = mapped_column(ForeignKey("branches.id"), nullable=True)


class ParentLink(Base):
    __tablename__ = "parent_links"
    __table_args__ = (UniqueConstraint("parent_id", "student_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    parent_id: Mapped[int] = mapped_column(ForeignKey("principals.id"), nullable=False, index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey("principals.id"), nullable=False, index=True)


class DirectoryVersion(Base):
    """
    Single-row monotonic counter.

    Part of every scope cache key, so any directory write is visible on the
    next evaluation without invalidation messages.
    """

    __tablename__ = "directory_version"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


VERSIONED_MODELS = (Principal, EntityUser, ScopeAssignment, Affiliation, ParentLink)


@event.listens_for(Session, "before_flush")
def _bump_directory_version(session: Session, flush_context, instances) -> None:
    changed = (
        any(isinstance(obj, VERSIONED_MODELS) for obj in session.new)
        or any(isinstance(obj, VERSIONED_MODELS) for obj in session.deleted)
        or any(isinstance(obj, VERSIONED_MODELS) and session.is_modified(obj) for obj in session.dirty)
    )
    if not changed:
        return

    row = next((obj for obj in session.new if isinstance(obj, DirectoryVersion)), None)
    if row is None:
        row = session.get(DirectoryVersion, 1)
    if row is None:
        session.add(DirectoryVersion(id=1, version=1))
    else:
        row.version = row.version + 1
