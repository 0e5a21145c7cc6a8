from __future__ import annotations

from sqlalchemy import and_, event, false, or_
from sqlalchemy.orm import Session, with_loader_criteria

from scopeguard.core.types import RoleKind, ScopeSet
from scopeguard.directory.store import ELEVATED_OPTION
from scopeguard.models.mixins import ScopedResourceMixin


def attach_scope(db: Session, principal_id: int, role: RoleKind, scope: ScopeSet) -> None:
    """Make every ORM select on scoped resource tables in `db` honour `scope`."""

    db.info["scope"] = scope
    db.info["scope_principal_id"] = principal_id
    db.info["scope_role"] = role


def detach_scope(db: Session) -> None:
    for key in ("scope", "scope_principal_id", "scope_role"):
        db.info.pop(key, None)


@event.listens_for(Session, "do_orm_execute")
def _apply_scope_filters(execute_state) -> None:
    """
    Transparent list pre-filtering.

    Existing query code stays unchanged:
        db.scalars(select(Question)).all()
    only returns rows the request's principal could read. The scope was
    resolved once for the request; this hook never evaluates anything and
    never touches the directory.
    """

    if not execute_state.is_select:
        return
    if execute_state.execution_options.get(ELEVATED_OPTION, False):
        return

    scope = execute_state.session.info.get("scope")
    if scope is None or scope.universal:
        return

    # 0 never matches a row; keeps the criteria shape fixed (no IS NULL).
    principal_id = execute_state.session.info.get("scope_principal_id") or 0
    role = execute_state.session.info.get("scope_role")

    company_ids = tuple(scope.company_ids)
    school_ids = tuple(scope.school_ids)
    branch_ids = tuple(scope.branch_ids)
    department_ids = tuple(scope.department_ids)

    stmt = execute_state.statement

    if scope.administrative:
        stmt = stmt.options(
            with_loader_criteria(
                ScopedResourceMixin,
                lambda cls: or_(
                    cls.company_id.in_(company_ids),
                    cls.school_id.in_(school_ids),
                    cls.branch_id.in_(branch_ids),
                    cls.department_id.in_(department_ids),
                    cls.created_by == principal_id,
                ),
                include_aliases=True,
            )
        )
    elif role is RoleKind.TEACHER:
        # Whole-school affiliations see the school; branch affiliations see
        # their branch plus rows owned by the school itself.
        whole_schools = tuple({a.school_id for a in scope.affiliations if a.branch_id is None})
        branch_schools = tuple({a.school_id for a in scope.affiliations if a.branch_id is not None})
        stmt = stmt.options(
            with_loader_criteria(
                ScopedResourceMixin,
                lambda cls: or_(
                    cls.school_id.in_(whole_schools),
                    cls.branch_id.in_(branch_ids),
                    and_(cls.school_id.in_(branch_schools), cls.branch_id.is_(None)),
                    cls.created_by == principal_id,
                ),
                include_aliases=True,
            )
        )
    elif role in (RoleKind.STUDENT, RoleKind.PARENT):
        whole_schools = tuple({a.school_id for a in scope.affiliations if a.branch_id is None})
        branch_schools = tuple({a.school_id for a in scope.affiliations if a.branch_id is not None})
        stmt = stmt.options(
            with_loader_criteria(
                ScopedResourceMixin,
                lambda cls: or_(
                    and_(
                        cls.is_published.is_(True),
                        or_(
                            cls.school_id.in_(whole_schools),
                            cls.branch_id.in_(branch_ids),
                            and_(cls.school_id.in_(branch_schools), cls.branch_id.is_(None)),
                        ),
                    ),
                    cls.created_by == principal_id,
                ),
                include_aliases=True,
            )
        )
    else:
        stmt = stmt.options(
            with_loader_criteria(
                ScopedResourceMixin,
                lambda cls: or_(false(), cls.created_by == principal_id),
                include_aliases=True,
            )
        )

    execute_state.statement = stmt
