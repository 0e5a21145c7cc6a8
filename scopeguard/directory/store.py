"""
Elevated, non-recursive read path into the directory tables.

Background:
    The capability evaluator has to know whether a caller is an admin, which
    company they belong to and which nodes they were assigned. If those
    lookups went through the same protection layer as ordinary resources,
    checking "is this user an admin" would need a decision on the admin
    table, which needs to know whether the user is an admin, and so on.

    Everything in this module reads the directory directly. Each statement
    carries the `scopeguard_elevated` execution option so the list-query
    filter in `scopeguard/db/filters.py` leaves it untouched, and nothing
    here imports or calls the evaluator.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol, TypeVar

from sqlalchemy import Select, or_, select
from sqlalchemy.orm import Session

from scopeguard.core.types import (
    AffiliationRecord,
    EntityUserRecord,
    NodeKind,
    NodeLineage,
    NodeRef,
    PrincipalRecord,
    ScopeSet,
)
from scopeguard.models.directory import (
    Affiliation,
    DirectoryVersion,
    EntityUser,
    ParentLink,
    Principal,
    ScopeAssignment,
)
from scopeguard.models.organization import Branch, ClassSection, Company, Department, School

logger = logging.getLogger(__name__)

ELEVATED_OPTION = "scopeguard_elevated"

_S = TypeVar("_S", bound=Select)


def elevated(stmt: _S) -> _S:
    """Tag a statement as part of the elevated directory read path."""
    return stmt.execution_options(**{ELEVATED_OPTION: True})


class DirectoryStore(Protocol):
    """Read-only view of principals, roles, assignments and the organisation tree."""

    def principal(self, principal_id: int) -> PrincipalRecord | None: ...

    def principal_by_subject(self, auth_subject: str) -> PrincipalRecord | None: ...

    def entity_user(self, principal_id: int) -> EntityUserRecord | None: ...

    def scope_assignments(self, principal_id: int) -> list[NodeRef]: ...

    def affiliations(self, principal_id: int) -> list[AffiliationRecord]: ...

    def children_of(self, parent_id: int) -> list[int]: ...

    def company_subtree(self, company_id: int) -> ScopeSet: ...

    def subtrees(self, company_id: int, roots: Iterable[NodeRef]) -> ScopeSet: ...

    def node_lineage(self, ref: NodeRef) -> NodeLineage | None: ...

    def version(self) -> int: ...


class SqlDirectoryStore:
    """
    DirectoryStore backed by the SQLAlchemy models.

    Bound to one Session for the lifetime of a request so reads see the
    caller's own writes.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def _scalars(self, stmt: Select) -> list:
        return list(self._session.scalars(elevated(stmt)).all())

    # ---- Principals ------------------------------------------------------------------

    def principal(self, principal_id: int) -> PrincipalRecord | None:
        row = self._session.execute(
            elevated(
                select(Principal.id, Principal.auth_subject, Principal.role, Principal.is_active).where(
                    Principal.id == principal_id
                )
            )
        ).first()
        if row is None:
            return None
        return PrincipalRecord(id=row.id, auth_subject=row.auth_subject, role=row.role, is_active=row.is_active)

    def principal_by_subject(self, auth_subject: str) -> PrincipalRecord | None:
        principal_id = self._session.execute(
            elevated(select(Principal.id).where(Principal.auth_subject == auth_subject))
        ).scalar_one_or_none()
        if principal_id is None:
            return None
        return self.principal(principal_id)

    def entity_user(self, principal_id: int) -> EntityUserRecord | None:
        row = self._session.execute(
            elevated(
                select(
                    EntityUser.principal_id,
                    EntityUser.company_id,
                    EntityUser.admin_level,
                    EntityUser.is_company_admin,
                    EntityUser.is_active,
                ).where(EntityUser.principal_id == principal_id)
            )
        ).first()
        if row is None:
            return None
        return EntityUserRecord(
            principal_id=row.principal_id,
            company_id=row.company_id,
            admin_level=row.admin_level,
            is_company_admin=row.is_company_admin,
            is_active=row.is_active,
        )

    def scope_assignments(self, principal_id: int) -> list[NodeRef]:
        rows = self._session.execute(
            elevated(
                select(ScopeAssignment.node_kind, ScopeAssignment.node_id)
                .where(ScopeAssignment.entity_user_id == principal_id)
                .order_by(ScopeAssignment.id)
            )
        ).all()
        return [NodeRef(kind=row.node_kind, id=row.node_id) for row in rows]

    def affiliations(self, principal_id: int) -> list[AffiliationRecord]:
        rows = self._session.execute(
            elevated(
                select(Affiliation.company_id, Affiliation.school_id, Affiliation.branch_id)
                .where(Affiliation.principal_id == principal_id)
                .order_by(Affiliation.id)
            )
        ).all()
        return [AffiliationRecord(company_id=r.company_id, school_id=r.school_id, branch_id=r.branch_id) for r in rows]

    def children_of(self, parent_id: int) -> list[int]:
        return self._scalars(
            select(ParentLink.student_id).where(ParentLink.parent_id == parent_id).order_by(ParentLink.student_id)
        )

    # ---- Organisation tree -----------------------------------------------------------

    def company_subtree(self, company_id: int) -> ScopeSet:
        """Whole company, one query per node table on the denormalized company_id."""

        return ScopeSet(
            company_ids=frozenset({company_id}),
            school_ids=frozenset(self._scalars(select(School.id).where(School.company_id == company_id))),
            branch_ids=frozenset(self._scalars(select(Branch.id).where(Branch.company_id == company_id))),
            department_ids=frozenset(
                self._scalars(select(Department.id).where(Department.company_id == company_id))
            ),
            administrative=True,
        )

    def subtrees(self, company_id: int, roots: Iterable[NodeRef]) -> ScopeSet:
        """
        Union of the subtrees rooted at `roots`, limited to `company_id`.

        Roots outside the company are dropped, so a stray assignment row can
        never leak another tenant's nodes into the result.
        """

        roots = list(roots)
        school_roots = {r.id for r in roots if r.kind is NodeKind.SCHOOL}
        branch_roots = {r.id for r in roots if r.kind is NodeKind.BRANCH}
        department_roots = {r.id for r in roots if r.kind is NodeKind.DEPARTMENT}

        school_ids: set[int] = set()
        branch_ids: set[int] = set()
        department_ids: set[int] = set()

        if school_roots:
            school_ids.update(
                self._scalars(select(School.id).where(School.company_id == company_id, School.id.in_(school_roots)))
            )
        if school_ids or branch_roots:
            branch_ids.update(
                self._scalars(
                    select(Branch.id).where(
                        Branch.company_id == company_id,
                        or_(Branch.school_id.in_(school_ids), Branch.id.in_(branch_roots)),
                    )
                )
            )
        if school_ids or branch_ids or department_roots:
            department_ids.update(
                self._scalars(
                    select(Department.id).where(
                        Department.company_id == company_id,
                        or_(
                            Department.school_id.in_(school_ids),
                            Department.branch_id.in_(branch_ids),
                            Department.id.in_(department_roots),
                        ),
                    )
                )
            )

        return ScopeSet(
            school_ids=frozenset(school_ids),
            branch_ids=frozenset(branch_ids),
            department_ids=frozenset(department_ids),
            administrative=True,
        )

    def node_lineage(self, ref: NodeRef) -> NodeLineage | None:
        if ref.kind is NodeKind.COMPANY:
            found = self._session.execute(elevated(select(Company.id).where(Company.id == ref.id))).first()
            return NodeLineage(company_id=ref.id) if found else None

        if ref.kind is NodeKind.SCHOOL:
            row = self._session.execute(elevated(select(School.company_id).where(School.id == ref.id))).first()
            return NodeLineage(company_id=row.company_id, school_id=ref.id) if row else None

        if ref.kind is NodeKind.BRANCH:
            row = self._session.execute(
                elevated(select(Branch.company_id, Branch.school_id).where(Branch.id == ref.id))
            ).first()
            if row is None:
                return None
            return NodeLineage(company_id=row.company_id, school_id=row.school_id, branch_id=ref.id)

        if ref.kind is NodeKind.DEPARTMENT:
            row = self._session.execute(
                elevated(
                    select(Department.company_id, Department.school_id, Department.branch_id).where(
                        Department.id == ref.id
                    )
                )
            ).first()
            if row is None:
                return None
            return NodeLineage(
                company_id=row.company_id, school_id=row.school_id, branch_id=row.branch_id, department_id=ref.id
            )

        row = self._session.execute(
            elevated(
                select(ClassSection.company_id, ClassSection.school_id, ClassSection.branch_id).where(
                    ClassSection.id == ref.id
                )
            )
        ).first()
        if row is None:
            return None
        return NodeLineage(company_id=row.company_id, school_id=row.school_id, branch_id=row.branch_id)

    # ---- Versioning ------------------------------------------------------------------

    def version(self) -> int:
        value = self._session.execute(
            elevated(select(DirectoryVersion.version).where(DirectoryVersion.id == 1))
        ).scalar_one_or_none()
        return value or 0
