"""
Value types shared by the scope resolver, the capability evaluator and the
impersonation overlay.

Everything here is immutable so a decision computed once per request can be
handed around freely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RoleKind(str, Enum):
    SYSTEM_ADMIN = "system_admin"
    ENTITY_USER = "entity_user"
    TEACHER = "teacher"
    STUDENT = "student"
    PARENT = "parent"


class AdminLevel(str, Enum):
    ENTITY_ADMIN = "entity_admin"
    SUB_ENTITY_ADMIN = "sub_entity_admin"
    SCHOOL_ADMIN = "school_admin"
    BRANCH_ADMIN = "branch_admin"
    NONE = "none"

    @property
    def is_company_level(self) -> bool:
        return self in (AdminLevel.ENTITY_ADMIN, AdminLevel.SUB_ENTITY_ADMIN)


class NodeKind(str, Enum):
    COMPANY = "company"
    SCHOOL = "school"
    BRANCH = "branch"
    DEPARTMENT = "department"
    CLASS_SECTION = "class_section"


# Node kinds a ScopeAssignment row may point at.
ASSIGNABLE_NODE_KINDS = frozenset({NodeKind.SCHOOL, NodeKind.BRANCH, NodeKind.DEPARTMENT})


class Action(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    UPDATE_OWN = "update-own"
    DELETE_OWN = "delete-own"
    EXPORT = "export"
    MANAGE_SETTINGS = "manage-settings"
    ACTIVATE_TEST_MODE = "activate-test-mode"


class ReasonCode(str, Enum):
    SYSTEM_ADMIN = "system_admin"
    OWNER = "owner"
    SCOPE_ADMIN = "scope_admin"
    MEMBER_READ = "member_read"
    PUBLISHED_READ = "published_read"
    DEFAULT_DENY = "default_deny"
    RESERVED_ACTION = "reserved_action"
    PRINCIPAL_NOT_FOUND = "principal_not_found"
    PRINCIPAL_INACTIVE = "principal_inactive"
    RESOURCE_METADATA_INVALID = "resource_metadata_invalid"
    LOOKUP_ERROR = "lookup_error"


def normalize_action(action: Action | str) -> str:
    if isinstance(action, Action):
        return action.value
    return str(action).strip().lower()


# ---- Directory records ---------------------------------------------------------------


@dataclass(frozen=True)
class PrincipalRecord:
    id: int
    auth_subject: str
    role: RoleKind
    is_active: bool

    @property
    def is_system_admin(self) -> bool:
        return self.role is RoleKind.SYSTEM_ADMIN and self.is_active


@dataclass(frozen=True)
class EntityUserRecord:
    principal_id: int
    company_id: int
    admin_level: AdminLevel
    is_company_admin: bool
    is_active: bool


@dataclass(frozen=True)
class AffiliationRecord:
    """School (and optionally branch) a teacher, student or parent belongs to."""

    company_id: int
    school_id: int
    branch_id: int | None = None


@dataclass(frozen=True)
class NodeRef:
    kind: NodeKind
    id: int


@dataclass(frozen=True)
class NodeLineage:
    """
    An organisation node together with its denormalized ancestors.

    A resource owned by a branch has company_id, school_id and branch_id set;
    one owned directly by a school has only company_id and school_id.
    """

    company_id: int | None = None
    school_id: int | None = None
    branch_id: int | None = None
    department_id: int | None = None

    @property
    def is_empty(self) -> bool:
        return (
            self.company_id is None
            and self.school_id is None
            and self.branch_id is None
            and self.department_id is None
        )


# ---- Scope ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScopeSet:
    """
    Organisation nodes reachable under a principal's authority.

    administrative=True means the principal administers every node listed
    (and the subtree below each one is already expanded into the sets).
    administrative=False is a member scope: the nodes the principal belongs
    to, used only for read grants.
    """

    company_ids: frozenset[int] = frozenset()
    school_ids: frozenset[int] = frozenset()
    branch_ids: frozenset[int] = frozenset()
    department_ids: frozenset[int] = frozenset()
    affiliations: frozenset[AffiliationRecord] = frozenset()
    universal: bool = False
    administrative: bool = False

    @classmethod
    def empty(cls) -> ScopeSet:
        return cls()

    @classmethod
    def everything(cls) -> ScopeSet:
        return cls(universal=True, administrative=True)

    @property
    def is_empty(self) -> bool:
        return not self.universal and not (
            self.company_ids or self.school_ids or self.branch_ids or self.department_ids or self.affiliations
        )

    def contains(self, lineage: NodeLineage) -> bool:
        """True if any node of the lineage is administered by this scope."""

        if self.universal:
            return True
        if not self.administrative:
            return False
        return (
            (lineage.company_id is not None and lineage.company_id in self.company_ids)
            or (lineage.school_id is not None and lineage.school_id in self.school_ids)
            or (lineage.branch_id is not None and lineage.branch_id in self.branch_ids)
            or (lineage.department_id is not None and lineage.department_id in self.department_ids)
        )

    def matches_affiliation(self, lineage: NodeLineage) -> bool:
        """
        True if the lineage sits inside one of the principal's own nodes.

        A school-wide affiliation matches everything in the school. A branch
        affiliation matches that branch and resources owned directly by the
        school (no branch on the lineage), never a sibling branch.
        """

        for aff in self.affiliations:
            if lineage.school_id != aff.school_id:
                continue
            if aff.branch_id is None or lineage.branch_id is None or lineage.branch_id == aff.branch_id:
                return True
        return False

    def union(self, other: ScopeSet) -> ScopeSet:
        return ScopeSet(
            company_ids=self.company_ids | other.company_ids,
            school_ids=self.school_ids | other.school_ids,
            branch_ids=self.branch_ids | other.branch_ids,
            department_ids=self.department_ids | other.department_ids,
            affiliations=self.affiliations | other.affiliations,
            universal=self.universal or other.universal,
            administrative=self.administrative or other.administrative,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serializable dict."""
        if self.universal:
            return {"universal": True}
        return {
            "universal": False,
            "administrative": self.administrative,
            "company_ids": sorted(self.company_ids),
            "school_ids": sorted(self.school_ids),
            "branch_ids": sorted(self.branch_ids),
            "department_ids": sorted(self.department_ids),
        }


# ---- Resources and decisions ---------------------------------------------------------


class ResourceDescriptor(BaseModel):
    """
    Metadata the resource layer supplies for every protected row.

    The engine trusts these values. Ancestor ids are optional; when absent
    the owning node's ancestors are looked up from the directory.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    resource_type: str = Field(min_length=1)
    resource_id: int | str
    owner_kind: NodeKind | None = None
    owner_id: int | None = None
    company_id: int | None = None
    school_id: int | None = None
    branch_id: int | None = None
    department_id: int | None = None
    creator_id: int | None = None
    published: bool = False

    @model_validator(mode="after")
    def _owner_reference_complete(self) -> ResourceDescriptor:
        if (self.owner_kind is None) != (self.owner_id is None):
            raise ValueError("owner_kind and owner_id must be given together")
        return self

    @property
    def owner(self) -> NodeRef | None:
        if self.owner_kind is None or self.owner_id is None:
            return None
        return NodeRef(self.owner_kind, self.owner_id)

    def supplied_lineage(self) -> NodeLineage:
        lineage = NodeLineage(
            company_id=self.company_id,
            school_id=self.school_id,
            branch_id=self.branch_id,
            department_id=self.department_id,
        )
        owner = self.owner
        if owner is None:
            return lineage
        # The owning node itself is always part of its own lineage.
        if owner.kind is NodeKind.COMPANY and lineage.company_id is None:
            return _replace_lineage(lineage, company_id=owner.id)
        if owner.kind is NodeKind.SCHOOL and lineage.school_id is None:
            return _replace_lineage(lineage, school_id=owner.id)
        if owner.kind is NodeKind.BRANCH and lineage.branch_id is None:
            return _replace_lineage(lineage, branch_id=owner.id)
        if owner.kind is NodeKind.DEPARTMENT and lineage.department_id is None:
            return _replace_lineage(lineage, department_id=owner.id)
        return lineage

    def has_full_lineage(self) -> bool:
        """
        True when the caller supplied every ancestor the owner kind can have,
        so the node lookup can be skipped.

        Departments and class sections may sit directly under a school, so a
        missing `branch_id` is ambiguous for them; those always go to the
        directory unless the branch is given.
        """
        owner = self.owner
        if owner is None:
            return True
        if self.company_id is None:
            return False
        if owner.kind is NodeKind.COMPANY:
            return True
        if self.school_id is None:
            return False
        if owner.kind in (NodeKind.DEPARTMENT, NodeKind.CLASS_SECTION):
            return self.branch_id is not None
        return True


def _replace_lineage(lineage: NodeLineage, **changes: Any) -> NodeLineage:
    values = {
        "company_id": lineage.company_id,
        "school_id": lineage.school_id,
        "branch_id": lineage.branch_id,
        "department_id": lineage.department_id,
    }
    values.update(changes)
    return NodeLineage(**values)


@dataclass(frozen=True)
class Decision:
    """Allow/deny plus a reason code for logging. Never carries an exception."""

    allowed: bool
    reason: ReasonCode
    principal_id: int
    effective_principal_id: int
    action: str
    resource_type: str
    impersonated: bool = False
    details: dict[str, Any] = field(default_factory=dict, compare=False)

    def __bool__(self) -> bool:
        return self.allowed
