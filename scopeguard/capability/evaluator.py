"""
Capability evaluator: (principal, action, resource) -> Decision.

Decision order, first match wins:
1. Active System Administrator -> allow.
   Undeclared resource types are denied right after this step.
2. Creator of the resource asking for an owner action -> allow. This runs
   before scope so ownership survives scope changes, and a demoted admin
   keeps nothing beyond what they created.
3. Entity admin whose resolved scope contains the resource's owning node
   (or an ancestor of it) -> allow what the capability policy grants the
   admin level for this resource type.
4. Teacher reading inside an own school/branch; student or parent reading a
   published resource inside an own school/branch -> allow.
5. Deny.

Steps 1-3 read principals and entity users through the elevated directory
path only. The evaluator never asks itself anything.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from scopeguard.capability.policy import CapabilityPolicy
from scopeguard.core.errors import (
    DenialError,
    MalformedResourceDescriptor,
    PrincipalInactive,
    PrincipalNotFound,
    ResourceMetadataInvalid,
)
from scopeguard.core.types import (
    Action,
    Decision,
    NodeLineage,
    PrincipalRecord,
    ReasonCode,
    ResourceDescriptor,
    RoleKind,
    normalize_action,
)
from scopeguard.directory.store import DirectoryStore
from scopeguard.scope.resolver import ScopeResolver

logger = logging.getLogger(__name__)


def coerce_descriptor(resource: ResourceDescriptor | Mapping[str, Any]) -> ResourceDescriptor:
    """
    Accept a descriptor or a plain mapping from the resource layer.

    Structural problems raise MalformedResourceDescriptor: that is a bug in
    the caller, not a permission question.
    """

    if isinstance(resource, ResourceDescriptor):
        return resource
    if isinstance(resource, Mapping):
        try:
            return ResourceDescriptor.model_validate(resource)
        except ValidationError as exc:
            raise MalformedResourceDescriptor(f"invalid resource descriptor: {exc}") from exc
    raise MalformedResourceDescriptor(f"unsupported resource descriptor type {type(resource).__name__!r}")


class CapabilityEvaluator:
    def __init__(self, directory: DirectoryStore, resolver: ScopeResolver, policy: CapabilityPolicy) -> None:
        self._directory = directory
        self._resolver = resolver
        self._policy = policy

    @property
    def policy(self) -> CapabilityPolicy:
        return self._policy

    def can(self, principal_id: int, action: Action | str, resource: ResourceDescriptor | Mapping[str, Any]) -> bool:
        return self.decide(principal_id, action, resource).allowed

    def decide(
        self,
        principal_id: int,
        action: Action | str,
        resource: ResourceDescriptor | Mapping[str, Any],
    ) -> Decision:
        descriptor = coerce_descriptor(resource)
        action_name = normalize_action(action)

        try:
            allowed, reason = self._evaluate(principal_id, action_name, descriptor)
        except DenialError as exc:
            allowed, reason = False, exc.reason
        except SQLAlchemyError:
            logger.warning(
                "Authz lookup failed; denying principal_id=%s action=%s resource_type=%s resource_id=%s",
                principal_id,
                action_name,
                descriptor.resource_type,
                descriptor.resource_id,
                exc_info=True,
            )
            allowed, reason = False, ReasonCode.LOOKUP_ERROR

        if allowed:
            logger.debug(
                "Authz: allowed principal_id=%s action=%s resource=%s:%s reason=%s",
                principal_id,
                action_name,
                descriptor.resource_type,
                descriptor.resource_id,
                reason.value,
            )
        else:
            logger.debug(
                "Authz: denied principal_id=%s action=%s resource=%s:%s reason=%s",
                principal_id,
                action_name,
                descriptor.resource_type,
                descriptor.resource_id,
                reason.value,
            )

        return Decision(
            allowed=allowed,
            reason=reason,
            principal_id=principal_id,
            effective_principal_id=principal_id,
            action=action_name,
            resource_type=descriptor.resource_type,
        )

    # ---- Decision steps --------------------------------------------------------------

    def _evaluate(self, principal_id: int, action: str, resource: ResourceDescriptor) -> tuple[bool, ReasonCode]:
        principal = self._load_principal(principal_id)

        if principal.role is RoleKind.SYSTEM_ADMIN:
            return True, ReasonCode.SYSTEM_ADMIN

        if not self._policy.is_known_resource(resource.resource_type):
            raise ResourceMetadataInvalid(f"unknown resource type {resource.resource_type!r}")

        if resource.creator_id is not None and resource.creator_id == principal.id:
            if action in self._policy.owner_actions:
                return True, ReasonCode.OWNER

        if self._policy.is_reserved(action):
            return False, ReasonCode.RESERVED_ACTION

        if principal.role is RoleKind.ENTITY_USER:
            return self._admin_step(principal, action, resource)

        return self._member_step(principal, action, resource)

    def _load_principal(self, principal_id: int) -> PrincipalRecord:
        principal = self._directory.principal(principal_id)
        if principal is None:
            raise PrincipalNotFound(f"principal {principal_id} not found")
        if not principal.is_active:
            raise PrincipalInactive(f"principal {principal_id} is inactive")
        return principal

    def _admin_step(
        self, principal: PrincipalRecord, action: str, resource: ResourceDescriptor
    ) -> tuple[bool, ReasonCode]:
        entity = self._directory.entity_user(principal.id)
        if entity is None or not entity.is_active:
            return False, ReasonCode.DEFAULT_DENY

        scope = self._resolver.resolve(principal.id)
        if scope.is_empty or not scope.administrative:
            return False, ReasonCode.DEFAULT_DENY

        lineage = self._lineage(resource)
        if lineage.is_empty or not scope.contains(lineage):
            return False, ReasonCode.DEFAULT_DENY

        if self._policy.grants(entity.admin_level, resource.resource_type, action):
            return True, ReasonCode.SCOPE_ADMIN
        return False, ReasonCode.DEFAULT_DENY

    def _member_step(
        self, principal: PrincipalRecord, action: str, resource: ResourceDescriptor
    ) -> tuple[bool, ReasonCode]:
        if action != Action.READ.value:
            return False, ReasonCode.DEFAULT_DENY

        if principal.role is RoleKind.TEACHER:
            reason = ReasonCode.MEMBER_READ
        elif principal.role in (RoleKind.STUDENT, RoleKind.PARENT):
            if not resource.published:
                return False, ReasonCode.DEFAULT_DENY
            reason = ReasonCode.PUBLISHED_READ
        else:
            return False, ReasonCode.DEFAULT_DENY

        scope = self._resolver.resolve(principal.id)
        if scope.is_empty:
            return False, ReasonCode.DEFAULT_DENY

        lineage = self._lineage(resource)
        if scope.matches_affiliation(lineage):
            return True, reason
        return False, ReasonCode.DEFAULT_DENY

    def _lineage(self, resource: ResourceDescriptor) -> NodeLineage:
        """Owning node plus ancestors, from the descriptor when complete, else one lookup."""

        if resource.has_full_lineage():
            return resource.supplied_lineage()

        owner = resource.owner
        lineage = self._directory.node_lineage(owner)
        if lineage is None:
            raise ResourceMetadataInvalid(f"owning node {owner.kind.value}:{owner.id} not found")
        return lineage
