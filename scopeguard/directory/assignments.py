"""
Scope assignment administration.

Assignments are written by company admins (entity or sub-entity admins with
the company admin flag) or System Administrators. Every write bumps the
directory version through the flush hook in `scopeguard/models/directory.py`,
so the next scope resolution sees it without any cache flush.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from scopeguard.audit.sink import AuditEvent, AuditSink, emit
from scopeguard.capability.policy import CapabilityPolicy
from scopeguard.core.errors import AssignmentDenied
from scopeguard.core.types import ASSIGNABLE_NODE_KINDS, AdminLevel, NodeRef, RoleKind
from scopeguard.directory.store import DirectoryStore, elevated
from scopeguard.models.directory import ScopeAssignment

logger = logging.getLogger(__name__)

SCOPE_ASSIGNED = "scope_assigned"
SCOPE_REMOVED = "scope_removed"


def can_manage_admin(directory: DirectoryStore, policy: CapabilityPolicy, actor_id: int, target_id: int) -> bool:
    """
    True if the actor may administer the target entity user.

    System Administrators manage everyone. Entity users need to be active,
    in the same company, and the target's level must be in the actor's
    `manages` list.
    """

    actor = directory.principal(actor_id)
    if actor is None or not actor.is_active:
        return False
    if actor.is_system_admin:
        return True
    if actor.role is not RoleKind.ENTITY_USER:
        return False

    actor_entity = directory.entity_user(actor_id)
    target_entity = directory.entity_user(target_id)
    if actor_entity is None or target_entity is None or not actor_entity.is_active:
        return False
    if actor_entity.company_id != target_entity.company_id:
        return False
    return policy.manages(actor_entity.admin_level, target_entity.admin_level)


def _require_company_admin(
    directory: DirectoryStore, policy: CapabilityPolicy, actor_id: int, target_id: int
) -> int:
    """Validate the actor/target pair and return the target's company id."""

    target = directory.entity_user(target_id)
    if target is None:
        raise AssignmentDenied(f"principal {target_id} is not an entity user")
    if target.admin_level is AdminLevel.NONE:
        raise AssignmentDenied(f"entity user {target_id} has no admin level to scope")

    actor = directory.principal(actor_id)
    if actor is None or not actor.is_active:
        raise AssignmentDenied(f"principal {actor_id} not found or inactive")
    if not actor.is_system_admin:
        actor_entity = directory.entity_user(actor_id)
        if (
            actor_entity is None
            or not actor_entity.is_active
            or not actor_entity.is_company_admin
            or not actor_entity.admin_level.is_company_level
        ):
            raise AssignmentDenied(f"principal {actor_id} is not a company admin")
        if not can_manage_admin(directory, policy, actor_id, target_id):
            raise AssignmentDenied(f"principal {actor_id} may not manage entity user {target_id}")

    return target.company_id


def assign_scope(
    db: Session,
    directory: DirectoryStore,
    policy: CapabilityPolicy,
    audit_sink: AuditSink,
    *,
    actor_id: int,
    entity_user_id: int,
    node: NodeRef,
) -> ScopeAssignment:
    if node.kind not in ASSIGNABLE_NODE_KINDS:
        raise AssignmentDenied(f"cannot assign scope on a {node.kind.value}")

    company_id = _require_company_admin(directory, policy, actor_id, entity_user_id)

    lineage = directory.node_lineage(node)
    if lineage is None:
        raise AssignmentDenied(f"{node.kind.value} {node.id} not found")
    if lineage.company_id != company_id:
        raise AssignmentDenied(f"{node.kind.value} {node.id} belongs to another company")

    existing = db.scalars(
        elevated(
            select(ScopeAssignment).where(
                ScopeAssignment.entity_user_id == entity_user_id,
                ScopeAssignment.node_kind == node.kind,
                ScopeAssignment.node_id == node.id,
            )
        )
    ).first()
    if existing is not None:
        return existing

    row = ScopeAssignment(entity_user_id=entity_user_id, node_kind=node.kind, node_id=node.id, assigned_by=actor_id)
    db.add(row)
    db.flush()

    logger.info(
        "Scope assigned entity_user_id=%s node=%s:%s by=%s", entity_user_id, node.kind.value, node.id, actor_id
    )
    emit(
        audit_sink,
        AuditEvent(
            actor_id=actor_id,
            action=SCOPE_ASSIGNED,
            resource_type="scope_assignment",
            resource_id=str(row.id),
            details={"entity_user_id": entity_user_id, "node_kind": node.kind.value, "node_id": node.id},
        ),
    )
    return row


def remove_scope(
    db: Session,
    directory: DirectoryStore,
    policy: CapabilityPolicy,
    audit_sink: AuditSink,
    *,
    actor_id: int,
    entity_user_id: int,
    node: NodeRef,
) -> bool:
    """Remove an assignment. Returns False when there was nothing to remove."""

    _require_company_admin(directory, policy, actor_id, entity_user_id)

    row = db.scalars(
        elevated(
            select(ScopeAssignment).where(
                ScopeAssignment.entity_user_id == entity_user_id,
                ScopeAssignment.node_kind == node.kind,
                ScopeAssignment.node_id == node.id,
            )
        )
    ).first()
    if row is None:
        return False

    row_id = row.id
    db.delete(row)
    db.flush()

    logger.info(
        "Scope removed entity_user_id=%s node=%s:%s by=%s", entity_user_id, node.kind.value, node.id, actor_id
    )
    emit(
        audit_sink,
        AuditEvent(
            actor_id=actor_id,
            action=SCOPE_REMOVED,
            resource_type="scope_assignment",
            resource_id=str(row_id),
            details={"entity_user_id": entity_user_id, "node_kind": node.kind.value, "node_id": node.id},
        ),
    )
    return True
