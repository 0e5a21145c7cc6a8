"""
Access-control decision core for a multi-tenant education platform.

Given a principal and an operation on a resource owned somewhere in the
Company -> School -> Branch -> Department tree, decide allow or deny.
Use `AuthorizationEngine.request(db)` to get a per-request context exposing
`can`, `decide` and `resolve_scope`.
"""

from scopeguard.db import filters as _filters  # noqa: F401  (register SQLAlchemy scope filters)
from scopeguard.audit.sink import AuditEvent, InMemoryAuditSink, SqlAuditSink
from scopeguard.capability.policy import CapabilityPolicy
from scopeguard.core.errors import (
    AuditSinkUnavailable,
    ImpersonationDenied,
    MalformedResourceDescriptor,
    PrincipalInactive,
    PrincipalNotFound,
    ResourceMetadataInvalid,
    SessionExpired,
)
from scopeguard.core.types import Action, AdminLevel, Decision, NodeKind, ReasonCode, ResourceDescriptor, RoleKind, ScopeSet
from scopeguard.engine import AuthorizationEngine, RequestContext
from scopeguard.impersonation.session import ImpersonationRegistry, ImpersonationSession

__all__ = [
    "Action",
    "AdminLevel",
    "AuditEvent",
    "AuditSinkUnavailable",
    "AuthorizationEngine",
    "CapabilityPolicy",
    "Decision",
    "ImpersonationDenied",
    "ImpersonationRegistry",
    "ImpersonationSession",
    "InMemoryAuditSink",
    "MalformedResourceDescriptor",
    "NodeKind",
    "PrincipalInactive",
    "PrincipalNotFound",
    "ReasonCode",
    "RequestContext",
    "ResourceDescriptor",
    "ResourceMetadataInvalid",
    "RoleKind",
    "ScopeSet",
    "SessionExpired",
    "SqlAuditSink",
]
