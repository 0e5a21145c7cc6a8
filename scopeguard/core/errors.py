from __future__ import annotations

from scopeguard.core.types import ReasonCode


class ScopeguardError(Exception):
    """Base error for scopeguard."""


class DenialError(ScopeguardError):
    """
    Conditions that the evaluator turns into a deny decision.

    These never reach the caller of `can`/`decide`; they only carry the
    reason code out of the lookup helpers.
    """

    reason: ReasonCode = ReasonCode.DEFAULT_DENY


class PrincipalNotFound(DenialError):
    reason = ReasonCode.PRINCIPAL_NOT_FOUND


class PrincipalInactive(DenialError):
    reason = ReasonCode.PRINCIPAL_INACTIVE


class ResourceMetadataInvalid(DenialError):
    reason = ReasonCode.RESOURCE_METADATA_INVALID


class MalformedResourceDescriptor(ScopeguardError, ValueError):
    """Structurally broken resource descriptor. A caller bug, so it propagates."""


class AuditSinkUnavailable(ScopeguardError):
    """Audit write failed. Recovered locally; the protected operation proceeds."""


class SessionExpired(ScopeguardError):
    """Impersonation session no longer active; evaluation falls back to the real principal."""


class CapabilityConfigError(ScopeguardError, ValueError):
    """Raised when the capability YAML configuration is invalid."""


class ImpersonationDenied(ScopeguardError):
    """Test mode activation refused."""


class AssignmentDenied(ScopeguardError):
    """Scope assignment change refused."""
