from __future__ import annotations

from dataclasses import dataclass

from scopeguard.core.types import PrincipalRecord, ScopeSet
from scopeguard.engine import RequestContext
from scopeguard.impersonation.session import ImpersonationSession


@dataclass(frozen=True)
class RequestAuthz:
    """
    Per-request authorization state, attached to `request.state.authz`.

    `principal` is always the authenticated caller. While a test mode
    session applies, `effective` is the impersonated principal and `scope`
    is theirs; otherwise both equal the caller.
    """

    principal: PrincipalRecord
    effective: PrincipalRecord
    scope: ScopeSet
    context: RequestContext
    session: ImpersonationSession | None = None

    @property
    def impersonating(self) -> bool:
        return self.effective.id != self.principal.id
