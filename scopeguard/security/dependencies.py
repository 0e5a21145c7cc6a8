from __future__ import annotations

import logging
from collections.abc import Generator, Mapping
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, status
from sqlalchemy.orm import Session

from scopeguard.core.errors import ImpersonationDenied
from scopeguard.core.types import Action, Decision, PrincipalRecord, ResourceDescriptor
from scopeguard.db.filters import attach_scope, detach_scope
from scopeguard.db.session import get_db
from scopeguard.engine import AuthorizationEngine
from scopeguard.impersonation.session import ImpersonationRegistry, ImpersonationSession
from scopeguard.security.auth import extract_subject, load_principal
from scopeguard.security.context import RequestAuthz
from scopeguard.settings import get_settings

logger = logging.getLogger(__name__)


def install_authorization(
    app: FastAPI,
    engine: AuthorizationEngine,
    registry: ImpersonationRegistry | None = None,
) -> None:
    """Attach the engine and the test mode session registry to the app."""

    app.state.authz_engine = engine
    app.state.test_mode_registry = registry if registry is not None else ImpersonationRegistry()


def get_engine(request: Request) -> AuthorizationEngine:
    engine = getattr(request.app.state, "authz_engine", None)
    if engine is None:
        raise RuntimeError("Authorization engine not installed. Did install_authorization run?")
    return engine


def get_registry(request: Request) -> ImpersonationRegistry:
    registry = getattr(request.app.state, "test_mode_registry", None)
    if registry is None:
        raise RuntimeError("Test mode registry not installed. Did install_authorization run?")
    return registry


def get_authz(
    request: Request,
    engine: AuthorizationEngine = Depends(get_engine),
    registry: ImpersonationRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
) -> Generator[RequestAuthz, None, None]:
    """
    Per-request authorization dependency.

    - Resolves the caller from the bearer subject.
    - Applies a test mode session only if the header names a server-issued
      session that belongs to the caller and is still active.
    - Resolves the scope once and attaches it to the DB session, so list
      queries on scoped resource tables are pre-filtered without per-row checks.
    """

    settings = get_settings()

    with engine.request(db) as ctx:
        subject = extract_subject(request, settings)
        if subject is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")

        principal = load_principal(ctx.directory, subject)
        # Sessions that expired without being ended are dropped here.
        registry.purge(engine.clock())
        session = _lookup_session(request, registry, settings.test_mode_header)

        effective = principal
        effective_id = ctx.overlay.effective_principal(principal.id, session)
        target = ctx.directory.principal(effective_id) if effective_id is not None else None
        if target is not None:
            effective = target
        else:
            # No usable session, or its target vanished: decide and filter as the caller.
            session = None

        scope = ctx.resolver.resolve(effective.id)
        attach_scope(db, effective.id, effective.role, scope)

        authz = RequestAuthz(principal=principal, effective=effective, scope=scope, context=ctx, session=session)
        request.state.authz = authz
        try:
            yield authz
        finally:
            detach_scope(db)


def _lookup_session(request: Request, registry: ImpersonationRegistry, header: str) -> ImpersonationSession | None:
    session_id = request.headers.get(header)
    if not session_id:
        return None
    session = registry.get(session_id.strip())
    if session is None:
        logger.warning("Unknown test mode session id presented path=%s", request.url.path)
    return session


def enforce(
    authz: RequestAuthz,
    action: Action | str,
    resource: ResourceDescriptor | Mapping[str, Any],
    *,
    audit: bool = False,
) -> Decision:
    """Decide for the current caller; raise 403 with the reason code on deny."""

    decision = authz.context.decide(authz.principal.id, action, resource, session=authz.session, audit=audit)
    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"reason": decision.reason.value, "action": decision.action},
        )
    return decision


def start_test_mode(authz: RequestAuthz, registry: ImpersonationRegistry, target_id: int) -> ImpersonationSession:
    """Activation helper for the host's admin endpoint."""

    try:
        session = authz.context.activate_test_mode(authz.principal.id, target_id)
    except ImpersonationDenied as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    registry.add(session)
    return session


def end_test_mode(authz: RequestAuthz, registry: ImpersonationRegistry, session_id: str) -> ImpersonationSession:
    session = registry.get(session_id)
    if session is None or session.real_admin_id != authz.principal.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Test mode session not found")
    ended = authz.context.deactivate_test_mode(session)
    registry.remove(session_id)
    return ended


def current_principal(authz: RequestAuthz = Depends(get_authz)) -> PrincipalRecord:
    return authz.principal
