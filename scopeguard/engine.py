"""
Engine facade: the two calls the resource-access layer makes.

    engine = AuthorizationEngine.from_settings()
    with engine.request(db) as authz:
        scope = authz.resolve_scope(principal_id)      # pre-filter list queries
        if authz.can(principal_id, "update", descriptor):
            ...

A RequestContext owns the per-request scope cache and the elevated
directory reader bound to the request's session. It is cheap to create and
must not outlive the request.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from scopeguard.audit.sink import AuditSink, SqlAuditSink
from scopeguard.capability.evaluator import CapabilityEvaluator
from scopeguard.capability.policy import CapabilityPolicy
from scopeguard.core.types import Action, Decision, ResourceDescriptor, ScopeSet
from scopeguard.directory.store import DirectoryStore, SqlDirectoryStore
from scopeguard.impersonation.overlay import ImpersonationOverlay
from scopeguard.impersonation.session import ImpersonationSession, utcnow
from scopeguard.logging_config import configure_logging
from scopeguard.scope.cache import RequestScopeCache
from scopeguard.scope.resolver import ScopeResolver
from scopeguard.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class RequestContext:
    def __init__(
        self,
        directory: DirectoryStore,
        policy: CapabilityPolicy,
        audit_sink: AuditSink,
        *,
        ttl: timedelta,
        clock: Callable[[], datetime],
    ) -> None:
        self.directory = directory
        self.cache = RequestScopeCache()
        self.resolver = ScopeResolver(directory, self.cache)
        self.evaluator = CapabilityEvaluator(directory, self.resolver, policy)
        self.overlay = ImpersonationOverlay(directory, self.evaluator, audit_sink, ttl=ttl, clock=clock)

    def resolve_scope(self, principal_id: int, *, session: ImpersonationSession | None = None) -> ScopeSet:
        """ScopeSet of the principal, or of the effective principal while a test mode session applies."""

        effective_id = self.overlay.effective_principal(principal_id, session)
        return self.resolver.resolve(effective_id if effective_id is not None else principal_id)

    def decide(
        self,
        principal_id: int,
        action: Action | str,
        resource: ResourceDescriptor | Mapping[str, Any],
        *,
        session: ImpersonationSession | None = None,
        audit: bool = False,
    ) -> Decision:
        return self.overlay.decide(principal_id, action, resource, session, audit=audit)

    def can(
        self,
        principal_id: int,
        action: Action | str,
        resource: ResourceDescriptor | Mapping[str, Any],
        *,
        session: ImpersonationSession | None = None,
        audit: bool = False,
    ) -> bool:
        return self.decide(principal_id, action, resource, session=session, audit=audit).allowed

    def activate_test_mode(self, real_admin_id: int, target_principal_id: int) -> ImpersonationSession:
        return self.overlay.activate(real_admin_id, target_principal_id)

    def deactivate_test_mode(self, session: ImpersonationSession) -> ImpersonationSession:
        return self.overlay.deactivate(session)


class AuthorizationEngine:
    """Long-lived, stateless holder of the policy, audit sink and clock."""

    def __init__(
        self,
        policy: CapabilityPolicy,
        audit_sink: AuditSink,
        *,
        impersonation_ttl: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.policy = policy
        self.audit_sink = audit_sink
        self.impersonation_ttl = impersonation_ttl
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        audit_sink: AuditSink | None = None,
    ) -> AuthorizationEngine:
        settings = settings or get_settings()
        configure_logging(settings.log_level)
        policy = CapabilityPolicy.from_yaml(settings.resolved_capabilities_path())
        if audit_sink is None:
            # Local import: building the default engine binds the configured database.
            from scopeguard.db.session import SessionLocal

            audit_sink = SqlAuditSink(SessionLocal)
        return cls(
            policy,
            audit_sink,
            impersonation_ttl=timedelta(seconds=settings.impersonation_ttl_seconds),
        )

    def context(self, directory: DirectoryStore) -> RequestContext:
        return RequestContext(
            directory,
            self.policy,
            self.audit_sink,
            ttl=self.impersonation_ttl,
            clock=self.clock,
        )

    @contextmanager
    def request(self, db: Session) -> Iterator[RequestContext]:
        """One request: a fresh scope cache and an elevated directory reader on `db`."""

        ctx = self.context(SqlDirectoryStore(db))
        try:
            yield ctx
        finally:
            logger.debug(
                "Authz request finished scope_cache_entries=%s hits=%s misses=%s",
                len(ctx.cache),
                ctx.cache.hits,
                ctx.cache.misses,
            )
            ctx.cache.clear()
