"""
Impersonation overlay ("test mode").

State machine: Inactive -> Active -> {Expired, Deactivated}.

While a session is active every decision is computed for the effective
principal exactly as if they had called directly, and one audit record is
written per decision carrying both the real admin and the effective
principal. Nothing is added on top of the effective principal's own
results. Expired, deactivated or mismatched sessions fall back to the
caller's own permissions.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from scopeguard.audit.sink import AuditEvent, AuditSink, emit
from scopeguard.capability.evaluator import CapabilityEvaluator, coerce_descriptor
from scopeguard.core.errors import ImpersonationDenied, SessionExpired
from scopeguard.core.types import Action, Decision, ResourceDescriptor, normalize_action
from scopeguard.directory.store import DirectoryStore
from scopeguard.impersonation.session import ImpersonationSession, SessionState, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(minutes=5)

TEST_MODE_START = "test_mode_start"
TEST_MODE_END = "test_mode_end"


class ImpersonationOverlay:
    def __init__(
        self,
        directory: DirectoryStore,
        evaluator: CapabilityEvaluator,
        audit_sink: AuditSink,
        *,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._directory = directory
        self._evaluator = evaluator
        self._audit_sink = audit_sink
        self._ttl = ttl
        self._clock = clock

    # ---- Transitions -----------------------------------------------------------------

    def activate(self, real_admin_id: int, target_principal_id: int) -> ImpersonationSession:
        """
        Inactive -> Active.

        The admin must pass the evaluator for `activate-test-mode`, which only
        an active System Administrator does. The target must exist, be active
        and be someone else.
        """

        target_ref = ResourceDescriptor(resource_type="principal", resource_id=target_principal_id)
        decision = self._evaluator.decide(real_admin_id, Action.ACTIVATE_TEST_MODE, target_ref)
        if not decision.allowed:
            logger.warning(
                "Test mode activation refused admin_id=%s target_id=%s reason=%s",
                real_admin_id,
                target_principal_id,
                decision.reason.value,
            )
            raise ImpersonationDenied(f"principal {real_admin_id} may not activate test mode")

        if target_principal_id == real_admin_id:
            raise ImpersonationDenied("cannot impersonate yourself")

        target = self._directory.principal(target_principal_id)
        if target is None:
            raise ImpersonationDenied(f"target principal {target_principal_id} not found")
        if not target.is_active:
            raise ImpersonationDenied(f"target principal {target_principal_id} is inactive")

        now = self._clock()
        session = ImpersonationSession.start(real_admin_id, target_principal_id, now=now, ttl=self._ttl)
        logger.info(
            "Test mode started session_id=%s admin_id=%s target_id=%s expires_at=%s",
            session.session_id,
            real_admin_id,
            target_principal_id,
            session.expires_at.isoformat(),
        )
        emit(
            self._audit_sink,
            AuditEvent(
                actor_id=real_admin_id,
                effective_principal_id=target_principal_id,
                action=TEST_MODE_START,
                resource_type="principal",
                resource_id=str(target_principal_id),
                details={
                    "session_id": session.session_id,
                    "target_role": target.role.value,
                    "expires_at": session.expires_at.isoformat(),
                },
                occurred_at=now,
            ),
        )
        return session

    def deactivate(self, session: ImpersonationSession) -> ImpersonationSession:
        """Active -> Deactivated. Deactivating an inactive session only returns it."""

        now = self._clock()
        if not session.is_active(now):
            return session

        ended = session.deactivated(now)
        logger.info("Test mode ended session_id=%s admin_id=%s", session.session_id, session.real_admin_id)
        emit(
            self._audit_sink,
            AuditEvent(
                actor_id=session.real_admin_id,
                effective_principal_id=session.effective_principal_id,
                action=TEST_MODE_END,
                resource_type="principal",
                resource_id=str(session.effective_principal_id),
                details={
                    "session_id": session.session_id,
                    "duration_seconds": int(ended.duration(now).total_seconds()),
                },
                occurred_at=now,
            ),
        )
        return ended

    # ---- Evaluation ------------------------------------------------------------------

    def effective_principal(self, principal_id: int, session: ImpersonationSession | None) -> int | None:
        """Effective principal id while `session` applies to this caller, else None."""

        if session is None:
            return None
        try:
            self._check(principal_id, session)
        except SessionExpired as exc:
            logger.info("Test mode not applied; using own permissions principal_id=%s: %s", principal_id, exc)
            return None
        return session.effective_principal_id

    def decide(
        self,
        principal_id: int,
        action: Action | str,
        resource: ResourceDescriptor | Mapping[str, Any],
        session: ImpersonationSession | None = None,
        *,
        audit: bool = False,
    ) -> Decision:
        descriptor = coerce_descriptor(resource)
        effective_id = self.effective_principal(principal_id, session)

        if effective_id is None:
            decision = self._evaluator.decide(principal_id, action, descriptor)
            if audit:
                self._record(decision, descriptor, session_id=None)
            return decision

        decision = self._evaluator.decide(effective_id, action, descriptor)
        decision = replace(
            decision,
            principal_id=principal_id,
            effective_principal_id=effective_id,
            impersonated=True,
        )
        self._record(decision, descriptor, session_id=session.session_id)
        return decision

    def _check(self, principal_id: int, session: ImpersonationSession) -> None:
        now = self._clock()
        state = session.state(now)
        if state is not SessionState.ACTIVE:
            raise SessionExpired(f"session {session.session_id} is {state.value}")
        if session.real_admin_id != principal_id:
            logger.warning(
                "Test mode session presented by another principal session_id=%s owner=%s caller=%s",
                session.session_id,
                session.real_admin_id,
                principal_id,
            )
            raise SessionExpired(f"session {session.session_id} belongs to another principal")
        try:
            admin = self._directory.principal(principal_id)
        except SQLAlchemyError as exc:
            raise SessionExpired(f"could not re-check admin for session {session.session_id}") from exc
        if admin is None or not admin.is_system_admin:
            raise SessionExpired(f"principal {principal_id} is no longer an active system admin")

    def _record(self, decision: Decision, descriptor: ResourceDescriptor, *, session_id: str | None) -> None:
        details: dict[str, Any] = {"allowed": decision.allowed, "reason": decision.reason.value}
        if session_id is not None:
            details["session_id"] = session_id
        emit(
            self._audit_sink,
            AuditEvent(
                actor_id=decision.principal_id,
                effective_principal_id=decision.effective_principal_id,
                action=normalize_action(decision.action),
                resource_type=descriptor.resource_type,
                resource_id=str(descriptor.resource_id),
                details=details,
                occurred_at=self._clock(),
            ),
        )
