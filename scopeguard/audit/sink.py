"""
Audit sinks.

Writes are best effort from the evaluator's point of view: a sink raises
AuditSinkUnavailable when it cannot write, and the caller logs a warning and
carries on with the protected operation.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from scopeguard.core.errors import AuditSinkUnavailable
from scopeguard.models.audit import AuditRecord

logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["password", "secret", "token", "authorization", "api_key"]
_REDACTED_VALUE = "[REDACTED]"


@dataclass(frozen=True)
class AuditEvent:
    actor_id: int
    action: str
    effective_principal_id: int | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, object]:
        return {
            "actor_id": self.actor_id,
            "effective_principal_id": self.effective_principal_id,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "details": dict(self.details),
            "occurred_at": self.occurred_at.isoformat(),
        }


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_details(value: Any) -> Any:
    """Recursively redact credential-looking keys before they reach storage."""
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_details(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_details(item) for item in value]
    return value


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class SqlAuditSink:
    """
    Append AuditRecord rows.

    With a session_factory each event is written and committed in its own
    session, so it survives a rollback of the caller's transaction. With a
    bound session the row is flushed inside a savepoint and the caller
    commits; a failed write rolls back only the audit row.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        *,
        session: Session | None = None,
    ) -> None:
        if (session_factory is None) == (session is None):
            raise ValueError("SqlAuditSink needs exactly one of session_factory or session")
        self._session_factory = session_factory
        self._session = session

    def record(self, event: AuditEvent) -> None:
        row = AuditRecord(
            actor_id=event.actor_id,
            effective_principal_id=event.effective_principal_id,
            action=event.action,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            details=sanitize_details(event.details),
            # Stored naive UTC, like every other timestamp column.
            created_at=event.occurred_at.astimezone(timezone.utc).replace(tzinfo=None),
        )

        if self._session is not None:
            # Savepoint: a failed audit insert must not poison the caller's transaction.
            try:
                with self._session.begin_nested():
                    self._session.add(row)
            except SQLAlchemyError as exc:
                raise AuditSinkUnavailable(f"audit write failed action={event.action}") from exc
            return

        with self._session_factory() as audit_session:
            try:
                audit_session.add(row)
                audit_session.commit()
            except SQLAlchemyError as exc:
                audit_session.rollback()
                raise AuditSinkUnavailable(f"audit write failed action={event.action}") from exc


class InMemoryAuditSink:
    """Keeps events in a list. Handy for tests and local tooling."""

    def __init__(self) -> None:
        self._events: list[AuditEvent] = []
        self._lock = threading.Lock()

    def record(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(
                AuditEvent(
                    actor_id=event.actor_id,
                    action=event.action,
                    effective_principal_id=event.effective_principal_id,
                    resource_type=event.resource_type,
                    resource_id=event.resource_id,
                    details=sanitize_details(event.details),
                    occurred_at=event.occurred_at,
                )
            )

    @property
    def events(self) -> list[AuditEvent]:
        with self._lock:
            return list(self._events)


def emit(sink: AuditSink, event: AuditEvent) -> bool:
    """
    Write an event without ever failing the caller.

    Returns False (after logging a warning) when the sink is unavailable.
    """

    try:
        sink.record(event)
    except AuditSinkUnavailable:
        logger.warning(
            "Audit sink unavailable; continuing action=%s actor_id=%s effective_principal_id=%s",
            event.action,
            event.actor_id,
            event.effective_principal_id,
            exc_info=True,
        )
        return False
    return True
