"""
Test mode sessions.

A session is an explicit value handed through the request, never a process
flag. Expiry is checked lazily by comparing `expires_at` with the clock at
evaluation time, so no timer or sweeper is needed and repeated checks are
harmless.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    DEACTIVATED = "deactivated"


@dataclass(frozen=True)
class ImpersonationSession:
    session_id: str
    real_admin_id: int
    effective_principal_id: int
    started_at: datetime
    expires_at: datetime
    deactivated_at: datetime | None = None

    @classmethod
    def start(
        cls,
        real_admin_id: int,
        effective_principal_id: int,
        *,
        now: datetime,
        ttl: timedelta,
    ) -> ImpersonationSession:
        return cls(
            session_id=uuid.uuid4().hex,
            real_admin_id=real_admin_id,
            effective_principal_id=effective_principal_id,
            started_at=now,
            expires_at=now + ttl,
        )

    def state(self, now: datetime) -> SessionState:
        if self.deactivated_at is not None:
            return SessionState.DEACTIVATED
        if now > self.expires_at:
            return SessionState.EXPIRED
        return SessionState.ACTIVE

    def is_active(self, now: datetime) -> bool:
        return self.state(now) is SessionState.ACTIVE

    def remaining(self, now: datetime) -> timedelta:
        if not self.is_active(now):
            return timedelta(0)
        return self.expires_at - now

    def deactivated(self, now: datetime) -> ImpersonationSession:
        if self.deactivated_at is not None:
            return self
        return replace(self, deactivated_at=now)

    def duration(self, now: datetime) -> timedelta:
        end = self.deactivated_at or min(now, self.expires_at)
        return max(end - self.started_at, timedelta(0))

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serializable dict."""
        return {
            "session_id": self.session_id,
            "real_admin_id": self.real_admin_id,
            "effective_principal_id": self.effective_principal_id,
            "started_at": self.started_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "deactivated_at": self.deactivated_at.isoformat() if self.deactivated_at else None,
        }


class ImpersonationRegistry:
    """
    Process-local store of server-issued sessions, keyed by session id.

    Clients only ever hold the opaque id; the session contents (who is
    impersonating whom, until when) never come from the request.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, ImpersonationSession] = {}
        self._lock = threading.Lock()

    def add(self, session: ImpersonationSession) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> ImpersonationSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def replace(self, session: ImpersonationSession) -> None:
        with self._lock:
            if session.session_id in self._sessions:
                self._sessions[session.session_id] = session

    def remove(self, session_id: str) -> ImpersonationSession | None:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def purge(self, now: datetime) -> int:
        """Drop sessions that are no longer active. Returns how many were dropped."""
        with self._lock:
            stale = [sid for sid, s in self._sessions.items() if not s.is_active(now)]
            for sid in stale:
                del self._sessions[sid]
            return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
