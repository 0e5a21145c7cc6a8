from __future__ import annotations

from scopeguard.core.types import ScopeSet


class RequestScopeCache:
    """
    Request-scoped memo of resolved scopes.

    Keys include the directory version, so a write to assignments or roles
    made earlier in the same request is picked up by the next resolve. The
    cache is created with the request context and dropped with it; nothing
    is shared across requests.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple[int, int], ScopeSet] = {}
        self.hits = 0
        self.misses = 0

    def get(self, principal_id: int, version: int) -> ScopeSet | None:
        scope = self._entries.get((principal_id, version))
        if scope is None:
            self.misses += 1
        else:
            self.hits += 1
        return scope

    def put(self, principal_id: int, version: int, scope: ScopeSet) -> None:
        self._entries[(principal_id, version)] = scope

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
