"""Per-source tracking of already observed items."""

from __future__ import annotations

from collections import deque


class SeenStore:
    """Remember item identities per source key to skip re-announcements.

    The first evaluation of a source key is its baseline cycle: everything
    observed then is recorded silently. ``capacity`` optionally bounds each
    key's set, evicting the oldest identities first; ``None`` keeps every
    identity for the life of the process.
    """

    def __init__(self, capacity: int | None = None) -> None:
        self._capacity = max(1, int(capacity)) if capacity is not None else None
        self._known: dict[str, set[str]] = {}
        self._order: dict[str, deque[str]] = {}

    def is_baseline_cycle(self, source_key: str) -> bool:
        """Return True exactly once per key, the first time it is evaluated."""

        if source_key in self._known:
            return False
        self._ensure(source_key)
        return True

    def is_novel(self, source_key: str, identity: str | None) -> bool:
        """Return True if the identity was unseen for the key, recording it."""

        known = self._ensure(source_key)
        if not identity:
            return True
        if identity in known:
            return False
        known.add(identity)
        if self._capacity is not None:
            order = self._order[source_key]
            order.append(identity)
            if len(order) > self._capacity:
                known.discard(order.popleft())
        return True

    def seen_count(self, source_key: str) -> int:
        return len(self._known.get(source_key, ()))

    def known_sources(self) -> list[str]:
        return sorted(self._known)

    def _ensure(self, source_key: str) -> set[str]:
        known = self._known.get(source_key)
        if known is None:
            known = set()
            self._known[source_key] = known
            if self._capacity is not None:
                self._order[source_key] = deque()
        return known
