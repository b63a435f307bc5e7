from __future__ import annotations

import threading

from vsrouter.src.metrics import METRICS
from vsrouter.src.model import SourceEntity


class TombstoneIndex:
    """Routes still to be removed, as last-known Service states, keyed by ``namespace/name``.

    The live cache drops a Service as soon as the watch reports its deletion,
    but the reconciler still needs its labels to find the VirtualService and
    its identity to compute the prefix to remove.  The same applies when a
    Service's routing label moves to another VirtualService: the state that
    named the old target is recorded here.

    A key can hold several pending removals (delete, re-add under another
    label, move again) and none of them overwrites another.  Entries are
    recorded by the event dispatcher before the key is enqueued and
    forgotten one by one by the reconciler once each route is gone.
    """

    def __init__(self) -> None:
        self._entries: dict[str, list[SourceEntity]] = {}
        self._lock = threading.Lock()

    def record(self, key: str, entity: SourceEntity) -> None:
        with self._lock:
            pending = self._entries.setdefault(key, [])
            if entity not in pending:
                pending.append(entity)
            METRICS.tombstones.set(len(self._entries))

    def lookup(self, key: str) -> SourceEntity | None:
        """Most recently recorded tombstone for *key*."""
        with self._lock:
            pending = self._entries.get(key)
            return pending[-1] if pending else None

    def pending(self, key: str) -> tuple[SourceEntity, ...]:
        """All tombstones for *key*, oldest first."""
        with self._lock:
            return tuple(self._entries.get(key, ()))

    def forget(self, key: str, expected: SourceEntity | None = None) -> bool:
        """Drop tombstones for *key*; returns True when anything was removed.

        With *expected* set, only that exact tombstone is removed, so one
        recorded meanwhile by a later event for the same key is left in place.
        """
        with self._lock:
            pending = self._entries.get(key)
            if not pending:
                return False
            if expected is None:
                del self._entries[key]
            else:
                remaining = [entity for entity in pending if entity is not expected]
                if len(remaining) == len(pending):
                    return False
                if remaining:
                    self._entries[key] = remaining
                else:
                    del self._entries[key]
            METRICS.tombstones.set(len(self._entries))
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries
