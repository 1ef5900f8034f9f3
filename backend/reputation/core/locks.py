"""Per-source mutual exclusion.

At most one score-changing unit of work runs per source id inside a process;
different sources never contend. The database row lock taken by the
aggregator (`SELECT ... FOR UPDATE`) extends the guarantee across processes.
"""

from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional

from reputation.core.errors import StorageError


@dataclass(slots=True)
class _Entry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    waiters: int = 0


class KeyedLock:
    """Reference-counted lock per key; entries vanish when nobody holds them."""

    def __init__(self, *, timeout_seconds: Optional[float] = None) -> None:
        self._timeout = timeout_seconds
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable, *, timeout_seconds: Optional[float] = None) -> Iterator[None]:
        timeout = self._timeout if timeout_seconds is None else timeout_seconds
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.waiters += 1

        acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
        try:
            if not acquired:
                raise StorageError(f"timed out after {timeout}s waiting for lock on {key}")
            yield
        finally:
            if acquired:
                entry.lock.release()
            with self._guard:
                entry.waiters -= 1
                if entry.waiters == 0:
                    self._entries.pop(key, None)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._entries)
