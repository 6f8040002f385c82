"""Keyed lock registry.

One reentrant lock per key while anyone holds or waits on it. Lot
mutations lock on ``(user_id, symbol)``; summary rebuilds lock on
``(user_id, tax_year)``. Operations on different keys never contend.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Hashable, Iterator

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users = 0


class KeyedLocks:
    """Thread-safe registry of per-key reentrant locks.

    Entries are reference counted and dropped when the last holder or
    waiter leaves, so the registry only grows with concurrent keys.

    Example:
        locks = KeyedLocks()
        with locks.hold(("user_1", "AAPL")):
            ...
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
        try:
            with entry.lock:
                logger.debug("Acquired lock %s", key)
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


def lot_key(user_id: str, symbol: str) -> tuple[str, str, str]:
    return ("lots", user_id, symbol)


def summary_key(user_id: str, tax_year: int) -> tuple[str, str, int]:
    return ("summary", user_id, tax_year)
