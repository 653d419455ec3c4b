"""
Per-key serialization for capacity-affecting mutations.

Every create/move/delete of an assignment and every leave approval runs while
holding the lock of each (employee, date, slot) key it touches. Leave writes
that read and change an employee's yearly allocation also hold its
(employee, year) key. Slot keys are always acquired first, in sorted order
(employee id, then date, then slot), then allocation keys, so two writers
crossing the same keys cannot deadlock.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import date
from typing import Iterator, NamedTuple, Union

logger = logging.getLogger(__name__)


class SlotKey(NamedTuple):
    employee_id: int
    date: date
    slot: str

    def __str__(self) -> str:
        return f"{self.employee_id}:{self.date.isoformat()}:{self.slot}"


class AllocationKey(NamedTuple):
    employee_id: int
    year: int

    def __str__(self) -> str:
        return f"{self.employee_id}:{self.year}:allocation"


LockKey = Union[SlotKey, AllocationKey]


def lock_order(key: LockKey) -> tuple:
    return (isinstance(key, AllocationKey), key)


class SlotLockArena:
    """Hands out one lock per key, dropping entries nobody holds or waits on"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[LockKey, threading.Lock] = {}
        self._users: dict[LockKey, int] = {}

    def _checkout(self, key: LockKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _checkin(self, key: LockKey) -> None:
        with self._guard:
            remaining = self._users[key] - 1
            if remaining:
                self._users[key] = remaining
            else:
                del self._users[key]
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: LockKey) -> Iterator[None]:
        ordered = sorted(set(keys), key=lock_order)
        acquired: list[LockKey] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                lock.acquire()
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._checkin(key)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)


# Process-wide arena shared by every service instance
slot_locks = SlotLockArena()


def get_slot_locks() -> SlotLockArena:
    return slot_locks
