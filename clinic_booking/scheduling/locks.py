import logging
from contextlib import contextmanager
from threading import Lock
from typing import Iterator

from clinic_booking.core.errors import LockTimeoutError

logger = logging.getLogger(__name__)

BOOKING_LOCK_KEY = 'reservations'
SCHEDULE_LOCK_KEY = 'schedule'


def reservation_lock_key(reserve_id: str) -> str:
    return f'reservation:{reserve_id}'


class KeyedLock:
    """Named mutexes created on first use and dropped once nobody holds or waits on them.

    Callers choose how wide a key is: one key for the whole reservation table
    serializes every booking, a per-doctor key would only serialize bookings
    against the same calendar.
    """

    def __init__(self) -> None:
        self._registry_lock = Lock()
        self._locks: dict[str, Lock] = {}
        self._users: dict[str, int] = {}

    def _checkout(self, key: str) -> Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _checkin(self, key: str) -> None:
        with self._registry_lock:
            remaining = self._users[key] - 1
            if remaining:
                self._users[key] = remaining
            else:
                del self._users[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        lock = self._checkout(key)
        try:
            if not lock.acquire(timeout=timeout):
                logger.warning('Lock %s not acquired within %.1fs', key, timeout)
                raise LockTimeoutError(key, timeout)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)


booking_locks = KeyedLock()
