"""In-process mutual exclusion for settlements, keyed by customer."""

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock

from billing_ops.core.config import settings


class SettlementConflictError(RuntimeError):
    """A settlement cannot run because of another settlement's state."""


class SettlementInProgressError(SettlementConflictError):
    """Another settlement for the same customer or source is still running."""


@dataclass
class _KeyLock:
    lock: Lock = field(default_factory=Lock)
    users: int = 0


class SettlementLockRegistry:
    """Hands out one lock per key so settlements for a customer run one at a time.

    Keys are arbitrary strings; the settlement service uses
    ``"<account>:<customer>"``. An entry exists only while some caller holds
    or waits for its key, so the registry does not grow with the number of
    customers ever settled.
    """

    def __init__(self, timeout_seconds: float = 30.0):
        self.timeout_seconds = timeout_seconds
        self._locks: dict[str, _KeyLock] = {}
        self._guard = Lock()

    def _check_out(self, key: str) -> _KeyLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _KeyLock()
                self._locks[key] = entry
            entry.users += 1
            return entry

    def _check_in(self, key: str, entry: _KeyLock) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    @contextmanager
    def hold(self, key: str, timeout_seconds: float | None = None) -> Iterator[None]:
        """Hold the lock for ``key``, raising if it is not acquired in time."""
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        entry = self._check_out(key)
        try:
            if not entry.lock.acquire(timeout=timeout):
                raise SettlementInProgressError(f"Another settlement is in progress for {key}")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._check_in(key, entry)

    def is_locked(self, key: str) -> bool:
        with self._guard:
            entry = self._locks.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def reset(self) -> None:
        """Forget all locks (useful for testing)."""
        with self._guard:
            self._locks.clear()


settlement_locks = SettlementLockRegistry(settings.SETTLEMENT_LOCK_TIMEOUT_SECONDS)
