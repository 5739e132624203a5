"""Per-environment mutual exclusion shared by the registry and the deployment pipeline."""

from __future__ import annotations

from contextlib import contextmanager
import threading
from typing import Iterator

from clientstack.core.errors import BusyError


class EnvironmentLockTable:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], threading.RLock] = {}
        self._holders: dict[tuple[str, str], str] = {}

    @contextmanager
    def hold(self, client: str, environment: str, *, operation: str) -> Iterator[None]:
        """Acquire without waiting; a held lock raises ``BusyError`` naming the current holder.

        The entry for a pair is dropped once its outermost holder releases it.
        """
        key = (client, environment)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            if not lock.acquire(blocking=False):
                holder = self._holders.get(key, "another operation")
                raise BusyError(f"{client}/{environment} is busy: {holder} in progress", step=operation)
            previous = self._holders.get(key)
            self._holders[key] = operation
        try:
            yield
        finally:
            with self._guard:
                if previous is None:
                    self._holders.pop(key, None)
                else:
                    self._holders[key] = previous
                lock.release()
                if previous is None:
                    self._locks.pop(key, None)

    def active(self) -> dict[str, str]:
        with self._guard:
            return {f"{client}/{environment}": holder for (client, environment), holder in self._holders.items()}
