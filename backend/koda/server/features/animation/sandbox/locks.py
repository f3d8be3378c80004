import threading
from collections.abc import Generator
from contextlib import contextmanager


class KeyedLock:
    """One reentrant lock per key, created on demand and dropped when unused.

    Used to serialize provision / read / save / destroy for the same node
    while different nodes proceed in parallel.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key -> (lock, number of holders and waiters)
        self._locks: dict[str, tuple[threading.RLock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Generator[None, None, None]:
        with self._guard:
            lock, users = self._locks.get(key, (threading.RLock(), 0))
            self._locks[key] = (lock, users + 1)

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                _, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
