import threading
from contextlib import contextmanager

from errors import ActionInProgress


class InFlightGuard:
    """Rejects a second submission of the same action while one is running."""

    def __init__(self):
        self._held = set()
        self._lock = threading.Lock()

    @contextmanager
    def hold(self, action: str, user_id: str):
        key = (action, user_id)
        with self._lock:
            if key in self._held:
                raise ActionInProgress(f"A {action} request is already in progress")
            self._held.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._held.discard(key)

    def busy(self, action: str, user_id: str) -> bool:
        with self._lock:
            return (action, user_id) in self._held
