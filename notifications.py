"""Per-user toast queue, consumed by whatever renders the storefront."""

import threading
import time
from collections import defaultdict, deque
from typing import Deque, Dict, List, Literal

from pydantic import BaseModel, Field

Kind = Literal["success", "error", "info"]

MAX_PER_USER = 20


class Notification(BaseModel):
    message: str
    kind: Kind = "success"
    ttl: float = 3
    created: float = Field(default_factory=time.monotonic)

    def expired(self, now: float) -> bool:
        return now - self.created > self.ttl


class NotificationQueue:
    """Each user keeps at most ``max_per_user`` notices; expired ones are pruned on every access."""

    def __init__(self, default_ttl: float = 3, max_per_user: int = MAX_PER_USER):
        self.default_ttl = default_ttl
        self._queues: Dict[str, Deque[Notification]] = defaultdict(lambda: deque(maxlen=max_per_user))
        self._lock = threading.Lock()

    def _prune(self, user_id: str, now: float) -> Deque[Notification]:
        queue = self._queues.get(user_id)
        if queue is None:
            return deque()
        live = [n for n in queue if not n.expired(now)]
        if len(live) != len(queue):
            queue.clear()
            queue.extend(live)
        if not queue:
            del self._queues[user_id]
        return queue

    def push(self, user_id: str, message: str, kind: Kind = "success", ttl: float = None) -> Notification:
        note = Notification(message=message, kind=kind, ttl=self.default_ttl if ttl is None else ttl)
        with self._lock:
            self._prune(user_id, note.created)
            self._queues[user_id].append(note)
        return note

    def peek(self, user_id: str) -> List[Notification]:
        with self._lock:
            return list(self._prune(user_id, time.monotonic()))

    def drain(self, user_id: str) -> List[Notification]:
        """Return the live notices for a user and empty their queue."""
        with self._lock:
            pending = list(self._prune(user_id, time.monotonic()))
            self._queues.pop(user_id, None)
        return pending

    def stored(self, user_id: str) -> int:
        with self._lock:
            return len(self._queues.get(user_id, ()))
