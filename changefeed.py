"""
In-process change notifications keyed by table and user id.

Services publish after a successful write; subscribers re-read whatever they
display. Delivery is at-least-once per publish and a failing subscriber never
affects the writer.
"""

import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ChangeEvent(BaseModel):
    table: str
    user_id: str
    event: str
    row_id: Optional[str] = None


Listener = Callable[[ChangeEvent], None]


class ChangeFeed:
    def __init__(self):
        self._listeners: Dict[Tuple[str, str], List[Listener]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, table: str, user_id: str, callback: Listener) -> Callable[[], None]:
        key = (table, user_id)
        with self._lock:
            self._listeners[key].append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._listeners.get(key, []):
                    self._listeners[key].remove(callback)

        return unsubscribe

    def publish(self, table: str, user_id: str, event: str, row_id: str = None) -> None:
        change = ChangeEvent(table=table, user_id=user_id, event=event, row_id=row_id)
        with self._lock:
            listeners = list(self._listeners.get((table, user_id), []))
        for listener in listeners:
            try:
                listener(change)
            except Exception:
                logger.exception("Change listener failed for %s/%s", table, user_id)
