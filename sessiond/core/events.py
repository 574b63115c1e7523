"""
In-process notification of session lifecycle events.

Other subsystems register handlers per topic. Delivery is synchronous and
a failing handler never affects the session operation that posted the event.
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

TOPIC_ADD_SESSION = "sessiond/add/session"
TOPIC_STORED_SESSION = "sessiond/stored/session"
TOPIC_RESTORED_SESSION = "sessiond/restored/session"
TOPIC_REMOVE_SESSION = "sessiond/remove/session"

Handler = Callable[[str, Any], None]


class EventBus:
    def __init__(self):
        self._lock = threading.Lock()
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def register(self, topic: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[topic].append(handler)

    def unregister(self, topic: str, handler: Handler) -> None:
        with self._lock:
            if handler in self._handlers.get(topic, []):
                self._handlers[topic].remove(handler)

    def post(self, topic: str, payload: Any) -> None:
        with self._lock:
            handlers = list(self._handlers.get(topic, []))
        for handler in handlers:
            try:
                handler(topic, payload)
            except Exception as e:
                logger.warning(f"Event handler for {topic} failed: {e}")
