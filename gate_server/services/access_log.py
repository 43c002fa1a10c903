"""
Access Event Sinks
Delivery of accepted recognitions to the access log
"""
import logging
import threading
from collections import deque
from typing import List, Optional

import requests

from ..models import AccessEvent

logger = logging.getLogger(__name__)


class InMemoryAccessLog:
    """Keeps the most recent access events in process memory"""

    def __init__(self, max_events: int = 500):
        self.events = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def record(self, event: AccessEvent):
        with self._lock:
            self.events.append(event)
        logger.info("Access logged: %s (%s, unit %s, confidence %.3f)",
                    event.person_label, event.access_category, event.unit_reference, event.confidence)

    def get_events(self, person_label: Optional[str] = None, limit: int = 50) -> List[AccessEvent]:
        with self._lock:
            filtered = list(self.events)
        if person_label:
            filtered = [e for e in filtered if e.person_label == person_label]
        return sorted(filtered, key=lambda e: e.timestamp, reverse=True)[:limit]


class HttpAccessLog(InMemoryAccessLog):
    """Posts each access event to an external access-log endpoint

    Events are also kept in memory so the API can show them.
    """

    def __init__(self, url: str, timeout: float = 5.0, max_events: int = 500):
        super().__init__(max_events=max_events)
        self.url = url
        self.timeout = timeout

    def record(self, event: AccessEvent):
        super().record(event)
        response = requests.post(self.url, json=event.model_dump(mode='json'), timeout=self.timeout)
        response.raise_for_status()
