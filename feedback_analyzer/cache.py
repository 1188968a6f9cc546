"""
Classification Cache

Remembers the category assigned to a ticket's content so an identical
ticket can be answered without running the pipeline again. Entries expire
after ttl_seconds; expired entries are dropped on read and swept on
every write.
"""

import hashlib
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from feedback_analyzer.schemas import TicketCategory

CACHE_PREFIX = "classification:"


class ClassificationCache:
    def __init__(self, ttl_seconds: float = 86400, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[TicketCategory, float]] = {}

    @staticmethod
    def _key(ticket_content: str) -> str:
        return CACHE_PREFIX + hashlib.sha256(ticket_content.encode("utf-8")).hexdigest()

    def cache_classification(self, ticket_content: str, category: TicketCategory) -> None:
        now = self._clock()
        expires_at = now + self.ttl_seconds
        with self._lock:
            expired = [key for key, (_, deadline) in self._entries.items() if deadline <= now]
            for key in expired:
                del self._entries[key]
            self._entries[self._key(ticket_content)] = (category, expires_at)

    def get_cached_classification(self, ticket_content: str) -> Optional[TicketCategory]:
        key = self._key(ticket_content)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            category, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return category

    def evict(self, ticket_content: str) -> bool:
        with self._lock:
            return self._entries.pop(self._key(ticket_content), None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
