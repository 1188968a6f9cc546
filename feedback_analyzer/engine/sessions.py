"""
Session Store

Thread-safe registry of sessions keyed by session id.

A session is owned by at most one execution at a time: `claim` hands out
exclusive use and rejects a second claimant with SessionBusyError until the
first releases it. Sessions idle longer than the TTL are evicted lazily
(on open/get/claim), so a session left awaiting approval does not live
forever.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Set

from .errors import SessionBusyError, SessionExistsError, SessionNotFoundError
from .state import Session

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 86400


class SessionStore:
    def __init__(
        self,
        ttl_seconds: Optional[float] = DEFAULT_SESSION_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}
        self._active: Set[str] = set()

    # ========== EVICTION ==========

    def _evict_locked(self) -> List[str]:
        if self.ttl_seconds is None:
            return []
        deadline = self._clock() - self.ttl_seconds
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if session.updated_at < deadline and session_id not in self._active
        ]
        for session_id in expired:
            del self._sessions[session_id]
        if expired:
            logger.info("Evicted %d idle sessions", len(expired))
        return expired

    def evict_expired(self) -> List[str]:
        """Drop sessions idle longer than the TTL. Returns the evicted ids."""
        with self._lock:
            return self._evict_locked()

    # ========== OWNERSHIP ==========

    @contextmanager
    def _owned(self, session: Session) -> Iterator[Session]:
        try:
            yield session
        finally:
            with self._lock:
                session.updated_at = self._clock()
                self._active.discard(session.session_id)

    @contextmanager
    def open(self, session_id: str) -> Iterator[Session]:
        """
        Create a session and claim it in one step.

        Raises:
            SessionExistsError: If the id is already in use
        """
        with self._lock:
            self._evict_locked()
            if session_id in self._sessions:
                raise SessionExistsError(session_id)
            now = self._clock()
            session = Session(session_id=session_id, created_at=now, updated_at=now)
            self._sessions[session_id] = session
            self._active.add(session_id)

        with self._owned(session) as owned:
            yield owned

    @contextmanager
    def claim(self, session_id: str) -> Iterator[Session]:
        """
        Take exclusive use of an existing session.

        Raises:
            SessionNotFoundError: Unknown or evicted session
            SessionBusyError: Another execution owns the session
        """
        with self._lock:
            self._evict_locked()
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session_id in self._active:
                raise SessionBusyError(session_id)
            self._active.add(session_id)

        with self._owned(session) as owned:
            yield owned

    # ========== LOOKUP ==========

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            self._evict_locked()
            return self._sessions.get(session_id)

    def is_active(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._active

    def delete(self, session_id: str) -> bool:
        with self._lock:
            if session_id in self._active:
                raise SessionBusyError(session_id)
            return self._sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions
