"""
Tool-Call Governor

Caps the number of tool dispatches a stage may make within one session.
Counters are keyed by (session_id, stage_name) and outlive a suspension, so
a resumed stage continues counting where it stopped.
"""

import logging
import threading
from collections import Counter
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_TOOL_CALL_LIMIT = 30


class ToolCallGovernor:
    """
    Per-(session, stage) tool call counter.

    Example:
        governor = ToolCallGovernor(limit=2)
        governor.admit("s1", "ticket_classifier")  # True
        governor.admit("s1", "ticket_classifier")  # True
        governor.admit("s1", "ticket_classifier")  # False
    """

    def __init__(self, limit: int = DEFAULT_TOOL_CALL_LIMIT):
        if limit < 0:
            raise ValueError("limit must be >= 0")
        self.limit = limit
        self._lock = threading.Lock()
        self._counts: Counter = Counter()

    def admit(self, session_id: str, stage_name: str, limit: Optional[int] = None) -> bool:
        """
        Count one dispatch attempt and decide whether it may proceed.

        Args:
            session_id: Owning session
            stage_name: Stage requesting the call
            limit: Stage-specific ceiling (defaults to the governor limit)

        Returns:
            False once the attempt count exceeds the ceiling
        """
        ceiling = self.limit if limit is None else limit
        key = (session_id, stage_name)
        with self._lock:
            self._counts[key] += 1
            count = self._counts[key]

        if count > ceiling:
            logger.warning(
                "Tool call limit reached for stage %s in session %s (%d > %d)",
                stage_name, session_id, count, ceiling,
            )
            return False
        return True

    def count(self, session_id: str, stage_name: str) -> int:
        with self._lock:
            return self._counts[(session_id, stage_name)]

    def release(self, session_id: str) -> None:
        """Drop the counters of a finished session."""
        with self._lock:
            for key in [key for key in self._counts if key[0] == session_id]:
                del self._counts[key]
