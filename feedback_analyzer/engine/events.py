"""
Pipeline Events

Progress events emitted while a session executes. Every event carries a
per-session sequence number so consumers can rely on emission order.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class EventType(str, Enum):
    SESSION_STARTED = "session_started"
    SESSION_RESUMED = "session_resumed"
    STAGE_STARTED = "stage_started"
    STAGE_ITERATION = "stage_iteration"
    TOOL_RESULT = "tool_result"
    AWAITING_APPROVAL = "awaiting_approval"
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"
    MERGE_CONFLICT = "merge_conflict"
    MERGE_COMPLETED = "merge_completed"
    SESSION_COMPLETED = "session_completed"
    SESSION_SUSPENDED = "session_suspended"
    SESSION_FAILED = "session_failed"
    ERROR = "error"


# A stream ends after any of these
TERMINAL_EVENTS = frozenset({
    EventType.SESSION_COMPLETED,
    EventType.SESSION_SUSPENDED,
    EventType.SESSION_FAILED,
    EventType.ERROR,
})


@dataclass(frozen=True)
class PipelineEvent:
    sequence: int
    session_id: str
    type: EventType
    node: str
    content: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "sessionId": self.session_id,
            "type": self.type.value,
            "node": self.node,
            "content": self.content,
            "data": self.data,
            "timestamp": self.timestamp,
        }
