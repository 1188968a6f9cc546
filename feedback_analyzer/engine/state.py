"""
Session State Definition

A Session is one end-to-end pipeline execution. Its `state` mapping is the
shared state threaded through the pipeline: slot name -> value written by
the stage that owns the slot.

Lifecycle:
1. running            → created by PipelineRunner.invoke
2. awaiting_approval  → a gated tool call suspended the pipeline
3. running            → resumed with approval feedback
4. completed | failed → terminal
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .interruption import ToolInvocationRecord

# Slot holding the raw pipeline input
INPUT_SLOT = "input"

AnalysisState = Dict[str, Any]


class SessionStatus(str, Enum):
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Session:
    session_id: str
    state: AnalysisState = field(default_factory=dict)
    status: SessionStatus = SessionStatus.RUNNING

    # ========== SUSPENSION ==========
    # Continuation record of the root composer (None unless awaiting approval)
    continuation: Any = None
    pending: List[ToolInvocationRecord] = field(default_factory=list)
    approvals: List[ToolInvocationRecord] = field(default_factory=list)

    # ========== DIAGNOSTICS ==========
    error: Optional[str] = None
    truncated_stages: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    event_count: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def find_pending(self, invocation_id: str) -> Optional[ToolInvocationRecord]:
        for record in self.pending:
            if record.invocation_id == invocation_id:
                return record
        return None
