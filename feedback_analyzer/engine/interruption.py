"""
Interruption / Resume Records

A gated tool call suspends the session and leaves a ToolInvocationRecord
behind. The record is satisfied by a ToolFeedback carrying the reviewer's
decision:

    PENDING ──approve──▶ APPROVED   (tool runs, or the supplied result is used)
       │
       └──reject────▶ REJECTED     (model is told the call was refused)
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Disposition(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class ToolInvocationRecord:
    invocation_id: str
    session_id: str
    stage_name: str
    tool_name: str
    arguments: str              # JSON-serialized tool arguments
    disposition: Disposition = Disposition.PENDING
    description: str = ""       # Justification shown to the reviewer
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.invocation_id,
            "sessionId": self.session_id,
            "stage": self.stage_name,
            "toolName": self.tool_name,
            "arguments": self.arguments,
            "disposition": self.disposition.value,
            "description": self.description,
        }


@dataclass(frozen=True)
class ToolFeedback:
    """
    Reviewer decision for one pending invocation.

    Args:
        invocation_id: Id of the pending ToolInvocationRecord
        disposition: APPROVED or REJECTED
        tool_name: If given, must match the pending record
        result: Replacement tool output (approved calls skip execution)
        description: Reviewer note, passed to the model on rejection
    """
    invocation_id: str
    disposition: Disposition
    tool_name: Optional[str] = None
    result: Optional[str] = None
    description: str = ""
