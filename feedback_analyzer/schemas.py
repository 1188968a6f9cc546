"""
Ticket Analysis Schemas

Request/response models for the ticket analysis API. Field names are
snake_case in Python and camelCase on the wire.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TicketCategory(str, Enum):
    BUG_REPORT = "BUG_REPORT"
    FEATURE_REQUEST = "FEATURE_REQUEST"
    PERFORMANCE_ISSUE = "PERFORMANCE_ISSUE"
    UI_UX_ISSUE = "UI_UX_ISSUE"
    ACCOUNT_ISSUE = "ACCOUNT_ISSUE"
    OTHER = "OTHER"


class FeedbackTicket(CamelModel):
    """User feedback ticket submitted from the mobile app."""
    ticket_id: Optional[str] = None
    user_id: Optional[str] = None
    user_request: Optional[str] = None
    problem_description: Optional[str] = None
    screenshots: List[str] = Field(default_factory=list)   # base64 images
    feedback_time: Optional[datetime] = None
    phone_model: Optional[str] = None
    app_version: Optional[str] = None
    category: Optional[TicketCategory] = None

    # Analysis fields (filled after analysis)
    root_cause_analysis: Optional[str] = None
    impact_assessment: Optional[str] = None
    solution_proposal: Optional[str] = None
    final_report: Optional[str] = None

    metadata: Dict[str, Any] = Field(default_factory=dict)

    def content_key(self) -> str:
        """Text used as the classification cache key."""
        return f"{self.user_request or ''}{self.problem_description or ''}"


class SimilarTicket(CamelModel):
    id: str
    ticket_id: Optional[str] = None
    user_request: Optional[str] = None
    problem_description: Optional[str] = None
    excerpt: str = ""
    similarity: float = 0.0


class PendingApproval(CamelModel):
    id: str
    tool_name: str
    stage: str
    arguments: str = ""
    description: str = ""


class AnalysisResult(CamelModel):
    success: bool
    from_cache: bool = False
    error_message: Optional[str] = None
    ticket_id: Optional[str] = None
    category: Optional[TicketCategory] = None
    root_cause_analysis: Optional[str] = None
    impact_assessment: Optional[str] = None
    solution_proposal: Optional[str] = None
    final_report: Optional[str] = None
    similar_tickets: List[SimilarTicket] = Field(default_factory=list)

    # Session bookkeeping
    session_id: Optional[str] = None
    status: Optional[str] = None
    pending_approvals: List[PendingApproval] = Field(default_factory=list)
    truncated_stages: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ToolApprovalRequest(CamelModel):
    """
    Reviewer decision for a gated tool call.

    id and tool_name are optional here so that a missing value is reported
    as a 400 by the endpoint rather than a validation error.
    """
    id: Optional[str] = None
    tool_name: Optional[str] = None
    arguments: Optional[str] = None
    result: Optional[str] = None                # APPROVED (default) or REJECTED
    description: Optional[str] = None
    result_text: Optional[str] = None           # replacement tool output

