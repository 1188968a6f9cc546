"""
Ticket Storage

Persists analyzed feedback tickets in the relational database and indexes
their text in the similarity index, so later tickets can find them through
search_similar_tickets.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import DateTime, Engine, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from feedback_analyzer.engine.index import ScoredRecord
from feedback_analyzer.schemas import AnalysisResult, FeedbackTicket, TicketCategory
from feedback_analyzer.utils import get_session, model_to_dict

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class FeedbackTicketRecord(Base):
    """Database model for an analyzed feedback ticket."""
    __tablename__ = "feedback_tickets"

    ticket_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)

    # Ticket content
    user_request: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    problem_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    phone_model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    app_version: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    feedback_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    screenshot_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Analysis
    category: Mapped[Optional[str]] = mapped_column(String(32), index=True, nullable=True)
    root_cause_analysis: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    impact_assessment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    solution_proposal: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    final_report: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )


def resolve_category(
    ticket: FeedbackTicket,
    result: Optional[AnalysisResult] = None,
) -> Optional[TicketCategory]:
    """Category from the analysis result, falling back to the ticket's own."""
    if result is not None and result.category is not None:
        return result.category
    return ticket.category


class TicketStorageService:
    """
    Example:
        storage = TicketStorageService(engine, index)
        ticket.ticket_id = storage.generate_ticket_id()
        storage.store_ticket(ticket, result)
        hits = storage.search_similar_tickets("app crashes on login", top_k=5)
    """

    def __init__(self, engine: Engine, index):
        self.engine = engine
        self.index = index

    @staticmethod
    def generate_ticket_id() -> str:
        return "TICKET-" + uuid.uuid4().hex[:8].upper()

    @staticmethod
    def build_document_text(ticket: FeedbackTicket, result: Optional[AnalysisResult] = None) -> str:
        """Text that gets embedded. Analysis results are appended when present."""
        lines = [
            f"User request: {ticket.user_request or ''}",
            f"Problem description: {ticket.problem_description or ''}",
            f"Phone model: {ticket.phone_model or ''}",
            f"App version: {ticket.app_version or ''}",
            f"Feedback time: {ticket.feedback_time.isoformat() if ticket.feedback_time else ''}",
        ]
        if result is not None:
            if result.category is not None:
                lines.append(f"Category: {result.category.value}")
            if result.root_cause_analysis:
                lines.append(f"Root cause analysis: {result.root_cause_analysis}")
            if result.solution_proposal:
                lines.append(f"Solution: {result.solution_proposal}")
        return "\n".join(lines)

    @staticmethod
    def build_metadata(
        ticket: FeedbackTicket,
        result: Optional[AnalysisResult] = None,
    ) -> Dict[str, Any]:
        """Index metadata. Keys with no value are left out."""
        category = resolve_category(ticket, result)
        candidates = {
            "ticketId": ticket.ticket_id,
            "userId": ticket.user_id,
            "userRequest": ticket.user_request,
            "problemDescription": ticket.problem_description,
            "feedbackTime": ticket.feedback_time.isoformat() if ticket.feedback_time else None,
            "phoneModel": ticket.phone_model,
            "appVersion": ticket.app_version,
            "category": category.value if category is not None else None,
        }
        if result is not None:
            candidates["rootCauseAnalysis"] = result.root_cause_analysis
            candidates["solutionProposal"] = result.solution_proposal
        return {key: value for key, value in candidates.items() if value is not None}

    def store_ticket(
        self,
        ticket: FeedbackTicket,
        result: Optional[AnalysisResult] = None,
    ) -> str:
        """
        Upsert the ticket row and (re)index its text.

        Returns:
            The ticket id (generated when the ticket has none)
        """
        ticket_id = ticket.ticket_id or self.generate_ticket_id()
        ticket = ticket.model_copy(update={"ticket_id": ticket_id})
        category = resolve_category(ticket, result)

        with get_session(self.engine) as session:
            session.merge(FeedbackTicketRecord(
                ticket_id=ticket_id,
                user_id=ticket.user_id,
                user_request=ticket.user_request,
                problem_description=ticket.problem_description,
                phone_model=ticket.phone_model,
                app_version=ticket.app_version,
                feedback_time=ticket.feedback_time,
                screenshot_count=len(ticket.screenshots),
                category=category.value if category is not None else None,
                root_cause_analysis=result.root_cause_analysis if result is not None else None,
                impact_assessment=result.impact_assessment if result is not None else None,
                solution_proposal=result.solution_proposal if result is not None else None,
                final_report=result.final_report if result is not None else None,
                session_id=result.session_id if result is not None else None,
            ))

        # Re-storing a ticket replaces its indexed document
        self.index.delete(ticket_id)
        self.index.ingest(
            self.build_document_text(ticket, result),
            metadata=self.build_metadata(ticket, result),
            record_id=ticket_id,
        )
        logger.info("Stored ticket %s", ticket_id)
        return ticket_id

    def search_similar_tickets(self, query: str, top_k: int = 5) -> List[ScoredRecord]:
        return self.index.query(query, top_k=top_k)

    def get_ticket(self, ticket_id: str) -> Optional[Dict[str, Any]]:
        with get_session(self.engine) as session:
            record = session.get(FeedbackTicketRecord, ticket_id)
            if record is None:
                return None
            return model_to_dict(record)
