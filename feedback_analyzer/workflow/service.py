"""
Ticket Analysis Service

Entry points used by the HTTP layer. Wraps the pipeline runner with the
ticket-level concerns around it: classification cache, ticket ids, result
extraction and background persistence.

Every analysis path returns a well-formed AnalysisResult (or event stream);
failures are reported through `success=False`, never raised. Only approve()
raises, so the transport can map protocol errors to status codes.
"""

import json
import logging
import os
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url

from feedback_analyzer import config
from feedback_analyzer.agents import AnalysisSlots, TicketAnalysisAgentSystem, get_chat_model, get_embeddings
from feedback_analyzer.agents.prompts import get_analysis_input
from feedback_analyzer.cache import ClassificationCache
from feedback_analyzer.engine import (
    ChatModelCapability,
    Disposition,
    EventType,
    InvalidFeedbackError,
    PipelineRunner,
    Session,
    SessionStatus,
    SessionStore,
    SimilarityIndex,
    ToolFeedback,
)
from feedback_analyzer.schemas import (
    AnalysisResult,
    FeedbackTicket,
    PendingApproval,
    SimilarTicket,
    TicketCategory,
    ToolApprovalRequest,
)
from feedback_analyzer.storage import TicketStorageService
from feedback_analyzer.utils import init_db

logger = logging.getLogger(__name__)

# SSE event names
ANALYSIS_UPDATE = "analysis_update"
ANALYSIS_RESULT = "analysis_result"
ANALYSIS_ERROR = "error"


# ============================================================================
# INPUT / OUTPUT HELPERS
# ============================================================================

def build_analysis_input(ticket: FeedbackTicket) -> str:
    return get_analysis_input(
        user_id=ticket.user_id,
        user_request=ticket.user_request,
        problem_description=ticket.problem_description,
        phone_model=ticket.phone_model,
        app_version=ticket.app_version,
        feedback_time=ticket.feedback_time.isoformat() if ticket.feedback_time else None,
        screenshot_count=len(ticket.screenshots),
    )


# Checked in order, first match wins
CATEGORY_KEYWORDS = [
    (TicketCategory.BUG_REPORT, ("bug", "crash", "crashes", "error", "exception")),
    (TicketCategory.FEATURE_REQUEST, ("feature", "suggestion", "suggest")),
    (TicketCategory.PERFORMANCE_ISSUE, ("performance", "slow", "lag", "freeze")),
    (TicketCategory.UI_UX_ISSUE, ("ui", "ux", "interface", "layout")),
    (TicketCategory.ACCOUNT_ISSUE, ("account", "password", "verification")),
]


def _parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    start_idx = text.find("{")
    end_idx = text.rfind("}") + 1
    if start_idx == -1 or end_idx <= start_idx:
        return None
    try:
        parsed = json.loads(text[start_idx:end_idx])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_category(text: Optional[str]) -> TicketCategory:
    """
    Category from the classifier output.

    Tries the JSON `category` field first, then an explicit category name
    anywhere in the text, then keyword matching. Defaults to OTHER.

    Example:
        extract_category('{"category": "BUG_REPORT"}')    # BUG_REPORT
        extract_category("Looks like a crash on startup")  # BUG_REPORT
    """
    if not text:
        return TicketCategory.OTHER

    parsed = _parse_json_object(text)
    if parsed is not None:
        value = str(parsed.get("category", "")).strip().upper()
        if value in TicketCategory.__members__:
            return TicketCategory[value]

    for category in TicketCategory:
        if category is not TicketCategory.OTHER and category.value in text:
            return category

    lowered = text.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(re.search(rf"\b{re.escape(word)}\b", lowered) for word in keywords):
            return category

    return TicketCategory.OTHER


def _slot_text(state: Dict[str, Any], key: str) -> Optional[str]:
    value = state.get(key)
    if value is None:
        return None
    return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)


def extract_analysis_result(session: Session, ticket_id: Optional[str] = None) -> AnalysisResult:
    """Build the API result from a session in any status."""
    state = session.state
    classification = _slot_text(state, AnalysisSlots.CLASSIFICATION_RESULT)

    fields: Dict[str, Any] = {
        "ticket_id": ticket_id,
        "session_id": session.session_id,
        "status": session.status.value,
        "category": extract_category(classification) if classification is not None else None,
        "root_cause_analysis": _slot_text(state, AnalysisSlots.ROOT_CAUSE_ANALYSIS),
        "impact_assessment": _slot_text(state, AnalysisSlots.IMPACT_ASSESSMENT),
        "solution_proposal": _slot_text(state, AnalysisSlots.SOLUTION_PROPOSAL),
        "final_report": _slot_text(state, AnalysisSlots.FINAL_REPORT),
        "similar_tickets": [
            SimilarTicket(**item)
            for item in state.get(AnalysisSlots.SIMILAR_TICKETS) or []
            if isinstance(item, dict)
        ],
        "pending_approvals": [
            PendingApproval(
                id=record.invocation_id,
                tool_name=record.tool_name,
                stage=record.stage_name,
                arguments=record.arguments,
                description=record.description,
            )
            for record in session.pending
        ],
        "truncated_stages": list(session.truncated_stages),
        "warnings": list(session.warnings),
    }

    if session.status is SessionStatus.COMPLETED:
        if fields["category"] is None:
            fields["category"] = TicketCategory.OTHER
        return AnalysisResult(success=True, **fields)

    if session.status is SessionStatus.AWAITING_APPROVAL:
        message = f"Awaiting approval of {len(session.pending)} tool call(s)"
    elif session.status is SessionStatus.FAILED:
        message = f"Analysis failed: {session.error}"
    else:
        message = "Analysis in progress"
    return AnalysisResult(success=False, error_message=message, **fields)


def parse_disposition(value: Optional[str], session_id: str) -> Disposition:
    """Reviewer decision from the request (APPROVED when omitted)."""
    if value is None:
        return Disposition.APPROVED
    normalized = value.strip().upper()
    if normalized not in (Disposition.APPROVED.value, Disposition.REJECTED.value):
        raise InvalidFeedbackError(session_id, f"Unknown approval result: {value}")
    return Disposition(normalized)


# ============================================================================
# SERVICE
# ============================================================================

class TicketAnalysisService:
    """
    Example:
        service = create_analysis_service()
        result = service.analyze(FeedbackTicket(user_request="app crashes on login", phone_model="Pixel 7"))
        print(result.category, result.final_report)
    """

    def __init__(
        self,
        runner: PipelineRunner,
        storage: Optional[TicketStorageService] = None,
        cache: Optional[ClassificationCache] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        batch_workers: int = config.BATCH_WORKERS,
    ):
        self.runner = runner
        self.storage = storage
        self.cache = cache
        self.batch_workers = batch_workers
        self.executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="ticket-storage")

        self._lock = threading.Lock()
        # Tickets of sessions awaiting approval, persisted once they finish
        self._tickets: Dict[str, FeedbackTicket] = {}
        self._background: List[Future] = []

    # ========== ANALYSIS ==========

    def _prepare(self, ticket: FeedbackTicket) -> FeedbackTicket:
        if ticket.ticket_id:
            return ticket
        ticket_id = (
            self.storage.generate_ticket_id()
            if self.storage is not None
            else TicketStorageService.generate_ticket_id()
        )
        return ticket.model_copy(update={"ticket_id": ticket_id})

    def analyze(self, ticket: FeedbackTicket) -> AnalysisResult:
        """Synchronous analysis. A cached category short-circuits the pipeline."""
        if self.cache is not None:
            cached = self.cache.get_cached_classification(ticket.content_key())
            if cached is not None:
                logger.info("Classification cache hit for ticket %s", ticket.ticket_id)
                return AnalysisResult(
                    success=True,
                    from_cache=True,
                    ticket_id=ticket.ticket_id,
                    category=cached,
                )

        ticket = self._prepare(ticket)
        try:
            session = self.runner.invoke(build_analysis_input(ticket))
        except Exception as e:
            logger.exception("Analysis of ticket %s failed", ticket.ticket_id)
            return AnalysisResult(
                success=False,
                ticket_id=ticket.ticket_id,
                error_message=f"Analysis failed: {e}",
            )

        return self._finish(ticket, session)

    def analyze_batch(self, tickets: List[FeedbackTicket]) -> List[AnalysisResult]:
        """Analyze tickets in parallel. Results keep the input order."""
        if not tickets:
            return []
        workers = min(self.batch_workers, len(tickets))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ticket-batch") as executor:
            return list(executor.map(self.analyze, tickets))

    def analyze_stream(self, ticket: FeedbackTicket) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """
        Streaming analysis.

        Yields (event_name, payload) pairs: one analysis_update per pipeline
        event, then analysis_result, or error if the session could not run.
        """
        ticket = self._prepare(ticket)
        session_id = None
        try:
            events = self.runner.stream(build_analysis_input(ticket))
            for event in events:
                session_id = event.session_id
                if event.type is EventType.ERROR:
                    yield ANALYSIS_ERROR, {"error": event.content, "sessionId": event.session_id}
                    return

                yield ANALYSIS_UPDATE, {
                    "node": event.node,
                    "agent": event.node,
                    "type": event.type.value,
                    "sequence": event.sequence,
                    "sessionId": event.session_id,
                    "ticketId": ticket.ticket_id,
                    "content": event.content,
                    "data": event.data,
                }

            session = self.runner.get_session(session_id) if session_id else None
            if session is None:
                yield ANALYSIS_ERROR, {"error": "Analysis produced no session", "sessionId": session_id}
                return

            result = self._finish(ticket, session)
            yield ANALYSIS_RESULT, result.model_dump(by_alias=True, mode="json")
        except Exception as e:
            logger.exception("Streaming analysis of ticket %s failed", ticket.ticket_id)
            yield ANALYSIS_ERROR, {"error": str(e), "sessionId": session_id}

    # ========== APPROVAL ==========

    def approve(self, session_id: str, request: ToolApprovalRequest) -> AnalysisResult:
        """
        Resume a session suspended on a gated tool call.

        Raises:
            InvalidFeedbackError: Missing id/toolName or unknown result value
            ProtocolError: Any other suspend/resume protocol violation
        """
        if not session_id or not session_id.strip():
            raise InvalidFeedbackError(session_id or "", "Session id is required")
        if not request.id or not request.tool_name:
            raise InvalidFeedbackError(session_id, "Both id and toolName are required")

        feedback = ToolFeedback(
            invocation_id=request.id,
            disposition=parse_disposition(request.result, session_id),
            tool_name=request.tool_name,
            result=request.result_text,
            description=request.description or "",
        )
        session = self.runner.resume(session_id, feedback)

        with self._lock:
            ticket = self._tickets.get(session_id)
        return self._finish(ticket, session)

    def get_result(self, session_id: str) -> Optional[AnalysisResult]:
        session = self.runner.get_session(session_id)
        if session is None:
            return None
        with self._lock:
            ticket = self._tickets.get(session_id)
        return extract_analysis_result(session, ticket.ticket_id if ticket else None)

    # ========== COMPLETION ==========

    def _finish(self, ticket: Optional[FeedbackTicket], session: Session) -> AnalysisResult:
        result = extract_analysis_result(session, ticket.ticket_id if ticket else None)

        if session.status is SessionStatus.AWAITING_APPROVAL:
            if ticket is not None:
                with self._lock:
                    self._tickets[session.session_id] = ticket
            return result

        with self._lock:
            self._tickets.pop(session.session_id, None)

        if session.status is SessionStatus.COMPLETED and ticket is not None:
            if self.cache is not None and result.category is not None:
                self.cache.cache_classification(ticket.content_key(), result.category)
            if self.storage is not None:
                future = self.executor.submit(self._store, ticket, result)
                with self._lock:
                    self._background = [f for f in self._background if not f.done()]
                    self._background.append(future)

        return result

    def _store(self, ticket: FeedbackTicket, result: AnalysisResult) -> None:
        # Storage failures are logged, the analysis result still stands
        try:
            self.storage.store_ticket(ticket, result)
        except Exception:
            logger.exception("Failed to store ticket %s", ticket.ticket_id)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for background persistence to finish."""
        with self._lock:
            pending = list(self._background)
        wait(pending, timeout=timeout)

    def close(self) -> None:
        self.executor.shutdown(wait=True)


# ============================================================================
# FACTORY
# ============================================================================

def create_similarity_index(embeddings, backend: Optional[str] = None):
    """
    Similarity index for the configured backend ("memory" or "chroma").
    """
    backend = backend or config.VECTOR_STORE
    if backend == "memory":
        return SimilarityIndex(embeddings)
    if backend == "chroma":
        from feedback_analyzer.engine.chroma_index import ChromaSimilarityIndex, get_chroma_client

        return ChromaSimilarityIndex(
            embeddings,
            config.CHROMA_COLLECTION,
            client=get_chroma_client(config.CHROMA_PATH),
        )
    raise ValueError(f"Unknown vector store backend: {backend}")


def create_db_engine(db_url: Optional[str] = None):
    db_url = db_url or config.DB_URL
    url = make_url(db_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(url.database)), exist_ok=True)

    engine = create_engine(db_url, echo=False)
    init_db(engine)
    return engine


def create_analysis_service() -> TicketAnalysisService:
    """Wire Bedrock, the similarity index, storage and cache from configuration."""
    index = create_similarity_index(get_embeddings())
    system = TicketAnalysisAgentSystem(ChatModelCapability(get_chat_model()), index)
    runner = system.create_runner(sessions=SessionStore(ttl_seconds=config.SESSION_TTL_SECONDS))

    return TicketAnalysisService(
        runner=runner,
        storage=TicketStorageService(create_db_engine(), index),
        cache=ClassificationCache(ttl_seconds=config.CACHE_TTL_SECONDS),
    )
