"""
Feedback Analyzer - Ticket Analysis API with Streaming
"""

import json
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Tuple

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from feedback_analyzer import __version__
from feedback_analyzer.engine import (
    InvalidFeedbackError,
    ProtocolError,
    SessionBusyError,
    SessionNotFoundError,
    SessionNotSuspendedError,
    UnknownInvocationError,
)
from feedback_analyzer.logging_config import setup_logging
from feedback_analyzer.schemas import AnalysisResult, FeedbackTicket, ToolApprovalRequest
from feedback_analyzer.workflow import TicketAnalysisService, create_analysis_service

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("Feedback Analyzer API starting")
    yield


# Initialize FastAPI
app = FastAPI(title="Feedback Analyzer", version=__version__, lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_service() -> TicketAnalysisService:
    """Process-wide analysis service, built on first use."""
    return create_analysis_service()


# ============================================================================
# HELPERS
# ============================================================================

def format_sse(event: str, payload: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False, default=str)}\n\n"


def sse_stream(events: Iterator[Tuple[str, Dict[str, Any]]]) -> Iterator[str]:
    for event, payload in events:
        yield format_sse(event, payload)


def protocol_status_code(error: ProtocolError) -> int:
    if isinstance(error, (InvalidFeedbackError, UnknownInvocationError)):
        return 400
    if isinstance(error, SessionNotFoundError):
        return 404
    if isinstance(error, (SessionBusyError, SessionNotSuspendedError)):
        return 409
    return 500


# ============================================================================
# ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Health check."""
    return {"status": "ok", "service": "Feedback Analyzer"}


@app.post("/api/tickets/analyze", response_model=AnalysisResult)
def analyze_ticket(
    ticket: FeedbackTicket,
    service: TicketAnalysisService = Depends(get_service),
):
    """
    Run the full analysis pipeline for one ticket.
    Failures are reported in the body (success=false), not as HTTP errors.
    """
    return service.analyze(ticket)


@app.post("/api/tickets/analyze/stream")
def analyze_ticket_stream(
    ticket: FeedbackTicket,
    service: TicketAnalysisService = Depends(get_service),
):
    """
    Streaming analysis over Server-Sent Events.

    Emits one `analysis_update` per pipeline event, then `analysis_result`
    (or `error`) before the stream closes.
    """
    return StreamingResponse(
        sse_stream(service.analyze_stream(ticket)),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


@app.post("/api/tickets/analyze/batch", response_model=List[AnalysisResult])
def analyze_tickets_batch(
    tickets: List[FeedbackTicket],
    service: TicketAnalysisService = Depends(get_service),
):
    """Analyze several tickets in parallel. Results keep the request order."""
    return service.analyze_batch(tickets)


@app.post("/api/tickets/approve/{session_id}", response_model=AnalysisResult)
def approve_tool_call(
    session_id: str,
    request: ToolApprovalRequest,
    service: TicketAnalysisService = Depends(get_service),
):
    """
    Approve or reject a tool call the session is waiting on, then continue
    the analysis until it completes or waits again.
    """
    try:
        return service.approve(session_id, request)
    except ProtocolError as e:
        logger.warning("Approval for session %s rejected: %s", session_id, e)
        raise HTTPException(status_code=protocol_status_code(e), detail=str(e))
    except Exception as e:
        logger.exception("Approval for session %s failed", session_id)
        raise HTTPException(status_code=500, detail=f"Approval failed: {e}")


@app.get("/api/tickets/sessions/{session_id}", response_model=AnalysisResult)
def get_session_result(
    session_id: str,
    service: TicketAnalysisService = Depends(get_service),
):
    """Current result of a session, including pending approvals."""
    result = service.get_result(session_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return result


@app.get("/api/tickets/{ticket_id}")
def get_ticket(
    ticket_id: str,
    service: TicketAnalysisService = Depends(get_service),
):
    """Stored ticket with its analysis."""
    ticket = service.storage.get_ticket(ticket_id) if service.storage is not None else None
    if ticket is None:
        raise HTTPException(status_code=404, detail=f"Ticket {ticket_id} not found")
    return ticket


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
