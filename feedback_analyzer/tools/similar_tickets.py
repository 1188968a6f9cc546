"""
Similar Ticket Search Tool

Semantic search over previously stored feedback tickets. The index is
injected when the tool is built, so every stage that gets the tool shares
the same index.

The tool answers with formatted text for the model and, as its artifact,
the structured hit list (used to fill AnalysisResult.similarTickets).
"""

from typing import Any, Dict, List, Tuple

from langchain_core.tools import BaseTool, StructuredTool
from pydantic import BaseModel, Field

from feedback_analyzer.engine.index import ScoredRecord

TOOL_NAME = "search_similar_tickets"
SEPARATOR = "\n---\n"
NO_SIMILAR_TICKETS = "No similar tickets found."
EXCERPT_LENGTH = 200


class SimilarTicketQuery(BaseModel):
    query: str = Field(description="Problem description to match against historical tickets")


def format_similar_ticket(hit: ScoredRecord) -> str:
    """
    Format one hit for the model.

    Example output:
        Ticket ID: TICKET-1A2B3C4D
        User request: app crashes on login
        Problem description: ...
        Similarity: 93.10%
        Feedback time: 2025-01-02T10:00:00
        Device: Pixel 7
    """
    metadata = hit.record.metadata
    lines = [f"Ticket ID: {metadata.get('ticketId', hit.record.id)}"]

    user_request = str(metadata.get("userRequest", "")).strip()
    if user_request:
        lines.append(f"User request: {user_request}")

    description = str(metadata.get("problemDescription", "") or hit.record.text).strip()
    if description:
        lines.append(f"Problem description: {description}")

    lines.append(f"Similarity: {hit.score * 100:.2f}%")

    feedback_time = metadata.get("feedbackTime")
    if feedback_time:
        lines.append(f"Feedback time: {feedback_time}")

    phone_model = str(metadata.get("phoneModel", "")).strip()
    if phone_model:
        lines.append(f"Device: {phone_model}")

    return "\n".join(lines)


def similar_ticket_reference(hit: ScoredRecord) -> Dict[str, Any]:
    metadata = hit.record.metadata
    return {
        "id": hit.record.id,
        "ticket_id": metadata.get("ticketId", hit.record.id),
        "user_request": metadata.get("userRequest"),
        "problem_description": metadata.get("problemDescription"),
        "excerpt": hit.record.text[:EXCERPT_LENGTH],
        "similarity": hit.score,
    }


def create_similar_ticket_search_tool(index, top_k: int = 5) -> BaseTool:
    """
    Build the search_similar_tickets tool over a similarity index.

    Args:
        index: SimilarityIndex or ChromaSimilarityIndex
        top_k: Maximum number of tickets returned per search
    """

    def search_similar_tickets(query: str) -> Tuple[str, List[Dict[str, Any]]]:
        hits = index.query(query, top_k=top_k)
        if not hits:
            return NO_SIMILAR_TICKETS, []

        formatted = [format_similar_ticket(hit) for hit in hits]
        content = SEPARATOR.join(text for text in formatted if text.strip())
        return content, [similar_ticket_reference(hit) for hit in hits]

    return StructuredTool.from_function(
        func=search_similar_tickets,
        name=TOOL_NAME,
        description=(
            "Search the historical ticket database for tickets similar to the given "
            "problem description. Returns ticket ids, requests, descriptions and similarity."
        ),
        args_schema=SimilarTicketQuery,
        response_format="content_and_artifact",
    )
