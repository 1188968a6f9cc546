"""
Ticket Analysis Agents

Stage definitions and Bedrock model factories for the analysis pipeline.
"""

from .system import AnalysisSlots, TicketAnalysisAgentSystem, APPROVAL_DESCRIPTIONS
from .models import get_chat_model, get_embeddings

__all__ = [
    "AnalysisSlots",
    "TicketAnalysisAgentSystem",
    "APPROVAL_DESCRIPTIONS",
    "get_chat_model",
    "get_embeddings",
]
