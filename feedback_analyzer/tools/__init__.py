"""
Ticket Analysis Tools

Tools the analysis stages may call: similar ticket search and screenshot analysis.
"""

from .similar_tickets import (
    create_similar_ticket_search_tool,
    format_similar_ticket,
    NO_SIMILAR_TICKETS,
)
from .screenshot import create_screenshot_analysis_tool

__all__ = [
    "create_similar_ticket_search_tool",
    "format_similar_ticket",
    "NO_SIMILAR_TICKETS",
    "create_screenshot_analysis_tool",
]
