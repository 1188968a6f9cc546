"""
Ticket Analysis Workflow

Service layer between the HTTP API and the analysis pipeline.
"""

from .service import (
    TicketAnalysisService,
    build_analysis_input,
    create_analysis_service,
    create_db_engine,
    create_similarity_index,
    extract_analysis_result,
    extract_category,
)

__all__ = [
    "TicketAnalysisService",
    "build_analysis_input",
    "create_analysis_service",
    "create_db_engine",
    "create_similarity_index",
    "extract_analysis_result",
    "extract_category",
]
