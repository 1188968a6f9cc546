"""
Ticket Analysis Prompts Package
"""

from .analysis_prompts import (
    TICKET_CATEGORIES,
    TICKET_RECEIVER_PROMPT,
    TICKET_CLASSIFIER_PROMPT,
    ROOT_CAUSE_PROMPT,
    IMPACT_ASSESSMENT_PROMPT,
    SOLUTION_PROMPT,
    RESULT_GENERATOR_PROMPT,
    get_analysis_input,
)

__all__ = [
    "TICKET_CATEGORIES",
    "TICKET_RECEIVER_PROMPT",
    "TICKET_CLASSIFIER_PROMPT",
    "ROOT_CAUSE_PROMPT",
    "IMPACT_ASSESSMENT_PROMPT",
    "SOLUTION_PROMPT",
    "RESULT_GENERATOR_PROMPT",
    "get_analysis_input",
]
