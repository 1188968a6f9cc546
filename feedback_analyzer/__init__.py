"""
Feedback Analyzer - multi-stage LLM analysis of mobile app feedback tickets.
"""

__version__ = "1.0.0"
