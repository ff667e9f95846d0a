"""
Activity summarizer registry.
"""

from .base import (
    SummarizerEngine,
    SummaryRequest,
    SummaryResult,
    available_summarizers,
    load_summarizer,
    register_summarizer,
)
from .hill_lmfit import HillLmfitSummarizer

__all__ = [
    "SummarizerEngine",
    "SummaryRequest",
    "SummaryResult",
    "available_summarizers",
    "load_summarizer",
    "register_summarizer",
    "HillLmfitSummarizer",
]
