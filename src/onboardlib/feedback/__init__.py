"""Human correctness judgments on extracted items."""

from onboardlib.feedback.models import ExtractedItem, FeedbackContext, FeedbackRecord, FeedbackStats
from onboardlib.feedback.store import FeedbackStore

__all__ = [
    "ExtractedItem",
    "FeedbackContext",
    "FeedbackRecord",
    "FeedbackStats",
    "FeedbackStore",
]
