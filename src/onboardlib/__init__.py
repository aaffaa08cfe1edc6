"""Onboarding ingestion pipeline and feedback-driven training data export."""

__version__ = "0.1.0"

from onboardlib.models import DiscoveredEntity, DiscoveredRelationship, PipelineConfig, ProcessingState

__all__ = [
    "DiscoveredEntity",
    "DiscoveredRelationship",
    "PipelineConfig",
    "ProcessingState",
    "__version__",
]
