"""Run lifecycle, aggregation, event fan-out and the day-by-day coordinator."""

from onboardlib.pipeline.broadcast import EventBroadcaster, EventSink
from onboardlib.pipeline.coordinator import PipelineCoordinator, enumerate_days
from onboardlib.pipeline.fsm import CancellationToken, LifecycleStateMachine
from onboardlib.pipeline.ledger import AggregationLedger

__all__ = [
    "AggregationLedger",
    "CancellationToken",
    "EventBroadcaster",
    "EventSink",
    "LifecycleStateMachine",
    "PipelineCoordinator",
    "enumerate_days",
]
