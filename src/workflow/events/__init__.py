"""Workflow event emission and metrics.

Event Emitters:
- EventEmitter: Abstract base class for event emission
- LoggingEventEmitter: Emits events as structured log entries
- StreamEventEmitter: Publishes events to in-process subscribers
- find_stream_emitter: Locate the stream sink inside a configured emitter
- CompositeEventEmitter: Emits to multiple sinks simultaneously
- MetricsEventEmitter: Updates Prometheus metrics
- NullEventEmitter: Discards events

Metrics:
- WorkflowMetrics: Container for all Prometheus metrics
- get_metrics: Get or create the metrics instance
- generate_metrics_output: Prometheus text output for /metrics
"""

from src.workflow.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    StreamEventEmitter,
    create_event_emitter,
    find_stream_emitter,
)
from src.workflow.events.metrics import (
    MetricsEventEmitter,
    WorkflowMetrics,
    generate_metrics_output,
    get_metrics,
)
from src.workflow.events.models import EventType, WorkflowEvent

__all__ = [
    # Event models
    "EventType",
    "WorkflowEvent",
    # Event emitters
    "EventEmitter",
    "LoggingEventEmitter",
    "StreamEventEmitter",
    "CompositeEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    # Metrics
    "WorkflowMetrics",
    "get_metrics",
    "generate_metrics_output",
    # Factory and configuration
    "EventSinkType",
    "create_event_emitter",
    "find_stream_emitter",
]
