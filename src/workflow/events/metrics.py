"""Prometheus metrics for workflow observability.

Metrics Defined:
- workflow_tasks_processed_total: Tasks that reached a terminal state, by result
- workflow_escalations_total: Escalations, by the state escalated from
- workflow_stage_attempts_total: Capability calls, by stage and outcome
- workflow_stage_retries_total: Scheduled retries, by stage and failure class
- workflow_timeouts_total: Stage timeouts, by stage
- workflow_errors_total: Faults and fatal errors, by stage
- workflow_processing_duration_seconds: Admission-to-terminal time, by result
- workflow_tasks_by_state: Current number of tasks per state
- workflow_circuit_state: Circuit state per capability (0 closed, 1 half-open, 2 open)

The MetricsEventEmitter updates these from workflow events, and
generate_metrics_output() renders them for the /metrics endpoint.
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from src.workflow.events.emitter import EventEmitter
from src.workflow.events.models import EventType, WorkflowEvent
from src.workflow.state.models import TaskState


logger = logging.getLogger(__name__)


# Covers range from 1 second to 2 hours
DEFAULT_DURATION_BUCKETS = (
    1.0,
    5.0,
    15.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    1800.0,
    3600.0,
    7200.0,
)

TASK_STATES = tuple(state.value for state in TaskState)

CIRCUIT_STATE_VALUES = {
    "closed": 0,
    "half_open": 1,
    "open": 2,
}


class WorkflowMetrics:
    """Container for all workflow Prometheus metrics.

    Pass a custom CollectorRegistry in tests to avoid duplicate
    registration in the default registry.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.tasks_processed_total = Counter(
            "workflow_tasks_processed_total",
            "Total number of tasks that reached a terminal state",
            labelnames=["result"],
            registry=self.registry,
        )

        self.escalations_total = Counter(
            "workflow_escalations_total",
            "Total number of tasks escalated to a human",
            labelnames=["from_state"],
            registry=self.registry,
        )

        self.stage_attempts_total = Counter(
            "workflow_stage_attempts_total",
            "Total number of capability calls per stage",
            labelnames=["stage", "outcome"],
            registry=self.registry,
        )

        self.stage_retries_total = Counter(
            "workflow_stage_retries_total",
            "Total number of scheduled stage retries",
            labelnames=["stage", "failure_class"],
            registry=self.registry,
        )

        self.timeouts_total = Counter(
            "workflow_timeouts_total",
            "Total number of stage timeouts",
            labelnames=["stage"],
            registry=self.registry,
        )

        self.errors_total = Counter(
            "workflow_errors_total",
            "Total number of faults and fatal errors",
            labelnames=["stage"],
            registry=self.registry,
        )

        self.processing_duration_seconds = Histogram(
            "workflow_processing_duration_seconds",
            "Time from admission to terminal state in seconds",
            labelnames=["result"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.tasks_by_state = Gauge(
            "workflow_tasks_by_state",
            "Current number of tasks in each state",
            labelnames=["state"],
            registry=self.registry,
        )

        self.circuit_state = Gauge(
            "workflow_circuit_state",
            "Circuit breaker state per capability (0 closed, 1 half-open, 2 open)",
            labelnames=["capability"],
            registry=self.registry,
        )

        for state in TASK_STATES:
            self.tasks_by_state.labels(state=state).set(0)

    def update_state_count(self, state: str, delta: int) -> None:
        if state in TASK_STATES:
            gauge = self.tasks_by_state.labels(state=state)
            current = gauge._value.get()
            gauge.set(max(0, current + delta))

    def set_circuit_state(self, capability: str, state: str) -> None:
        value = CIRCUIT_STATE_VALUES.get(state)
        if value is not None:
            self.circuit_state.labels(capability=capability).set(value)


_default_metrics: Optional[WorkflowMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> WorkflowMetrics:
    """Get the global metrics instance, or a new one for a custom registry."""
    global _default_metrics

    if registry is not None:
        return WorkflowMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = WorkflowMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Render metrics in Prometheus text format."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics."""

    def __init__(
        self,
        metrics: Optional[WorkflowMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        if metrics is not None:
            self._metrics = metrics
        else:
            self._metrics = get_metrics(registry)

    @property
    def metrics(self) -> WorkflowMetrics:
        return self._metrics

    async def emit(self, event: WorkflowEvent) -> None:
        try:
            handler = {
                EventType.STATE_TRANSITION: self._handle_state_transition,
                EventType.STAGE_RETRY: self._handle_retry,
                EventType.TIMEOUT: self._handle_timeout,
                EventType.CIRCUIT_STATE: self._handle_circuit_state,
                EventType.ESCALATION: self._handle_escalation,
                EventType.ERROR: self._handle_error,
                EventType.COMPLETION: self._handle_completion,
            }.get(event.event_type)
            if handler is not None:
                handler(event)
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "task_id": event.task_id,
                },
            )

    def _handle_state_transition(self, event: WorkflowEvent) -> None:
        from_state = event.details.get("from_state")
        to_state = event.details.get("to_state")
        outcome = event.details.get("outcome")

        if outcome and from_state:
            self._metrics.stage_attempts_total.labels(
                stage=from_state,
                outcome=outcome,
            ).inc()

        if from_state == to_state:
            return
        if from_state:
            self._metrics.update_state_count(from_state, -1)
        if to_state:
            self._metrics.update_state_count(to_state, +1)

    def _handle_retry(self, event: WorkflowEvent) -> None:
        self._metrics.stage_retries_total.labels(
            stage=event.details.get("stage", "unknown"),
            failure_class=event.details.get("failure_class", "error"),
        ).inc()

    def _handle_timeout(self, event: WorkflowEvent) -> None:
        self._metrics.timeouts_total.labels(
            stage=event.details.get("stage", "unknown"),
        ).inc()

    def _handle_circuit_state(self, event: WorkflowEvent) -> None:
        capability = event.details.get("capability")
        to_state = event.details.get("to_state")
        if capability and to_state:
            self._metrics.set_circuit_state(capability, to_state)

    def _handle_escalation(self, event: WorkflowEvent) -> None:
        self._metrics.escalations_total.labels(
            from_state=event.details.get("from_state", "unknown"),
        ).inc()

    def _handle_error(self, event: WorkflowEvent) -> None:
        self._metrics.errors_total.labels(
            stage=event.details.get("stage", "unknown"),
        ).inc()

    def _handle_completion(self, event: WorkflowEvent) -> None:
        result = event.details.get("final_state", "unknown")
        self._metrics.tasks_processed_total.labels(result=result).inc()

        duration = event.details.get("duration_seconds")
        if duration is not None:
            self._metrics.processing_duration_seconds.labels(
                result=result,
            ).observe(float(duration))
