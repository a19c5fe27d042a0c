"""Workflow event models for observability.

Events are emitted for every state change of a task and for notable
occurrences inside the recovery machinery (retries, timeouts, circuit
state changes). Each event carries the task id, source reference,
timestamp, and event-specific details.

Details Field Conventions:
    STATE_TRANSITION: from_state, to_state, reason, outcome, attempt
    STAGE_RETRY: stage, attempt, failure_class, delay_seconds
    TIMEOUT: stage, timeout_seconds
    CIRCUIT_STATE: capability, from_state, to_state
    ESCALATION: from_state, reason
    CANCELLATION: from_state, reason
    ERROR: stage, error_message, error_type, fatal
    COMPLETION: final_state, duration_seconds, total_attempts
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the workflow orchestrator.

    Attributes:
        STATE_TRANSITION: Task moved between states (including retries).
        STAGE_RETRY: A stage will be retried after a backoff delay.
        TIMEOUT: A capability call exceeded its stage timeout.
        CIRCUIT_STATE: A capability's circuit breaker changed state.
        ESCALATION: Task was handed to a human.
        CANCELLATION: Task was cancelled.
        ERROR: An unexpected fault or fatal operational error occurred.
        COMPLETION: Task reached a terminal state.
    """

    STATE_TRANSITION = "state_transition"
    STAGE_RETRY = "stage_retry"
    TIMEOUT = "timeout"
    CIRCUIT_STATE = "circuit_state"
    ESCALATION = "escalation"
    CANCELLATION = "cancellation"
    ERROR = "error"
    COMPLETION = "completion"


class WorkflowEvent(BaseModel):
    """Structured event emitted by the workflow orchestrator.

    Example:
        >>> event = WorkflowEvent(
        ...     event_type=EventType.STATE_TRANSITION,
        ...     task_id="3f2a9c",
        ...     source_ref="org/repo#123",
        ...     details={"from_state": "analyzing", "to_state": "resolving"},
        ... )
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    task_id: str = Field(
        ...,
        min_length=1,
        description="Task the event belongs to",
    )

    source_ref: str = Field(
        default="",
        description='Originating issue reference, e.g. "owner/repo#42"',
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event for structured logging.

        Example:
            >>> event.to_log_dict()["event_type"]
            'state_transition'
        """
        return {
            "event_type": self.event_type.value,
            "task_id": self.task_id,
            "source_ref": self.source_ref,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
