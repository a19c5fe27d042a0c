"""Event emitter implementations for workflow observability.

- LoggingEventEmitter: Emits events as structured log entries
- StreamEventEmitter: Fans events out to in-process subscriber queues;
  the service serves them to external collectors at GET /events
- CompositeEventEmitter: Emits to multiple sinks simultaneously
- NullEventEmitter: Discards events

The orchestrator never lets an emitter failure disturb a task; see
WorkflowOrchestrator._safe_emit.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from src.workflow.events.models import EventType, WorkflowEvent


logger = logging.getLogger(__name__)

DEFAULT_STREAM_QUEUE_SIZE = 1000


class EventSinkType(str, Enum):
    """Types of event sinks supported by the orchestrator.

    Attributes:
        LOGGING: Emit events as structured log entries.
        METRICS: Emit events as Prometheus metrics.
        STREAM: Publish events to in-process subscribers.
    """

    LOGGING = "logging"
    METRICS = "metrics"
    STREAM = "stream"


class EventEmitter(ABC):
    """Abstract base class for workflow event emitters.

    Implementations should be async-safe and should not block task
    processing.
    """

    @abstractmethod
    async def emit(self, event: WorkflowEvent) -> None:
        """Emit a workflow event."""
        pass

    async def close(self) -> None:
        """Close the emitter and release resources."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Event emitter that logs events using structured logging.

    Log levels by event type:
    - STATE_TRANSITION, COMPLETION, CIRCUIT_STATE: INFO
    - STAGE_RETRY, TIMEOUT, ESCALATION, CANCELLATION: WARNING
    - ERROR: ERROR
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = (
            logging.getLogger(logger_name)
            if logger_name
            else logger
        )
        self._log_level_map = {
            EventType.STATE_TRANSITION: logging.INFO,
            EventType.COMPLETION: logging.INFO,
            EventType.CIRCUIT_STATE: logging.INFO,
            EventType.STAGE_RETRY: logging.WARNING,
            EventType.TIMEOUT: logging.WARNING,
            EventType.ESCALATION: logging.WARNING,
            EventType.CANCELLATION: logging.WARNING,
            EventType.ERROR: logging.ERROR,
        }

    async def emit(self, event: WorkflowEvent) -> None:
        log_level = self._log_level_map.get(event.event_type, logging.INFO)
        self._logger.log(
            log_level,
            "Workflow event: %s for %s",
            event.event_type.value,
            event.task_id,
            extra=event.to_log_dict(),
        )


class StreamEventEmitter(EventEmitter):
    """Publishes events to every subscribed asyncio.Queue.

    A subscriber whose queue is full misses events rather than slowing
    down the orchestrator. ``close()`` sends ``None`` to every
    subscriber to signal the end of the stream.

    Example:
        >>> stream = StreamEventEmitter()
        >>> queue = stream.subscribe()
        >>> event = await queue.get()
    """

    def __init__(self, queue_size: int = DEFAULT_STREAM_QUEUE_SIZE):
        self._queue_size = queue_size
        self._subscribers: List[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> bool:
        try:
            self._subscribers.remove(queue)
            return True
        except ValueError:
            return False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def emit(self, event: WorkflowEvent) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Event stream subscriber is full, dropping event",
                    extra={
                        "event_type": event.event_type.value,
                        "task_id": event.task_id,
                    },
                )

    async def close(self) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                logger.debug("Event stream subscriber full at close")
        self._subscribers.clear()


class CompositeEventEmitter(EventEmitter):
    """Fans each event out to several sinks in order.

    A sink that raises is logged and skipped; the remaining sinks still
    receive the event.
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = list(emitters or [])

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._emitters.append(emitter)

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._emitters)

    async def emit(self, event: WorkflowEvent) -> None:
        for emitter in self._emitters:
            try:
                await emitter.emit(event)
            except Exception as exc:
                logger.error(
                    "Event sink %s failed: %s",
                    type(emitter).__name__,
                    exc,
                    extra={
                        "sink": type(emitter).__name__,
                        "event_type": event.event_type.value,
                        "task_id": event.task_id,
                    },
                )

    async def close(self) -> None:
        for emitter in self._emitters:
            try:
                await emitter.close()
            except Exception as exc:
                logger.error(
                    "Event sink %s failed to close: %s",
                    type(emitter).__name__,
                    exc,
                )


class NullEventEmitter(EventEmitter):
    """Event emitter that discards all events."""

    async def emit(self, event: WorkflowEvent) -> None:
        pass


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Create an event emitter for the requested sinks.

    Returns a LoggingEventEmitter when no sinks are requested, the single
    emitter when one is, and a CompositeEventEmitter otherwise.

    Example:
        >>> emitter = create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS])
        >>> isinstance(emitter, CompositeEventEmitter)
        True
    """
    if not sink_types:
        return LoggingEventEmitter(logger_name=logger_name)

    emitters: List[EventEmitter] = []

    for sink_type in sink_types:
        if sink_type == EventSinkType.LOGGING:
            emitters.append(LoggingEventEmitter(logger_name=logger_name))
        elif sink_type == EventSinkType.METRICS:
            # Imported here because metrics.py imports this module
            from src.workflow.events.metrics import MetricsEventEmitter
            emitters.append(MetricsEventEmitter())
        elif sink_type == EventSinkType.STREAM:
            emitters.append(StreamEventEmitter())
        else:
            logger.warning(
                "Unknown event sink type: %s, skipping",
                sink_type,
            )

    if len(emitters) == 1:
        return emitters[0]

    return CompositeEventEmitter(emitters)


def find_stream_emitter(emitter: Optional[EventEmitter]) -> Optional[StreamEventEmitter]:
    """Return the StreamEventEmitter inside ``emitter``, if one is configured."""
    if isinstance(emitter, StreamEventEmitter):
        return emitter
    if isinstance(emitter, CompositeEventEmitter):
        for child in emitter.emitters:
            if isinstance(child, StreamEventEmitter):
                return child
    return None
