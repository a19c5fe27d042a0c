"""Unit tests for workflow event emitters and Prometheus metrics."""

import asyncio
import logging

import pytest
from prometheus_client import CollectorRegistry

from src.workflow.events import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    EventType,
    LoggingEventEmitter,
    MetricsEventEmitter,
    NullEventEmitter,
    StreamEventEmitter,
    WorkflowEvent,
    create_event_emitter,
    find_stream_emitter,
    generate_metrics_output,
    get_metrics,
)


def run_async(coro):
    return asyncio.run(coro)


def _event(event_type: EventType, **details) -> WorkflowEvent:
    return WorkflowEvent(
        event_type=event_type,
        task_id="task-1",
        source_ref="acme/widgets#1",
        details=details,
    )


class FailingEmitter(EventEmitter):
    async def emit(self, event: WorkflowEvent) -> None:
        raise RuntimeError("sink down")

    async def close(self) -> None:
        raise RuntimeError("close failed")


class CollectingEmitter(EventEmitter):
    def __init__(self):
        self.events = []
        self.closed = False

    async def emit(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    async def close(self) -> None:
        self.closed = True


class TestWorkflowEvent:
    def test_log_dict_flattens_details(self):
        event = _event(EventType.STATE_TRANSITION, from_state="analyzing", to_state="resolving")

        flat = event.to_log_dict()

        assert flat["event_type"] == "state_transition"
        assert flat["task_id"] == "task-1"
        assert flat["from_state"] == "analyzing"
        assert flat["timestamp"].endswith("+00:00")


class TestMetricsEventEmitter:
    @pytest.fixture
    def registry(self):
        return CollectorRegistry()

    @pytest.fixture
    def emitter(self, registry):
        return MetricsEventEmitter(registry=registry)

    def test_transition_counts_attempt_and_moves_state_gauge(self, emitter, registry):
        run_async(emitter.emit(_event(
            EventType.STATE_TRANSITION,
            from_state="created", to_state="queued",
        )))
        run_async(emitter.emit(_event(
            EventType.STATE_TRANSITION,
            from_state="queued", to_state="analyzing",
        )))
        run_async(emitter.emit(_event(
            EventType.STATE_TRANSITION,
            from_state="analyzing", to_state="resolving", outcome="success",
        )))

        assert registry.get_sample_value(
            "workflow_stage_attempts_total", {"stage": "analyzing", "outcome": "success"}
        ) == 1.0
        assert registry.get_sample_value("workflow_tasks_by_state", {"state": "queued"}) == 0.0
        assert registry.get_sample_value("workflow_tasks_by_state", {"state": "analyzing"}) == 0.0
        assert registry.get_sample_value("workflow_tasks_by_state", {"state": "resolving"}) == 1.0

    def test_self_loop_counts_attempt_only(self, emitter, registry):
        run_async(emitter.emit(_event(
            EventType.STATE_TRANSITION,
            from_state="resolving", to_state="resolving", outcome="transient_failure",
        )))

        assert registry.get_sample_value(
            "workflow_stage_attempts_total", {"stage": "resolving", "outcome": "transient_failure"}
        ) == 1.0
        assert registry.get_sample_value("workflow_tasks_by_state", {"state": "resolving"}) == 0.0

    def test_completion_records_result_and_duration(self, emitter, registry):
        run_async(emitter.emit(_event(
            EventType.COMPLETION, final_state="completed", duration_seconds=42.0,
        )))

        assert registry.get_sample_value(
            "workflow_tasks_processed_total", {"result": "completed"}
        ) == 1.0
        assert registry.get_sample_value(
            "workflow_processing_duration_seconds_count", {"result": "completed"}
        ) == 1.0
        assert registry.get_sample_value(
            "workflow_processing_duration_seconds_sum", {"result": "completed"}
        ) == 42.0

    @pytest.mark.parametrize(
        "event_type,details,metric,labels",
        [
            (
                EventType.STAGE_RETRY,
                {"stage": "resolving", "failure_class": "timeout"},
                "workflow_stage_retries_total",
                {"stage": "resolving", "failure_class": "timeout"},
            ),
            (
                EventType.TIMEOUT,
                {"stage": "reviewing"},
                "workflow_timeouts_total",
                {"stage": "reviewing"},
            ),
            (
                EventType.ESCALATION,
                {"from_state": "analyzing"},
                "workflow_escalations_total",
                {"from_state": "analyzing"},
            ),
            (
                EventType.ERROR,
                {"stage": "integrating"},
                "workflow_errors_total",
                {"stage": "integrating"},
            ),
        ],
    )
    def test_counters(self, emitter, registry, event_type, details, metric, labels):
        run_async(emitter.emit(_event(event_type, **details)))

        assert registry.get_sample_value(metric, labels) == 1.0

    def test_circuit_state_gauge(self, emitter, registry):
        run_async(emitter.emit(_event(
            EventType.CIRCUIT_STATE, capability="resolver", from_state="closed", to_state="open",
        )))

        assert registry.get_sample_value(
            "workflow_circuit_state", {"capability": "resolver"}
        ) == 2.0

    def test_bad_details_do_not_raise(self, emitter, registry):
        run_async(emitter.emit(_event(
            EventType.COMPLETION, final_state="completed", duration_seconds="not-a-number",
        )))

    def test_metrics_output_is_prometheus_text(self, emitter, registry):
        run_async(emitter.emit(_event(EventType.COMPLETION, final_state="escalated")))

        output = generate_metrics_output(registry)

        assert b'workflow_tasks_processed_total{result="escalated"} 1.0' in output

    def test_custom_registry_gets_fresh_metrics(self):
        first = get_metrics(CollectorRegistry())
        second = get_metrics(CollectorRegistry())

        assert first is not second


class TestLoggingEventEmitter:
    @pytest.mark.parametrize(
        "event_type,level",
        [
            (EventType.STATE_TRANSITION, logging.INFO),
            (EventType.STAGE_RETRY, logging.WARNING),
            (EventType.ESCALATION, logging.WARNING),
            (EventType.ERROR, logging.ERROR),
        ],
    )
    def test_level_by_event_type(self, caplog, event_type, level):
        emitter = LoggingEventEmitter(logger_name="tests.workflow.events")
        caplog.set_level(logging.DEBUG, logger="tests.workflow.events")

        run_async(emitter.emit(_event(event_type, reason="because")))

        record = caplog.records[-1]
        assert record.levelno == level
        assert record.task_id == "task-1"
        assert record.reason == "because"


class TestStreamEventEmitter:
    def test_subscribers_receive_events_and_end_marker(self):
        async def scenario():
            stream = StreamEventEmitter()
            queue = stream.subscribe()
            await stream.emit(_event(EventType.COMPLETION))
            await stream.close()
            return [await queue.get(), await queue.get()], stream.subscriber_count

        (event, marker), remaining = run_async(scenario())

        assert event.event_type == EventType.COMPLETION
        assert marker is None
        assert remaining == 0

    def test_full_subscriber_drops_events(self):
        async def scenario():
            stream = StreamEventEmitter(queue_size=1)
            queue = stream.subscribe()
            await stream.emit(_event(EventType.STATE_TRANSITION))
            await stream.emit(_event(EventType.COMPLETION))
            return queue.qsize(), (await queue.get()).event_type

        size, first = run_async(scenario())

        assert size == 1
        assert first == EventType.STATE_TRANSITION

    def test_unsubscribe(self):
        async def scenario():
            stream = StreamEventEmitter()
            queue = stream.subscribe()
            return stream.unsubscribe(queue), stream.unsubscribe(queue)

        assert run_async(scenario()) == (True, False)


class TestCompositeEventEmitter:
    def test_failing_child_does_not_block_others(self):
        collector = CollectingEmitter()
        composite = CompositeEventEmitter([FailingEmitter(), collector])

        run_async(composite.emit(_event(EventType.COMPLETION)))
        run_async(composite.close())

        assert len(collector.events) == 1
        assert collector.closed

    def test_add_emitter(self):
        composite = CompositeEventEmitter()
        composite.add_emitter(NullEventEmitter())

        assert len(composite.emitters) == 1


class TestCreateEventEmitter:
    def test_defaults_to_logging(self):
        assert isinstance(create_event_emitter(), LoggingEventEmitter)

    def test_single_sink_is_returned_directly(self):
        assert isinstance(create_event_emitter([EventSinkType.STREAM]), StreamEventEmitter)

    def test_multiple_sinks_are_composed(self):
        emitter = create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS])

        assert isinstance(emitter, CompositeEventEmitter)
        assert [type(e) for e in emitter.emitters] == [LoggingEventEmitter, MetricsEventEmitter]

    def test_stream_sink_is_found_inside_composite(self):
        emitter = create_event_emitter([EventSinkType.LOGGING, EventSinkType.STREAM])
        stream = emitter.emitters[1]

        assert find_stream_emitter(emitter) is stream
        assert find_stream_emitter(stream) is stream
        assert find_stream_emitter(create_event_emitter([EventSinkType.LOGGING])) is None
        assert find_stream_emitter(None) is None
