"""FastAPI application entry point for the workflow orchestrator.

Exposes task submission, status and cancellation over HTTP, plus health,
readiness and Prometheus metrics endpoints. When the stream sink is
enabled, GET /events serves workflow events as newline-delimited JSON. All components are wired in
the lifespan handler from WorkflowSettings.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Union

from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field

from src.workflow.capabilities.interfaces import Capability, CapabilitySet
from src.workflow.capabilities.remote import (
    RemoteAnalyzer,
    RemoteCapabilityClient,
    RemoteIntegrator,
    RemoteResolver,
    RemoteReviewer,
)
from src.workflow.config import WorkflowSettings, get_settings
from src.workflow.events.emitter import (
    EventEmitter,
    EventSinkType,
    StreamEventEmitter,
    create_event_emitter,
    find_stream_emitter,
)
from src.workflow.events.metrics import generate_metrics_output
from src.workflow.orchestrator import HealthStatus, WorkflowOrchestrator
from src.workflow.recovery.circuit_breaker import CircuitBreakerRegistry
from src.workflow.scheduler import TaskScheduler
from src.workflow.state.machine import DuplicateTaskError, TaskNotFoundError, TaskStateMachine
from src.workflow.state.models import SubmissionAck, TaskStatus
from src.workflow.state.repository import InMemoryTaskRepository, PostgresTaskRepository
from src.workflow.workspace.backend import DirectoryBackend, GitWorktreeBackend
from src.workflow.workspace.manager import WorkspaceManager

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances, initialized during lifespan startup
settings: WorkflowSettings
orchestrator: Optional[WorkflowOrchestrator] = None
scheduler: Optional[TaskScheduler] = None
repository: Optional[Union[InMemoryTaskRepository, PostgresTaskRepository]] = None
capability_client: Optional[RemoteCapabilityClient] = None
event_emitter: Optional[EventEmitter] = None
event_stream: Optional[StreamEventEmitter] = None


class SubmitTaskRequest(BaseModel):
    source_ref: str = Field(..., min_length=1, description="Issue reference, e.g. org/repo#42")
    title: Optional[str] = None
    priority: int = 0
    task_id: Optional[str] = None


class CancelTaskRequest(BaseModel):
    reason: str = "cancel requested"


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters."""
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: WorkflowSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Workflow configuration:")
    logger.info(f"  Workspace Base Path: {settings.workspace_base_path}")
    logger.info(f"  Workspace Backend: {settings.workspace_backend}")
    logger.info(f"  Repository Path: {settings.repository_path}")
    logger.info(f"  Workspace Max Open: {settings.workspace_max_open}")
    logger.info(f"  Workspace Retention Days: {settings.workspace_retention_days}")
    logger.info(f"  Scheduler Max Concurrency: {settings.scheduler_max_concurrency}")
    logger.info(f"  Task Deadline Seconds: {settings.task_deadline_seconds}")
    logger.info(f"  Max Rework Cycles: {settings.max_rework_cycles}")
    logger.info(f"  Breaker Failure Threshold: {settings.breaker_failure_threshold}")
    logger.info(f"  Breaker Open Seconds: {settings.breaker_open_seconds}")
    logger.info(f"  Capability Base URL: {settings.capability_base_url}")
    logger.info(f"  Capability Token: {_redact_secret(settings.capability_token)}")
    logger.info(f"  Database URL: {_redact_secret(settings.database_url)}")
    logger.info(f"  Event Sinks: {settings.event_sinks}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


def _event_sinks(settings: WorkflowSettings) -> list:
    sinks = []
    for name in settings.event_sink_names():
        try:
            sinks.append(EventSinkType(name))
        except ValueError:
            logger.warning("Unknown event sink %s, skipping", name)
    return sinks


def _build_workspace_manager(settings: WorkflowSettings) -> WorkspaceManager:
    if settings.workspace_backend == "git":
        backend = GitWorktreeBackend(settings.repository_path)
    else:
        backend = DirectoryBackend()
    return WorkspaceManager(settings.workspace_config(), backend)


def build_orchestrator(
    settings: WorkflowSettings,
    capabilities: CapabilitySet,
    task_repository: Union[InMemoryTaskRepository, PostgresTaskRepository],
    emitter: EventEmitter,
) -> WorkflowOrchestrator:
    """Wire a WorkflowOrchestrator from settings."""
    return WorkflowOrchestrator(
        capabilities=capabilities,
        workspace_manager=_build_workspace_manager(settings),
        state_machine=TaskStateMachine(task_repository),
        breakers=CircuitBreakerRegistry(
            settings.breaker_config(),
            names=[capability.value for capability in Capability],
        ),
        retry_policies=settings.retry_policies(),
        event_emitter=emitter,
        config=settings.orchestrator_config(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Handles:
    - Configuration loading and validation
    - Logging configuration (with secrets redacted)
    - Dependency wiring for the orchestrator and scheduler
    - Graceful shutdown and cleanup
    """
    global settings, orchestrator, scheduler, repository, capability_client, event_emitter
    global event_stream

    logger.info("Workflow orchestrator starting up...")

    settings = get_settings()
    _log_configuration(settings)

    if settings.capability_base_url is None:
        raise RuntimeError("WORKFLOW_CAPABILITY_BASE_URL must be set to run the server")

    if settings.database_url:
        repository = PostgresTaskRepository(settings.database_url)
        await repository.connect()
    else:
        logger.warning("No database configured, tasks are kept in memory")
        repository = InMemoryTaskRepository()

    capability_client = RemoteCapabilityClient(
        base_url=settings.capability_base_url,
        token=settings.capability_token,
        timeout=settings.capability_request_timeout_seconds,
    )
    capabilities = CapabilitySet(
        analyzer=RemoteAnalyzer(capability_client),
        resolver=RemoteResolver(capability_client),
        reviewer=RemoteReviewer(capability_client),
        integrator=RemoteIntegrator(capability_client),
    )

    event_emitter = create_event_emitter(_event_sinks(settings))
    event_stream = find_stream_emitter(event_emitter)
    orchestrator = build_orchestrator(settings, capabilities, repository, event_emitter)
    await orchestrator.workspace_manager.cleanup_parked()

    scheduler = TaskScheduler(
        orchestrator,
        max_concurrency=settings.scheduler_max_concurrency,
        requeue_delay_seconds=settings.scheduler_requeue_delay_seconds,
    )
    await scheduler.recover_queued()
    await scheduler.start()

    logger.info("Workflow orchestrator started successfully")

    yield

    logger.info("Workflow orchestrator shutting down...")

    await scheduler.stop(cancel_running=True)
    await event_emitter.close()
    await capability_client.close()
    if isinstance(repository, PostgresTaskRepository):
        await repository.disconnect()

    logger.info("Workflow orchestrator shutdown complete")


app = FastAPI(
    title="Issue Workflow Orchestrator",
    description="Drives issues through analyze, resolve, review and integrate stages",
    version="1.0.0",
    lifespan=lifespan,
)


def _require_scheduler() -> TaskScheduler:
    if scheduler is None or orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return scheduler


@app.post("/tasks", response_model=SubmissionAck, status_code=202)
async def submit_task(request: SubmitTaskRequest):
    """Submit an issue for autonomous resolution."""
    task_scheduler = _require_scheduler()
    try:
        return await task_scheduler.submit(
            request.source_ref,
            title=request.title,
            priority=request.priority,
            task_id=request.task_id,
        )
    except DuplicateTaskError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/tasks/{task_id}", response_model=TaskStatus)
async def get_task(task_id: str):
    """Current state and history of a task."""
    _require_scheduler()
    try:
        return await orchestrator.status(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, request: Optional[CancelTaskRequest] = None):
    """Request cancellation of a task."""
    _require_scheduler()
    reason = request.reason if request is not None else "cancel requested"
    try:
        accepted = await orchestrator.cancel(task_id, reason=reason)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"task_id": task_id, "cancelled": accepted}


@app.get("/health")
async def health():
    """Health check endpoint.

    Reports orchestrator health derived from task outcomes and circuit
    state. Returns 503 when unhealthy.
    """
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    report = orchestrator.health()
    if report.status == HealthStatus.UNHEALTHY:
        raise HTTPException(status_code=503, detail=report.model_dump(mode="json"))
    return report.model_dump(mode="json")


@app.get("/ready")
async def ready():
    """Readiness check endpoint.

    Returns:
        dict: Status and dependency health information.

    Raises:
        HTTPException: 503 if the task store is unavailable.
    """
    database_status = "unknown"
    if repository is not None:
        database_status = "healthy" if await repository.health_check() else "unhealthy"

    if database_status != "healthy" or scheduler is None or not scheduler.is_running:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "dependencies": {"database": database_status}},
        )

    return {
        "status": "ready",
        "dependencies": {"database": database_status},
        "queue_length": scheduler.queue_length,
        "in_flight": scheduler.in_flight,
    }


async def _event_lines(
    stream: StreamEventEmitter, queue: asyncio.Queue
) -> AsyncIterator[str]:
    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            yield event.model_dump_json() + "\n"
    finally:
        stream.unsubscribe(queue)


@app.get("/events")
async def stream_events():
    """Stream workflow events as newline-delimited JSON.

    Each connection gets its own subscription; the stream ends when the
    service shuts down. Returns 404 unless the stream sink is enabled.
    """
    if event_stream is None:
        raise HTTPException(status_code=404, detail="Event stream sink is not enabled")
    queue = event_stream.subscribe()
    return StreamingResponse(
        _event_lines(event_stream, queue),
        media_type="application/x-ndjson",
    )


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_metrics_output().decode("utf-8"))


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.workflow.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
    )
