"""Bounded-concurrency task scheduler.

Queued tasks are admitted in priority order (higher first, FIFO within a
priority) while fewer than ``max_concurrency`` tasks are running. When
the workspace manager reports that every workspace is leased, the task
goes back to the head of its priority class and the dispatcher sleeps
until a running task finishes or the re-queue delay passes.
"""

import asyncio
import heapq
import itertools
import logging
from functools import partial
from typing import Dict, List, Optional, Set, Tuple

from src.workflow.orchestrator import WorkflowOrchestrator
from src.workflow.state.machine import TaskNotFoundError
from src.workflow.state.models import SubmissionAck, TaskState
from src.workflow.workspace.manager import ResourceExhaustedError

logger = logging.getLogger(__name__)

DEFAULT_REQUEUE_DELAY_SECONDS = 5.0


class TaskScheduler:
    """Admits queued tasks into the orchestrator under a concurrency limit.

    Example:
        async with TaskScheduler(orchestrator, max_concurrency=2) as scheduler:
            ack = await scheduler.submit("org/repo#42", title="Fix crash")
            await scheduler.drain()
    """

    def __init__(
        self,
        orchestrator: WorkflowOrchestrator,
        max_concurrency: int = 4,
        requeue_delay_seconds: float = DEFAULT_REQUEUE_DELAY_SECONDS,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if requeue_delay_seconds <= 0:
            raise ValueError("requeue_delay_seconds must be positive")

        self.orchestrator = orchestrator
        self.max_concurrency = max_concurrency
        self.requeue_delay_seconds = requeue_delay_seconds

        self._heap: List[Tuple[int, int, str]] = []
        self._queued: Set[str] = set()
        self._sequence = itertools.count()
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._dispatcher: Optional[asyncio.Task] = None
        self._running = False

    @property
    def queue_length(self) -> int:
        return len(self._heap)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def is_running(self) -> bool:
        return self._running

    async def submit(
        self,
        source_ref: str,
        title: Optional[str] = None,
        priority: int = 0,
        task_id: Optional[str] = None,
    ) -> SubmissionAck:
        """Create a task through the orchestrator and queue it."""
        ack = await self.orchestrator.submit(
            source_ref, title=title, priority=priority, task_id=task_id
        )
        self.enqueue(ack.task_id, ack.priority)
        return ack

    def enqueue(self, task_id: str, priority: int = 0) -> bool:
        """Queue an existing QUEUED task for admission.

        Returns:
            False if the task is already queued or running.
        """
        if task_id in self._queued or task_id in self._in_flight:
            return False

        heapq.heappush(self._heap, (-priority, next(self._sequence), task_id))
        self._queued.add(task_id)
        self._idle.clear()
        self._wakeup.set()

        logger.debug(
            "Task queued for admission",
            extra={"task_id": task_id, "priority": priority, "queue_length": len(self._heap)},
        )
        return True

    async def recover_queued(self) -> int:
        """Queue every persisted task still in QUEUED, e.g. after a restart.

        Returns:
            Number of tasks queued.
        """
        tasks = await self.orchestrator.state_machine.list_by_state(TaskState.QUEUED)
        tasks.sort(key=lambda task: task.created_at)
        recovered = sum(1 for task in tasks if self.enqueue(task.task_id, task.priority))
        if recovered:
            logger.info("Recovered queued tasks", extra={"count": recovered})
        return recovered

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._wakeup.set()
        self._dispatcher = asyncio.create_task(
            self._dispatch_loop(), name="workflow-scheduler"
        )
        logger.info(
            "Scheduler started",
            extra={"max_concurrency": self.max_concurrency},
        )

    async def stop(self, cancel_running: bool = False) -> None:
        """Stop admitting tasks.

        Args:
            cancel_running: Also cancel running tasks and wait for them.
        """
        self._running = False
        self._wakeup.set()
        if self._dispatcher is not None:
            await self._dispatcher
            self._dispatcher = None

        if cancel_running:
            await self.orchestrator.shutdown()

        logger.info(
            "Scheduler stopped",
            extra={"queue_length": len(self._heap), "in_flight": len(self._in_flight)},
        )

    async def drain(self) -> None:
        """Wait until the queue is empty and no task is running."""
        await self._idle.wait()

    async def __aenter__(self) -> "TaskScheduler":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop(cancel_running=exc_type is not None)

    async def _dispatch_loop(self) -> None:
        while self._running:
            self._wakeup.clear()
            blocked = await self._dispatch_ready()
            if not self._running:
                break

            if blocked:
                try:
                    await asyncio.wait_for(
                        self._wakeup.wait(), timeout=self.requeue_delay_seconds
                    )
                except asyncio.TimeoutError:
                    pass
            else:
                await self._wakeup.wait()

    async def _dispatch_ready(self) -> bool:
        """Admit queued tasks while slots are free.

        Returns:
            True if admission stopped because no workspace was available.
        """
        blocked = False
        while self._running and self._heap and len(self._in_flight) < self.max_concurrency:
            entry = heapq.heappop(self._heap)
            task_id = entry[2]
            self._queued.discard(task_id)

            try:
                runner = await self.orchestrator.admit(task_id)
            except ResourceExhaustedError:
                # Same sequence number keeps its place in the queue
                heapq.heappush(self._heap, entry)
                self._queued.add(task_id)
                logger.info(
                    "Workspace cap reached, deferring admission",
                    extra={"task_id": task_id, "queue_length": len(self._heap)},
                )
                blocked = True
                break
            except TaskNotFoundError:
                logger.warning(
                    "Dropping unknown task from queue",
                    extra={"task_id": task_id},
                )
                continue
            except Exception:
                logger.exception(
                    "Failed to admit task",
                    extra={"task_id": task_id},
                )
                continue

            if runner is None:
                continue

            self._in_flight[task_id] = runner
            runner.add_done_callback(partial(self._on_finished, task_id))

        self._update_idle()
        return blocked

    def _on_finished(self, task_id: str, runner: asyncio.Task) -> None:
        self._in_flight.pop(task_id, None)
        if not runner.cancelled() and runner.exception() is not None:
            logger.error(
                "Task runner failed",
                extra={"task_id": task_id, "error": str(runner.exception())},
            )
        self._update_idle()
        self._wakeup.set()

    def _update_idle(self) -> None:
        if not self._heap and not self._in_flight:
            self._idle.set()
        else:
            self._idle.clear()
