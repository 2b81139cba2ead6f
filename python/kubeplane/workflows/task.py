"""
kubeplane/workflows/task.py

Durable execution of one pipeline against one Config.

Execution contract:
  1) For each step from the resume point: mark `executing`, persist, run,
     mark `success` / `error` / `cancelled`, persist.
  2) The first error stops the task; later steps stay `todo`.
  3) Each step runs under its own budget (StepTimeout) and the remaining
     overall budget of the task (TaskDeadlineExceeded).
  4) Cancelling the task's asyncio.Task cancels the running step (which
     closes its SSH session or provider poll), records `cancelled`,
     persists and re-raises CancelledError.

`restart` resumes from the first step that is not `success`; earlier steps
keep their status and timestamps and are not executed again. Within one
attempt a step's status never moves backwards (todo < executing < terminal).
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from kubeplane.errors import (
    KubeplaneError,
    PipelineDefinitionError,
    RemoteExitError,
    StepTimeout,
    TaskDeadlineExceeded,
    TaskRunningError,
)
from kubeplane.models.machine import utcnow
from kubeplane.models.task import StepState, StepStatus, TaskSnapshot, TaskStatus
from kubeplane.runner.output import OutputSink
from kubeplane.storage.repository import TaskRepository
from kubeplane.utils.token import generate_id
from kubeplane.workflows.config import Config
from kubeplane.workflows.pipelines import Pipeline, PipelineRegistry
from kubeplane.workflows.services import Services
from kubeplane.workflows.steps.base import Step

logger = logging.getLogger(__name__)

DEFAULT_MAX_TASK_SECONDS = 7200.0
ERROR_TAIL_LINES = 20


def describe_error(exc: BaseException) -> str:
    """One-line message plus, for failed remote scripts, the end of the output."""
    message = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
    if isinstance(exc, RemoteExitError) and exc.output_tail.strip():
        tail = "\n".join(exc.output_tail.strip().splitlines()[-ERROR_TAIL_LINES:])
        message = f"{message}\n{tail}"
    return message


class Task:
    def __init__(
        self,
        snapshot: TaskSnapshot,
        pipeline: Pipeline,
        config: Config,
        repo: TaskRepository,
        *,
        max_seconds: float = DEFAULT_MAX_TASK_SECONDS,
    ) -> None:
        if snapshot.type != pipeline.name or [
            s.step for s in snapshot.step_statuses
        ] != pipeline.step_names():
            raise PipelineDefinitionError(
                f"task {snapshot.id}: snapshot steps do not match pipeline {pipeline.name!r}"
            )
        self._snapshot = snapshot
        self.pipeline = pipeline
        self.config = config
        self._repo = repo
        self.max_seconds = max_seconds
        self._current: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------
    @classmethod
    async def create(
        cls,
        pipeline: Pipeline,
        config: Config,
        repo: TaskRepository,
        *,
        task_id: Optional[str] = None,
        max_seconds: float = DEFAULT_MAX_TASK_SECONDS,
    ) -> Task:
        """Build a fresh task with every step `todo` and persist it."""
        tid = task_id or generate_id()
        config.task_id = tid
        snapshot = TaskSnapshot(
            id=tid,
            type=pipeline.name,
            cluster_id=config.cluster_id,
            step_statuses=[StepStatus(step=name) for name in pipeline.step_names()],
        )
        task = cls(snapshot, pipeline, config, repo, max_seconds=max_seconds)
        await task._sync()
        return task

    @classmethod
    async def load(
        cls,
        task_id: str,
        *,
        pipelines: PipelineRegistry,
        repo: TaskRepository,
        services: Services,
        credentials: Optional[dict[str, str]] = None,
        max_seconds: float = DEFAULT_MAX_TASK_SECONDS,
    ) -> Task:
        """
        Rehydrate a task from its snapshot: config deserialized, services
        reattached, credentials filled in. Runners are built fresh per step.

        Raises:
            NotFoundError: No snapshot under `tasks/<task_id>`.
        """
        snapshot = await repo.load(task_id)
        pipeline = pipelines.get(snapshot.type)
        config = Config.model_validate(snapshot.config)
        if credentials:
            config.credentials = dict(credentials)
        config.bind(services)
        return cls(snapshot, pipeline, config, repo, max_seconds=max_seconds)

    # ------------------------------------------------------------------
    # accessors
    # ------------------------------------------------------------------
    @property
    def id(self) -> str:
        return self._snapshot.id

    @property
    def type(self) -> str:
        return self._snapshot.type

    @property
    def cluster_id(self) -> str:
        return self._snapshot.cluster_id

    @property
    def status(self) -> TaskStatus:
        return self._snapshot.status

    @property
    def running(self) -> bool:
        return self._current is not None and not self._current.done()

    def snapshot(self) -> TaskSnapshot:
        return self._snapshot.model_copy(deep=True)

    def budget(self, start: int = 0) -> float:
        """Sum of the step budgets from `start`, capped by max_seconds."""
        default = self.config.profile.timeouts.default_step
        total = 0.0
        for step in self.pipeline.steps[start:]:
            limit = step.timeout(self.config)
            total += default if limit is None else limit
        return min(total, self.max_seconds)

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------
    def start(
        self, out: OutputSink, *, resume: bool = False, skip_failed: bool = False
    ) -> asyncio.Task[None]:
        """
        Spawn the execution in its own asyncio.Task and return it. Awaiting
        the returned task raises the failing step's error, if any.

        Args:
            out: Sink for step output and progress lines.
            resume: Continue from the first unfinished step (restart).
            skip_failed: With resume, mark the failed/cancelled step `skipped`
                and continue after it.

        Raises:
            TaskRunningError: The task is already executing.
        """
        if self.running:
            raise TaskRunningError(f"task {self.id} is already running")
        start_index = self._prepare_resume(skip_failed) if resume else 0
        self._current = asyncio.create_task(
            self._execute(out, start_index), name=f"kubeplane-task-{self.id}"
        )
        return self._current

    async def run(self, out: OutputSink) -> None:
        await self.start(out)

    async def restart(self, out: OutputSink, *, skip_failed: bool = False) -> None:
        await self.start(out, resume=True, skip_failed=skip_failed)

    def cancel(self) -> bool:
        if not self.running:
            return False
        assert self._current is not None
        self._current.cancel()
        return True

    def _prepare_resume(self, skip_failed: bool) -> int:
        index = self._snapshot.first_unfinished()
        statuses = self._snapshot.step_statuses
        if (
            skip_failed
            and index < len(statuses)
            and statuses[index].status in (StepState.error, StepState.cancelled)
        ):
            statuses[index].status = StepState.skipped
            statuses[index].finished_at = utcnow()
            index = self._snapshot.first_unfinished()
        return index

    async def _execute(self, out: OutputSink, start: int) -> None:
        snap = self._snapshot
        snap.attempt += 1
        snap.status = TaskStatus.executing
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.budget(start)
        logger.info(
            "Task %s (%s) attempt %d starting at step %d/%d",
            self.id,
            self.type,
            snap.attempt,
            start,
            len(self.pipeline),
        )
        try:
            for index in range(start, len(self.pipeline)):
                await self._run_step(index, out, deadline)
            snap.status = TaskStatus.success
            await self._sync()
            logger.info("Task %s (%s) finished", self.id, self.type)
        finally:
            await out.flush()

    async def _run_step(self, index: int, out: OutputSink, deadline: float) -> None:
        step = self.pipeline.steps[index]
        status = self._snapshot.step_statuses[index]

        status.status = StepState.executing
        status.started_at = utcnow()
        status.finished_at = None
        status.error_message = None
        status.attempts += 1

        try:
            await self._sync()
            await out.line(f"[{step.name}] - started")
            await self._invoke(step, out, deadline)
        except asyncio.CancelledError:
            self._finish(status, StepState.cancelled, "cancelled")
            self._snapshot.status = TaskStatus.cancelled
            await asyncio.shield(self._sync())
            await out.line(f"[{step.name}] - cancelled")
            logger.info("Task %s cancelled during %s", self.id, step.name)
            raise
        except Exception as exc:
            message = describe_error(exc)
            self._finish(status, StepState.error, message)
            self._snapshot.status = TaskStatus.error
            await self._sync()
            await out.line(f"[{step.name}] - failed: {message}")
            logger.warning("Task %s step %s failed: %s", self.id, step.name, message)
            raise

        self._finish(status, StepState.success)
        await self._sync()
        await out.line(f"[{step.name}] - success")

    async def _invoke(self, step: Step, out: OutputSink, deadline: float) -> None:
        loop = asyncio.get_running_loop()
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise TaskDeadlineExceeded(f"task {self.id} ran out of time before {step.name}")
        budget = step.timeout(self.config)
        limit = remaining if budget is None else min(budget, remaining)
        try:
            await asyncio.wait_for(step.run(out, self.config), timeout=limit)
        except asyncio.TimeoutError:
            if budget is not None and budget <= remaining:
                raise StepTimeout(f"step {step.name} exceeded {budget:.0f}s") from None
            raise TaskDeadlineExceeded(
                f"task {self.id} exceeded its overall deadline during {step.name}"
            ) from None

    @staticmethod
    def _finish(status: StepStatus, state: StepState, message: Optional[str] = None) -> None:
        status.status = state
        status.finished_at = utcnow()
        status.error_message = message

    async def _sync(self) -> None:
        self._snapshot.config = self.config.persisted()
        await self._repo.put(self._snapshot)

    # ------------------------------------------------------------------
    # teardown
    # ------------------------------------------------------------------
    async def rollback(self, out: OutputSink) -> None:
        """
        Run `rollback` for every attempted step, last first. Every step is
        tried; the first failure is raised at the end.
        """
        if self.running:
            raise TaskRunningError(f"task {self.id} is still running")
        first_error: Optional[BaseException] = None
        attempted: List[int] = [
            i
            for i, st in enumerate(self._snapshot.step_statuses)
            if st.status not in (StepState.todo, StepState.skipped)
        ]
        for index in reversed(attempted):
            step = self.pipeline.steps[index]
            await out.line(f"[{step.name}] - rollback")
            try:
                await step.rollback(out, self.config)
            except KubeplaneError as exc:
                logger.warning("Rollback of %s in task %s failed: %s", step.name, self.id, exc)
                await out.line(f"[{step.name}] - rollback failed: {exc}")
                if first_error is None:
                    first_error = exc
        await out.flush()
        if first_error is not None:
            raise first_error
