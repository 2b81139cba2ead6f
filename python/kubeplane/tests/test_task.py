"""
kubeplane/tests/test_task.py

Task engine: ordering, persistence after every transition, restart,
cancellation and the two deadline kinds.
"""

from __future__ import annotations

import asyncio
from typing import Callable, List, Optional, Sequence

import pytest

from kubeplane.errors import (
    PipelineDefinitionError,
    RemoteExitError,
    StepTimeout,
    TaskDeadlineExceeded,
    TaskRunningError,
)
from kubeplane.models.task import StepState, TaskSnapshot, TaskStatus
from kubeplane.runner.output import BufferSink, OutputSink
from kubeplane.storage.kv import MemoryKVStore
from kubeplane.storage.repository import TaskRepository
from kubeplane.workflows.config import Config
from kubeplane.workflows.pipelines import Pipeline, PipelineRegistry
from kubeplane.workflows.steps.base import Step, StepRegistry
from kubeplane.workflows.task import Task, describe_error


class RecordingStep(Step):
    def __init__(
        self,
        name: str,
        log: List[str],
        *,
        fail: bool = False,
        gate: Optional[asyncio.Event] = None,
        sleep: float = 0.0,
        budget: Optional[float] = None,
    ) -> None:
        self.name = name
        self.log = log
        self.fail = fail
        self.gate = gate
        self.sleep = sleep
        self.budget = budget

    async def run(self, out: OutputSink, config: Config) -> None:
        self.log.append(self.name)
        await out.line(f"running {self.name}")
        if self.gate is not None:
            await self.gate.wait()
        if self.sleep:
            await asyncio.sleep(self.sleep)
        if self.fail:
            raise RemoteExitError(
                f"{self.name} exited with 1", host="h", return_code=1, output_tail="boom"
            )

    async def rollback(self, out: OutputSink, config: Config) -> None:
        self.log.append(f"rollback:{self.name}")

    def timeout(self, config: Config) -> Optional[float]:
        if self.budget is not None:
            return self.budget
        return super().timeout(config)


class RecordingRepo(TaskRepository):
    """Keeps a copy of every snapshot written."""

    def __init__(self, kv: MemoryKVStore) -> None:
        super().__init__(kv)
        self.history: List[TaskSnapshot] = []

    async def put(self, snapshot: TaskSnapshot) -> None:
        self.history.append(snapshot.model_copy(deep=True))
        await super().put(snapshot)


def build_pipeline(steps: Sequence[Step], name: str = "test") -> PipelineRegistry:
    registry = StepRegistry()
    for step in steps:
        registry.register(step)
    pipelines = PipelineRegistry(registry)
    pipelines.register(name, [s.name for s in steps])
    return pipelines


def states(task: Task) -> List[StepState]:
    return [s.status for s in task.snapshot().step_statuses]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def repo() -> RecordingRepo:
    return RecordingRepo(MemoryKVStore())


async def make_task(
    steps: Sequence[Step], make_config, repo: RecordingRepo, **kwargs
) -> tuple[Task, PipelineRegistry]:
    pipelines = build_pipeline(steps)
    task = await Task.create(pipelines.get("test"), make_config(), repo, **kwargs)
    return task, pipelines


async def test_create_persists_all_todo(make_config, repo) -> None:
    log: List[str] = []
    task, _ = await make_task([RecordingStep("a", log), RecordingStep("b", log)], make_config, repo)

    stored = await repo.load(task.id)
    assert stored.type == "test"
    assert stored.cluster_id == "c-test"
    assert [s.status for s in stored.step_statuses] == [StepState.todo, StepState.todo]
    assert stored.config["taskId"] == task.id
    assert "credentials" not in stored.config
    assert log == []


async def test_success_runs_steps_in_order(make_config, repo) -> None:
    log: List[str] = []
    steps = [RecordingStep(n, log) for n in ("a", "b", "c")]
    task, _ = await make_task(steps, make_config, repo)
    out = BufferSink()

    await task.run(out)

    assert log == ["a", "b", "c"]
    assert task.status == TaskStatus.success
    assert states(task) == [StepState.success] * 3
    snap = task.snapshot()
    for st in snap.step_statuses:
        assert st.started_at is not None and st.finished_at is not None
        assert st.started_at <= st.finished_at
        assert st.attempts == 1
    assert "[b] - success" in out.text()


async def test_status_never_moves_backwards(make_config, repo) -> None:
    log: List[str] = []
    steps = [RecordingStep("a", log), RecordingStep("b", log, fail=True), RecordingStep("c", log)]
    task, _ = await make_task(steps, make_config, repo)

    with pytest.raises(RemoteExitError):
        await task.run(BufferSink())

    # one write for create, then executing and a terminal write per step run
    assert len(repo.history) == 5
    for index in range(3):
        ranks = [snap.step_statuses[index].status.rank for snap in repo.history]
        assert ranks == sorted(ranks)


async def test_first_error_stops_the_task(make_config, repo) -> None:
    log: List[str] = []
    steps = [RecordingStep("a", log), RecordingStep("b", log, fail=True), RecordingStep("c", log)]
    task, _ = await make_task(steps, make_config, repo)

    with pytest.raises(RemoteExitError):
        await task.run(BufferSink())

    assert log == ["a", "b"]
    assert task.status == TaskStatus.error
    assert states(task) == [StepState.success, StepState.error, StepState.todo]
    message = task.snapshot().step_statuses[1].error_message
    assert message.startswith("RemoteExitError: b exited with 1")
    assert message.endswith("boom")

    stored = await repo.load(task.id)
    assert stored.status == TaskStatus.error


async def test_restart_resumes_and_keeps_earlier_timestamps(make_config, repo) -> None:
    log: List[str] = []
    flaky = RecordingStep("b", log, fail=True)
    task, _ = await make_task(
        [RecordingStep("a", log), flaky, RecordingStep("c", log)], make_config, repo
    )
    with pytest.raises(RemoteExitError):
        await task.run(BufferSink())
    first_a = task.snapshot().step_statuses[0]

    flaky.fail = False
    await task.restart(BufferSink())

    assert log == ["a", "b", "b", "c"]
    snap = task.snapshot()
    assert snap.status == TaskStatus.success
    assert snap.attempt == 2
    assert snap.step_statuses[0].started_at == first_a.started_at
    assert snap.step_statuses[0].finished_at == first_a.finished_at
    assert snap.step_statuses[0].attempts == 1
    assert snap.step_statuses[1].attempts == 2
    assert snap.step_statuses[1].error_message is None


async def test_restart_after_load(make_config, repo, services) -> None:
    log: List[str] = []
    flaky = RecordingStep("b", log, fail=True)
    task, pipelines = await make_task([RecordingStep("a", log), flaky], make_config, repo)
    with pytest.raises(RemoteExitError):
        await task.run(BufferSink())

    flaky.fail = False
    loaded = await Task.load(
        task.id,
        pipelines=pipelines,
        repo=repo,
        services=services,
        credentials={"access_token": "do-token"},
    )
    assert loaded.config.credentials == {"access_token": "do-token"}
    assert loaded.config.bootstrap_token == "abcdef.0123456789abcdef"
    assert states(loaded) == [StepState.success, StepState.error]

    await loaded.restart(BufferSink())
    assert log == ["a", "b", "b"]
    assert loaded.status == TaskStatus.success


async def test_skip_failed_marks_step_skipped(make_config, repo) -> None:
    log: List[str] = []
    task, _ = await make_task(
        [RecordingStep("a", log, fail=True), RecordingStep("b", log)], make_config, repo
    )
    with pytest.raises(RemoteExitError):
        await task.run(BufferSink())

    await task.restart(BufferSink(), skip_failed=True)

    assert log == ["a", "b"]
    assert states(task) == [StepState.skipped, StepState.success]
    assert task.status == TaskStatus.success


async def test_cancel_records_cancelled_and_restart_resumes(make_config, repo) -> None:
    log: List[str] = []
    gate = asyncio.Event()
    steps = [RecordingStep("a", log), RecordingStep("b", log, gate=gate), RecordingStep("c", log)]
    task, _ = await make_task(steps, make_config, repo)

    running = task.start(BufferSink())
    await wait_until(lambda: "b" in log)
    assert task.running
    assert task.cancel()
    await asyncio.wait([running])

    assert running.cancelled()
    assert not task.running
    assert task.status == TaskStatus.cancelled
    assert states(task) == [StepState.success, StepState.cancelled, StepState.todo]
    stored = await repo.load(task.id)
    assert [s.status for s in stored.step_statuses][1] == StepState.cancelled
    assert not task.cancel()

    gate.set()
    await task.restart(BufferSink())
    assert log == ["a", "b", "b", "c"]
    assert states(task) == [StepState.success] * 3


async def test_start_while_running_is_refused(make_config, repo) -> None:
    gate = asyncio.Event()
    task, _ = await make_task([RecordingStep("a", [], gate=gate)], make_config, repo)

    running = task.start(BufferSink())
    await asyncio.sleep(0)
    with pytest.raises(TaskRunningError):
        task.start(BufferSink(), resume=True)
    with pytest.raises(TaskRunningError):
        await task.rollback(BufferSink())

    gate.set()
    await running
    assert task.status == TaskStatus.success


async def test_step_timeout(make_config, repo) -> None:
    steps = [RecordingStep("slow", [], sleep=5, budget=0.05), RecordingStep("after", [])]
    task, _ = await make_task(steps, make_config, repo)

    with pytest.raises(StepTimeout):
        await task.run(BufferSink())
    assert states(task) == [StepState.error, StepState.todo]
    assert "StepTimeout" in task.snapshot().step_statuses[0].error_message


async def test_task_deadline(make_config, repo) -> None:
    steps = [RecordingStep("slow", [], sleep=5), RecordingStep("after", [])]
    task, _ = await make_task(steps, make_config, repo, max_seconds=0.05)

    with pytest.raises(TaskDeadlineExceeded):
        await task.run(BufferSink())
    assert states(task) == [StepState.error, StepState.todo]


async def test_snapshot_round_trip(make_config, repo) -> None:
    log: List[str] = []
    task, _ = await make_task([RecordingStep("a", log)], make_config, repo)
    await task.run(BufferSink())

    stored = await repo.load(task.id)
    again = TaskSnapshot.from_json(stored.to_json())
    assert again == stored
    assert Config.model_validate(stored.config).cluster_name == "demo"


async def test_rollback_runs_attempted_steps_in_reverse(make_config, repo) -> None:
    log: List[str] = []
    steps = [RecordingStep("a", log), RecordingStep("b", log, fail=True), RecordingStep("c", log)]
    task, _ = await make_task(steps, make_config, repo)
    with pytest.raises(RemoteExitError):
        await task.run(BufferSink())

    await task.rollback(BufferSink())
    assert log[2:] == ["rollback:b", "rollback:a"]


async def test_snapshot_must_match_pipeline(make_config, repo) -> None:
    log: List[str] = []
    task, _ = await make_task([RecordingStep("a", log)], make_config, repo)
    other = Pipeline(name="test", steps=(RecordingStep("a", log), RecordingStep("b", log)))

    with pytest.raises(PipelineDefinitionError):
        Task(task.snapshot(), other, task.config, repo)


def test_describe_error_keeps_output_tail() -> None:
    tail = "\n".join(f"line {i}" for i in range(50))
    message = describe_error(RemoteExitError("exit status 2", output_tail=tail))

    lines = message.splitlines()
    assert lines[0] == "RemoteExitError: exit status 2"
    assert lines[1] == "line 30"
    assert lines[-1] == "line 49"
    assert describe_error(asyncio.TimeoutError()) == "TimeoutError"
