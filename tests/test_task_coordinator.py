# tests/test_task_coordinator.py

from __future__ import annotations

import asyncio
import random
from dataclasses import replace

import pytest

from titan_orchestrator.tasks.task_coordinator import (
    INTERRUPTED_ERROR,
    NOT_CONFIGURED_ERROR,
    ExecutionCoordinator,
    TaskNotFoundError,
)
from titan_orchestrator.tasks.task_models import (
    Task,
    TaskCompleted,
    TaskFailed,
    TaskProgress,
    TaskStatus,
    TaskType,
    utcnow,
)
from titan_orchestrator.tasks.task_registry import TaskRegistry
from titan_orchestrator.tasks.task_store import TaskStore

from .fakes import (
    BrokenInferenceClient,
    FailingTaskRepo,
    FakeInferenceClient,
    FakeTaskRepo,
    GatedTaskRepo,
    ScriptedInferenceClient,
    StubbornInferenceClient,
    wait_until,
)


def _status(coord: ExecutionCoordinator, task_id: str) -> TaskStatus | None:
    t = coord.get_task(task_id)
    return t.status if t else None


@pytest.mark.asyncio
async def test_create_task_runs_to_completion(
    coordinator: ExecutionCoordinator,
    client: FakeInferenceClient,
    repo: FakeTaskRepo,
    registry: TaskRegistry,
) -> None:
    seen: list[TaskStatus] = []
    registry.subscribe(lambda reg: seen.extend(t.status for t in reg.tasks[:1]))

    task = await coordinator.create_task(TaskType.WEB_SEARCH, "Search the web for: x", {"query": "x"})

    assert task.status == TaskStatus.RUNNING
    assert coordinator.current_task is not None and coordinator.current_task.id == task.id
    assert coordinator.is_processing
    assert coordinator.is_active(task.id)
    assert seen[0] == TaskStatus.PENDING

    client.push(task.id, TaskProgress(0.3, "par"), TaskProgress(0.3, "partial"), TaskCompleted("final answer"))
    await wait_until(lambda: _status(coordinator, task.id) == TaskStatus.COMPLETED)

    done = coordinator.get_task(task.id)
    assert done is not None
    assert done.progress == 1.0
    assert done.result == "final answer"
    assert done.error is None
    assert done.completed_at is not None
    assert not coordinator.is_processing
    assert coordinator.active_task_ids == []

    await wait_until(lambda: repo.tasks.get(task.id) == done)
    assert repo.statuses(task.id)[0] == "pending"
    assert repo.statuses(task.id)[-1] == "completed"


@pytest.mark.asyncio
async def test_progress_and_partial_results_apply_in_order(
    coordinator: ExecutionCoordinator,
    client: FakeInferenceClient,
) -> None:
    task = await coordinator.create_task(TaskType.CUSTOM, "ordered")

    client.push(task.id, TaskProgress(0.2, "U1"))
    await wait_until(lambda: coordinator.get_task(task.id).result == "U1")  # type: ignore[union-attr]

    # A progress event without text keeps the previous partial result.
    client.push(task.id, TaskProgress(0.2), TaskProgress(0.1, "U3"))
    await wait_until(lambda: coordinator.get_task(task.id).result == "U3")  # type: ignore[union-attr]
    assert coordinator.get_task(task.id).progress == pytest.approx(0.5)  # type: ignore[union-attr]

    client.push(task.id, TaskProgress(5.0))
    await wait_until(lambda: coordinator.get_task(task.id).progress == 1.0)  # type: ignore[union-attr]
    assert _status(coordinator, task.id) == TaskStatus.RUNNING


@pytest.mark.asyncio
async def test_execute_is_single_flight(
    coordinator: ExecutionCoordinator,
    client: FakeInferenceClient,
    configured: dict[str, bool],
) -> None:
    configured["ok"] = False
    task = await coordinator.create_task(TaskType.CUSTOM, "once")
    assert task.status == TaskStatus.PENDING
    configured["ok"] = True

    await asyncio.gather(*(coordinator.execute(task.id) for _ in range(5)))
    await asyncio.sleep(0.01)
    await coordinator.execute(task.id)

    assert client.calls == [task.id]
    assert coordinator.active_task_ids == [task.id]


@pytest.mark.asyncio
async def test_execute_requires_pending(
    coordinator: ExecutionCoordinator,
    client: FakeInferenceClient,
) -> None:
    task = await coordinator.create_task(TaskType.CUSTOM, "x")
    client.push(task.id, TaskCompleted("done"))
    await wait_until(lambda: _status(coordinator, task.id) == TaskStatus.COMPLETED)

    await coordinator.execute(task.id)
    assert client.calls == [task.id]
    assert _status(coordinator, task.id) == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_unknown_ids(coordinator: ExecutionCoordinator) -> None:
    with pytest.raises(TaskNotFoundError):
        await coordinator.execute("nope")
    with pytest.raises(TaskNotFoundError):
        await coordinator.cancel("nope")
    with pytest.raises(TaskNotFoundError):
        await coordinator.retry("nope")
    # delete is idempotent
    await coordinator.delete_task("nope")


@pytest.mark.asyncio
async def test_not_configured_leaves_task_pending(
    coordinator: ExecutionCoordinator,
    client: FakeInferenceClient,
    configured: dict[str, bool],
) -> None:
    configured["ok"] = False

    task = await coordinator.create_task(TaskType.PAGE_SUMMARY, "summarize")

    assert task.status == TaskStatus.PENDING
    assert coordinator.error == NOT_CONFIGURED_ERROR
    assert client.calls == []
    assert not coordinator.is_processing

    configured["ok"] = True
    assert coordinator.refresh_configuration()
    assert coordinator.error is None

    await coordinator.execute(task.id)
    assert _status(coordinator, task.id) == TaskStatus.RUNNING
    assert client.calls == [task.id]


@pytest.mark.asyncio
async def test_failed_event_marks_task_failed(
    coordinator: ExecutionCoordinator,
    client: FakeInferenceClient,
) -> None:
    task = await coordinator.create_task(TaskType.CUSTOM, "x")
    client.push(task.id, TaskProgress(0.4, "half"), TaskFailed("model refused"))
    await wait_until(lambda: _status(coordinator, task.id) == TaskStatus.FAILED)

    failed = coordinator.get_task(task.id)
    assert failed is not None
    assert failed.error == "model refused"
    assert failed.result is None
    assert failed.completed_at is not None
    assert coordinator.failed_tasks == [failed]


@pytest.mark.asyncio
async def test_stream_exception_marks_task_failed(
    coordinator: ExecutionCoordinator,
    client: FakeInferenceClient,
) -> None:
    task = await coordinator.create_task(TaskType.CUSTOM, "x")
    client.fail(task.id, RuntimeError("connection reset"))
    await wait_until(lambda: _status(coordinator, task.id) == TaskStatus.FAILED)

    assert coordinator.get_task(task.id).error == "connection reset"  # type: ignore[union-attr]
    assert coordinator.active_task_ids == []


@pytest.mark.asyncio
async def test_stream_that_cannot_open_fails_task(registry: TaskRegistry) -> None:
    coord = ExecutionCoordinator(registry, BrokenInferenceClient("no route"))
    try:
        task = await coord.create_task(TaskType.CUSTOM, "x")
        await wait_until(lambda: _status(coord, task.id) == TaskStatus.FAILED)
        assert coord.get_task(task.id).error == "no route"  # type: ignore[union-attr]
    finally:
        await coord.shutdown()


@pytest.mark.asyncio
async def test_stream_end_without_terminal_event_completes(
    coordinator: ExecutionCoordinator,
    client: FakeInferenceClient,
) -> None:
    task = await coordinator.create_task(TaskType.CUSTOM, "x")
    client.push(task.id, TaskProgress(0.5, "all there is"))
    client.end(task.id)
    await wait_until(lambda: _status(coordinator, task.id) == TaskStatus.COMPLETED)

    done = coordinator.get_task(task.id)
    assert done is not None
    assert done.result == "all there is"
    assert done.progress == 1.0


@pytest.mark.asyncio
async def test_cancel_running_task_stops_stream(
    coordinator: ExecutionCoordinator,
    client: FakeInferenceClient,
    repo: FakeTaskRepo,
) -> None:
    task = await coordinator.create_task(TaskType.CUSTOM, "x")
    client.push(task.id, TaskProgress(0.2, "partial"))
    await wait_until(lambda: coordinator.get_task(task.id).progress > 0)  # type: ignore[union-attr]

    await coordinator.cancel(task.id)

    cancelled = coordinator.get_task(task.id)
    assert cancelled is not None
    assert cancelled.status == TaskStatus.CANCELLED
    assert cancelled.result is None and cancelled.error is None
    assert cancelled.completed_at is not None
    assert not coordinator.is_active(task.id)
    assert not coordinator.is_processing
    assert client.cancelled == [task.id]
    assert task.id in client.closed

    # Events pushed after cancellation go nowhere.
    client.push(task.id, TaskProgress(0.5, "late"), TaskCompleted("late"))
    await asyncio.sleep(0.02)
    assert coordinator.get_task(task.id) == cancelled
    assert repo.tasks[task.id].status == TaskStatus.CANCELLED


@pytest.mark.asyncio
async def test_late_event_after_cancel_is_dropped(registry: TaskRegistry) -> None:
    client = StubbornInferenceClient()
    repo = FakeTaskRepo()
    coord = ExecutionCoordinator(registry, client, repo)
    try:
        task = await coord.create_task(TaskType.CUSTOM, "stubborn")
        await asyncio.wait_for(client.stream.waiting.wait(), timeout=1.0)
        assert coord.get_task(task.id).result == "partial"  # type: ignore[union-attr]

        await coord.cancel(task.id)
        await wait_until(lambda: client.stream.late_emitted)
        await asyncio.sleep(0.02)

        final = coord.get_task(task.id)
        assert final is not None
        assert final.status == TaskStatus.CANCELLED
        assert final.result is None
        assert final.progress == pytest.approx(0.2)
        assert repo.tasks[task.id].status == TaskStatus.CANCELLED
    finally:
        await coord.shutdown()


@pytest.mark.asyncio
async def test_cancel_pending_and_terminal_tasks(
    coordinator: ExecutionCoordinator,
    client: FakeInferenceClient,
    configured: dict[str, bool],
) -> None:
    configured["ok"] = False
    pending = await coordinator.create_task(TaskType.CUSTOM, "never started")
    await coordinator.cancel(pending.id)
    assert _status(coordinator, pending.id) == TaskStatus.CANCELLED
    # Nothing was running, so the backend is not bothered.
    assert client.cancelled == []

    configured["ok"] = True
    done = await coordinator.create_task(TaskType.CUSTOM, "finishes")
    client.push(done.id, TaskCompleted("ok"))
    await wait_until(lambda: _status(coordinator, done.id) == TaskStatus.COMPLETED)
    before = coordinator.get_task(done.id)

    await coordinator.cancel(done.id)
    assert coordinator.get_task(done.id) == before


@pytest.mark.asyncio
async def test_retry_failed_task_runs_again(
    coordinator: ExecutionCoordinator,
    client: FakeInferenceClient,
    registry: TaskRegistry,
    repo: FakeTaskRepo,
) -> None:
    task = await coordinator.create_task(TaskType.CUSTOM, "flaky")
    client.push(task.id, TaskFailed("timeout"))
    await wait_until(lambda: _status(coordinator, task.id) == TaskStatus.FAILED)

    seen: list[TaskStatus] = []
    registry.subscribe(lambda reg: seen.append(reg.get(task.id).status))  # type: ignore[union-attr]

    await coordinator.retry(task.id)

    assert TaskStatus.PENDING in seen
    assert seen.index(TaskStatus.PENDING) < seen.index(TaskStatus.RUNNING)
    running = coordinator.get_task(task.id)
    assert running is not None
    assert running.status == TaskStatus.RUNNING
    assert running.error is None and running.result is None and running.completed_at is None
    assert running.progress == 0.0
    assert client.calls == [task.id, task.id]

    client.push(task.id, TaskCompleted("second time lucky"))
    await wait_until(lambda: _status(coordinator, task.id) == TaskStatus.COMPLETED)
    await wait_until(lambda: repo.tasks[task.id].status == TaskStatus.COMPLETED)
    assert repo.statuses(task.id) == ["pending", "running", "failed", "pending", "running", "completed"]


@pytest.mark.asyncio
async def test_retry_cancelled_task(
    coordinator: ExecutionCoordinator,
    client: FakeInferenceClient,
) -> None:
    task = await coordinator.create_task(TaskType.CUSTOM, "again")
    await coordinator.cancel(task.id)
    await coordinator.retry(task.id)

    assert _status(coordinator, task.id) == TaskStatus.RUNNING
    assert coordinator.active_task_ids == [task.id]


@pytest.mark.asyncio
async def test_retry_ignores_running_and_completed(
    coordinator: ExecutionCoordinator,
    client: FakeInferenceClient,
) -> None:
    task = await coordinator.create_task(TaskType.CUSTOM, "x")
    await coordinator.retry(task.id)
    assert client.calls == [task.id]

    client.push(task.id, TaskCompleted("ok"))
    await wait_until(lambda: _status(coordinator, task.id) == TaskStatus.COMPLETED)
    await coordinator.retry(task.id)
    assert _status(coordinator, task.id) == TaskStatus.COMPLETED
    assert client.calls == [task.id]


@pytest.mark.asyncio
async def test_delete_running_task(
    coordinator: ExecutionCoordinator,
    client: FakeInferenceClient,
    repo: FakeTaskRepo,
) -> None:
    task = await coordinator.create_task(TaskType.CUSTOM, "x")
    await coordinator.delete_task(task.id)

    assert coordinator.get_task(task.id) is None
    assert coordinator.current_task is None
    assert coordinator.active_task_ids == []
    assert client.cancelled == [task.id]
    assert task.id not in repo.tasks

    client.push(task.id, TaskCompleted("ghost"))
    await asyncio.sleep(0.02)
    assert coordinator.get_task(task.id) is None
    assert task.id not in repo.tasks


@pytest.mark.asyncio
async def test_clear_all_stops_everything(
    coordinator: ExecutionCoordinator,
    client: FakeInferenceClient,
    repo: FakeTaskRepo,
) -> None:
    ids = [(await coordinator.create_task(TaskType.CUSTOM, f"t{i}")).id for i in range(3)]
    client.push(ids[0], TaskCompleted("done"))
    await wait_until(lambda: _status(coordinator, ids[0]) == TaskStatus.COMPLETED)

    await coordinator.clear_all()

    assert coordinator.tasks == []
    assert coordinator.active_task_ids == []
    assert not coordinator.is_processing
    assert sorted(client.cancelled) == sorted(ids[1:])
    assert repo.tasks == {}


@pytest.mark.asyncio
async def test_store_mirrors_registry(
    registry: TaskRegistry,
    task_store: TaskStore,
) -> None:
    client = ScriptedInferenceClient([TaskProgress(0.5, "half"), TaskCompleted("whole")])
    coord = ExecutionCoordinator(registry, client, task_store)
    try:
        a = await coord.create_task(TaskType.CUSTOM, "a")
        b = await coord.create_task(TaskType.CUSTOM, "b")
        await wait_until(lambda: all(t.status == TaskStatus.COMPLETED for t in coord.tasks))
        await coord.delete_task(a.id)

        stored = task_store.list_all()
        assert [t.id for t in stored] == [b.id]
        assert stored[0] == coord.get_task(b.id)
    finally:
        await coord.shutdown()


@pytest.mark.asyncio
async def test_persistence_failure_is_reported_not_fatal(registry: TaskRegistry) -> None:
    client = ScriptedInferenceClient([TaskCompleted("fine")])
    coord = ExecutionCoordinator(registry, client, FailingTaskRepo())
    try:
        task = await coord.create_task(TaskType.CUSTOM, "x")
        await wait_until(lambda: _status(coord, task.id) == TaskStatus.COMPLETED)
        assert coord.error is not None
        assert "disk full" in coord.error
    finally:
        await coord.shutdown()


@pytest.mark.asyncio
async def test_load_rehydrates_and_interrupts_running(registry: TaskRegistry) -> None:
    now = utcnow()
    old_running = replace(Task.new(TaskType.CUSTOM, "was running"), status=TaskStatus.RUNNING, progress=0.4)
    old_pending = Task.new(TaskType.CUSTOM, "was pending")
    old_done = replace(
        Task.new(TaskType.CUSTOM, "was done"),
        status=TaskStatus.COMPLETED,
        result="r",
        progress=1.0,
        completed_at=now,
    )
    repo = FakeTaskRepo([old_running, old_pending, old_done])
    client = FakeInferenceClient()
    coord = ExecutionCoordinator(registry, client, repo)
    try:
        assert await coord.load() == 3

        interrupted = coord.get_task(old_running.id)
        assert interrupted is not None
        assert interrupted.status == TaskStatus.FAILED
        assert interrupted.error == INTERRUPTED_ERROR
        assert repo.tasks[old_running.id].status == TaskStatus.FAILED

        assert _status(coord, old_pending.id) == TaskStatus.PENDING
        assert coord.get_task(old_done.id) == old_done
        assert not coord.is_processing
        assert client.calls == []

        await coord.retry(old_running.id)
        assert _status(coord, old_running.id) == TaskStatus.RUNNING
    finally:
        await coord.shutdown()


@pytest.mark.asyncio
async def test_evict_skips_active_tasks(
    coordinator: ExecutionCoordinator,
    client: FakeInferenceClient,
    repo: FakeTaskRepo,
) -> None:
    running = await coordinator.create_task(TaskType.CUSTOM, "running")
    done = await coordinator.create_task(TaskType.CUSTOM, "done")
    client.push(done.id, TaskCompleted("ok"))
    await wait_until(lambda: _status(coordinator, done.id) == TaskStatus.COMPLETED)

    removed = await coordinator.evict([running.id, done.id])

    assert removed == [done.id]
    assert coordinator.get_task(running.id) is not None
    assert done.id not in repo.tasks


@pytest.mark.asyncio
async def test_is_processing_tracks_running_tasks_over_random_operations(
    coordinator: ExecutionCoordinator,
    client: FakeInferenceClient,
) -> None:
    rng = random.Random(1234)
    expected: dict[str, TaskStatus] = {}

    for _ in range(60):
        live = [i for i, s in expected.items() if s == TaskStatus.RUNNING]
        op = rng.choice(["create", "create", "cancel", "complete", "fail", "retry"])

        if op == "create" or not expected:
            t = await coordinator.create_task(TaskType.CUSTOM, "random")
            expected[t.id] = TaskStatus.RUNNING
        elif op == "cancel":
            task_id = rng.choice(list(expected))
            await coordinator.cancel(task_id)
            if not expected[task_id].is_terminal:
                expected[task_id] = TaskStatus.CANCELLED
        elif op in ("complete", "fail") and live:
            task_id = rng.choice(live)
            if op == "complete":
                client.push(task_id, TaskCompleted("ok"))
                expected[task_id] = TaskStatus.COMPLETED
            else:
                client.push(task_id, TaskFailed("no"))
                expected[task_id] = TaskStatus.FAILED
        elif op == "retry":
            task_id = rng.choice(list(expected))
            await coordinator.retry(task_id)
            if expected[task_id] in (TaskStatus.FAILED, TaskStatus.CANCELLED):
                expected[task_id] = TaskStatus.RUNNING

        await wait_until(lambda: all(_status(coordinator, i) == s for i, s in expected.items()))
        want = any(s == TaskStatus.RUNNING for s in expected.values())
        assert coordinator.is_processing == want
        assert sorted(coordinator.active_task_ids) == sorted(
            i for i, s in expected.items() if s == TaskStatus.RUNNING
        )


@pytest.mark.asyncio
async def test_statistics(coordinator: ExecutionCoordinator, client: FakeInferenceClient) -> None:
    a = await coordinator.create_task(TaskType.CUSTOM, "a")
    b = await coordinator.create_task(TaskType.CUSTOM, "b")
    await coordinator.create_task(TaskType.CUSTOM, "c")
    client.push(a.id, TaskCompleted("ok"))
    client.push(b.id, TaskFailed("no"))
    await wait_until(lambda: len(coordinator.running_tasks) == 1)

    stats = coordinator.get_statistics()
    assert stats.total_tasks == 3
    assert stats.successful_tasks == 1
    assert stats.failed_tasks == 1
    assert stats.running_tasks == 1
    assert stats.success_rate == pytest.approx(1 / 3)


@pytest.mark.asyncio
async def test_task_deleted_while_create_persists_is_not_started(
    registry: TaskRegistry,
    client: FakeInferenceClient,
) -> None:
    repo = GatedTaskRepo()
    coord = ExecutionCoordinator(registry, client, repo, stop_timeout_seconds=1.0)
    try:
        repo.gate.clear()
        creating = asyncio.create_task(coord.create_task(TaskType.CUSTOM, "short lived"))
        await wait_until(repo.entered.is_set)

        task_id = registry.tasks[0].id
        deleting = asyncio.create_task(coord.delete_task(task_id))
        await asyncio.sleep(0)
        repo.gate.set()

        created = await creating
        await deleting

        assert created.status == TaskStatus.PENDING
        assert coord.get_task(task_id) is None
        assert registry.current_task_id is None
        assert coord.active_task_ids == []
        assert client.calls == []
        assert task_id not in repo.tasks
    finally:
        repo.gate.set()
        await coord.shutdown()


@pytest.mark.asyncio
async def test_retry_of_task_deleted_mid_write_is_quiet(
    registry: TaskRegistry,
    client: FakeInferenceClient,
) -> None:
    repo = GatedTaskRepo()
    coord = ExecutionCoordinator(registry, client, repo, stop_timeout_seconds=1.0)
    try:
        task = await coord.create_task(TaskType.CUSTOM, "flaky")
        client.push(task.id, TaskFailed("timeout"))
        await wait_until(lambda: task.id in repo.tasks and repo.tasks[task.id].status == TaskStatus.FAILED)

        repo.gate.clear()
        repo.entered.clear()
        retrying = asyncio.create_task(coord.retry(task.id))
        await wait_until(repo.entered.is_set)

        deleting = asyncio.create_task(coord.delete_task(task.id))
        await asyncio.sleep(0)
        repo.gate.set()

        await asyncio.gather(retrying, deleting)

        assert coord.get_task(task.id) is None
        assert coord.current_task is None
        assert coord.active_task_ids == []
        assert client.calls == [task.id]
        assert task.id not in repo.tasks
    finally:
        repo.gate.set()
        await coord.shutdown()
