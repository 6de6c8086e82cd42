# src/titan_orchestrator/tasks/task_coordinator.py

from __future__ import annotations

"""
Execution coordinator.

The only writer of the TaskRegistry. It:
- turns a creation request into a running job,
- owns the task-id -> active stream consumer map (single-flight per task),
- applies stream events to the registry in emission order,
- mirrors every transition into the TaskStore (write-through),
- handles cancel / retry / delete / clear_all.

All public coroutines must run on the one event loop that owns the registry.
None of them wait for a stream to finish.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

from ..core.ports import ConfigurationGate, InferenceClient, TaskRepo
from .task_models import (
    RETRYABLE_STATUSES,
    Task,
    TaskCompleted,
    TaskFailed,
    TaskProgress,
    TaskStatus,
    TaskType,
    utcnow,
)
from .task_registry import TaskRegistry
from .task_stats import TaskStatistics, compute_statistics

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOT_CONFIGURED_ERROR = "AI service not configured. Please add API keys in settings."
INTERRUPTED_ERROR = "Interrupted before completion."


class TaskNotFoundError(KeyError):
    """Raised for operations on an id the registry does not know."""


@dataclass(slots=True)
class ActiveExecution:
    """A running task paired with the asyncio task consuming its stream."""

    task_id: str
    handle: asyncio.Task[None]
    started_at: float = field(default_factory=time.monotonic)


class ExecutionCoordinator:
    def __init__(
        self,
        registry: TaskRegistry,
        client: InferenceClient,
        store: TaskRepo | None = None,
        *,
        is_configured: ConfigurationGate | None = None,
        stop_timeout_seconds: float = 5.0,
    ) -> None:
        self._registry = registry
        self._client = client
        self._store = store
        self._is_configured = is_configured or (lambda: True)
        self._stop_timeout = max(0.1, float(stop_timeout_seconds))
        self._active: dict[str, ActiveExecution] = {}
        # One worker: store writes run in submission order, i.e. registry mutation order.
        self._io = ThreadPoolExecutor(max_workers=1, thread_name_prefix="task-store")

    # ---- read-only accessors ----

    @property
    def registry(self) -> TaskRegistry:
        return self._registry

    @property
    def tasks(self) -> list[Task]:
        return self._registry.tasks

    @property
    def running_tasks(self) -> list[Task]:
        return self._registry.running_tasks

    @property
    def completed_tasks(self) -> list[Task]:
        return self._registry.completed_tasks

    @property
    def failed_tasks(self) -> list[Task]:
        return self._registry.failed_tasks

    @property
    def current_task(self) -> Task | None:
        return self._registry.current_task

    @property
    def is_processing(self) -> bool:
        return self._registry.is_processing

    @property
    def error(self) -> str | None:
        return self._registry.error

    @property
    def active_task_ids(self) -> list[str]:
        return list(self._active)

    def is_active(self, task_id: str) -> bool:
        return task_id in self._active

    def get_task(self, task_id: str) -> Task | None:
        return self._registry.get(task_id)

    def get_statistics(self) -> TaskStatistics:
        return compute_statistics(self._registry.tasks)

    # ---- lifecycle ----

    async def load(self) -> int:
        """
        Rehydrate the registry from the store.

        Tasks stored as running belonged to a previous process and have no live
        stream anymore; they are marked failed so they can be retried.
        """
        if self._store is None:
            return 0

        stored = await self._run_io(self._store.list_all)
        loaded = 0
        for task in stored:
            if task.id in self._registry:
                continue
            if task.status == TaskStatus.RUNNING:
                task = replace(
                    task,
                    status=TaskStatus.FAILED,
                    error=INTERRUPTED_ERROR,
                    result=None,
                    completed_at=utcnow(),
                )
                logger.info("Task %s was running at shutdown -> failed", task.id)
                self._registry.append(task)
                await self._persist(task)
            else:
                self._registry.append(task)
            loaded += 1

        logger.info("Loaded %d tasks from store", loaded)
        return loaded

    def refresh_configuration(self) -> bool:
        """Re-check the gate; clears a stale "not configured" error once it passes."""
        ok = self._check_configured()
        if ok and self._registry.error == NOT_CONFIGURED_ERROR:
            self._registry.set_error(None)
        return ok

    async def shutdown(self) -> None:
        """Stop stream consumers and the store worker. Task states are left as they are."""
        executions = list(self._active.values())
        self._active.clear()
        if executions:
            await asyncio.gather(*(self._stop(e) for e in executions))
        self._io.shutdown(wait=False)
        logger.info("Coordinator stopped (%d streams closed)", len(executions))

    # ---- UI-facing operations ----

    async def create_task(
        self,
        type: TaskType,
        description: str,
        parameters: Mapping[str, Any] | None = None,
    ) -> Task:
        task = Task.new(type, description, parameters)

        # Visible (registry + store) before execute(), so an immediate cancel finds it.
        self._registry.prepend(task)
        logger.info("Task %s created type=%s", task.id, task.type.value)
        await self._persist(task)
        # A delete_task() may have landed while the record was being written.
        if task.id in self._registry:
            self._registry.set_current(task.id)
            await self.execute(task.id)
        return self._registry.get(task.id) or task

    async def execute(self, task_id: str) -> None:
        task = self._require(task_id)

        if task_id in self._active:
            logger.debug("Task %s already has an active stream; execute ignored", task_id)
            return

        if task.status != TaskStatus.PENDING:
            logger.debug("Task %s is %s; execute ignored", task_id, task.status.value)
            return

        if not self._check_configured():
            logger.warning("Task %s not started: inference backend is not configured", task_id)
            self._registry.set_error(NOT_CONFIGURED_ERROR)
            return

        running = replace(task, status=TaskStatus.RUNNING)
        self._registry.replace(running)
        self._registry.set_current(task_id)
        self._registry.set_error(None)

        # Register before the first await: a re-entrant execute() must see the entry.
        handle = asyncio.create_task(self._consume(running), name=f"ai-task-{task_id}")
        self._active[task_id] = ActiveExecution(task_id=task_id, handle=handle)
        logger.info("Task %s -> running", task_id)

        await self._persist(running)

    async def cancel(self, task_id: str) -> None:
        task = self._require(task_id)

        if task.is_terminal:
            logger.debug("Task %s already %s; cancel ignored", task_id, task.status.value)
            return

        execution = self._active.pop(task_id, None)
        cancelled = replace(
            task,
            status=TaskStatus.CANCELLED,
            result=None,
            error=None,
            completed_at=utcnow(),
        )
        self._registry.replace(cancelled)
        logger.info("Task %s -> cancelled", task_id)

        if execution is not None:
            # Signal the backend while its stream is still open, then stop our consumer.
            await self._cancel_backend(task_id)
            await self._stop(execution)
        await self._persist(cancelled)

    async def retry(self, task_id: str) -> None:
        task = self._require(task_id)

        if task.status not in RETRYABLE_STATUSES:
            logger.info("Task %s is %s; retry ignored", task_id, task.status.value)
            return

        reset = replace(
            task,
            status=TaskStatus.PENDING,
            progress=0.0,
            result=None,
            error=None,
            completed_at=None,
        )
        self._registry.replace(reset)
        self._registry.set_current(task_id)
        logger.info("Task %s -> pending (retry)", task_id)
        await self._persist(reset)

        if task_id in self._registry:
            await self.execute(task_id)

    async def delete_task(self, task_id: str) -> None:
        execution = self._active.pop(task_id, None)
        removed = self._registry.remove(task_id)

        if execution is not None:
            await self._cancel_backend(task_id)
            await self._stop(execution)

        await self._delete_from_store(task_id)
        if removed is not None:
            logger.info("Task %s deleted", task_id)

    async def clear_all(self) -> None:
        executions = list(self._active.values())
        self._active.clear()
        task_ids = [t.id for t in self._registry.tasks]
        self._registry.clear()

        if executions:
            for execution in executions:
                await self._cancel_backend(execution.task_id)
            await asyncio.gather(*(self._stop(e) for e in executions))

        for task_id in task_ids:
            await self._delete_from_store(task_id)

        logger.info("Cleared %d tasks (%d streams cancelled)", len(task_ids), len(executions))

    async def evict(self, task_ids: Iterable[str]) -> list[str]:
        """Remove tasks from registry and store (retention). Active tasks are never evicted."""
        candidates = [i for i in task_ids if i not in self._active]
        removed = self._registry.remove_many(candidates)
        for task in removed:
            await self._delete_from_store(task.id)
        return [t.id for t in removed]

    # ---- stream consumption ----

    async def _consume(self, task: Task) -> None:
        """
        One consumer per running task: applies events strictly in stream order.

        Stops applying as soon as this consumer is no longer the registered
        execution for the task (cancelled, deleted or finished).
        """
        task_id = task.id
        try:
            stream = self._client.execute_stream(task)
            try:
                async for event in stream:
                    if not self._owns(task_id):
                        logger.debug("Task %s: dropping event after release", task_id)
                        break

                    if isinstance(event, TaskProgress):
                        await self._apply_progress(task_id, event)
                    elif isinstance(event, TaskCompleted):
                        await self._finish(task_id, TaskStatus.COMPLETED, result=event.result)
                        break
                    elif isinstance(event, TaskFailed):
                        await self._finish(task_id, TaskStatus.FAILED, error=event.message)
                        break
                    else:
                        logger.warning("Task %s: unknown stream event %r ignored", task_id, event)
            finally:
                await self._close_stream(task_id, stream)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Task %s stream failed: %s", task_id, e, exc_info=True)
            if self._owns(task_id):
                await self._finish(task_id, TaskStatus.FAILED, error=str(e) or e.__class__.__name__)
        else:
            # Natural end of the stream without a terminal event.
            if self._owns(task_id):
                await self._finish(task_id, TaskStatus.COMPLETED)
        finally:
            if self._owns(task_id):
                del self._active[task_id]

    async def _apply_progress(self, task_id: str, event: TaskProgress) -> None:
        current = self._registry.get(task_id)
        if current is None or current.status != TaskStatus.RUNNING:
            return

        progress = max(0.0, min(1.0, current.progress + float(event.progress_delta)))
        result = event.partial_result if event.partial_result is not None else current.result
        updated = replace(current, progress=progress, result=result)
        self._registry.replace(updated)
        logger.debug("Task %s progress=%.2f", task_id, progress)

        await self._persist(updated)

    async def _finish(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        result: str | None = None,
        error: str | None = None,
    ) -> None:
        # Release first: nothing from this stream may be applied after a terminal state.
        execution = self._active.get(task_id)
        if execution is not None and execution.handle is asyncio.current_task():
            del self._active[task_id]

        current = self._registry.get(task_id)
        if current is None or current.is_terminal:
            return

        if status == TaskStatus.COMPLETED:
            updated = replace(
                current,
                status=TaskStatus.COMPLETED,
                result=result if result is not None else current.result,
                error=None,
                progress=1.0,
                completed_at=utcnow(),
            )
            logger.info("Task %s -> completed", task_id)
        else:
            updated = replace(
                current,
                status=TaskStatus.FAILED,
                result=None,
                error=error or "Task failed.",
                completed_at=utcnow(),
            )
            logger.info("Task %s -> failed: %s", task_id, updated.error)

        self._registry.replace(updated)
        await self._persist(updated)

    def _owns(self, task_id: str) -> bool:
        execution = self._active.get(task_id)
        return execution is not None and execution.handle is asyncio.current_task()

    @staticmethod
    async def _close_stream(task_id: str, stream: Any) -> None:
        aclose = getattr(stream, "aclose", None)
        if not callable(aclose):
            return
        try:
            await aclose()
        except Exception:
            logger.debug("Task %s: stream close failed", task_id, exc_info=True)

    async def _stop(self, execution: ActiveExecution) -> None:
        handle = execution.handle
        if handle.done() or handle is asyncio.current_task():
            return
        handle.cancel()
        done, _ = await asyncio.wait({handle}, timeout=self._stop_timeout)
        if not done:
            logger.warning("Task %s: stream consumer did not stop within %.1fs", execution.task_id, self._stop_timeout)

    async def _cancel_backend(self, task_id: str) -> None:
        try:
            await self._client.cancel(task_id)
        except Exception:
            logger.warning("Backend cancel failed for task %s", task_id, exc_info=True)

    # ---- gate / persistence helpers ----

    def _require(self, task_id: str) -> Task:
        task = self._registry.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _check_configured(self) -> bool:
        try:
            return bool(self._is_configured())
        except Exception:
            logger.exception("Configuration check failed")
            return False

    def _run_io(self, fn: Callable[..., T], *args: Any) -> asyncio.Future[T]:
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(self._io, fn, *args)

    async def _persist(self, task: Task) -> bool:
        if self._store is None:
            return True
        try:
            await self._run_io(self._store.put, task)
            return True
        except Exception as e:
            # The registry keeps the new state; store and memory may now diverge.
            logger.exception("Failed to persist task %s (status=%s)", task.id, task.status.value)
            self._registry.set_error(f"Failed to persist task {task.id}: {e}")
            return False

    async def _delete_from_store(self, task_id: str) -> bool:
        if self._store is None:
            return True
        try:
            await self._run_io(self._store.delete, task_id)
            return True
        except Exception as e:
            logger.exception("Failed to delete task %s from store", task_id)
            self._registry.set_error(f"Failed to delete task {task_id}: {e}")
            return False
