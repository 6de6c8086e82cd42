# src/titan_orchestrator/tasks/task_registry.py

from __future__ import annotations

"""
In-memory task registry.

Ordered most-recent-first, unique ids, plus the aggregate flags the UI reads
(current task, is_processing, registry-level error). Only the
ExecutionCoordinator mutates it; everyone else reads snapshots.
"""

import logging
import threading
from collections.abc import Callable, Iterable

from .task_models import Task, TaskStatus

logger = logging.getLogger(__name__)

RegistryListener = Callable[["TaskRegistry"], None]


class TaskRegistry:
    def __init__(self, tasks: Iterable[Task] = ()) -> None:
        self._lock = threading.RLock()
        self._tasks: list[Task] = []
        self._index: dict[str, int] = {}
        self._current_task_id: str | None = None
        self._error: str | None = None
        self._listeners: list[RegistryListener] = []
        for task in tasks:
            self.append(task)

    # ---- read side ----

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._index

    @property
    def tasks(self) -> list[Task]:
        with self._lock:
            return list(self._tasks)

    def get(self, task_id: str) -> Task | None:
        with self._lock:
            i = self._index.get(task_id)
            return self._tasks[i] if i is not None else None

    def with_status(self, *statuses: TaskStatus) -> list[Task]:
        with self._lock:
            return [t for t in self._tasks if t.status in statuses]

    @property
    def running_tasks(self) -> list[Task]:
        return self.with_status(TaskStatus.RUNNING)

    @property
    def completed_tasks(self) -> list[Task]:
        return self.with_status(TaskStatus.COMPLETED)

    @property
    def failed_tasks(self) -> list[Task]:
        return self.with_status(TaskStatus.FAILED)

    @property
    def is_processing(self) -> bool:
        # Always derived from current statuses, never cached.
        with self._lock:
            return any(t.status == TaskStatus.RUNNING for t in self._tasks)

    @property
    def current_task_id(self) -> str | None:
        with self._lock:
            return self._current_task_id

    @property
    def current_task(self) -> Task | None:
        with self._lock:
            if self._current_task_id is None:
                return None
            return self.get(self._current_task_id)

    @property
    def error(self) -> str | None:
        with self._lock:
            return self._error

    # ---- write side (coordinator only) ----

    def prepend(self, task: Task) -> None:
        with self._lock:
            if task.id in self._index:
                raise ValueError(f"duplicate task id: {task.id}")
            self._tasks.insert(0, task)
            self._reindex()
        self._notify()

    def append(self, task: Task) -> None:
        """Used for rehydration, where the store already yields newest first."""
        with self._lock:
            if task.id in self._index:
                raise ValueError(f"duplicate task id: {task.id}")
            self._index[task.id] = len(self._tasks)
            self._tasks.append(task)
        self._notify()

    def replace(self, task: Task) -> None:
        with self._lock:
            i = self._index.get(task.id)
            if i is None:
                raise KeyError(task.id)
            self._tasks[i] = task
        self._notify()

    def remove(self, task_id: str) -> Task | None:
        with self._lock:
            i = self._index.get(task_id)
            if i is None:
                return None
            removed = self._tasks.pop(i)
            self._reindex()
            if self._current_task_id == task_id:
                self._current_task_id = None
        self._notify()
        return removed

    def remove_many(self, task_ids: Iterable[str]) -> list[Task]:
        ids = set(task_ids)
        with self._lock:
            removed = [t for t in self._tasks if t.id in ids]
            if not removed:
                return []
            self._tasks = [t for t in self._tasks if t.id not in ids]
            self._reindex()
            if self._current_task_id in ids:
                self._current_task_id = None
        self._notify()
        return removed

    def clear(self) -> None:
        with self._lock:
            self._tasks = []
            self._index = {}
            self._current_task_id = None
        self._notify()

    def set_current(self, task_id: str | None) -> None:
        with self._lock:
            self._current_task_id = task_id
        self._notify()

    def set_error(self, error: str | None) -> None:
        with self._lock:
            self._error = error
        self._notify()

    def _reindex(self) -> None:
        self._index = {t.id: i for i, t in enumerate(self._tasks)}

    # ---- change notifications ----

    def subscribe(self, listener: RegistryListener) -> Callable[[], None]:
        """Register a callback run after every mutation. Returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(self)
            except Exception:
                logger.exception("Registry listener failed: %r", listener)
