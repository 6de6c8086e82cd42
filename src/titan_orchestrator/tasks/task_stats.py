# src/titan_orchestrator/tasks/task_stats.py

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from .task_models import Task, TaskStatus


@dataclass(frozen=True, slots=True)
class TaskStatistics:
    total_tasks: int
    counts: dict[str, int]
    successful_tasks: int
    failed_tasks: int
    running_tasks: int
    success_rate: float
    average_completion_time: float  # seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_tasks": self.total_tasks,
            "successful_tasks": self.successful_tasks,
            "failed_tasks": self.failed_tasks,
            "success_rate": self.success_rate,
            "running_tasks": self.running_tasks,
            "average_completion_time": self.average_completion_time,
            "counts": dict(self.counts),
        }


def compute_statistics(tasks: Iterable[Task]) -> TaskStatistics:
    """
    Read-only aggregate over a registry snapshot.

    - success_rate = completed / total (0 when there are no tasks)
    - average_completion_time = mean(completed_at - created_at) over completed
      tasks that carry a completed_at (0 when there are none)
    """
    items = list(tasks)
    counts = {s.value: 0 for s in TaskStatus}
    durations: list[float] = []

    for t in items:
        counts[t.status.value] += 1
        if t.status == TaskStatus.COMPLETED and t.duration_seconds is not None:
            durations.append(t.duration_seconds)

    total = len(items)
    completed = counts[TaskStatus.COMPLETED.value]

    return TaskStatistics(
        total_tasks=total,
        counts=counts,
        successful_tasks=completed,
        failed_tasks=counts[TaskStatus.FAILED.value],
        running_tasks=counts[TaskStatus.RUNNING.value],
        success_rate=(completed / total) if total else 0.0,
        average_completion_time=(sum(durations) / len(durations)) if durations else 0.0,
    )
