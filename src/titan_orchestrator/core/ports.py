# src/titan_orchestrator/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the orchestration core.

The coordinator depends on Protocols instead of concrete implementations.
This keeps the inference backend and storage swappable and makes testing easier.
"""

from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from ..tasks.task_models import Task, TaskEvent


class InferenceClient(Protocol):
    """
    Streaming execution backend.

    execute_stream() returns a lazy async iterator; nothing is sent to the
    backend until the coordinator starts iterating. Closing the iterator
    (task cancellation) stops further events.
    """

    def execute_stream(self, task: Task) -> AsyncIterator[TaskEvent]: ...

    async def cancel(self, task_id: str) -> None:
        """Best-effort: ask the backend to stop working on task_id."""
        ...


class TaskRepo(Protocol):
    """Durable key-value mirror of the task registry."""

    def put(self, task: Task) -> None: ...
    def delete(self, task_id: str) -> None: ...
    def list_all(self) -> list[Task]: ...


ConfigurationGate = Callable[[], bool]
# "Is the backend configured?" Consulted at the start of every execute().
