# src/titan_orchestrator/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..tasks.task_coordinator import ExecutionCoordinator
from ..tasks.task_registry import TaskRegistry
from ..tasks.task_store import TaskStore
from ..tasks.task_sweeper import RetentionSweeper
from .ports import InferenceClient
from .runtime import EventLoopThread


@dataclass
class AppState:
    # Store Settings on the state for easy access in other modules later.
    settings: Any

    runtime: EventLoopThread
    inference: InferenceClient
    registry: TaskRegistry
    coordinator: ExecutionCoordinator
    sweeper: RetentionSweeper
    store: TaskStore | None = None
