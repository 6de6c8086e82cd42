# src/titan_orchestrator/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires concrete implementations (inference client, store, registry,
  coordinator, sweeper) into AppState,
- starts and stops the background event loop that owns task state.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from ..config import get_settings
from ..core.ports import InferenceClient
from ..core.runtime import EventLoopThread
from ..core.state import AppState
from ..llm.client import InferenceOptions, OpenAIInferenceClient
from ..llm.offline import OfflineInferenceClient
from ..tasks.task_coordinator import ExecutionCoordinator
from ..tasks.task_registry import TaskRegistry
from ..tasks.task_store import TaskStore
from ..tasks.task_sweeper import RetentionSweeper

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.tasks_db_path.parent.mkdir(parents=True, exist_ok=True)
    settings.export_path.parent.mkdir(parents=True, exist_ok=True)


def create_inference_client(settings) -> InferenceClient:
    if getattr(settings, "offline_mode", False):
        logger.info("Offline mode: using the demo inference backend.")
        return OfflineInferenceClient()
    client = OpenAIInferenceClient(InferenceOptions.from_settings(settings))
    if not client.is_configured():
        logger.warning("Inference backend is not configured; tasks will be refused until an API key is set.")
    return client


def create_initial_state(*, settings=None) -> AppState:
    """
    Create AppState from the provided settings (nothing is started yet).

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    inference = create_inference_client(settings)
    store = TaskStore(settings.tasks_db_path) if settings.save_history else None
    registry = TaskRegistry()
    coordinator = ExecutionCoordinator(
        registry,
        inference,
        store,
        is_configured=getattr(inference, "is_configured", None),
    )
    sweeper = RetentionSweeper(
        coordinator,
        retention=timedelta(days=settings.retention_days),
        interval_seconds=settings.sweep_interval_seconds,
    )

    return AppState(
        settings=settings,
        runtime=EventLoopThread(),
        inference=inference,
        registry=registry,
        coordinator=coordinator,
        sweeper=sweeper,
        store=store,
    )


async def _start_services(state: AppState) -> int:
    loaded = await state.coordinator.load()
    state.sweeper.start()
    return loaded


async def _stop_services(state: AppState) -> None:
    await state.sweeper.stop()
    await state.coordinator.shutdown()


def start_state(state: AppState) -> None:
    """Start the loop thread, rehydrate tasks from the store, start the retention sweeper."""
    state.runtime.start()
    loaded = state.runtime.submit(_start_services(state))
    logger.info("Task engine ready (%d tasks loaded).", loaded)


def stop_state(state: AppState) -> None:
    """Best-effort shutdown (no exceptions should escape)."""
    if not state.runtime.running:
        return
    try:
        state.runtime.submit(_stop_services(state), timeout=15.0)
    except Exception:
        logger.exception("Failed to stop task services cleanly.")
    state.runtime.stop()
