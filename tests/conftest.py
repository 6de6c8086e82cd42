# tests/conftest.py

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from types import SimpleNamespace

import pytest

from titan_orchestrator.tasks.task_coordinator import ExecutionCoordinator
from titan_orchestrator.tasks.task_registry import TaskRegistry
from titan_orchestrator.tasks.task_store import TaskStore

from .fakes import FakeInferenceClient, FakeTaskRepo


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with bootstrap and the inference client.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated from the developer's .env.
    """
    return SimpleNamespace(
        app_name="titan-test",
        log_level="DEBUG",
        console_enabled=False,
        offline_mode=True,
        save_history=True,
        openai_api_key=None,
        openai_base_url="https://example.invalid/v1",
        llm_models=["model-a", "model-b"],
        temperature=0.2,
        max_tokens=256,
        first_token_timeout_seconds=1.0,
        read_timeout_seconds=2.0,
        connect_timeout_seconds=1.0,
        data_dir=tmp_path,
        tasks_db_path=tmp_path / "tasks.sqlite3",
        export_path=tmp_path / "export" / "tasks.json",
        retention_days=7,
        sweep_interval_seconds=300.0,
        extra_headers={},
    )


@pytest.fixture()
def task_store(tmp_path: Path) -> TaskStore:
    return TaskStore(tmp_path / "tasks.sqlite3")


@pytest.fixture()
def repo() -> FakeTaskRepo:
    return FakeTaskRepo()


@pytest.fixture()
def registry() -> TaskRegistry:
    return TaskRegistry()


@pytest.fixture()
def client() -> FakeInferenceClient:
    return FakeInferenceClient()


@pytest.fixture()
def configured() -> dict[str, bool]:
    """Mutable flag behind the coordinator's configuration gate."""
    return {"ok": True}


@pytest.fixture()
async def coordinator(
    registry: TaskRegistry,
    client: FakeInferenceClient,
    repo: FakeTaskRepo,
    configured: dict[str, bool],
) -> AsyncIterator[ExecutionCoordinator]:
    coord = ExecutionCoordinator(
        registry,
        client,
        repo,
        is_configured=lambda: configured["ok"],
        stop_timeout_seconds=1.0,
    )
    yield coord
    await coord.shutdown()
