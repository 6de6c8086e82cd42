# src/titan_orchestrator/tasks/task_api.py

from __future__ import annotations

"""
Convenience helpers for the common browser-assistant jobs.

Thin wrappers over ExecutionCoordinator.create_task() plus JSON export.
"""

import contextlib
import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .task_coordinator import ExecutionCoordinator
from .task_models import Task, TaskType, utcnow

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0.0"


async def search_web(coordinator: ExecutionCoordinator, query: str) -> Task:
    return await coordinator.create_task(
        TaskType.WEB_SEARCH,
        f"Search the web for: {query}",
        {"query": query},
    )


async def extract_data(
    coordinator: ExecutionCoordinator,
    selector: str,
    *,
    attribute: str | None = None,
) -> Task:
    return await coordinator.create_task(
        TaskType.DATA_EXTRACTION,
        "Extract data from current page",
        {"selector": selector, "attribute": attribute or "textContent"},
    )


async def fill_form(coordinator: ExecutionCoordinator, form_data: Mapping[str, str]) -> Task:
    return await coordinator.create_task(
        TaskType.FORM_FILLING,
        "Fill out form with provided data",
        {"formData": dict(form_data)},
    )


async def summarize_page(coordinator: ExecutionCoordinator, content: str | None = None) -> Task:
    params: dict[str, Any] = {"content": content} if content else {}
    return await coordinator.create_task(
        TaskType.PAGE_SUMMARY,
        "Summarize the current page content",
        params,
    )


async def translate_page(
    coordinator: ExecutionCoordinator,
    target_language: str,
    content: str | None = None,
) -> Task:
    params: dict[str, Any] = {"targetLanguage": target_language}
    if content:
        params["content"] = content
    return await coordinator.create_task(
        TaskType.TRANSLATION,
        f"Translate page to {target_language}",
        params,
    )


async def analyze_accessibility(coordinator: ExecutionCoordinator) -> Task:
    return await coordinator.create_task(
        TaskType.CUSTOM,
        "Analyze page accessibility",
        {"action": "accessibility_analysis"},
    )


async def extract_structured_data(coordinator: ExecutionCoordinator) -> Task:
    return await coordinator.create_task(
        TaskType.DATA_EXTRACTION,
        "Extract structured data from page",
        {"action": "structured_data"},
    )


async def generate_page_insights(coordinator: ExecutionCoordinator) -> Task:
    return await coordinator.create_task(
        TaskType.CUSTOM,
        "Generate insights about this page",
        {"action": "page_insights"},
    )


def build_export(tasks: list[Task]) -> dict[str, Any]:
    return {
        "tasks": [t.to_dict() for t in tasks],
        "exported_at": utcnow().isoformat(),
        "version": EXPORT_VERSION,
    }


def export_tasks(coordinator: ExecutionCoordinator, path: str | Path) -> int:
    """Write all tasks as JSON (tmp file + atomic replace). Returns the number exported."""
    path = Path(path)
    tasks = coordinator.tasks
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(build_export(tasks), ensure_ascii=False, indent=2), "utf-8")
    os.replace(tmp, path)
    with contextlib.suppress(OSError):
        # Results may contain page content; keep the file private on disk.
        os.chmod(path, 0o600)
    logger.info("Exported %d tasks to %s", len(tasks), path)
    return len(tasks)
