# src/titan_orchestrator/llm/offline.py

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from ..tasks.task_models import Task, TaskCompleted, TaskEvent, TaskProgress, TaskType


class OfflineInferenceClient:
    """
    Offline deterministic backend used for demos when no external API is configured.

    Streams a canned answer word by word so progress, cancel and retry can be
    exercised without network access.
    """

    def __init__(self, *, step_delay_seconds: float = 0.05) -> None:
        self._delay = max(0.0, float(step_delay_seconds))
        self._cancelled: set[str] = set()

    def is_configured(self) -> bool:
        return True

    async def cancel(self, task_id: str) -> None:
        self._cancelled.add(task_id)

    async def execute_stream(self, task: Task) -> AsyncIterator[TaskEvent]:
        self._cancelled.discard(task.id)
        words = self._answer(task).split(" ")
        step = 1.0 / (len(words) + 1)
        text = ""
        for word in words:
            if task.id in self._cancelled:
                return
            await asyncio.sleep(self._delay)
            text = f"{text} {word}" if text else word
            yield TaskProgress(progress_delta=step, partial_result=text)
        yield TaskCompleted(result=text)

    @staticmethod
    def _answer(task: Task) -> str:
        if task.type == TaskType.TRANSLATION:
            target = task.parameters.get("targetLanguage", "the target language")
            return f"Offline demo mode: would translate the page to {target}."
        if task.type == TaskType.PAGE_SUMMARY:
            return "Offline demo mode: no external AI backend is configured, so this is a placeholder summary."
        return (
            "Offline demo mode: no external AI backend is configured. "
            "Set TITAN_OPENAI_API_KEY to enable real responses. "
            f"Task was: {task.description}"
        )
