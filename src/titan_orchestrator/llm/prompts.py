# src/titan_orchestrator/llm/prompts.py

from __future__ import annotations

import json
from typing import Any

from ..tasks.task_models import Task, TaskType

_ACTION_VOCAB = """\
- navigate: {url: "URL"}
- click: {selector: "CSS_SELECTOR"}
- type: {selector: "CSS_SELECTOR", text: "TEXT"}
- extract: {selector: "CSS_SELECTOR", attribute: "ATTRIBUTE"}
- wait: {milliseconds: NUMBER}"""


def _params_json(params: dict[str, Any]) -> str:
    return json.dumps(params, ensure_ascii=False, default=str)


def build_task_prompt(task: Task) -> str:
    """Render the user prompt for one task. Page text, when provided, comes from parameters["content"]."""
    params = dict(task.parameters)
    content = str(params.pop("content", "") or "").strip()

    if task.type == TaskType.WEB_SEARCH:
        return (
            "You are an AI browser agent. Execute this web search task:\n"
            f"Task: {task.description}\n"
            f"Parameters: {_params_json(params)}\n\n"
            "Provide a step-by-step action plan in JSON format with these actions:\n"
            f"{_ACTION_VOCAB}\n\n"
            "Return only valid JSON."
        )

    if task.type == TaskType.DATA_EXTRACTION:
        prompt = (
            "Extract data from the current webpage:\n"
            f"Task: {task.description}\n"
            f"Parameters: {_params_json(params)}\n\n"
            "Provide extraction instructions in JSON format."
        )
        return f"{prompt}\n\nPage content:\n{content}" if content else prompt

    if task.type == TaskType.FORM_FILLING:
        return (
            "Fill out a web form:\n"
            f"Task: {task.description}\n"
            f"Form data: {_params_json(params)}\n\n"
            "Provide form filling steps in JSON format."
        )

    if task.type == TaskType.PAGE_SUMMARY:
        return (
            "Summarize the following web content in a clear, concise manner:\n\n"
            f"{content or task.description}\n\n"
            "Provide a summary that captures the key points and main ideas."
        )

    if task.type == TaskType.TRANSLATION:
        target = str(params.get("targetLanguage") or "English")
        return (
            f"Translate the following content to {target}:\n\n"
            f"{content or task.description}\n\n"
            "Provide an accurate translation while maintaining the original meaning and context."
        )

    prompt = (
        "Execute this browser task:\n"
        f"Task: {task.description}\n"
        f"Parameters: {_params_json(params)}\n\n"
        "Provide action plan in JSON format."
    )
    return f"{prompt}\n\nPage content:\n{content}" if content else prompt


SYSTEM_PROMPT = (
    "You are Titan, an assistant embedded in a web browser. "
    "Follow the task instructions exactly and keep answers self-contained."
)
