# src/titan_orchestrator/connectors/console_connector.py

from __future__ import annotations

import logging
import threading
from datetime import datetime

from ..cli.commands import format_task_detail, registry as command_registry, short_id
from ..core.state import AppState
from ..llm.client import friendly_llm_error_message
from ..tasks.task_models import TaskStatus, TaskType
from ..tasks.task_registry import TaskRegistry

logger = logging.getLogger(__name__)


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}", flush=True)


class TaskStatusPrinter:
    """
    Registry listener that prints a line whenever a task changes status.

    Runs on the event loop thread; printing is the only side effect.
    """

    def __init__(self) -> None:
        self._seen: dict[str, TaskStatus] = {}
        self._lock = threading.Lock()

    def __call__(self, registry: TaskRegistry) -> None:
        changed = []
        with self._lock:
            current = {t.id: t for t in registry.tasks}
            for task_id, task in current.items():
                if self._seen.get(task_id) != task.status:
                    self._seen[task_id] = task.status
                    changed.append(task)
            for task_id in list(self._seen):
                if task_id not in current:
                    del self._seen[task_id]

        for task in changed:
            if task.status == TaskStatus.COMPLETED:
                _print_ts(f"[task {short_id(task.id)}] completed:\n{task.result or '(no output)'}\n")
            elif task.status == TaskStatus.FAILED:
                _print_ts(f"[task {short_id(task.id)}] failed: {friendly_llm_error_message(task.error or '')}")
            else:
                _print_ts(f"[task {short_id(task.id)}] {task.status.value}")


def run_console_loop(state: AppState) -> None:
    logger.info("Console connector started.")
    _print_ts("[CONSOLE] Type a prompt to run it as a task. Use /help for commands. Use /exit to quit.\n")

    printer = TaskStatusPrinter()
    printer(state.registry)  # prime with tasks loaded from the store
    unsubscribe = state.registry.subscribe(printer)

    def emit(text: str) -> None:
        _print_ts(text)

    try:
        while True:
            try:
                user_input = input(">>> ").strip()
            except EOFError:
                logger.info("Console EOF received, exiting.")
                break
            except KeyboardInterrupt:
                logger.info("Console KeyboardInterrupt, exiting.")
                print()
                break

            if not user_input:
                continue

            if user_input.lower() in ("/exit", "/quit"):
                logger.info("Console exit command received.")
                break

            try:
                cmd_response = command_registry.handle(state, user_input, emit=emit)
            except Exception:
                logger.exception("Command handler crashed.")
                cmd_response = "Internal error while handling a command."

            if cmd_response is not None:
                _print_ts(cmd_response)
                continue

            # Free-form prompt: run it as a custom task; results arrive via the printer.
            try:
                task = state.runtime.submit(state.coordinator.create_task(TaskType.CUSTOM, user_input, {}))
            except Exception:
                logger.exception("Task creation failed.")
                _print_ts("Internal error while creating a task.")
                continue

            if task.status == TaskStatus.PENDING and state.registry.error:
                _print_ts(f"[task {short_id(task.id)}] not started: {state.registry.error}")
            elif task.is_terminal:
                _print_ts(format_task_detail(task))
    finally:
        unsubscribe()

    logger.info("Console connector finished.")
