# src/titan_orchestrator/cli/commands.py

from __future__ import annotations

import logging
from collections.abc import Callable

from ..core.state import AppState
from ..tasks import task_api
from ..tasks.task_coordinator import TaskNotFoundError
from ..tasks.task_models import Task, TaskStatus, TaskType

CommandEmitter = Callable[[str], None]
CommandHandler = Callable[[AppState, list[str], CommandEmitter | None], str]

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by the console connector (/help, /task, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(self, state: AppState, line: str, emit: CommandEmitter | None = None) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        return handler(state, args, emit)

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


# ---- formatting helpers ----


def short_id(task_id: str) -> str:
    return task_id[:8]


def format_task_line(task: Task) -> str:
    pct = int(round(task.progress * 100))
    return f"{short_id(task.id)}  {task.status.value:<9} {pct:>3}%  [{task.type.value}] {task.description}"


def format_task_detail(task: Task) -> str:
    lines = [
        f"Task {task.id}",
        f"  Type: {task.type.value}",
        f"  Description: {task.description}",
        f"  Status: {task.status.value} ({int(round(task.progress * 100))}%)",
        f"  Created: {task.created_at.isoformat(timespec='seconds')}",
    ]
    if task.completed_at is not None:
        lines.append(f"  Finished: {task.completed_at.isoformat(timespec='seconds')}")
    if task.parameters:
        params = ", ".join(f"{k}={v}" for k, v in task.parameters.items())
        lines.append(f"  Parameters: {params}")
    if task.error:
        lines.append(f"  Error: {task.error}")
    if task.result:
        lines.append(f"  Result:\n{task.result}")
    return "\n".join(lines)


def resolve_task_id(state: AppState, prefix: str) -> str:
    """Accept a full id or a unique prefix (as printed by /list)."""
    prefix = prefix.strip().lower()
    if not prefix:
        raise TaskNotFoundError(prefix)
    matches = [t.id for t in state.registry.tasks if t.id.startswith(prefix)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise TaskNotFoundError(prefix)
    raise ValueError(f"Ambiguous task id prefix: {prefix} ({len(matches)} matches)")


def _created_reply(state: AppState, task: Task) -> str:
    if task.status == TaskStatus.PENDING and state.registry.error:
        return f"Task {short_id(task.id)} created but not started: {state.registry.error}"
    return f"Task {short_id(task.id)} {task.status.value}: {task.description}"


def _parse_params(args: list[str]) -> tuple[list[str], dict[str, str]]:
    words: list[str] = []
    params: dict[str, str] = {}
    for a in args:
        if "=" in a and not a.startswith("="):
            k, v = a.split("=", 1)
            params[k] = v
        else:
            words.append(a)
    return words, params


# ---- handlers ----


def cmd_help(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    return registry.build_help()


def cmd_status(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    opts = getattr(state.inference, "options", None)
    models = ", ".join(getattr(opts, "models", []) or []) or "(offline)"
    configured = state.coordinator.refresh_configuration()
    return (
        "Status:\n"
        f"  Backend configured: {'yes' if configured else 'no'}\n"
        f"  Models (priority -> fallback): {models}\n"
        f"  Processing: {'yes' if state.registry.is_processing else 'no'}\n"
        f"  Tasks: {len(state.registry)} (running: {len(state.registry.running_tasks)})\n"
        f"  Retention: {state.sweeper.retention.days} days"
        + (f"\n  Error: {state.registry.error}" if state.registry.error else "")
    )


def cmd_task(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /task <type> <description...> [key=value ...]
    """
    types = ", ".join(t.value for t in TaskType)
    if len(args) < 2:
        return f"Usage: /task <type> <description> [key=value ...]. Types: {types}"
    try:
        task_type = TaskType(args[0].lower())
    except ValueError:
        return f"Unknown task type: {args[0]}. Types: {types}"

    words, params = _parse_params(args[1:])
    description = " ".join(words).strip()
    if not description:
        return "Task description is empty."

    task = state.runtime.submit(state.coordinator.create_task(task_type, description, params))
    return _created_reply(state, task)


def cmd_search(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not args:
        return "Usage: /search <query>"
    task = state.runtime.submit(task_api.search_web(state.coordinator, " ".join(args)))
    return _created_reply(state, task)


def cmd_summarize(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    content = " ".join(args).strip() or None
    task = state.runtime.submit(task_api.summarize_page(state.coordinator, content))
    return _created_reply(state, task)


def cmd_translate(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not args:
        return "Usage: /translate <language> [text]"
    content = " ".join(args[1:]).strip() or None
    task = state.runtime.submit(task_api.translate_page(state.coordinator, args[0], content))
    return _created_reply(state, task)


def cmd_list(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /list          -> all tasks (newest first)
    /list <status> -> only tasks with that status
    """
    tasks = state.registry.tasks
    if args:
        try:
            status = TaskStatus(args[0].lower())
        except ValueError:
            return f"Unknown status: {args[0]}. Statuses: {', '.join(s.value for s in TaskStatus)}"
        tasks = [t for t in tasks if t.status == status]
    if not tasks:
        return "No tasks."
    return "\n".join(format_task_line(t) for t in tasks)


def _with_task(state: AppState, args: list[str], usage: str, action: Callable[[str], str]) -> str:
    if not args:
        return usage
    try:
        task_id = resolve_task_id(state, args[0])
        return action(task_id)
    except TaskNotFoundError:
        return f"No task with id {args[0]}."
    except ValueError as e:
        return str(e)


def cmd_show(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    def action(task_id: str) -> str:
        task = state.registry.get(task_id)
        return format_task_detail(task) if task else f"No task with id {task_id}."

    return _with_task(state, args, "Usage: /show <id>", action)


def cmd_cancel(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    def action(task_id: str) -> str:
        state.runtime.submit(state.coordinator.cancel(task_id))
        task = state.registry.get(task_id)
        return f"Task {short_id(task_id)} is {task.status.value if task else 'gone'}."

    return _with_task(state, args, "Usage: /cancel <id>", action)


def cmd_retry(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    def action(task_id: str) -> str:
        before = state.registry.get(task_id)
        if before is not None and before.status not in (TaskStatus.FAILED, TaskStatus.CANCELLED):
            return f"Task {short_id(task_id)} is {before.status.value}; only failed or cancelled tasks can be retried."
        state.runtime.submit(state.coordinator.retry(task_id))
        task = state.registry.get(task_id)
        return _created_reply(state, task) if task else f"Task {short_id(task_id)} is gone."

    return _with_task(state, args, "Usage: /retry <id>", action)


def cmd_run(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /run <id> -> start a pending task (e.g. one created before the API key was set)
    """

    def action(task_id: str) -> str:
        before = state.registry.get(task_id)
        if before is not None and before.status != TaskStatus.PENDING:
            return f"Task {short_id(task_id)} is {before.status.value}; only pending tasks can be started."
        state.runtime.submit(state.coordinator.execute(task_id))
        task = state.registry.get(task_id)
        if task is None:
            return f"Task {short_id(task_id)} is gone."
        if task.status == TaskStatus.PENDING and state.registry.error:
            return f"Task {short_id(task_id)} not started: {state.registry.error}"
        return f"Task {short_id(task_id)} {task.status.value}: {task.description}"

    return _with_task(state, args, "Usage: /run <id>", action)


def cmd_delete(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    def action(task_id: str) -> str:
        state.runtime.submit(state.coordinator.delete_task(task_id))
        return f"Task {short_id(task_id)} deleted."

    return _with_task(state, args, "Usage: /delete <id>", action)


def cmd_clear(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    n = len(state.registry)
    state.runtime.submit(state.coordinator.clear_all())
    return f"Cleared {n} tasks."


def cmd_stats(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    s = state.coordinator.get_statistics()
    counts = ", ".join(f"{k}={v}" for k, v in s.counts.items() if v)
    return (
        "Statistics:\n"
        f"  Total: {s.total_tasks} ({counts or 'none'})\n"
        f"  Success rate: {s.success_rate * 100:.1f}%\n"
        f"  Running: {s.running_tasks}\n"
        f"  Average completion time: {s.average_completion_time:.2f}s"
    )


def cmd_export(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    path = args[0] if args else state.settings.export_path
    try:
        n = task_api.export_tasks(state.coordinator, path)
    except OSError as e:
        logger.exception("Task export failed")
        return f"Export failed: {e}"
    return f"Exported {n} tasks to {path}."


def cmd_set(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /set model <name>
    /set temperature <0..2>
    /set max_tokens <n>
    """
    update = getattr(state.inference, "update_option", None)
    if update is None:
        return "The current backend has no adjustable options."
    if len(args) < 2:
        return "Usage: /set <model|models|temperature|max_tokens|base_url> <value>"
    try:
        update(args[0], " ".join(args[1:]))
    except ValueError as e:
        return f"Invalid setting: {e}"
    return f"{args[0]} updated."


def cmd_key(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    set_key = getattr(state.inference, "set_api_key", None)
    if set_key is None:
        return "The current backend does not use an API key."
    if not args:
        return "Usage: /key <api-key>  (use /key - to clear)"
    set_key(None if args[0] == "-" else args[0])
    configured = state.coordinator.refresh_configuration()
    return "API key saved." if configured else "API key cleared; backend is not configured."


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show backend and engine status.")
registry.register("task", cmd_task, help_text="Create a task: /task <type> <description> [key=value ...].")
registry.register("search", cmd_search, help_text="Web search task: /search <query>.")
registry.register("summarize", cmd_summarize, help_text="Summarize page content: /summarize [text].")
registry.register("translate", cmd_translate, help_text="Translate: /translate <language> [text].")
registry.register("list", cmd_list, help_text="List tasks: /list [status].", aliases=["ls"])
registry.register("show", cmd_show, help_text="Show one task: /show <id>.")
registry.register("cancel", cmd_cancel, help_text="Cancel a pending/running task: /cancel <id>.")
registry.register("run", cmd_run, help_text="Start a pending task: /run <id>.")
registry.register("retry", cmd_retry, help_text="Retry a failed/cancelled task: /retry <id>.")
registry.register("delete", cmd_delete, help_text="Delete a task: /delete <id>.", aliases=["rm"])
registry.register("clear", cmd_clear, help_text="Cancel and delete all tasks.")
registry.register("stats", cmd_stats, help_text="Task statistics.")
registry.register("export", cmd_export, help_text="Export tasks as JSON: /export [path].")
registry.register("set", cmd_set, help_text="Change a backend option: /set model gpt-4o.")
registry.register("key", cmd_key, help_text="Set the backend API key: /key <api-key>.")
