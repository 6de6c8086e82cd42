# src/titan_orchestrator/tasks/task_models.py

from __future__ import annotations

import copy
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any


class TaskType(StrEnum):
    WEB_SEARCH = "web_search"
    DATA_EXTRACTION = "data_extraction"
    FORM_FILLING = "form_filling"
    PAGE_SUMMARY = "page_summary"
    TRANSLATION = "translation"
    CUSTOM = "custom"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskType:
        """Decode a stored type; legacy/unknown values fall back to CUSTOM."""
        if not raw:
            return cls.CUSTOM
        # Older records used camelCase names ("webSearch", "contentSummary").
        legacy = {
            "webSearch": cls.WEB_SEARCH,
            "dataExtraction": cls.DATA_EXTRACTION,
            "formFilling": cls.FORM_FILLING,
            "pageSummary": cls.PAGE_SUMMARY,
            "contentSummary": cls.PAGE_SUMMARY,
        }
        if raw in legacy:
            return legacy[raw]
        try:
            return cls(raw)
        except ValueError:
            return cls.CUSTOM


class TaskStatus(StrEnum):
    """
    Task lifecycle status.

    Notes:
    - "paused" is reserved; no transition currently leads into it.
    - completed / failed / cancelled are terminal until an explicit retry.
    """

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.PENDING
        try:
            return cls(raw)
        except ValueError:
            return cls.PENDING


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})
RETRYABLE_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.CANCELLED})


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_task_id() -> str:
    return uuid.uuid4().hex


def freeze_parameters(parameters: Mapping[str, Any] | None) -> Mapping[str, Any]:
    """Deep-copy caller parameters and expose them read-only."""
    return MappingProxyType(copy.deepcopy(dict(parameters or {})))


def parse_timestamp(raw: Any) -> datetime | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        dt = raw
    else:
        dt = datetime.fromisoformat(str(raw))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


@dataclass(frozen=True, slots=True)
class Task:
    """
    Immutable snapshot of one AI task.

    The coordinator produces a new snapshot (dataclasses.replace) for every
    transition, so objects handed to callers never change under them.
    """

    id: str
    type: TaskType
    description: str
    parameters: Mapping[str, Any]
    status: TaskStatus = TaskStatus.PENDING
    progress: float = 0.0
    result: str | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @classmethod
    def new(
        cls,
        type: TaskType,
        description: str,
        parameters: Mapping[str, Any] | None = None,
    ) -> Task:
        if not description or not description.strip():
            raise ValueError("description is required")
        return cls(
            id=new_task_id(),
            type=TaskType(type),
            description=description.strip(),
            parameters=freeze_parameters(parameters),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.created_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "description": self.description,
            "parameters": copy.deepcopy(dict(self.parameters)),
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "createdAt": self.created_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "progress": self.progress,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Task:
        task_id = str(data.get("id") or "").strip()
        if not task_id:
            raise ValueError("task record has no id")
        params = data.get("parameters")
        return cls(
            id=task_id,
            type=TaskType.from_db(data.get("type")),
            description=str(data.get("description") or ""),
            parameters=freeze_parameters(params if isinstance(params, Mapping) else {}),
            status=TaskStatus.from_db(data.get("status")),
            progress=float(data.get("progress") or 0.0),
            result=data.get("result"),
            error=data.get("error"),
            created_at=parse_timestamp(data.get("createdAt")) or utcnow(),
            completed_at=parse_timestamp(data.get("completedAt")),
        )


# ---- stream events ----


@dataclass(frozen=True, slots=True)
class TaskProgress:
    """Intermediate update: progress grows by `progress_delta`; partial text replaces `result`."""

    progress_delta: float = 0.0
    partial_result: str | None = None


@dataclass(frozen=True, slots=True)
class TaskCompleted:
    result: str


@dataclass(frozen=True, slots=True)
class TaskFailed:
    message: str


TaskEvent = TaskProgress | TaskCompleted | TaskFailed
