# src/titan_orchestrator/tasks/task_sweeper.py

from __future__ import annotations

"""
Retention sweeper.

A small polling loop that evicts old finished tasks so the registry and the
store do not grow without bound.

Only completed and failed tasks are swept. Cancelled tasks are kept
indefinitely, as are pending/running ones regardless of age.
"""

import asyncio
import contextlib
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from .task_models import Task, TaskStatus, utcnow

if TYPE_CHECKING:
    from .task_coordinator import ExecutionCoordinator

logger = logging.getLogger(__name__)

SWEEPABLE_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})
DEFAULT_RETENTION = timedelta(days=7)


def select_expired(
    tasks: Iterable[Task],
    *,
    now: datetime,
    retention: timedelta = DEFAULT_RETENTION,
) -> list[str]:
    cutoff = now - retention
    out: list[str] = []
    for t in tasks:
        if t.status not in SWEEPABLE_STATUSES:
            continue
        # No completion timestamp: age unknown, keep it.
        if t.completed_at is None:
            continue
        if t.completed_at < cutoff:
            out.append(t.id)
    return out


class RetentionSweeper:
    def __init__(
        self,
        coordinator: ExecutionCoordinator,
        *,
        retention: timedelta = DEFAULT_RETENTION,
        interval_seconds: float = 300.0,
    ) -> None:
        self._coordinator = coordinator
        self._retention = retention
        self._interval = max(0.01, float(interval_seconds))
        self._runner: asyncio.Task[None] | None = None

    @property
    def retention(self) -> timedelta:
        return self._retention

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    async def sweep(self, now: datetime | None = None) -> list[str]:
        now = now or utcnow()
        expired = select_expired(self._coordinator.tasks, now=now, retention=self._retention)
        if not expired:
            return []
        removed = await self._coordinator.evict(expired)
        if removed:
            logger.info("Retention sweep removed %d tasks older than %s", len(removed), self._retention)
        return removed

    async def run(self) -> None:
        """
        Sweep every interval_seconds until cancelled.

        A failing pass is logged and the loop keeps going.
        """
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Retention sweep failed")

    def start(self) -> None:
        if self.running:
            return
        self._runner = asyncio.create_task(self.run(), name="task-retention-sweeper")
        logger.info(
            "Retention sweeper started (interval=%.0fs, retention=%s)",
            self._interval,
            self._retention,
        )

    async def stop(self) -> None:
        runner = self._runner
        self._runner = None
        if runner is None or runner.done():
            return
        runner.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await runner
