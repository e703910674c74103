from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from taskpilot.models import BLOCKED, CANCELLED, COMPLETED, Clock, Task, utcnow

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]
WorkflowTasks = Callable[[str], list[Task]]


class WorkflowMonitor:
    """One cancellable polling task per workflow; each stops itself once its workflow is done."""

    def __init__(
        self,
        workflow_tasks: WorkflowTasks,
        *,
        event_hook: EventHook | None = None,
        interval_seconds: float = 5.0,
        blocked_threshold_minutes: float = 30.0,
        clock: Clock = utcnow,
    ) -> None:
        self.workflow_tasks = workflow_tasks
        self.event_hook = event_hook
        self.interval_seconds = interval_seconds
        self.blocked_threshold_minutes = blocked_threshold_minutes
        self.clock = clock
        self._monitors: dict[str, asyncio.Task[None]] = {}

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def active(self) -> list[str]:
        return [workflow_id for workflow_id, task in self._monitors.items() if not task.done()]

    def start(self, workflow_id: str) -> bool:
        existing = self._monitors.get(workflow_id)
        if existing is not None and not existing.done():
            return False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; monitor for %s not started", workflow_id)
            return False
        self._monitors[workflow_id] = loop.create_task(
            self._run(workflow_id), name=f"workflow-monitor-{workflow_id}"
        )
        return True

    def check(self, workflow_id: str) -> bool:
        """Inspect the workflow once. Returns True when monitoring should stop."""
        tasks = self.workflow_tasks(workflow_id)
        if not tasks:
            return True

        now = self.clock()
        for task in tasks:
            if task.status != BLOCKED:
                continue
            blocked_minutes = (now - task.updated_at).total_seconds() / 60
            if blocked_minutes > self.blocked_threshold_minutes:
                logger.warning(
                    "Workflow %s: task %s blocked for %d minutes",
                    workflow_id,
                    task.id,
                    round(blocked_minutes),
                )
                self._emit(
                    {
                        "event": "workflow_intervention_suggested",
                        "workflow_id": workflow_id,
                        "task_id": task.id,
                        "blocked_minutes": round(blocked_minutes),
                        "blocked_reason": task.blocked_reason,
                    }
                )

        if not all(task.is_terminal for task in tasks):
            return False

        actual = sum(task.actual_time or 0 for task in tasks)
        estimated = sum(task.estimated_time or 0 for task in tasks)
        efficiency = round(estimated / actual * 100) if actual > 0 else 0
        self._emit(
            {
                "event": "workflow_monitor_completed",
                "workflow_id": workflow_id,
                "completed": sum(1 for task in tasks if task.status == COMPLETED),
                "cancelled": sum(1 for task in tasks if task.status == CANCELLED),
                "actual_minutes": actual,
                "estimated_minutes": estimated,
                "efficiency_percent": efficiency,
            }
        )
        logger.info(
            "Workflow %s finished: %.0f min actual, %.0f min estimated",
            workflow_id,
            actual,
            estimated,
        )
        return True

    async def _run(self, workflow_id: str) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                if self.check(workflow_id):
                    return
        finally:
            if self._monitors.get(workflow_id) is asyncio.current_task():
                del self._monitors[workflow_id]

    def stop(self, workflow_id: str) -> None:
        task = self._monitors.pop(workflow_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def shutdown(self) -> None:
        tasks = list(self._monitors.values())
        self._monitors.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
