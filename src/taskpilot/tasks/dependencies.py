from __future__ import annotations

import logging

from taskpilot.errors import InvalidArgumentError
from taskpilot.models import BLOCKED, COMPLETED, PENDING, Task
from taskpilot.tasks.store import TaskStore

logger = logging.getLogger(__name__)


class DependencyResolver:
    def __init__(self, store: TaskStore) -> None:
        self.store = store

    def unmet_dependencies(self, task: Task) -> list[str]:
        """Dependency ids whose task still exists and is not completed."""
        unmet: list[str] = []
        for dependency_id in task.dependencies:
            dependency = self.store.peek(dependency_id)
            if dependency is not None and dependency.status != COMPLETED:
                unmet.append(dependency_id)
        return unmet

    def validate(self, task_id: str, dependencies: list[str]) -> list[str]:
        if task_id in dependencies:
            raise InvalidArgumentError(f"Task {task_id} cannot depend on itself.")
        # Walk the proposed graph; reaching task_id again means a cycle.
        stack = list(dependencies)
        seen: set[str] = set()
        while stack:
            current = stack.pop()
            if current == task_id:
                raise InvalidArgumentError(f"Dependencies for {task_id} would form a cycle.")
            if current in seen:
                continue
            seen.add(current)
            dependency = self.store.peek(current)
            if dependency is not None:
                stack.extend(dependency.dependencies)
        return list(dict.fromkeys(dependencies))

    def block(self, task: Task, unmet: list[str], *, agent_id: str | None = None) -> None:
        previous = task.status
        task.status = BLOCKED
        task.blocked_reason = f"Waiting for dependencies: {', '.join(unmet)}"
        self.store.record(
            task,
            "blocked",
            previous_status=previous,
            new_status=BLOCKED,
            notes=task.blocked_reason,
            agent_id=agent_id,
        )
        logger.info("Task %s blocked on %s", task.id, ", ".join(unmet))

    def release_dependents(self, completed_id: str) -> list[Task]:
        """Move blocked dependents of completed_id whose dependencies are all met to pending."""
        released: list[Task] = []
        for task in self.store.dependents_of(completed_id):
            if task.status != BLOCKED or self.unmet_dependencies(task):
                continue
            task.status = PENDING
            task.blocked_reason = None
            self.store.record(
                task,
                "unblocked",
                previous_status=BLOCKED,
                new_status=PENDING,
                notes=f"Unblocked after completion of dependency: {completed_id}",
                agent_id="system",
            )
            released.append(task)
        return released
