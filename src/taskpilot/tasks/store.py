from __future__ import annotations

from uuid import uuid4

from taskpilot.errors import InvalidArgumentError, NotFoundError
from taskpilot.models import (
    PENDING,
    PRIORITIES,
    Clock,
    HistoryEntry,
    Task,
    utcnow,
)

DEFAULT_TAG = "ai-agent-task"


class TaskStore:
    """In-memory owner of every task record for one engine instance."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self.clock = clock
        self._tasks: dict[str, Task] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    @staticmethod
    def new_id() -> str:
        return f"task-{uuid4().hex[:12]}"

    @staticmethod
    def validate_content(content: object) -> str:
        if not isinstance(content, str) or not content.strip():
            raise InvalidArgumentError("Task content must be a non-empty string.")
        return content.strip()

    @staticmethod
    def validate_priority(priority: str) -> str:
        if priority not in PRIORITIES:
            raise InvalidArgumentError(
                f"Unknown priority '{priority}'. Expected one of: {', '.join(PRIORITIES)}."
            )
        return priority

    def create(
        self,
        content: str,
        *,
        priority: str = "medium",
        tags: list[str] | None = None,
        summary: str | None = None,
        agent_id: str | None = None,
    ) -> Task:
        content = self.validate_content(content)
        now = self.clock()
        task = Task(
            id=self.new_id(),
            content=content,
            status=PENDING,
            created_at=now,
            updated_at=now,
            last_accessed_at=now,
            priority=self.validate_priority(priority),
            tags=[DEFAULT_TAG, *(tag for tag in tags or [] if tag != DEFAULT_TAG)],
            summary=summary,
        )
        self.insert(task)
        self.record(task, "created", new_status=PENDING, agent_id=agent_id)
        return task

    def insert(self, task: Task) -> Task:
        if task.id in self._tasks:
            raise InvalidArgumentError(f"Task id already exists: {task.id}")
        if task.id in task.dependencies:
            raise InvalidArgumentError(f"Task {task.id} cannot depend on itself.")
        self._tasks[task.id] = task
        return task

    def get(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        if task is not None:
            task.last_accessed_at = self.clock()
        return task

    def peek(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    def list(self) -> list[Task]:
        return sorted(self._tasks.values(), key=lambda task: task.updated_at, reverse=True)

    def all(self) -> list[Task]:
        return list(self._tasks.values())

    def workflow_tasks(self, workflow_id: str) -> list[Task]:
        members = [task for task in self._tasks.values() if task.parent_workflow_id == workflow_id]
        members.sort(key=lambda task: (task.position if task.position is not None else 0))
        return members

    def dependents_of(self, task_id: str) -> list[Task]:
        return [task for task in self._tasks.values() if task_id in task.dependencies]

    def delete(self, task_id: str) -> bool:
        return self._tasks.pop(task_id, None) is not None

    def clear(self) -> None:
        self._tasks.clear()

    def load_state(self, tasks: list[Task]) -> None:
        self._tasks = {task.id: task for task in tasks}

    def record(
        self,
        task: Task,
        action: str,
        *,
        previous_status: str | None = None,
        new_status: str | None = None,
        notes: str | None = None,
        agent_id: str | None = None,
        duration: float | None = None,
    ) -> HistoryEntry:
        now = self.clock()
        entry = HistoryEntry(
            timestamp=now,
            action=action,
            previous_status=previous_status,
            new_status=new_status,
            notes=notes,
            agent_id=agent_id,
            duration=duration,
        )
        task.history.append(entry)
        task.updated_at = now
        return entry
