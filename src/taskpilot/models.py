from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

TaskStatus = Literal[
    "pending",
    "in_progress",
    "completed",
    "blocked",
    "cancelled",
    "paused",
    "awaiting_approval",
]
Priority = Literal["low", "medium", "high", "critical"]
SnapshotKind = Literal[
    "user_prompt",
    "task_result",
    "ai_guidance",
    "workflow_progress",
    "checkpoint",
]

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
BLOCKED = "blocked"
CANCELLED = "cancelled"
PAUSED = "paused"
AWAITING_APPROVAL = "awaiting_approval"

TASK_STATUSES = (
    PENDING,
    IN_PROGRESS,
    COMPLETED,
    BLOCKED,
    CANCELLED,
    PAUSED,
    AWAITING_APPROVAL,
)
TERMINAL_STATUSES = frozenset({COMPLETED, CANCELLED})
PRIORITIES = ("low", "medium", "high", "critical")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def parse_datetime(value: Any, default: datetime | None = None) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not value:
        return default
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def estimate_tokens(content: str) -> int:
    """Four characters per token, rounded up."""
    return math.ceil(len(content) / 4)


@dataclass(slots=True, frozen=True)
class HistoryEntry:
    timestamp: datetime
    action: str
    previous_status: str | None = None
    new_status: str | None = None
    notes: str | None = None
    agent_id: str | None = None
    duration: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": isoformat(self.timestamp),
            "action": self.action,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "notes": self.notes,
            "agent_id": self.agent_id,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> HistoryEntry:
        return cls(
            timestamp=parse_datetime(payload["timestamp"]),
            action=str(payload["action"]),
            previous_status=payload.get("previous_status"),
            new_status=payload.get("new_status"),
            notes=payload.get("notes"),
            agent_id=payload.get("agent_id"),
            duration=payload.get("duration"),
        )


@dataclass(slots=True)
class SubTask:
    id: str
    content: str
    status: str = PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "status": self.status,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SubTask:
        created_at = parse_datetime(payload.get("created_at"), utcnow())
        return cls(
            id=str(payload["id"]),
            content=str(payload["content"]),
            status=str(payload.get("status", PENDING)),
            created_at=created_at,
            updated_at=parse_datetime(payload.get("updated_at"), created_at),
        )


@dataclass(slots=True)
class Task:
    id: str
    content: str
    status: str = PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_accessed_at: datetime = field(default_factory=utcnow)
    priority: str = "medium"
    tags: list[str] = field(default_factory=list)
    summary: str | None = None
    assignee: str | None = None
    dependencies: list[str] = field(default_factory=list)
    subtasks: list[SubTask] = field(default_factory=list)
    history: list[HistoryEntry] = field(default_factory=list)
    parent_workflow_id: str | None = None
    position: int | None = None
    approval_required: bool = False
    parent_objective: str | None = None
    ai_instructions: str | None = None
    next_step_guidance: str | None = None
    expected_output: str | None = None
    validation_criteria: list[str] = field(default_factory=list)
    recovery_instructions: str | None = None
    context_links: list[str] = field(default_factory=list)
    failure_recovery_hints: list[str] = field(default_factory=list)
    estimated_time: float | None = None
    actual_time: float | None = None
    blocked_reason: str | None = None
    paused_from: str | None = None
    context_snapshot: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def subtask(self, subtask_id: str) -> SubTask | None:
        for item in self.subtasks:
            if item.id == subtask_id:
                return item
        return None

    def subtask_completion_ratio(self) -> float | None:
        if not self.subtasks:
            return None
        done = sum(1 for item in self.subtasks if item.status == COMPLETED)
        return done / len(self.subtasks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "status": self.status,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
            "last_accessed_at": isoformat(self.last_accessed_at),
            "priority": self.priority,
            "tags": list(self.tags),
            "summary": self.summary,
            "assignee": self.assignee,
            "dependencies": list(self.dependencies),
            "subtasks": [item.to_dict() for item in self.subtasks],
            "history": [entry.to_dict() for entry in self.history],
            "parent_workflow_id": self.parent_workflow_id,
            "position": self.position,
            "approval_required": self.approval_required,
            "parent_objective": self.parent_objective,
            "ai_instructions": self.ai_instructions,
            "next_step_guidance": self.next_step_guidance,
            "expected_output": self.expected_output,
            "validation_criteria": list(self.validation_criteria),
            "recovery_instructions": self.recovery_instructions,
            "context_links": list(self.context_links),
            "failure_recovery_hints": list(self.failure_recovery_hints),
            "estimated_time": self.estimated_time,
            "actual_time": self.actual_time,
            "blocked_reason": self.blocked_reason,
            "paused_from": self.paused_from,
            "context_snapshot": self.context_snapshot,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task | None:
        """Rebuild a task from its persisted form; malformed records yield None."""
        try:
            created_at = parse_datetime(payload.get("created_at"), utcnow())
            updated_at = parse_datetime(payload.get("updated_at"), created_at)
            position = payload.get("position")
            return cls(
                id=str(payload["id"]),
                content=str(payload["content"]),
                status=str(payload.get("status", PENDING)),
                created_at=created_at,
                updated_at=updated_at,
                last_accessed_at=parse_datetime(payload.get("last_accessed_at"), updated_at),
                priority=str(payload.get("priority") or "medium"),
                tags=list(payload.get("tags") or []),
                summary=payload.get("summary"),
                assignee=payload.get("assignee"),
                dependencies=list(payload.get("dependencies") or []),
                subtasks=[SubTask.from_dict(item) for item in payload.get("subtasks") or []],
                history=[HistoryEntry.from_dict(item) for item in payload.get("history") or []],
                parent_workflow_id=payload.get("parent_workflow_id"),
                position=int(position) if position is not None else None,
                approval_required=bool(payload.get("approval_required", False)),
                parent_objective=payload.get("parent_objective"),
                ai_instructions=payload.get("ai_instructions"),
                next_step_guidance=payload.get("next_step_guidance"),
                expected_output=payload.get("expected_output"),
                validation_criteria=list(payload.get("validation_criteria") or []),
                recovery_instructions=payload.get("recovery_instructions"),
                context_links=list(payload.get("context_links") or []),
                failure_recovery_hints=list(payload.get("failure_recovery_hints") or []),
                estimated_time=payload.get("estimated_time"),
                actual_time=payload.get("actual_time"),
                blocked_reason=payload.get("blocked_reason"),
                paused_from=payload.get("paused_from"),
                context_snapshot=payload.get("context_snapshot"),
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass(slots=True)
class ContextSnapshot:
    kind: str
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    token_count: int | None = None
    task_id: str | None = None
    workflow_id: str | None = None
    step_number: int | None = None
    priority: str = "medium"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "content": self.content,
            "timestamp": isoformat(self.timestamp),
            "token_count": self.token_count,
            "task_id": self.task_id,
            "workflow_id": self.workflow_id,
            "step_number": self.step_number,
            "priority": self.priority,
        }


@dataclass(slots=True)
class CompressedContext:
    original_tokens: int
    compressed_tokens: int
    ratio: float
    summary: str
    key_points: list[str]
    retained: list[ContextSnapshot]
    compressed_at: datetime
    event_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_tokens": self.original_tokens,
            "compressed_tokens": self.compressed_tokens,
            "ratio": self.ratio,
            "summary": self.summary,
            "key_points": list(self.key_points),
            "retained": [item.to_dict() for item in self.retained],
            "compressed_at": isoformat(self.compressed_at),
            "event_count": self.event_count,
        }


@dataclass(slots=True)
class TaskState:
    session_id: str
    tasks: list[Task] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)
    auto_progression_enabled: bool = False
    current_workflow_id: str | None = None
    context_description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "tasks": [task.to_dict() for task in self.tasks],
            "created_at": isoformat(self.created_at),
            "last_updated": isoformat(self.last_updated),
            "auto_progression_enabled": self.auto_progression_enabled,
            "current_workflow_id": self.current_workflow_id,
            "context_description": self.context_description,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskState:
        tasks: list[Task] = []
        for item in payload.get("tasks") or []:
            if not isinstance(item, dict):
                continue
            task = Task.from_dict(item)
            if task is not None:
                tasks.append(task)
        created_at = parse_datetime(payload.get("created_at"), utcnow())
        return cls(
            session_id=str(payload.get("session_id") or ""),
            tasks=tasks,
            created_at=created_at,
            last_updated=parse_datetime(payload.get("last_updated"), created_at),
            auto_progression_enabled=bool(payload.get("auto_progression_enabled", False)),
            current_workflow_id=payload.get("current_workflow_id"),
            context_description=str(payload.get("context_description") or ""),
        )
