from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Mapping
from datetime import timedelta
from typing import Any
from uuid import uuid4

from taskpilot.analysis import TaskAnalysis, TaskAnalyzer
from taskpilot.backends.base import LanguageModelBackend
from taskpilot.config import TaskpilotConfig
from taskpilot.context.accumulator import ContextAccumulator
from taskpilot.context.compressor import ContextCompressor
from taskpilot.errors import InvalidArgumentError, InvalidTransitionError, NotFoundError, TaskpilotError
from taskpilot.models import (
    AWAITING_APPROVAL,
    BLOCKED,
    CANCELLED,
    COMPLETED,
    IN_PROGRESS,
    PAUSED,
    PENDING,
    TASK_STATUSES,
    Clock,
    ContextSnapshot,
    SubTask,
    Task,
    TaskState,
    isoformat,
    utcnow,
)
from taskpilot.monitor import WorkflowMonitor
from taskpilot.state.store import MemoryStateStore, StateStore
from taskpilot.tasks.dependencies import DependencyResolver
from taskpilot.tasks.store import TaskStore

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({IN_PROGRESS, COMPLETED, BLOCKED, PAUSED, CANCELLED}),
    IN_PROGRESS: frozenset({COMPLETED, PENDING, BLOCKED, PAUSED, CANCELLED}),
    BLOCKED: frozenset({PENDING, IN_PROGRESS, PAUSED, CANCELLED}),
    # paused leaves only through resume(); awaiting_approval only through approve()
    PAUSED: frozenset({CANCELLED}),
    AWAITING_APPROVAL: frozenset({CANCELLED}),
    COMPLETED: frozenset(),
    CANCELLED: frozenset(),
}
SUBTASK_STATUSES = (PENDING, IN_PROGRESS, COMPLETED, BLOCKED, CANCELLED)
GUIDANCE_FIELDS = (
    "parent_objective",
    "ai_instructions",
    "next_step_guidance",
    "expected_output",
    "recovery_instructions",
)
LIST_GUIDANCE_FIELDS = ("validation_criteria", "context_links", "failure_recovery_hints")
CHECKPOINT_NOTE_CHARS = 100
UPCOMING_TASKS = 3


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return [str(item) for item in value if str(item).strip()]


class WorkflowEngine:
    """Owns one session's tasks, context and workflow pointer.

    Mutations run to completion synchronously; the only awaits are state writes
    and language-model calls.
    """

    def __init__(
        self,
        *,
        state_store: StateStore | None = None,
        backend: LanguageModelBackend | None = None,
        config: TaskpilotConfig | None = None,
        event_hook: EventHook | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.config = config or TaskpilotConfig.default()
        self.clock = clock
        self.state_store = state_store or MemoryStateStore()
        self.event_hook = event_hook
        self.tasks = TaskStore(clock)
        self.resolver = DependencyResolver(self.tasks)
        self.context = ContextAccumulator(self.config.context, clock)
        self.compressor = ContextCompressor(
            self.context,
            backend,
            config=self.config.context,
            timeout_seconds=self.config.backend.timeout_seconds,
            clock=clock,
        )
        self.analyzer = TaskAnalyzer(backend, timeout_seconds=self.config.backend.timeout_seconds)
        self.monitor = WorkflowMonitor(
            self.tasks.workflow_tasks,
            event_hook=self._emit,
            interval_seconds=self.config.workflow.monitor_interval_seconds,
            blocked_threshold_minutes=self.config.workflow.blocked_threshold_minutes,
            clock=clock,
        )
        self.session_id = self._new_session_id()
        self.created_at = clock()
        self.auto_progression_enabled = self.config.workflow.auto_progression
        self.current_workflow_id: str | None = None
        self.context_description = ""
        self.sessions: dict[str, dict[str, Any]] = {}
        self.warnings: list[str] = []
        self._persist_lock = asyncio.Lock()
        self._cleanup_task: asyncio.Task[None] | None = None

    def _new_session_id(self) -> str:
        return f"session-{self.clock():%Y%m%d%H%M%S}-{uuid4().hex[:8]}"

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def drain_warnings(self) -> list[str]:
        warnings, self.warnings = self.warnings, []
        return warnings

    def _apply_state(self, state: TaskState) -> None:
        self.tasks.load_state(state.tasks)
        self.session_id = state.session_id or self._new_session_id()
        self.created_at = state.created_at
        self.auto_progression_enabled = state.auto_progression_enabled
        self.current_workflow_id = state.current_workflow_id
        self.context_description = state.context_description

    def snapshot_state(self) -> TaskState:
        return TaskState(
            session_id=self.session_id,
            tasks=self.tasks.all(),
            created_at=self.created_at,
            last_updated=self.clock(),
            auto_progression_enabled=self.auto_progression_enabled,
            current_workflow_id=self.current_workflow_id,
            context_description=self.context_description,
        )

    async def load(self) -> None:
        """Restore persisted state; an unreadable store means starting empty."""
        try:
            payload = await asyncio.to_thread(self.state_store.read_state)
            sessions = await asyncio.to_thread(self.state_store.read_sessions)
        except Exception as exc:
            self._persistence_failed("load", exc)
            return
        if payload:
            self._apply_state(TaskState.from_dict(payload))
        self.sessions = dict(sessions or {})
        logger.info("Loaded session %s with %d tasks", self.session_id, len(self.tasks))

    async def start(self) -> None:
        await self.load()
        if self.current_workflow_id:
            self.monitor.start(self.current_workflow_id)
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(
                self._cleanup_loop(), name="taskpilot-memory-cleanup"
            )

    async def shutdown(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
            self._cleanup_task = None
        await self.monitor.shutdown()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.workflow.cleanup_interval_seconds)
            await self.perform_memory_cleanup()

    def _persistence_failed(self, operation: str, exc: Exception) -> None:
        message = f"State {operation} failed; continuing in memory: {exc}"
        logger.warning(message)
        self.warnings.append(message)
        self._emit({"event": "persistence_failed", "operation": operation, "error": str(exc)})

    async def _persist(self) -> None:
        payload = self.snapshot_state().to_dict()
        async with self._persist_lock:
            try:
                await asyncio.to_thread(self.state_store.write_state, payload)
            except Exception as exc:
                self._persistence_failed("write", exc)

    async def _persist_sessions(self) -> None:
        payload = json.loads(json.dumps(self.sessions))
        async with self._persist_lock:
            try:
                await asyncio.to_thread(self.state_store.write_sessions, payload)
            except Exception as exc:
                self._persistence_failed("session write", exc)

    def _record_context(
        self,
        workflow_id: str,
        kind: str,
        content: str,
        *,
        task: Task | None = None,
        priority: str = "medium",
    ) -> None:
        self.context.add_context(
            workflow_id,
            ContextSnapshot(
                kind=kind,
                content=content,
                timestamp=self.clock(),
                task_id=task.id if task else None,
                workflow_id=workflow_id,
                step_number=task.position if task else None,
                priority=priority,
            ),
        )

    def _context_key(self, task: Task) -> str:
        return task.parent_workflow_id or self.current_workflow_id or task.id

    def _minutes_in_progress(self, task: Task) -> int:
        for entry in reversed(task.history):
            if entry.new_status == IN_PROGRESS:
                return round((self.clock() - entry.timestamp).total_seconds() / 60)
        return 0

    def _transition(
        self,
        task: Task,
        status: str,
        *,
        notes: str | None = None,
        agent_id: str | None = "ai-agent",
    ) -> str:
        """Apply one status change and its synchronous consequences; returns the resulting status."""
        if status not in TASK_STATUSES:
            raise InvalidArgumentError(f"Unknown status '{status}'.")
        previous = task.status
        if status == previous:
            raise InvalidTransitionError(f"Task {task.id} is already {status}.")
        if status not in ALLOWED_TRANSITIONS.get(previous, frozenset()):
            raise InvalidTransitionError(f"Cannot move task {task.id} from {previous} to {status}.")

        if status == IN_PROGRESS:
            unmet = self.resolver.unmet_dependencies(task)
            if unmet:
                self.resolver.block(task, unmet, agent_id=agent_id)
                return BLOCKED

        duration: float | None = None
        if status == COMPLETED:
            duration = self._minutes_in_progress(task)
            task.actual_time = (task.actual_time or 0) + duration
        if status == PAUSED:
            task.paused_from = previous
        if status == BLOCKED:
            task.blocked_reason = notes or "Blocked manually"
        elif previous == BLOCKED:
            task.blocked_reason = None

        task.status = status
        self.tasks.record(
            task,
            "status_changed",
            previous_status=previous,
            new_status=status,
            notes=notes,
            agent_id=agent_id,
            duration=duration,
        )
        if status == COMPLETED:
            self._after_completion(task, notes)
        return task.status

    def _after_completion(self, task: Task, notes: str | None) -> None:
        self._record_context(
            self._context_key(task),
            "task_result",
            f"Task completed: {task.content}. Notes: {notes or 'No additional notes'}",
            task=task,
            priority="high",
        )
        # Dependents are released before any progression decision.
        self.resolver.release_dependents(task.id)
        if self.auto_progression_enabled:
            self._progress_workflow(task)

    def _next_pending(self, workflow_id: str) -> Task | None:
        pending = [task for task in self.tasks.workflow_tasks(workflow_id) if task.status == PENDING]
        pending.sort(key=lambda task: (task.created_at, task.position or 0))
        return pending[0] if pending else None

    def _progress_workflow(self, completed: Task) -> None:
        workflow_id = self.current_workflow_id
        if workflow_id is None:
            return

        next_task = self._next_pending(workflow_id)
        if next_task is not None:
            try:
                result = self._transition(
                    next_task,
                    IN_PROGRESS,
                    notes=f"Auto-started after completion of: {completed.content}",
                    agent_id="workflow-engine",
                )
            except TaskpilotError as exc:
                logger.warning("Workflow %s paused: %s", workflow_id, exc)
                return
            if result != IN_PROGRESS:
                logger.warning(
                    "Workflow %s paused: %s could not start (%s)",
                    workflow_id,
                    next_task.id,
                    next_task.blocked_reason or result,
                )
                return
            self._record_context(
                workflow_id,
                "workflow_progress",
                f"Auto-started step {(next_task.position or 0) + 1}: {next_task.content}",
                task=next_task,
            )
            self._emit(
                {
                    "event": "task_auto_progressed",
                    "completed_task": completed.id,
                    "next_task": next_task.id,
                    "workflow_id": workflow_id,
                }
            )
            return

        members = self.tasks.workflow_tasks(workflow_id)
        if all(task.is_terminal for task in members):
            self._record_context(
                workflow_id,
                "workflow_progress",
                f"Workflow {workflow_id} completed after: {completed.content}",
                priority="high",
            )
            self.current_workflow_id = None
            self._emit(
                {
                    "event": "workflow_completed",
                    "workflow_id": workflow_id,
                    "completed_task": completed.id,
                }
            )
            logger.info("Workflow %s completed", workflow_id)
            self.monitor.check(workflow_id)
            self.monitor.stop(workflow_id)
            return

        logger.info("Workflow %s waiting: no pending task is ready", workflow_id)

    async def create_task(
        self,
        content: str,
        *,
        priority: str = "medium",
        tags: list[str] | None = None,
        summary: str | None = None,
        dependencies: list[str] | None = None,
        approval_required: bool = False,
        agent_id: str | None = "ai-agent",
    ) -> Task:
        for dependency_id in dependencies or []:
            if self.tasks.peek(dependency_id) is None:
                raise NotFoundError(f"Dependency task not found: {dependency_id}")
        task = self.tasks.create(
            content, priority=priority, tags=tags, summary=summary, agent_id=agent_id
        )
        if dependencies:
            try:
                task.dependencies = self.resolver.validate(task.id, list(dependencies))
            except InvalidArgumentError:
                self.tasks.delete(task.id)
                raise
        if approval_required:
            task.approval_required = True
            task.status = AWAITING_APPROVAL
            self.tasks.record(
                task,
                "approval_requested",
                previous_status=PENDING,
                new_status=AWAITING_APPROVAL,
                agent_id=agent_id,
            )
        await self._persist()
        return task

    def get_task(self, task_id: str) -> Task:
        return self.tasks.require(task_id)

    def list_tasks(
        self,
        *,
        status: str | None = None,
        workflow_id: str | None = None,
    ) -> list[Task]:
        tasks = self.tasks.list()
        if status is not None:
            tasks = [task for task in tasks if task.status == status]
        if workflow_id is not None:
            tasks = [task for task in tasks if task.parent_workflow_id == workflow_id]
        return tasks

    async def update_task(
        self,
        task_id: str,
        *,
        status: str | None = None,
        notes: str | None = None,
        content: str | None = None,
        priority: str | None = None,
        summary: str | None = None,
        tags: list[str] | None = None,
        assignee: str | None = None,
        agent_id: str | None = "ai-agent",
    ) -> Task:
        task = self.tasks.require(task_id)
        if status is not None:
            if status not in TASK_STATUSES:
                raise InvalidArgumentError(f"Unknown status '{status}'.")
            if status not in ALLOWED_TRANSITIONS[task.status]:
                raise InvalidTransitionError(
                    f"Cannot move task {task.id} from {task.status} to {status}."
                )
        changes: list[str] = []
        if content is not None:
            task.content = self.tasks.validate_content(content)
            changes.append("content")
        if priority is not None:
            task.priority = self.tasks.validate_priority(priority)
            changes.append("priority")
        if summary is not None:
            task.summary = summary
            changes.append("summary")
        if tags is not None:
            task.tags = list(dict.fromkeys(tags))
            changes.append("tags")
        if assignee is not None:
            task.assignee = assignee
            changes.append("assignee")
        if changes:
            self.tasks.record(
                task, "updated", notes=f"Updated {', '.join(changes)}", agent_id=agent_id
            )
        if status is not None:
            self._transition(task, status, notes=notes, agent_id=agent_id)
        await self._persist()
        return task

    async def update_status(
        self,
        task_id: str,
        status: str,
        notes: str | None = None,
        agent_id: str | None = "ai-agent",
    ) -> Task:
        task = self.tasks.require(task_id)
        self._transition(task, status, notes=notes, agent_id=agent_id)
        await self._persist()
        return task

    async def complete_task(
        self, task_id: str, notes: str | None = None, agent_id: str | None = "ai-agent"
    ) -> Task:
        return await self.update_status(task_id, COMPLETED, notes, agent_id)

    async def cancel_task(self, task_id: str, notes: str | None = None) -> Task:
        return await self.update_status(task_id, CANCELLED, notes)

    async def pause_task(self, task_id: str, notes: str | None = None) -> Task:
        return await self.update_status(task_id, PAUSED, notes)

    async def resume_task(self, task_id: str, notes: str | None = None) -> Task:
        task = self.tasks.require(task_id)
        if task.status != PAUSED:
            raise InvalidTransitionError(f"Task {task.id} is not paused (status: {task.status}).")
        target = task.paused_from or PENDING
        task.paused_from = None
        unmet = self.resolver.unmet_dependencies(task) if target in (IN_PROGRESS, BLOCKED) else []
        if unmet:
            self.resolver.block(task, unmet)
        elif target == BLOCKED:
            # Dependencies cleared while paused; release_dependents skipped this task.
            task.status = PENDING
            self.tasks.record(
                task,
                "unblocked",
                previous_status=PAUSED,
                new_status=PENDING,
                notes=notes or "Dependencies met while paused",
                agent_id="ai-agent",
            )
        else:
            task.status = target
            self.tasks.record(
                task,
                "resumed",
                previous_status=PAUSED,
                new_status=target,
                notes=notes,
                agent_id="ai-agent",
            )
        await self._persist()
        return task

    async def delete_task(self, task_id: str) -> bool:
        if not self.tasks.delete(task_id):
            raise NotFoundError(f"Task not found: {task_id}")
        # A deleted dependency counts as met.
        self.resolver.release_dependents(task_id)
        await self._persist()
        return True

    async def add_subtask(self, task_id: str, content: str) -> SubTask:
        task = self.tasks.require(task_id)
        content = self.tasks.validate_content(content)
        now = self.clock()
        subtask = SubTask(
            id=f"{task.id}-sub-{uuid4().hex[:8]}",
            content=content,
            created_at=now,
            updated_at=now,
        )
        task.subtasks.append(subtask)
        self.tasks.record(task, "subtask_added", notes=f"Added subtask: {content}")
        await self._persist()
        return subtask

    async def update_subtask(self, task_id: str, subtask_id: str, status: str) -> SubTask:
        task = self.tasks.require(task_id)
        subtask = task.subtask(subtask_id)
        if subtask is None:
            raise NotFoundError(f"Subtask not found: {subtask_id}")
        if status not in SUBTASK_STATUSES:
            raise InvalidArgumentError(f"Unknown subtask status '{status}'.")
        previous = subtask.status
        subtask.status = status
        subtask.updated_at = self.clock()
        self.tasks.record(
            task,
            "subtask_status_changed",
            notes=f'Subtask "{subtask.content}" status changed from {previous} to {status}',
        )
        await self._persist()
        return subtask

    async def analyze_task(self, task_id: str) -> TaskAnalysis:
        return await self.analyzer.analyze(self.tasks.require(task_id))

    @staticmethod
    def _normalize_entry(entry: Any, index: int) -> dict[str, Any]:
        if isinstance(entry, str):
            entry = {"content": entry}
        if not isinstance(entry, Mapping):
            raise InvalidArgumentError(f"Workflow task {index + 1} must be a string or mapping.")
        content = entry.get("content")
        if not isinstance(content, str) or not content.strip():
            raise InvalidArgumentError(f"Workflow task {index + 1} has empty content.")
        return dict(entry)

    def _build_workflow_task(
        self,
        workflow_id: str,
        entry: dict[str, Any],
        index: int,
        total: int,
        previous_id: str | None,
        parent_objective: str | None,
    ) -> Task:
        now = self.clock()
        approval_required = bool(entry.get("approval_required", False))
        task = Task(
            id=f"{workflow_id}-task-{index + 1:03d}",
            content=entry["content"].strip(),
            status=AWAITING_APPROVAL if approval_required else PENDING,
            created_at=now,
            updated_at=now,
            last_accessed_at=now,
            priority=self.tasks.validate_priority(entry.get("priority", "medium")),
            tags=["ai-agent-task", "workflow", f"workflow-{workflow_id}"],
            summary=f"Workflow: {workflow_id}, Step {index + 1}/{total}",
            dependencies=[previous_id] if previous_id else [],
            parent_workflow_id=workflow_id,
            position=index,
            approval_required=approval_required,
        )
        for name in GUIDANCE_FIELDS:
            if entry.get(name) is not None:
                setattr(task, name, str(entry[name]))
        for name in LIST_GUIDANCE_FIELDS:
            setattr(task, name, _as_list(entry.get(name)))
        if task.parent_objective is None:
            task.parent_objective = parent_objective
        return task

    async def create_workflow(
        self,
        tasks: list[Any],
        *,
        workflow_id: str | None = None,
        smart_analysis: bool | None = None,
        parent_objective: str | None = None,
    ) -> str:
        if not tasks:
            raise InvalidArgumentError("A workflow needs at least one task.")
        entries = [self._normalize_entry(entry, index) for index, entry in enumerate(tasks)]
        workflow_id = workflow_id or f"workflow-{self.clock():%Y%m%d%H%M%S}-{uuid4().hex[:6]}"
        if self.tasks.workflow_tasks(workflow_id):
            raise InvalidArgumentError(f"Workflow already exists: {workflow_id}")

        built: list[Task] = []
        previous_id: str | None = None
        for index, entry in enumerate(entries):
            task = self._build_workflow_task(
                workflow_id, entry, index, len(entries), previous_id, parent_objective
            )
            built.append(task)
            previous_id = task.id

        use_analysis = self.config.workflow.smart_analysis if smart_analysis is None else smart_analysis
        analyses: dict[str, TaskAnalysis] = {}
        if use_analysis:
            for task in built:
                try:
                    analyses[task.id] = await self.analyzer.analyze(task)
                except Exception as exc:
                    logger.warning("Smart analysis failed for %s: %s", task.id, exc)

        # Everything below commits without yielding.
        for task in built:
            self.tasks.insert(task)
            self.tasks.record(task, "created", new_status=task.status, agent_id="workflow-manager")
            analysis = analyses.get(task.id)
            if analysis is not None:
                self._apply_analysis(task, analysis)
            dependencies = ", ".join(task.dependencies) or "none"
            self.tasks.record(
                task,
                "workflow_created",
                notes=(
                    f"Part of workflow {workflow_id}, step {task.position + 1}, "
                    f"dependencies: {dependencies}"
                ),
                agent_id="workflow-manager",
            )

        self.current_workflow_id = workflow_id
        self._record_context(
            workflow_id,
            "workflow_progress",
            f"Workflow {workflow_id} created with {len(built)} tasks: "
            + ", ".join(task.content for task in built),
            priority="high",
        )
        await self._persist()
        self.monitor.start(workflow_id)
        logger.info("Created workflow %s with %d tasks", workflow_id, len(built))
        return workflow_id

    def _apply_analysis(self, task: Task, analysis: TaskAnalysis) -> None:
        task.estimated_time = analysis.estimated_time
        now = self.clock()
        for index, content in enumerate(analysis.suggested_breakdown, start=1):
            task.subtasks.append(
                SubTask(id=f"{task.id}-sub-{index:02d}", content=content, created_at=now, updated_at=now)
            )
            self.tasks.record(task, "subtask_added", notes=f"Added subtask: {content}")
        notes = [f"Risk: {item}" for item in analysis.risk_factors]
        notes += [f"Prerequisite: {item}" for item in analysis.prerequisites]
        if notes:
            self.tasks.record(
                task,
                "analysis_completed",
                notes="Smart analysis:\n" + "\n".join(notes),
                agent_id="ai-analyzer",
            )

    def get_workflow_status(self, workflow_id: str | None = None) -> dict[str, Any]:
        workflow_id = workflow_id or self.current_workflow_id
        members = self.tasks.workflow_tasks(workflow_id) if workflow_id else []
        if workflow_id and workflow_id != self.current_workflow_id and not members:
            raise NotFoundError(f"Workflow not found: {workflow_id}")
        current = next((task for task in members if task.status == IN_PROGRESS), None)
        next_task = self._next_pending(workflow_id) if workflow_id else None
        completed = sum(1 for task in members if task.status == COMPLETED)
        return {
            "workflow_id": workflow_id,
            "is_current": workflow_id is not None and workflow_id == self.current_workflow_id,
            "current_task": current.to_dict() if current else None,
            "next_task": next_task.to_dict() if next_task else None,
            "total_tasks": len(members),
            "completed_tasks": completed,
            "progress": completed / len(members) if members else 0.0,
            "auto_progression_enabled": self.auto_progression_enabled,
            "tasks": [
                {"id": task.id, "content": task.content, "status": task.status, "position": task.position}
                for task in members
            ],
        }

    async def set_auto_progression(self, enabled: bool) -> bool:
        self.auto_progression_enabled = bool(enabled)
        await self._persist()
        logger.info("Auto-progression %s", "enabled" if enabled else "disabled")
        return self.auto_progression_enabled

    async def toggle_auto_progression(self, enabled: bool | None = None) -> bool:
        target = not self.auto_progression_enabled if enabled is None else enabled
        return await self.set_auto_progression(target)

    async def approve(self, task_id: str, notes: str | None = None) -> Task:
        task = self.tasks.require(task_id)
        if not task.approval_required:
            raise InvalidTransitionError(f"Task {task.id} does not require approval.")
        if task.status != AWAITING_APPROVAL:
            raise InvalidTransitionError(
                f"Task {task.id} must be awaiting_approval to be approved (status: {task.status})."
            )
        task.status = PENDING
        self.tasks.record(
            task,
            "approved",
            previous_status=AWAITING_APPROVAL,
            new_status=PENDING,
            notes=f"User approved task. {notes or ''}".strip(),
            agent_id="user",
        )
        if self.auto_progression_enabled:
            self._transition(task, IN_PROGRESS, notes="Auto-started after approval")
        await self._persist()
        return task

    async def checkpoint(
        self,
        task_id: str,
        note: str,
        environment: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        task = self.tasks.require(task_id)
        if not isinstance(note, str) or not note.strip():
            raise InvalidArgumentError("Checkpoint note must be a non-empty string.")
        snapshot = {
            "timestamp": isoformat(self.clock()),
            "context": note,
            "progress": task.subtask_completion_ratio(),
            "environment": dict(environment or {}),
        }
        task.context_snapshot = json.dumps(snapshot, ensure_ascii=False)
        self.tasks.record(
            task,
            "checkpoint_created",
            notes=f"Context snapshot saved: {note[:CHECKPOINT_NOTE_CHARS]}",
            agent_id="ai-agent",
        )
        self._record_context(
            self._context_key(task), "checkpoint", f"Checkpoint for {task.content}: {note}", task=task
        )
        await self._persist()
        return snapshot

    @staticmethod
    def latest_checkpoint(task: Task) -> dict[str, Any] | None:
        if not task.context_snapshot:
            return None
        try:
            payload = json.loads(task.context_snapshot)
        except json.JSONDecodeError:
            return {"context": task.context_snapshot}
        return payload if isinstance(payload, dict) else {"context": payload}

    def _upcoming(self, task: Task) -> list[dict[str, Any]]:
        if not task.parent_workflow_id:
            return []
        position = task.position or 0
        later = [
            item
            for item in self.tasks.workflow_tasks(task.parent_workflow_id)
            if (item.position or 0) > position
        ]
        return [
            {
                "id": item.id,
                "content": item.content,
                "status": item.status,
                "ai_instructions": item.ai_instructions,
                "approval_required": item.approval_required,
                "position": item.position,
            }
            for item in later[:UPCOMING_TASKS]
        ]

    def _following(self, task: Task) -> Task | None:
        if not task.parent_workflow_id:
            return None
        for item in self.tasks.workflow_tasks(task.parent_workflow_id):
            if (item.position or 0) == (task.position or 0) + 1:
                return item
        return None

    def workflow_context(self, task: Task) -> dict[str, Any] | None:
        if not task.parent_workflow_id:
            return None
        members = self.tasks.workflow_tasks(task.parent_workflow_id)
        completed = sum(1 for item in members if item.status == COMPLETED)
        return {
            "workflow_id": task.parent_workflow_id,
            "total_tasks": len(members),
            "current_position": task.position,
            "completed_tasks": completed,
            "parent_objective": task.parent_objective,
            "overall_progress": completed / len(members) if members else 0.0,
        }

    def get_next_steps(self, task_id: str) -> dict[str, Any]:
        task = self.tasks.require(task_id)
        steps: dict[str, Any] = {
            "task_id": task.id,
            "parent_objective": task.parent_objective,
            "next_step_guidance": task.next_step_guidance,
            "validation_criteria": list(task.validation_criteria),
            "expected_output": task.expected_output,
            "current_status": task.status,
            "is_part_of_workflow": task.parent_workflow_id is not None,
            "workflow_position": task.position,
            "has_dependencies": bool(task.dependencies),
            "required_dependencies": list(task.dependencies),
            "unmet_dependencies": self.resolver.unmet_dependencies(task),
            "upcoming_tasks": self._upcoming(task),
            "checkpoint": self.latest_checkpoint(task),
        }
        if task.status == COMPLETED:
            following = self._following(task)
            steps["next_task"] = (
                {
                    "id": following.id,
                    "content": following.content,
                    "ai_instructions": following.ai_instructions,
                    "approval_required": following.approval_required,
                }
                if following
                else None
            )
            if following is None:
                steps["recommended_action"] = "Workflow complete - review and summarize results"
            elif following.approval_required and following.status == AWAITING_APPROVAL:
                steps["recommended_action"] = "Request user approval for next task"
            else:
                steps["recommended_action"] = "Proceed to next task"
        return steps

    async def get_guidance(self, task_id: str) -> dict[str, Any]:
        task = self.tasks.require(task_id)
        workflow_key = self._context_key(task)
        self._record_context(
            workflow_key,
            "user_prompt",
            f"Requesting AI guidance for task: {task.content}",
            task=task,
            priority="high",
        )
        compressed = await self.compressor.get_context_for_ai(
            workflow_key, f"Please provide guidance for completing this task: {task.content}"
        )
        tips = await self.analyzer.troubleshooting_tips(task)
        patterns = await self.analyzer.common_patterns(task)
        self._record_context(
            workflow_key,
            "ai_guidance",
            f"Guidance for {task.content}: " + "; ".join(tips[:3]),
            task=task,
        )
        return {
            "task_id": task.id,
            "parent_objective": task.parent_objective,
            "ai_instructions": task.ai_instructions,
            "expected_output": task.expected_output,
            "validation_criteria": list(task.validation_criteria),
            "recovery_instructions": task.recovery_instructions,
            "context_links": list(task.context_links),
            "failure_recovery_hints": list(task.failure_recovery_hints),
            "current_context": compressed,
            "workflow_context": self.workflow_context(task),
            "troubleshooting_tips": tips,
            "common_patterns": patterns,
            "checkpoint": self.latest_checkpoint(task),
        }

    async def get_context(self, prompt: str, workflow_id: str | None = None) -> str:
        key = workflow_id or self.current_workflow_id
        if key is None:
            raise InvalidArgumentError("No workflow id given and no workflow is current.")
        return await self.compressor.get_context_for_ai(key, prompt)

    def get_task_summary(self, task_id: str) -> str:
        task = self.tasks.require(task_id)
        done = sum(1 for item in task.subtasks if item.status == COMPLETED)
        progress = f"{done}/{len(task.subtasks)} subtasks completed" if task.subtasks else "No subtasks"
        lines = [
            f"Task: {task.content}",
            f"Status: {task.status}",
            f"Created: {isoformat(task.created_at)}",
            f"Last Updated: {isoformat(task.updated_at)}",
            f"Progress: {progress}",
            f"Summary: {task.summary or 'No summary provided'}",
            "",
            "History:",
        ]
        for entry in task.history:
            suffix = f" - {entry.notes}" if entry.notes else ""
            lines.append(f"  {isoformat(entry.timestamp)}: {entry.action}{suffix}")
        lines.append("")
        lines.append("Subtasks:")
        lines.extend(f"  [{item.status}] {item.content}" for item in task.subtasks)
        return "\n".join(lines).rstrip()

    def list_sessions(self) -> dict[str, Any]:
        archived = [
            {
                "id": session_id,
                "description": state.get("context_description") or "Unnamed session",
                "task_count": len(state.get("tasks") or []),
                "last_updated": state.get("last_updated"),
            }
            for session_id, state in self.sessions.items()
        ]
        archived.sort(key=lambda item: item["last_updated"] or "", reverse=True)
        return {
            "current_session": {
                "id": self.session_id,
                "description": self.context_description,
                "task_count": len(self.tasks),
            },
            "archived_sessions": archived,
        }

    def get_summary(self) -> dict[str, Any]:
        counts = {status: 0 for status in TASK_STATUSES}
        for task in self.tasks.all():
            counts[task.status] = counts.get(task.status, 0) + 1
        return {
            "total": len(self.tasks),
            "by_status": counts,
            "current_workflow_id": self.current_workflow_id,
            "auto_progression_enabled": self.auto_progression_enabled,
            "session": self.list_sessions(),
        }

    async def archive_current_session(self) -> str | None:
        if not len(self.tasks):
            return None
        state = self.snapshot_state().to_dict()
        state["archived_at"] = isoformat(self.clock())
        self.sessions[self.session_id] = state
        await self._persist_sessions()
        logger.info("Archived session %s with %d tasks", self.session_id, len(self.tasks))
        return self.session_id

    async def restore_session(self, session_id: str) -> TaskState:
        archived = self.sessions.get(session_id)
        if archived is None:
            raise NotFoundError(f"Session not found: {session_id}")
        if session_id != self.session_id:
            await self.archive_current_session()
        await self.monitor.shutdown()
        self.context.clear()
        state = TaskState.from_dict(archived)
        self._apply_state(state)
        if not self.context_description:
            self.context_description = "Restored session"
        await self._persist()
        if self.current_workflow_id:
            self.monitor.start(self.current_workflow_id)
        return state

    async def clear(self) -> str:
        await self.monitor.shutdown()
        self.tasks.clear()
        self.context.clear()
        self.current_workflow_id = None
        self.session_id = self._new_session_id()
        self.created_at = self.clock()
        await self._persist()
        return self.session_id

    async def perform_memory_cleanup(self) -> int:
        """Archive completed tasks untouched for archive_after_days, then prune stale context."""
        cutoff = self.clock() - timedelta(days=self.config.workflow.archive_after_days)
        stale = [
            task
            for task in self.tasks.all()
            if task.status == COMPLETED and task.last_accessed_at < cutoff
        ]
        archived = 0
        for task in stale:
            record = task.to_dict()
            record["archived_at"] = isoformat(self.clock())
            try:
                await asyncio.to_thread(self.state_store.append_archive, record)
            except Exception as exc:
                self._persistence_failed("archive", exc)
                continue
            self.tasks.delete(task.id)
            archived += 1
        self.context.cleanup_old_context()
        if archived:
            logger.info("Archived %d completed tasks", archived)
            await self._persist()
        return archived
