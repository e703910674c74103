import asyncio
import json
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from taskpilot.config import TaskpilotConfig
from taskpilot.engine import WorkflowEngine
from taskpilot.errors import InvalidArgumentError, InvalidTransitionError, NotFoundError
from taskpilot.state import MemoryStateStore, StateStore


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class FailingStore(StateStore):
    def read_state(self) -> dict[str, Any] | None:
        return None

    def write_state(self, state: dict[str, Any]) -> None:
        raise OSError("disk full")

    def read_sessions(self) -> dict[str, Any]:
        return {}

    def write_sessions(self, sessions: dict[str, Any]) -> None:
        raise OSError("disk full")

    def append_archive(self, record: dict[str, Any]) -> None:
        raise OSError("disk full")


def _engine(
    store: StateStore | None = None, *, auto: bool = False
) -> tuple[WorkflowEngine, FakeClock, list[dict[str, Any]]]:
    clock = FakeClock()
    events: list[dict[str, Any]] = []
    config = TaskpilotConfig.default()
    config.workflow.auto_progression = auto
    config.workflow.smart_analysis = False
    engine = WorkflowEngine(
        state_store=store or MemoryStateStore(),
        config=config,
        event_hook=events.append,
        clock=clock,
    )
    return engine, clock, events


def _names(events: list[dict[str, Any]]) -> list[str]:
    return [event["event"] for event in events]


def test_auto_progression_walks_workflow_to_completion() -> None:
    engine, _, events = _engine(auto=True)

    async def _run() -> None:
        workflow_id = await engine.create_workflow(["A", "B", "C"], workflow_id="wf-demo")
        first, second, third = engine.tasks.workflow_tasks(workflow_id)
        assert [task.id for task in (first, second, third)] == [
            "wf-demo-task-001",
            "wf-demo-task-002",
            "wf-demo-task-003",
        ]
        assert second.dependencies == [first.id]
        assert first.status == "pending"

        await engine.update_status(first.id, "in_progress")
        await engine.complete_task(first.id)
        assert second.status == "in_progress"
        assert second.history[-1].notes == "Auto-started after completion of: A"
        assert events[-1] == {
            "event": "task_auto_progressed",
            "completed_task": first.id,
            "next_task": second.id,
            "workflow_id": "wf-demo",
        }

        await engine.complete_task(second.id)
        assert third.status == "in_progress"

        await engine.complete_task(third.id)
        await engine.shutdown()

    asyncio.run(_run())

    assert engine.current_workflow_id is None
    assert _names(events).count("task_auto_progressed") == 2
    completed = next(event for event in events if event["event"] == "workflow_completed")
    assert completed == {
        "event": "workflow_completed",
        "workflow_id": "wf-demo",
        "completed_task": "wf-demo-task-003",
    }
    assert _names(events)[-1] == "workflow_monitor_completed"


def test_workflow_tasks_carry_tags_summary_and_guidance() -> None:
    engine, _, _ = _engine()

    async def _run() -> None:
        await engine.create_workflow(
            [
                {
                    "content": "Design schema",
                    "ai_instructions": "Use migrations",
                    "validation_criteria": "tables exist",
                    "priority": "high",
                },
                "Write queries",
            ],
            workflow_id="wf-db",
            parent_objective="Persist orders",
        )
        await engine.shutdown()

    asyncio.run(_run())

    first, second = engine.tasks.workflow_tasks("wf-db")
    assert first.tags == ["ai-agent-task", "workflow", "workflow-wf-db"]
    assert first.summary == "Workflow: wf-db, Step 1/2"
    assert first.ai_instructions == "Use migrations"
    assert first.validation_criteria == ["tables exist"]
    assert first.priority == "high"
    assert second.parent_objective == "Persist orders"
    assert second.history[-1].action == "workflow_created"
    assert second.history[-1].notes == (
        "Part of workflow wf-db, step 2, dependencies: wf-db-task-001"
    )
    snapshot = engine.context.history("wf-db")[-1]
    assert snapshot.kind == "workflow_progress"
    assert snapshot.priority == "high"
    assert engine.current_workflow_id == "wf-db"


def test_empty_workflow_entry_creates_nothing() -> None:
    engine, _, _ = _engine()

    with pytest.raises(InvalidArgumentError):
        asyncio.run(engine.create_workflow(["valid", "   "]))
    with pytest.raises(InvalidArgumentError):
        asyncio.run(engine.create_workflow([]))

    assert len(engine.tasks) == 0
    assert engine.current_workflow_id is None


def test_smart_analysis_adds_estimates_and_subtasks() -> None:
    engine, _, _ = _engine()

    async def _run() -> None:
        await engine.create_workflow(
            ["Implement the lexer"], workflow_id="wf-lex", smart_analysis=True
        )
        await engine.shutdown()

    asyncio.run(_run())

    (task,) = engine.tasks.workflow_tasks("wf-lex")
    assert task.estimated_time == 30
    assert len(task.subtasks) == 6
    analysis = next(entry for entry in task.history if entry.action == "analysis_completed")
    assert analysis.agent_id == "ai-analyzer"
    assert analysis.notes.startswith("Smart analysis:\nRisk: ")
    assert "Prerequisite: Review task requirements" in analysis.notes


def test_start_with_unmet_dependency_blocks_then_releases() -> None:
    engine, _, events = _engine()

    async def _run() -> None:
        first = await engine.create_task("write parser")
        second = await engine.create_task("write tests", dependencies=[first.id])

        result = await engine.update_status(second.id, "in_progress")
        assert result.status == "blocked"
        assert result.blocked_reason == f"Waiting for dependencies: {first.id}"
        assert result.history[-1].action == "blocked"

        await engine.complete_task(first.id, "parser merged")
        assert second.status == "pending"
        assert second.blocked_reason is None
        assert second.history[-1].action == "unblocked"

    asyncio.run(_run())

    assert "task_auto_progressed" not in _names(events)


def test_unknown_or_cyclic_dependencies_are_rejected() -> None:
    engine, _, _ = _engine()

    with pytest.raises(NotFoundError):
        asyncio.run(engine.create_task("x", dependencies=["task-missing"]))
    assert len(engine.tasks) == 0


def test_completion_tracks_time_and_records_context() -> None:
    engine, clock, _ = _engine()

    async def _run() -> str:
        task = await engine.create_task("refactor cache")
        await engine.update_status(task.id, "in_progress")
        clock.advance(minutes=25)
        await engine.complete_task(task.id, "done")
        return task.id

    task_id = asyncio.run(_run())

    task = engine.get_task(task_id)
    assert task.actual_time == 25
    assert task.history[-1].duration == 25
    snapshot = engine.context.history(task_id)[-1]
    assert snapshot.kind == "task_result"
    assert snapshot.content == "Task completed: refactor cache. Notes: done"
    assert snapshot.priority == "high"


def test_terminal_tasks_reject_transitions() -> None:
    engine, _, _ = _engine()

    async def _run() -> None:
        task = await engine.create_task("one-off")
        with pytest.raises(InvalidTransitionError):
            await engine.update_status(task.id, "pending")
        await engine.complete_task(task.id)
        for status in ("in_progress", "pending", "cancelled", "completed"):
            with pytest.raises(InvalidTransitionError):
                await engine.update_status(task.id, status)
        with pytest.raises(InvalidArgumentError):
            await engine.update_status(task.id, "done")

    asyncio.run(_run())


def test_rejected_update_leaves_fields_untouched() -> None:
    engine, _, _ = _engine()

    async def _run() -> None:
        task = await engine.create_task("original")
        await engine.cancel_task(task.id)
        with pytest.raises(InvalidTransitionError):
            await engine.update_task(task.id, content="changed", status="pending")
        assert task.content == "original"

        updated = await engine.update_task(task.id, summary="post-mortem")
        assert updated.summary == "post-mortem"
        assert updated.history[-1].notes == "Updated summary"

    asyncio.run(_run())


def test_pause_and_resume_restore_previous_status() -> None:
    engine, _, _ = _engine()

    async def _run() -> None:
        task = await engine.create_task("long job")
        await engine.update_status(task.id, "in_progress")
        await engine.pause_task(task.id, "lunch")
        assert task.status == "paused"
        assert task.paused_from == "in_progress"

        with pytest.raises(InvalidTransitionError):
            await engine.complete_task(task.id)

        await engine.resume_task(task.id)
        assert task.status == "in_progress"
        assert task.paused_from is None
        assert task.history[-1].action == "resumed"

        with pytest.raises(InvalidTransitionError):
            await engine.resume_task(task.id)

    asyncio.run(_run())


def test_resuming_a_paused_blocked_task_rechecks_dependencies() -> None:
    engine, _, _ = _engine(auto=True)

    async def _run() -> None:
        await engine.create_workflow(["A", "B"], workflow_id="wf-pause")
        first, second = engine.tasks.workflow_tasks("wf-pause")

        await engine.update_status(second.id, "in_progress")
        assert second.status == "blocked"
        await engine.pause_task(second.id)
        assert second.paused_from == "blocked"
        assert second.blocked_reason is None

        await engine.update_status(first.id, "in_progress")
        await engine.complete_task(first.id)
        assert second.status == "paused"

        await engine.resume_task(second.id)
        assert second.status == "pending"
        assert second.blocked_reason is None
        assert second.history[-1].action == "unblocked"

        await engine.update_status(second.id, "in_progress")
        assert second.status == "in_progress"

    asyncio.run(_run())


def test_resuming_a_paused_blocked_task_stays_blocked_while_dependency_is_open() -> None:
    engine, _, _ = _engine()

    async def _run() -> None:
        await engine.create_workflow(["A", "B"], workflow_id="wf-wait")
        first, second = engine.tasks.workflow_tasks("wf-wait")

        await engine.update_status(second.id, "in_progress")
        await engine.pause_task(second.id)
        await engine.resume_task(second.id)

        assert second.status == "blocked"
        assert second.blocked_reason == f"Waiting for dependencies: {first.id}"

    asyncio.run(_run())


def test_awaiting_approval_task_cannot_be_paused() -> None:
    engine, _, _ = _engine()

    async def _run() -> None:
        await engine.create_workflow(
            [{"content": "Deploy", "approval_required": True}], workflow_id="wf-gate"
        )
        (task,) = engine.tasks.workflow_tasks("wf-gate")
        assert task.status == "awaiting_approval"

        with pytest.raises(InvalidTransitionError):
            await engine.pause_task(task.id)
        assert task.status == "awaiting_approval"

    asyncio.run(_run())


def test_approval_gate_holds_auto_progression() -> None:
    engine, _, events = _engine(auto=True)

    async def _run() -> None:
        await engine.create_workflow(
            ["Draft migration", {"content": "Run migration", "approval_required": True}],
            workflow_id="wf-mig",
        )
        first, second = engine.tasks.workflow_tasks("wf-mig")
        assert second.status == "awaiting_approval"

        with pytest.raises(InvalidTransitionError):
            await engine.update_status(second.id, "in_progress")
        with pytest.raises(InvalidTransitionError):
            await engine.approve(first.id)

        await engine.update_status(first.id, "in_progress")
        await engine.complete_task(first.id)
        assert second.status == "awaiting_approval"
        assert engine.current_workflow_id == "wf-mig"
        steps = engine.get_next_steps(first.id)
        assert steps["recommended_action"] == "Request user approval for next task"
        assert steps["next_task"]["id"] == second.id

        await engine.approve(second.id, "looks safe")
        assert second.status == "in_progress"
        assert any(entry.action == "approved" and entry.agent_id == "user" for entry in second.history)
        with pytest.raises(InvalidTransitionError):
            await engine.approve(second.id)
        await engine.shutdown()

    asyncio.run(_run())

    assert "task_auto_progressed" not in _names(events)


def test_approval_without_auto_progression_returns_to_pending() -> None:
    engine, _, _ = _engine()

    async def _run() -> None:
        task = await engine.create_task("deploy", approval_required=True)
        assert task.status == "awaiting_approval"
        await engine.approve(task.id)
        assert task.status == "pending"

    asyncio.run(_run())


def test_failing_store_keeps_memory_state_and_warns() -> None:
    engine, _, events = _engine(FailingStore())

    async def _run() -> str:
        task = await engine.create_task("survives")
        return task.id

    task_id = asyncio.run(_run())

    assert engine.get_task(task_id).content == "survives"
    warnings = engine.drain_warnings()
    assert len(warnings) == 1
    assert "disk full" in warnings[0]
    assert engine.drain_warnings() == []
    assert _names(events) == ["persistence_failed"]


def test_state_reloads_into_a_new_engine() -> None:
    store = MemoryStateStore()
    engine, _, _ = _engine(store)

    async def _create() -> str:
        await engine.set_auto_progression(True)
        task = await engine.create_task("persisted")
        return task.id

    task_id = asyncio.run(_create())

    reloaded, _, _ = _engine(store)
    asyncio.run(reloaded.load())

    assert reloaded.get_task(task_id).content == "persisted"
    assert reloaded.session_id == engine.session_id
    assert reloaded.auto_progression_enabled is True


def test_workflow_status_reports_progress() -> None:
    engine, _, _ = _engine()

    async def _run() -> dict[str, Any]:
        await engine.create_workflow(["one", "two"], workflow_id="wf-s")
        first = engine.tasks.workflow_tasks("wf-s")[0]
        await engine.update_status(first.id, "in_progress")
        await engine.complete_task(first.id)
        await engine.shutdown()
        return engine.get_workflow_status()

    status = asyncio.run(_run())

    assert status["workflow_id"] == "wf-s"
    assert status["current_task"] is None
    assert status["next_task"]["id"] == "wf-s-task-002"
    assert status["total_tasks"] == 2
    assert status["completed_tasks"] == 1
    assert status["progress"] == 0.5
    assert status["auto_progression_enabled"] is False
    with pytest.raises(NotFoundError):
        engine.get_workflow_status("wf-unknown")


def test_checkpoint_and_next_steps() -> None:
    engine, _, _ = _engine()

    async def _run() -> dict[str, Any]:
        task = await engine.create_task("port module")
        first = await engine.add_subtask(task.id, "copy files")
        await engine.add_subtask(task.id, "fix imports")
        await engine.update_subtask(task.id, first.id, "completed")
        snapshot = await engine.checkpoint(task.id, "halfway there", {"branch": "port"})
        assert snapshot["progress"] == 0.5
        assert task.status == "pending"
        return engine.get_next_steps(task.id)

    steps = asyncio.run(_run())

    task = engine.list_tasks()[0]
    stored = json.loads(task.context_snapshot)
    assert stored["context"] == "halfway there"
    assert stored["environment"] == {"branch": "port"}
    assert task.history[-1].action == "checkpoint_created"
    assert task.history[-1].notes == "Context snapshot saved: halfway there"
    assert [entry.action for entry in task.history].count("subtask_added") == 2
    assert steps["checkpoint"]["context"] == "halfway there"
    assert steps["is_part_of_workflow"] is False
    assert "recommended_action" not in steps


def test_guidance_records_prompt_and_returns_context() -> None:
    engine, _, _ = _engine()

    async def _run() -> dict[str, Any]:
        task = await engine.create_task("Test the importer")
        return await engine.get_guidance(task.id)

    guidance = asyncio.run(_run())

    assert guidance["current_context"].endswith(
        "CURRENT REQUEST:\nPlease provide guidance for completing this task: Test the importer"
    )
    assert "USER PROMPTS:\n- Requesting AI guidance for task: Test the importer" in (
        guidance["current_context"]
    )
    assert guidance["troubleshooting_tips"][0] == "Focus on edge cases and error conditions"
    assert guidance["common_patterns"]
    assert guidance["workflow_context"] is None


def test_sessions_archive_clear_and_restore() -> None:
    store = MemoryStateStore()
    engine, _, _ = _engine(store)

    async def _run() -> None:
        await engine.create_task("first session work")
        original = engine.session_id
        assert await engine.archive_current_session() == original

        new_session = await engine.clear()
        assert new_session != original
        assert len(engine.tasks) == 0
        assert await engine.archive_current_session() is None

        with pytest.raises(NotFoundError):
            await engine.restore_session("session-missing")

        await engine.restore_session(original)
        assert engine.session_id == original
        assert [task.content for task in engine.list_tasks()] == ["first session work"]

    asyncio.run(_run())

    summary = engine.list_sessions()
    assert summary["current_session"]["task_count"] == 1
    assert [item["id"] for item in summary["archived_sessions"]] == [engine.session_id]
    assert engine.session_id in store.sessions


def test_memory_cleanup_archives_stale_completed_tasks() -> None:
    store = MemoryStateStore()
    engine, clock, _ = _engine(store)

    async def _run() -> int:
        done = await engine.create_task("old and done")
        await engine.create_task("old but open")
        await engine.complete_task(done.id)
        clock.advance(days=8)
        return await engine.perform_memory_cleanup()

    assert asyncio.run(_run()) == 1
    assert [task.content for task in engine.list_tasks()] == ["old but open"]
    assert store.archive[0]["content"] == "old and done"
    assert "archived_at" in store.archive[0]


def test_delete_releases_blocked_dependents() -> None:
    engine, _, _ = _engine()

    async def _run() -> None:
        first = await engine.create_task("obsolete")
        second = await engine.create_task("follow-up", dependencies=[first.id])
        await engine.update_status(second.id, "in_progress")
        assert second.status == "blocked"

        assert await engine.delete_task(first.id) is True
        assert second.status == "pending"
        with pytest.raises(NotFoundError):
            await engine.delete_task(first.id)

    asyncio.run(_run())


def test_task_summary_mentions_history_and_subtasks() -> None:
    engine, _, _ = _engine()

    async def _run() -> str:
        task = await engine.create_task("write docs", summary="user guide")
        await engine.add_subtask(task.id, "outline")
        return engine.get_task_summary(task.id)

    text = asyncio.run(_run())

    assert text.startswith("Task: write docs\nStatus: pending")
    assert "Progress: 0/1 subtasks completed" in text
    assert "Summary: user guide" in text
    assert "subtask_added - Added subtask: outline" in text
    assert text.endswith("[pending] outline")
