from datetime import UTC, datetime, timedelta

import pytest

from taskpilot.errors import InvalidArgumentError, NotFoundError
from taskpilot.models import Task, TaskState
from taskpilot.tasks import DependencyResolver, TaskStore


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


def test_create_tags_and_records_history() -> None:
    store = TaskStore(FakeClock())
    task = store.create("  Write the parser  ", priority="high", tags=["parser"])

    assert task.id.startswith("task-")
    assert task.content == "Write the parser"
    assert task.status == "pending"
    assert task.tags == ["ai-agent-task", "parser"]
    assert [entry.action for entry in task.history] == ["created"]


@pytest.mark.parametrize("content", ["", "   ", None])
def test_create_rejects_empty_content(content) -> None:
    store = TaskStore()

    with pytest.raises(InvalidArgumentError):
        store.create(content)
    assert len(store) == 0


def test_create_rejects_unknown_priority() -> None:
    with pytest.raises(InvalidArgumentError, match="priority"):
        TaskStore().create("x", priority="urgent")


def test_get_touches_last_access_but_peek_does_not() -> None:
    clock = FakeClock()
    store = TaskStore(clock)
    task = store.create("read docs")
    created = task.last_accessed_at

    clock.advance(minutes=5)
    store.peek(task.id)
    assert task.last_accessed_at == created

    store.get(task.id)
    assert task.last_accessed_at == created + timedelta(minutes=5)


def test_require_unknown_task() -> None:
    with pytest.raises(NotFoundError):
        TaskStore().require("task-missing")


def test_list_orders_by_most_recent_update() -> None:
    clock = FakeClock()
    store = TaskStore(clock)
    first = store.create("first")
    clock.advance(seconds=1)
    second = store.create("second")
    clock.advance(seconds=1)
    store.record(first, "updated", notes="touched")

    assert [task.id for task in store.list()] == [first.id, second.id]


def test_state_roundtrip_through_task_state() -> None:
    store = TaskStore(FakeClock())
    task = store.create("persist me", summary="keep")
    state = TaskState(session_id="session-1", tasks=store.all())

    restored = TaskState.from_dict(state.to_dict())
    other = TaskStore()
    other.load_state(restored.tasks)

    assert [item.to_dict() for item in other.all()] == [item.to_dict() for item in store.all()]
    assert other.peek(task.id).summary == "keep"


def test_malformed_task_records_are_skipped() -> None:
    payload = {
        "session_id": "session-1",
        "tasks": [{"content": "no id"}, {"id": "task-ok", "content": "fine"}, "junk"],
    }

    state = TaskState.from_dict(payload)

    assert [task.id for task in state.tasks] == ["task-ok"]


def test_release_dependents_unblocks_when_all_met() -> None:
    store = TaskStore(FakeClock())
    resolver = DependencyResolver(store)
    a = store.create("a")
    b = store.create("b")
    c = store.create("c")
    c.dependencies = [a.id, b.id]
    resolver.block(c, resolver.unmet_dependencies(c))

    assert c.status == "blocked"
    assert c.blocked_reason == f"Waiting for dependencies: {a.id}, {b.id}"

    a.status = "completed"
    assert resolver.release_dependents(a.id) == []
    assert c.status == "blocked"

    b.status = "completed"
    released = resolver.release_dependents(b.id)
    assert released == [c]
    assert c.status == "pending"
    assert c.blocked_reason is None
    assert c.history[-1].action == "unblocked"
    assert c.history[-1].notes == f"Unblocked after completion of dependency: {b.id}"


def test_missing_dependency_counts_as_met() -> None:
    store = TaskStore()
    resolver = DependencyResolver(store)
    task = store.create("orphan")
    task.dependencies = ["task-deleted"]

    assert resolver.unmet_dependencies(task) == []


def test_validate_rejects_self_and_cycles() -> None:
    store = TaskStore()
    resolver = DependencyResolver(store)
    a = store.create("a")
    b = store.create("b")
    b.dependencies = [a.id]

    with pytest.raises(InvalidArgumentError, match="itself"):
        resolver.validate(a.id, [a.id])
    with pytest.raises(InvalidArgumentError, match="cycle"):
        resolver.validate(a.id, [b.id])
    assert resolver.validate(b.id, [a.id, a.id]) == [a.id]


def test_insert_rejects_duplicate_ids() -> None:
    store = TaskStore()
    store.insert(Task(id="task-1", content="one"))

    with pytest.raises(InvalidArgumentError):
        store.insert(Task(id="task-1", content="again"))
