from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from taskpilot.engine import WorkflowEngine
from taskpilot.errors import InvalidArgumentError, TaskpilotError

logger = logging.getLogger(__name__)

Handler = Callable[[Mapping[str, Any]], Awaitable[Any]]


def _require(args: Mapping[str, Any], key: str) -> Any:
    value = args.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InvalidArgumentError(f"Missing required argument '{key}'.")
    return value


def _string_list(args: Mapping[str, Any], key: str) -> list[str] | None:
    value = args.get(key)
    if value is None:
        return None
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if not isinstance(value, list):
        raise InvalidArgumentError(f"Argument '{key}' must be a list of strings.")
    return [str(item) for item in value]


def _flag(args: Mapping[str, Any], key: str) -> bool | None:
    value = args.get(key)
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise InvalidArgumentError(f"Argument '{key}' must be a boolean.")


class CommandRouter:
    """Argument-bag front door to the engine; every call returns an envelope."""

    def __init__(self, engine: WorkflowEngine) -> None:
        self.engine = engine
        self._handlers: dict[str, Handler] = {
            "create": self._create,
            "update": self._update,
            "complete": self._complete,
            "delete": self._delete,
            "list": self._list,
            "get": self._get,
            "summary": self._summary,
            "create_workflow": self._create_workflow,
            "get_workflow_status": self._workflow_status,
            "add_subtask": self._add_subtask,
            "update_subtask": self._update_subtask,
            "analyze": self._analyze,
            "checkpoint": self._checkpoint,
            "toggle_auto_progression": self._toggle_auto_progression,
            "approve": self._approve,
            "request_guidance": self._request_guidance,
            "get_next_steps": self._next_steps,
            "clear": self._clear,
            "pause": self._pause,
            "resume": self._resume,
            "cancel": self._cancel,
            "get_context": self._get_context,
            "archive_session": self._archive_session,
            "restore_session": self._restore_session,
            "list_sessions": self._list_sessions,
        }

    @property
    def actions(self) -> list[str]:
        return sorted(self._handlers)

    async def execute(self, action: str, args: Mapping[str, Any] | None = None) -> dict[str, Any]:
        handler = self._handlers.get(action)
        if handler is None:
            return {
                "success": False,
                "error": f"Unknown action '{action}'. Expected one of: {', '.join(self.actions)}.",
                "error_kind": InvalidArgumentError.kind,
            }
        try:
            data = await handler(args or {})
        except TaskpilotError as exc:
            self.engine.drain_warnings()
            return {"success": False, "error": str(exc), "error_kind": exc.kind}
        except Exception as exc:
            logger.exception("Command %s failed", action)
            self.engine.drain_warnings()
            return {"success": False, "error": str(exc) or type(exc).__name__, "error_kind": "unexpected"}
        return {"success": True, "data": data, "warnings": self.engine.drain_warnings()}

    async def _create(self, args: Mapping[str, Any]) -> dict[str, Any]:
        task = await self.engine.create_task(
            _require(args, "content"),
            priority=args.get("priority") or "medium",
            tags=_string_list(args, "tags"),
            summary=args.get("summary"),
            dependencies=_string_list(args, "dependencies"),
            approval_required=bool(_flag(args, "approval_required")),
            agent_id=args.get("agent_id") or "ai-agent",
        )
        return task.to_dict()

    async def _update(self, args: Mapping[str, Any]) -> dict[str, Any]:
        task = await self.engine.update_task(
            _require(args, "id"),
            status=args.get("status"),
            notes=args.get("notes"),
            content=args.get("content"),
            priority=args.get("priority"),
            summary=args.get("summary"),
            tags=_string_list(args, "tags"),
            assignee=args.get("assignee"),
            agent_id=args.get("agent_id") or "ai-agent",
        )
        return task.to_dict()

    async def _complete(self, args: Mapping[str, Any]) -> dict[str, Any]:
        task = await self.engine.complete_task(
            _require(args, "id"), args.get("notes"), args.get("agent_id") or "ai-agent"
        )
        return task.to_dict()

    async def _delete(self, args: Mapping[str, Any]) -> dict[str, Any]:
        task_id = _require(args, "id")
        return {"id": task_id, "deleted": await self.engine.delete_task(task_id)}

    async def _list(self, args: Mapping[str, Any]) -> list[dict[str, Any]]:
        tasks = self.engine.list_tasks(status=args.get("status"), workflow_id=args.get("workflow_id"))
        return [task.to_dict() for task in tasks]

    async def _get(self, args: Mapping[str, Any]) -> dict[str, Any]:
        return self.engine.get_task(_require(args, "id")).to_dict()

    async def _summary(self, args: Mapping[str, Any]) -> Any:
        if args.get("id"):
            return self.engine.get_task_summary(args["id"])
        return self.engine.get_summary()

    async def _pause(self, args: Mapping[str, Any]) -> dict[str, Any]:
        return (await self.engine.pause_task(_require(args, "id"), args.get("notes"))).to_dict()

    async def _resume(self, args: Mapping[str, Any]) -> dict[str, Any]:
        return (await self.engine.resume_task(_require(args, "id"), args.get("notes"))).to_dict()

    async def _cancel(self, args: Mapping[str, Any]) -> dict[str, Any]:
        return (await self.engine.cancel_task(_require(args, "id"), args.get("notes"))).to_dict()

    async def _add_subtask(self, args: Mapping[str, Any]) -> dict[str, Any]:
        subtask = await self.engine.add_subtask(_require(args, "id"), _require(args, "content"))
        return subtask.to_dict()

    async def _update_subtask(self, args: Mapping[str, Any]) -> dict[str, Any]:
        subtask = await self.engine.update_subtask(
            _require(args, "id"), _require(args, "subtask_id"), _require(args, "status")
        )
        return subtask.to_dict()

    async def _analyze(self, args: Mapping[str, Any]) -> dict[str, Any]:
        return (await self.engine.analyze_task(_require(args, "id"))).to_dict()

    async def _create_workflow(self, args: Mapping[str, Any]) -> dict[str, Any]:
        tasks = _require(args, "tasks")
        if not isinstance(tasks, list):
            raise InvalidArgumentError("Argument 'tasks' must be a list.")
        workflow_id = await self.engine.create_workflow(
            tasks,
            workflow_id=args.get("workflow_id"),
            smart_analysis=args.get("smart_analysis"),
            parent_objective=args.get("parent_objective"),
        )
        return self.engine.get_workflow_status(workflow_id)

    async def _workflow_status(self, args: Mapping[str, Any]) -> dict[str, Any]:
        return self.engine.get_workflow_status(args.get("workflow_id"))

    async def _toggle_auto_progression(self, args: Mapping[str, Any]) -> dict[str, Any]:
        result = await self.engine.toggle_auto_progression(_flag(args, "enabled"))
        return {"auto_progression_enabled": result}

    async def _approve(self, args: Mapping[str, Any]) -> dict[str, Any]:
        return (await self.engine.approve(_require(args, "id"), args.get("notes"))).to_dict()

    async def _checkpoint(self, args: Mapping[str, Any]) -> dict[str, Any]:
        environment = args.get("environment")
        if environment is not None and not isinstance(environment, Mapping):
            raise InvalidArgumentError("Argument 'environment' must be a mapping.")
        return await self.engine.checkpoint(
            _require(args, "id"), _require(args, "note"), dict(environment or {})
        )

    async def _request_guidance(self, args: Mapping[str, Any]) -> dict[str, Any]:
        return await self.engine.get_guidance(_require(args, "id"))

    async def _next_steps(self, args: Mapping[str, Any]) -> dict[str, Any]:
        return self.engine.get_next_steps(_require(args, "id"))

    async def _get_context(self, args: Mapping[str, Any]) -> dict[str, Any]:
        prompt = _require(args, "prompt")
        context = await self.engine.get_context(prompt, args.get("workflow_id"))
        return {"context": context}

    async def _clear(self, args: Mapping[str, Any]) -> dict[str, Any]:
        return {"session_id": await self.engine.clear()}

    async def _archive_session(self, args: Mapping[str, Any]) -> dict[str, Any]:
        return {"archived_session_id": await self.engine.archive_current_session()}

    async def _restore_session(self, args: Mapping[str, Any]) -> dict[str, Any]:
        state = await self.engine.restore_session(_require(args, "session_id"))
        return {"session_id": state.session_id, "task_count": len(state.tasks)}

    async def _list_sessions(self, args: Mapping[str, Any]) -> dict[str, Any]:
        return self.engine.list_sessions()
