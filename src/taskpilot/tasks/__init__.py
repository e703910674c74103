from taskpilot.tasks.dependencies import DependencyResolver
from taskpilot.tasks.store import TaskStore

__all__ = ["DependencyResolver", "TaskStore"]
