from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from taskpilot.backends.base import LanguageModelBackend, request_text
from taskpilot.models import BLOCKED, COMPLETED, IN_PROGRESS, Task
from taskpilot.prompts import render_prompt

logger = logging.getLogger(__name__)

Complexity = Literal["simple", "medium", "complex", "very_complex"]

IMPLEMENT_PATTERN = re.compile(r"\b(implement|create|build|develop|code|program)\b", re.IGNORECASE)
TEST_PATTERN = re.compile(r"\b(test|testing|verify|validate|check)\b", re.IGNORECASE)
RESEARCH_PATTERN = re.compile(r"\b(research|investigate|analyze|explore|discover)\b", re.IGNORECASE)
API_PATTERN = re.compile(r"\b(api|endpoint|service|request|response)\b", re.IGNORECASE)

TIME_ESTIMATES: dict[str, dict[str, int]] = {
    "simple": {"implementation": 30, "testing": 20, "research": 15, "api": 25, "generic": 20},
    "medium": {"implementation": 90, "testing": 60, "research": 45, "api": 75, "generic": 60},
    "complex": {"implementation": 240, "testing": 180, "research": 120, "api": 200, "generic": 180},
    "very_complex": {
        "implementation": 480,
        "testing": 360,
        "research": 240,
        "api": 400,
        "generic": 360,
    },
}

BREAKDOWNS: dict[str, list[str]] = {
    "implementation": [
        "Analyze requirements and design approach",
        "Set up basic structure and dependencies",
        "Implement core functionality",
        "Add error handling and validation",
        "Create tests and documentation",
        "Review and optimize implementation",
    ],
    "testing": [
        "Define test scenarios and criteria",
        "Set up test environment",
        "Create test cases",
        "Execute tests and record results",
        "Fix issues found during testing",
        "Document test results",
    ],
    "research": [
        "Define research scope and questions",
        "Gather initial information",
        "Analyze findings and patterns",
        "Validate key insights",
        "Document conclusions",
        "Present recommendations",
    ],
    "api": [
        "Design API structure and endpoints",
        "Set up basic routing and middleware",
        "Implement core endpoints",
        "Add authentication and validation",
        "Create documentation and tests",
        "Deploy and monitor API",
    ],
    "generic": [
        "Define clear objectives",
        "Plan approach and timeline",
        "Execute planned tasks",
        "Review and validate results",
        "Document outcomes",
        "Iterate and improve",
    ],
}

TIPS: dict[str, list[str]] = {
    "implementation": [
        "Start with small, working increments",
        "Use version control for each milestone",
        "Test early and often during development",
    ],
    "testing": [
        "Focus on edge cases and error conditions",
        "Automate repetitive test procedures",
        "Document test results and findings",
    ],
    "research": [
        "Use multiple sources for validation",
        "Keep detailed notes and references",
        "Focus on actionable insights",
    ],
    "api": [
        "Follow REST principles and standards",
        "Implement proper error handling",
        "Document the API thoroughly for its users",
    ],
    "generic": [
        "Break complex tasks into smaller steps",
        "Validate progress at each milestone",
        "Maintain clear documentation",
    ],
}

FALLBACK_RISKS = [
    "Complexity may vary during execution",
    "Dependencies might need additional time",
]
FALLBACK_PREREQUISITES = [
    "Review task requirements",
    "Ensure necessary tools are available",
]
FALLBACK_PATTERNS = [
    "Research existing implementations before starting new work",
    "Follow established patterns and conventions in the codebase",
    "Test incrementally during development",
    "Document decisions and approach for future reference",
]

_STRING_LIST = TypeAdapter(list[str])


class SemanticAnalysis(BaseModel):
    task_type: str = "generic"
    complexity: Complexity = "medium"
    suggested_breakdown: list[str] = Field(default_factory=list)
    contextual_tips: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)


@dataclass(slots=True)
class TaskAnalysis:
    task_id: str
    task_type: str
    complexity: str
    estimated_time: int
    suggested_breakdown: list[str] = field(default_factory=list)
    risk_factors: list[str] = field(default_factory=list)
    prerequisites: list[str] = field(default_factory=list)
    contextual_tips: list[str] = field(default_factory=list)
    confidence: float = 0.3

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def heuristic_semantics(content: str) -> SemanticAnalysis:
    if IMPLEMENT_PATTERN.search(content):
        task_type = "implementation"
    elif TEST_PATTERN.search(content):
        task_type = "testing"
    elif RESEARCH_PATTERN.search(content):
        task_type = "research"
    elif API_PATTERN.search(content):
        task_type = "api"
    else:
        task_type = "generic"

    if len(content) > 200:
        complexity = "complex"
    elif len(content) > 100:
        complexity = "medium"
    else:
        complexity = "simple"

    return SemanticAnalysis(
        task_type=task_type,
        complexity=complexity,
        suggested_breakdown=list(BREAKDOWNS[task_type]),
        contextual_tips=list(TIPS[task_type]),
        confidence=0.3,
    )


def estimate_minutes(complexity: str, task_type: str) -> int:
    table = TIME_ESTIMATES.get(complexity, TIME_ESTIMATES["medium"])
    return table.get(task_type, table["generic"])


def _json_slice(text: str, opener: str, closer: str) -> str | None:
    start, end = text.find(opener), text.rfind(closer)
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def status_based_tips(task: Task) -> list[str]:
    tips: list[str] = []
    if task.status == BLOCKED:
        tips.append("Review dependency tasks and their completion status")
        tips.append("Check if the blocked reason can be resolved")
    if task.dependencies:
        tips.append("Ensure all dependency tasks are completed before proceeding")
        tips.append("Review outputs from dependency tasks for context")
    if task.status == IN_PROGRESS and task.estimated_time and task.actual_time:
        if task.actual_time / task.estimated_time > 1.5:
            tips.append("Task is taking longer than estimated; consider breaking it down further")
            tips.append("Check whether the scope has grown beyond the original requirements")
    if task.subtasks:
        done = sum(1 for item in task.subtasks if item.status == COMPLETED)
        if done / len(task.subtasks) < 0.3:
            tips.append("Complete subtasks one at a time to keep progress visible")
    return tips


class TaskAnalyzer:
    """Complexity, estimates and advice for a task, with heuristic fallbacks."""

    def __init__(
        self,
        backend: LanguageModelBackend | None = None,
        *,
        timeout_seconds: float = 90.0,
    ) -> None:
        self.backend = backend
        self.timeout_seconds = timeout_seconds

    async def _ask(self, prompt: str) -> str | None:
        if self.backend is None:
            return None
        try:
            reply = await request_text(self.backend, prompt, timeout_seconds=self.timeout_seconds)
        except Exception as exc:
            logger.warning("Language model request failed: %s", exc)
            return None
        return reply or None

    async def _ask_list(self, prompt: str) -> list[str] | None:
        reply = await self._ask(prompt)
        if reply is None:
            return None
        candidate = _json_slice(reply, "[", "]")
        if candidate is None:
            return None
        try:
            items = _STRING_LIST.validate_json(candidate)
        except ValidationError:
            logger.info("Discarding list reply that does not match the schema")
            return None
        items = [item.strip() for item in items if item.strip()]
        return items or None

    async def semantics(self, content: str) -> SemanticAnalysis:
        reply = await self._ask(render_prompt("task_semantics.md", content=content))
        if reply is not None:
            candidate = _json_slice(reply, "{", "}")
            if candidate is not None:
                try:
                    return SemanticAnalysis.model_validate_json(candidate)
                except ValidationError as exc:
                    logger.info("Semantic analysis reply rejected: %s", exc.error_count())
        return heuristic_semantics(content)

    async def risk_factors(self, semantics: SemanticAnalysis) -> list[str]:
        items = await self._ask_list(
            render_prompt(
                "risk_factors.md",
                task_type=semantics.task_type,
                complexity=semantics.complexity,
            )
        )
        return items or list(FALLBACK_RISKS)

    async def prerequisites(self, semantics: SemanticAnalysis) -> list[str]:
        items = await self._ask_list(
            render_prompt(
                "prerequisites.md",
                task_type=semantics.task_type,
                complexity=semantics.complexity,
            )
        )
        return items or list(FALLBACK_PREREQUISITES)

    async def analyze(self, task: Task) -> TaskAnalysis:
        text = f"{task.content} {task.summary or ''}".strip()
        semantics = await self.semantics(text)
        breakdown = semantics.suggested_breakdown or list(
            BREAKDOWNS.get(semantics.task_type, BREAKDOWNS["generic"])
        )
        return TaskAnalysis(
            task_id=task.id,
            task_type=semantics.task_type,
            complexity=semantics.complexity,
            estimated_time=estimate_minutes(semantics.complexity, semantics.task_type),
            suggested_breakdown=breakdown,
            risk_factors=await self.risk_factors(semantics),
            prerequisites=await self.prerequisites(semantics),
            contextual_tips=list(semantics.contextual_tips),
            confidence=semantics.confidence,
        )

    async def troubleshooting_tips(self, task: Task) -> list[str]:
        semantics = await self.semantics(task.content)
        return [*semantics.contextual_tips, *status_based_tips(task)]

    async def common_patterns(self, task: Task) -> list[str]:
        items = await self._ask_list(render_prompt("patterns.md", content=task.content))
        return items or list(FALLBACK_PATTERNS)
