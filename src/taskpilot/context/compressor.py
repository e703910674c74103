from __future__ import annotations

import logging
import math
import re
from datetime import timedelta

from pydantic import BaseModel, Field, ValidationError

from taskpilot.backends.base import BackendExecutionError, LanguageModelBackend, request_text
from taskpilot.config import ContextConfig
from taskpilot.context.accumulator import ContextAccumulator
from taskpilot.models import Clock, CompressedContext, ContextSnapshot, estimate_tokens, utcnow
from taskpilot.prompts import render_prompt

logger = logging.getLogger(__name__)

GROUP_HEADERS = (
    ("user_prompt", "USER PROMPTS"),
    ("workflow_progress", "WORKFLOW PROGRESS"),
    ("task_result", "COMPLETED TASKS"),
    ("ai_guidance", "AI GUIDANCE"),
    ("checkpoint", "CHECKPOINTS"),
)
KEY_POINTS_PATTERN = re.compile(r"KEY_POINTS:\s*(.*?)(?:\n\n|\n[A-Z_]+:|$)", re.DOTALL)
FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$")

RETAINED_SNAPSHOTS = 3
MAX_RECENT_SNAPSHOTS = 5
FALLBACK_RECENT = 10
FALLBACK_MAX_ITEMS = 20
FALLBACK_ITEM_CHARS = 200


class CompressionReply(BaseModel):
    summary: str = Field(min_length=1)
    key_points: list[str] = Field(default_factory=list)
    technical_context: str = ""
    progress_status: str = ""

    def render(self) -> str:
        parts = [self.summary.strip()]
        if self.technical_context.strip():
            parts.append(f"TECHNICAL CONTEXT:\n{self.technical_context.strip()}")
        if self.progress_status.strip():
            parts.append(f"PROGRESS STATUS:\n{self.progress_status.strip()}")
        return "\n\n".join(parts)


def build_context_sections(history: list[ContextSnapshot]) -> list[str]:
    sections: list[str] = []
    known = {kind for kind, _ in GROUP_HEADERS}
    for kind, header in GROUP_HEADERS:
        items = [item for item in history if item.kind == kind]
        if items:
            sections.append(header + ":\n" + "\n".join(f"- {item.content}" for item in items))
    other = [item for item in history if item.kind not in known]
    if other:
        sections.append("OTHER CONTEXT:\n" + "\n".join(f"- {item.content}" for item in other))
    return sections


def build_full_context(history: list[ContextSnapshot], current_prompt: str) -> str:
    return "\n\n".join([*build_context_sections(history), f"CURRENT REQUEST:\n{current_prompt}"])


def extract_key_points(text: str) -> list[str]:
    match = KEY_POINTS_PATTERN.search(text)
    if not match:
        return []
    points: list[str] = []
    for line in match.group(1).splitlines():
        point = line.strip().lstrip("-*• ").strip()
        if point:
            points.append(point)
    return points


def parse_compression_reply(text: str) -> CompressionReply | None:
    candidate = FENCE_PATTERN.sub("", text.strip())
    start, end = candidate.find("{"), candidate.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        return CompressionReply.model_validate_json(candidate[start : end + 1])
    except ValidationError:
        return None


def fallback_compression(
    history: list[ContextSnapshot],
    current_prompt: str,
    total_tokens: int,
    ratio: float,
) -> str:
    """Deterministic summary: high-priority plus recent snapshots, greedily packed.

    Each snapshot is shown truncated, but its full length is charged against
    the character budget.
    """
    target_length = math.floor(total_tokens * ratio * 4)
    candidates: list[ContextSnapshot] = []
    seen: set[int] = set()
    for item in [*(item for item in history if item.priority == "high"), *history[-FALLBACK_RECENT:]]:
        if id(item) in seen:
            continue
        seen.add(id(item))
        candidates.append(item)
    candidates = candidates[:FALLBACK_MAX_ITEMS]

    lines = ["COMPRESSED CONTEXT (Fallback):"]
    used = 0
    for item in candidates:
        if used + len(item.content) > target_length:
            break
        excerpt = item.content[:FALLBACK_ITEM_CHARS]
        suffix = "..." if len(item.content) > FALLBACK_ITEM_CHARS else ""
        lines.append(f"- [{item.kind}] {excerpt}{suffix}")
        used += len(item.content)
    return "\n".join(lines) + f"\n\nCURRENT REQUEST:\n{current_prompt}"


class ContextCompressor:
    """Keeps the context handed to the agent inside the configured token budget."""

    def __init__(
        self,
        accumulator: ContextAccumulator,
        backend: LanguageModelBackend | None = None,
        *,
        config: ContextConfig | None = None,
        timeout_seconds: float = 90.0,
        clock: Clock = utcnow,
    ) -> None:
        self.accumulator = accumulator
        self.backend = backend
        self.config = config or accumulator.config
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    def _growth(self, workflow_id: str, compressed: CompressedContext) -> int:
        return max(0, self.accumulator.event_count(workflow_id) - compressed.event_count)

    def is_valid(self, workflow_id: str, compressed: CompressedContext) -> bool:
        age = self.clock() - compressed.compressed_at
        return (
            age < timedelta(minutes=self.config.compression_validity_minutes)
            and self._growth(workflow_id, compressed) <= self.config.max_growth_before_recompression
        )

    def render_compressed(
        self,
        workflow_id: str,
        compressed: CompressedContext,
        history: list[ContextSnapshot],
        current_prompt: str,
    ) -> str:
        recent_count = min(
            MAX_RECENT_SNAPSHOTS, RETAINED_SNAPSHOTS + self._growth(workflow_id, compressed)
        )
        sections = [f"WORKFLOW SUMMARY (AI-Compressed):\n{compressed.summary}"]
        if compressed.key_points:
            sections.append(
                "KEY POINTS:\n" + "\n".join(f"- {point}" for point in compressed.key_points)
            )
        recent = history[-recent_count:]
        if recent:
            sections.append(
                "RECENT ACTIVITY:\n"
                + "\n".join(f"- [{item.kind}] {item.content}" for item in recent)
            )
        sections.append(f"CURRENT REQUEST:\n{current_prompt}")
        return "\n\n".join(sections)

    async def compress_with_ai(
        self,
        workflow_id: str,
        history: list[ContextSnapshot],
        total_tokens: int,
        current_prompt: str,
    ) -> CompressedContext:
        ratio = self.config.compression_ratio
        prompt = render_prompt(
            "compression.md",
            target_tokens=math.floor(total_tokens * ratio),
            target_percent=round(ratio * 100),
            total_tokens=total_tokens,
            full_context="\n\n".join(build_context_sections(history)),
            current_prompt=current_prompt,
        )
        reply = await request_text(self.backend, prompt, timeout_seconds=self.timeout_seconds)
        if not reply.strip():
            raise BackendExecutionError("Compression reply was empty.", retriable=False)

        structured = parse_compression_reply(reply)
        if structured is not None:
            summary = structured.render()
            key_points = [point.strip() for point in structured.key_points if point.strip()]
        else:
            logger.info("Compression reply for %s was not JSON; using section markers", workflow_id)
            summary = reply.strip()
            key_points = extract_key_points(reply)

        compressed_tokens = estimate_tokens(summary)
        compressed = CompressedContext(
            original_tokens=total_tokens,
            compressed_tokens=compressed_tokens,
            ratio=compressed_tokens / total_tokens if total_tokens else 0.0,
            summary=summary,
            key_points=key_points,
            retained=history[-RETAINED_SNAPSHOTS:],
            compressed_at=self.clock(),
            event_count=self.accumulator.event_count(workflow_id),
        )
        self.accumulator.store_compressed(workflow_id, compressed)
        logger.info(
            "Compressed context for %s: %d -> %d tokens",
            workflow_id,
            total_tokens,
            compressed_tokens,
        )
        return compressed

    async def get_context_for_ai(self, workflow_id: str, current_prompt: str) -> str:
        history = self.accumulator.history(workflow_id)
        total_tokens = self.accumulator.get_total_tokens(workflow_id)
        if total_tokens <= self.config.max_tokens_before_compression:
            return build_full_context(history, current_prompt)

        cached = self.accumulator.get_compressed(workflow_id)
        if cached is not None and self.is_valid(workflow_id, cached):
            return self.render_compressed(workflow_id, cached, history, current_prompt)

        if self.backend is not None and self.config.enable_intelligent_summarization:
            try:
                compressed = await self.compress_with_ai(
                    workflow_id, history, total_tokens, current_prompt
                )
            except Exception as exc:
                logger.warning("AI compression failed for %s, using fallback: %s", workflow_id, exc)
            else:
                return self.render_compressed(workflow_id, compressed, history, current_prompt)

        return fallback_compression(
            history, current_prompt, total_tokens, self.config.compression_ratio
        )
