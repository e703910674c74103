from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timedelta

from taskpilot.config import ContextConfig
from taskpilot.models import Clock, CompressedContext, ContextSnapshot, estimate_tokens, utcnow

logger = logging.getLogger(__name__)


class ContextAccumulator:
    """Per-workflow event log with token accounting and a compressed-summary cache."""

    def __init__(self, config: ContextConfig | None = None, clock: Clock = utcnow) -> None:
        self.config = config or ContextConfig()
        self.clock = clock
        self._history: dict[str, list[ContextSnapshot]] = {}
        self._event_counts: defaultdict[str, int] = defaultdict(int)
        self._compressed: dict[str, CompressedContext] = {}

    def add_context(self, workflow_id: str, snapshot: ContextSnapshot) -> ContextSnapshot:
        if snapshot.token_count is None:
            snapshot = replace(snapshot, token_count=estimate_tokens(snapshot.content))
        if snapshot.workflow_id is None:
            snapshot = replace(snapshot, workflow_id=workflow_id)
        entries = self._history.setdefault(workflow_id, [])
        entries.append(snapshot)
        overflow = len(entries) - self.config.max_history_items
        if overflow > 0:
            del entries[:overflow]
        self._event_counts[workflow_id] += 1
        return snapshot

    def history(self, workflow_id: str) -> list[ContextSnapshot]:
        return list(self._history.get(workflow_id, []))

    def get_total_tokens(self, workflow_id: str) -> int:
        return sum(item.token_count or 0 for item in self._history.get(workflow_id, []))

    def event_count(self, workflow_id: str) -> int:
        """Snapshots ever appended to the workflow, unaffected by eviction."""
        return self._event_counts.get(workflow_id, 0)

    def get_compressed(self, workflow_id: str) -> CompressedContext | None:
        return self._compressed.get(workflow_id)

    def store_compressed(self, workflow_id: str, compressed: CompressedContext) -> None:
        self._compressed[workflow_id] = compressed

    def cleanup_old_context(self, now: datetime | None = None) -> int:
        """Drop snapshots and summaries older than max_age_hours; returns snapshots removed."""
        cutoff = (now or self.clock()) - timedelta(hours=self.config.max_age_hours)
        removed = 0
        for workflow_id in list(self._history):
            entries = self._history[workflow_id]
            kept = [item for item in entries if item.timestamp >= cutoff]
            removed += len(entries) - len(kept)
            if kept:
                self._history[workflow_id] = kept
            else:
                del self._history[workflow_id]
        for workflow_id in list(self._compressed):
            if self._compressed[workflow_id].compressed_at < cutoff:
                del self._compressed[workflow_id]
        if removed:
            logger.info("Removed %d stale context snapshots", removed)
        return removed

    def clear(self, workflow_id: str | None = None) -> None:
        if workflow_id is None:
            self._history.clear()
            self._event_counts.clear()
            self._compressed.clear()
            return
        self._history.pop(workflow_id, None)
        self._event_counts.pop(workflow_id, None)
        self._compressed.pop(workflow_id, None)
