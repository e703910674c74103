from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "openai"]


@dataclass(slots=True)
class ContextConfig:
    max_tokens_before_compression: int = 100_000
    compression_ratio: float = 0.7
    max_history_items: int = 100
    enable_intelligent_summarization: bool = True
    max_age_hours: float = 24.0
    compression_validity_minutes: float = 30.0
    max_growth_before_recompression: int = 5


@dataclass(slots=True)
class WorkflowConfig:
    auto_progression: bool = False
    smart_analysis: bool = True
    monitor_interval_seconds: float = 5.0
    blocked_threshold_minutes: float = 30.0
    archive_after_days: float = 7.0
    cleanup_interval_seconds: float = 3600.0


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "openai"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class AgentsConfig:
    model: str = "gpt-4o-mini"


@dataclass(slots=True)
class StateConfig:
    directory: str = ".taskpilot/state"


@dataclass(slots=True)
class TaskpilotConfig:
    context: ContextConfig = field(default_factory=ContextConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> TaskpilotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TaskpilotConfig:
        return cls(
            context=ContextConfig(**data.get("context", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "context": {
                "max_tokens_before_compression": self.context.max_tokens_before_compression,
                "compression_ratio": self.context.compression_ratio,
                "max_history_items": self.context.max_history_items,
                "enable_intelligent_summarization": self.context.enable_intelligent_summarization,
                "max_age_hours": self.context.max_age_hours,
                "compression_validity_minutes": self.context.compression_validity_minutes,
                "max_growth_before_recompression": self.context.max_growth_before_recompression,
            },
            "workflow": {
                "auto_progression": self.workflow.auto_progression,
                "smart_analysis": self.workflow.smart_analysis,
                "monitor_interval_seconds": self.workflow.monitor_interval_seconds,
                "blocked_threshold_minutes": self.workflow.blocked_threshold_minutes,
                "archive_after_days": self.workflow.archive_after_days,
                "cleanup_interval_seconds": self.workflow.cleanup_interval_seconds,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "model": self.agents.model,
            },
            "state": {
                "directory": self.state.directory,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TaskpilotConfig) -> str:
    lines: list[str] = []
    for section, values in config.to_dict().items():
        lines.append(f"[{section}]")
        for key, value in values.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TaskpilotConfig:
    if not path.exists():
        return TaskpilotConfig.default()
    return TaskpilotConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: TaskpilotConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
