from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["codex", "claude"]
SpecialistCategory = Literal["content", "process"]

DEFAULT_ITERATION_OVERRIDES: dict[str, int] = {
    "fr_writer": 10,
    "nfr_writer": 10,
    "overall_description_writer": 10,
    "user_journey_writer": 10,
    "summary_writer": 10,
    "project_initializer": 3,
    "document_formatter": 5,
}


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-document"
    workspace: str = "."


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class EngineConfig:
    max_iterations: int = 20
    max_retries: int = 2
    retry_backoff_seconds: float = 1.0
    step_max_attempts: int = 2
    history_limit: int = 100
    history_keep: int = 50
    loop_history_limit: int = 20


@dataclass(slots=True)
class SpecialistsConfig:
    content_iterations: int = 15
    process_iterations: int = 8
    global_iterations: int = 10
    overrides: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_ITERATION_OVERRIDES)
    )

    def max_iterations_for(
        self, specialist_id: str, category: SpecialistCategory | None = None
    ) -> int:
        if specialist_id in self.overrides:
            return int(self.overrides[specialist_id])
        if category == "content":
            return self.content_iterations
        if category == "process":
            return self.process_iterations
        return self.global_iterations


@dataclass(slots=True)
class CancellationConfig:
    poll_interval_seconds: float = 0.1
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class SessionConfig:
    state_dir: str = ".draftsman"
    archive_after_days: int = 15
    operation_log_limit: int = 500


@dataclass(slots=True)
class DraftsmanConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    specialists: SpecialistsConfig = field(default_factory=SpecialistsConfig)
    cancellation: CancellationConfig = field(default_factory=CancellationConfig)
    session: SessionConfig = field(default_factory=SessionConfig)

    @classmethod
    def default(cls) -> DraftsmanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> DraftsmanConfig:
        specialists = dict(data.get("specialists", {}))
        overrides = dict(DEFAULT_ITERATION_OVERRIDES)
        overrides.update(
            {str(key): int(value) for key, value in specialists.pop("overrides", {}).items()}
        )
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            engine=EngineConfig(**data.get("engine", {})),
            specialists=SpecialistsConfig(**specialists, overrides=overrides),
            cancellation=CancellationConfig(**data.get("cancellation", {})),
            session=SessionConfig(**data.get("session", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "workspace": self.project.workspace,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "engine": {
                "max_iterations": self.engine.max_iterations,
                "max_retries": self.engine.max_retries,
                "retry_backoff_seconds": self.engine.retry_backoff_seconds,
                "step_max_attempts": self.engine.step_max_attempts,
                "history_limit": self.engine.history_limit,
                "history_keep": self.engine.history_keep,
                "loop_history_limit": self.engine.loop_history_limit,
            },
            "specialists": {
                "content_iterations": self.specialists.content_iterations,
                "process_iterations": self.specialists.process_iterations,
                "global_iterations": self.specialists.global_iterations,
                "overrides": dict(self.specialists.overrides),
            },
            "cancellation": {
                "poll_interval_seconds": self.cancellation.poll_interval_seconds,
                "timeout_seconds": self.cancellation.timeout_seconds,
            },
            "session": {
                "state_dir": self.session.state_dir,
                "archive_after_days": self.session.archive_after_days,
                "operation_log_limit": self.session.operation_log_limit,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: DraftsmanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "backend", "engine", "specialists", "cancellation", "session"]
    for section in section_order:
        tables: dict[str, dict] = {}
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            if isinstance(value, dict):
                tables[key] = value
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
        for table_name, table in tables.items():
            lines.append(f"[{section}.{table_name}]")
            for key, value in table.items():
                lines.append(f"{key} = {_toml_value(value)}")
            lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> DraftsmanConfig:
    if not path.exists():
        return DraftsmanConfig.default()
    return DraftsmanConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: DraftsmanConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
