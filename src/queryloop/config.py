"""Runtime configuration for the query loop orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_BACKENDS = ("echo", "command")


@dataclass(slots=True)
class TemplateSettings:
    """Query template substitution settings."""

    enabled: bool = False
    token_variable: str = "YQL_TOKEN"
    query_id_variable: str = "QUERY_ID"

    @property
    def token_placeholder(self) -> str:
        return "${" + self.token_variable + "}"

    @property
    def query_id_placeholder(self) -> str:
        return "${" + self.query_id_variable + "}"


@dataclass(slots=True)
class RunnerSettings:
    """Identity and service-mode defaults for request building and idling."""

    default_trace_id: str = "queryloop"
    root_user_id: str = "root@builtin"
    idle_tick_seconds: float = 1.0
    idle_max_ticks: int = 0


@dataclass(slots=True)
class CommandBackendSettings:
    """Subprocess backend settings."""

    template: str = ""
    workdir: Path = Path(".queryloop")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    backend: str = "echo"
    log_level: str = "INFO"
    templates: TemplateSettings = field(default_factory=TemplateSettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    command: CommandBackendSettings = field(default_factory=CommandBackendSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults suitable for local runs."""

        return cls(
            backend=os.getenv("QUERYLOOP_BACKEND", "echo").strip().lower(),
            log_level=os.getenv("QUERYLOOP_LOG_LEVEL", "INFO").strip().upper(),
            templates=TemplateSettings(
                enabled=_env_bool("QUERYLOOP_TEMPLATES", default=False),
                token_variable=os.getenv("QUERYLOOP_TOKEN_VARIABLE", "YQL_TOKEN").strip(),
            ),
            runner=RunnerSettings(
                default_trace_id=os.getenv("QUERYLOOP_DEFAULT_TRACE_ID", "queryloop"),
                root_user_id=os.getenv("QUERYLOOP_ROOT_USER", "root@builtin"),
                idle_tick_seconds=float(os.getenv("QUERYLOOP_IDLE_TICK_SECONDS", "1.0")),
                idle_max_ticks=int(os.getenv("QUERYLOOP_IDLE_MAX_TICKS", "0")),
            ),
            command=CommandBackendSettings(
                template=os.getenv("QUERYLOOP_COMMAND_TEMPLATE", ""),
                workdir=Path(os.getenv("QUERYLOOP_WORKDIR", ".queryloop")),
            ),
        )

    def validate(self) -> None:
        """Raise ValueError if settings cannot drive a run."""

        if self.backend not in SUPPORTED_BACKENDS:
            raise ValueError(
                f"Unsupported QUERYLOOP_BACKEND: {self.backend!r}. "
                f"Expected one of: {', '.join(SUPPORTED_BACKENDS)}.",
            )
        if not self.templates.token_variable:
            raise ValueError("QUERYLOOP_TOKEN_VARIABLE must not be empty.")
        if self.runner.idle_tick_seconds <= 0:
            raise ValueError("QUERYLOOP_IDLE_TICK_SECONDS must be > 0.")
        if self.runner.idle_max_ticks < 0:
            raise ValueError("QUERYLOOP_IDLE_MAX_TICKS must be >= 0.")
        if self.backend == "command" and not self.command.template.strip():
            raise ValueError(
                "Command backend requires a template. "
                "Set QUERYLOOP_COMMAND_TEMPLATE or pass --command-template.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
