"""Error taxonomy for option validation, request building, and execution."""

from __future__ import annotations

from datetime import UTC, datetime


class QueryRunError(RuntimeError):
    """Base class for every error raised by the orchestration engine."""


class ConfigurationError(QueryRunError):
    """Option set is inconsistent; raised before anything is executed."""


class TemplateResolutionError(QueryRunError):
    """Query template references a value that is not available."""


class ExecutionError(QueryRunError):
    """Backend reported a failed call."""

    @classmethod
    def timestamped(cls, message: str) -> ExecutionError:
        """Build an error whose text starts with the current UTC timestamp."""

        return cls(f"{datetime.now(tz=UTC).isoformat()} {message}")


class FinalizationError(QueryRunError):
    """Backend failed while draining outstanding work after the loop."""


class PrintError(QueryRunError):
    """Backend failed while printing collected results."""
