"""Query execution backend implementations."""

from queryloop.orchestrator.backend.base import ExecutionBackend
from queryloop.orchestrator.backend.command_backend import CommandBackend
from queryloop.orchestrator.backend.echo_backend import EchoBackend

__all__ = [
    "CommandBackend",
    "EchoBackend",
    "ExecutionBackend",
]
