"""Backend interface for query execution."""

from __future__ import annotations

from typing import Protocol

from queryloop.orchestrator.models import ResolvedExecutionRequest


class ExecutionBackend(Protocol):
    """Protocol implemented by query execution backends.

    Boolean calls report failure by returning ``False``; the run loop turns
    that into an :class:`~queryloop.orchestrator.errors.ExecutionError`.
    """

    def execute_scheme_query(self, request: ResolvedExecutionRequest) -> bool:
        """Run a scheme (DDL/DCL) statement to completion."""

    def execute_script(self, request: ResolvedExecutionRequest) -> bool:
        """Submit a script execution and wait until it finishes."""

    def fetch_script_results(self) -> bool:
        """Fetch result sets of the last script execution."""

    def forget_execution(self) -> bool:
        """Dispose of the last script execution record."""

    def execute_query(self, request: ResolvedExecutionRequest) -> bool:
        """Run a generic query to completion."""

    def execute_yql_script(self, request: ResolvedExecutionRequest) -> bool:
        """Run a YQL script to completion."""

    def execute_query_async(self, request: ResolvedExecutionRequest) -> None:
        """Submit a query without waiting for it."""

    def finalize(self) -> None:
        """Drain outstanding async work."""

    def print_results(self) -> None:
        """Write collected result sets to the result output."""

    def close(self) -> None:
        """Release work left unfinished when the run ended with an error."""
