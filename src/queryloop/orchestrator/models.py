"""Domain models for query execution options, requests, and run outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from queryloop.orchestrator.errors import QueryRunError
from queryloop.orchestrator.options import resolve_option

STDOUT_TARGET = "-"


class ExecutionKind(str, Enum):
    """Backend call sequence used to run one item."""

    SCRIPT = "script"
    QUERY = "query"
    YQL_SCRIPT = "yql-script"
    ASYNC = "async"


class QueryAction(str, Enum):
    """What the backend should do with the query text."""

    EXECUTE = "execute"
    EXPLAIN = "explain"


class TraceOptType(str, Enum):
    """Which statements get per-transformation AST tracing."""

    ALL = "all"
    SCHEME = "scheme"
    SCRIPT = "script"
    DISABLED = "disabled"


class ResultFormat(str, Enum):
    """Printed result layout."""

    ROWS = "rows"
    FULL_JSON = "full-json"


class PlanFormat(str, Enum):
    """Printed plan layout."""

    PRETTY = "pretty"
    TABLE = "table"
    JSON = "json"


class AsyncVerbose(str, Enum):
    """How async completions are reported."""

    EACH_QUERY = "each-query"
    FINAL = "final"


@dataclass(slots=True, frozen=True)
class ExecutionOptionSet:
    """Query texts plus sparse per-item option lists.

    Every per-item tuple may be shorter than ``queries``; see
    :func:`queryloop.orchestrator.options.resolve_option`.
    """

    queries: tuple[str, ...] = ()
    scheme_query: str = ""
    use_templates: bool = False
    execution_kinds: tuple[ExecutionKind, ...] = ()
    actions: tuple[QueryAction, ...] = ()
    databases: tuple[str, ...] = ()
    trace_ids: tuple[str, ...] = ()
    pool_ids: tuple[str, ...] = ()
    user_ids: tuple[str, ...] = ()
    timeouts: tuple[float, ...] = ()
    forget_execution: bool = False
    results_rows_limit: int = 0

    def kind_at(self, index: int) -> ExecutionKind:
        return resolve_option(index, self.execution_kinds, ExecutionKind.SCRIPT)

    def action_at(self, index: int) -> QueryAction:
        return resolve_option(index, self.actions, QueryAction.EXECUTE)

    def has_kind(self, kind: ExecutionKind) -> bool:
        """Return True if at least one item runs with ``kind``."""

        if not self.execution_kinds:
            return kind == ExecutionKind.SCRIPT
        return kind in self.execution_kinds

    def has_results(self) -> bool:
        """Return True if some synchronous item executes (not explains)."""

        for index in range(len(self.queries)):
            if self.action_at(index) != QueryAction.EXECUTE:
                continue
            if self.kind_at(index) != ExecutionKind.ASYNC:
                return True
        return False


@dataclass(slots=True, frozen=True)
class RunPolicy:
    """Loop, delay, and failure policy for one run."""

    loop_count: int = 1
    loop_delay_seconds: float = 0.0
    continue_after_fail: bool = False
    inflight_limit: int = 0
    async_verbose: AsyncVerbose = AsyncVerbose.EACH_QUERY


@dataclass(slots=True, frozen=True)
class RunnerOptions:
    """Backend, output, and deployment options that are not per item."""

    same_session: bool = False
    script_cancel_after_seconds: float | None = None
    trace_opt: TraceOptType = TraceOptType.DISABLED
    result_output: str | None = STDOUT_TARGET
    result_format: ResultFormat = ResultFormat.ROWS
    scheme_ast_output: str | None = None
    script_ast_output: str | None = None
    script_plan_output: str | None = None
    plan_format: PlanFormat = PlanFormat.PRETTY
    statistics_output: str | None = None
    timeline_output: str | None = None
    monitoring_port: int | None = None
    grpc_port: int | None = None

    @property
    def service_mode(self) -> bool:
        """The process keeps serving after the batch when any port is configured."""

        return self.monitoring_port is not None or self.grpc_port is not None

    @property
    def suppress_run_errors(self) -> bool:
        """Only a monitoring-enabled deployment outlives a failed batch."""

        return self.monitoring_port is not None


@dataclass(slots=True, frozen=True)
class ResolvedExecutionRequest:
    """Self-contained unit of work handed to the backend."""

    query: str
    action: QueryAction
    trace_id: str
    pool_id: str
    user_id: str
    database: str
    timeout_seconds: float


@dataclass(slots=True)
class RunSummary:
    """Aggregate run counters for CLI reporting."""

    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    submitted_async: int = 0
    loops_completed: int = 0
    interrupted: bool = False
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RunOutcome:
    """Result of one batch plus the top-level propagation decision."""

    summary: RunSummary
    error: QueryRunError | None = None
    suppressed: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def should_fail(self) -> bool:
        """True when the error must reach the process exit code."""

        return self.error is not None and not self.suppressed
