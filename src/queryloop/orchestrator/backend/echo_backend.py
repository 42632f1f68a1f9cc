"""Deterministic in-process backend for dry runs and tests."""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass, field

from queryloop.orchestrator.backend.diagnostics import (
    TimelineEntry,
    render_statistics_line,
    render_timeline,
)
from queryloop.orchestrator.models import (
    AsyncVerbose,
    PlanFormat,
    QueryAction,
    ResolvedExecutionRequest,
    ResultFormat,
    RunnerOptions,
    RunPolicy,
    TraceOptType,
)
from queryloop.orchestrator.outputs import RunOutputs

logger = logging.getLogger(__name__)

FAILURE_MARKER = "-- queryloop:fail"


@dataclass(slots=True)
class EchoResultSet:
    """One result set produced by an executed request."""

    trace_id: str
    database: str
    user_id: str
    pool_id: str
    rows: list[dict[str, object]] = field(default_factory=list)
    truncated: bool = False

    def to_payload(self) -> dict[str, object]:
        return {
            "trace_id": self.trace_id,
            "database": self.database,
            "user_id": self.user_id,
            "pool_id": self.pool_id,
            "rows": self.rows,
            "truncated": self.truncated,
        }


class EchoBackend:
    """Echo each statement of a request back as a result row.

    A request whose text contains ``-- queryloop:fail`` reports failure,
    which lets operators exercise the continue-after-failure policy.
    """

    def __init__(
        self,
        *,
        runner_options: RunnerOptions,
        outputs: RunOutputs,
        policy: RunPolicy | None = None,
        results_rows_limit: int = 0,
    ) -> None:
        self.runner_options = runner_options
        self.outputs = outputs
        self.policy = policy or RunPolicy()
        self.results_rows_limit = results_rows_limit
        self.results: list[EchoResultSet] = []
        self.async_completed = 0
        self.async_failed = 0
        self._inflight: deque[ResolvedExecutionRequest] = deque()
        self._pending_script: EchoResultSet | None = None
        self._last_script_trace_id: str | None = None
        self._timeline: list[TimelineEntry] = []

    def execute_scheme_query(self, request: ResolvedExecutionRequest) -> bool:
        self._trace(request, enabled_for=(TraceOptType.ALL, TraceOptType.SCHEME))
        if self.outputs.scheme_ast is not None:
            self.outputs.scheme_ast.write(_render_ast(request))
        return self._record("scheme", request)

    def execute_script(self, request: ResolvedExecutionRequest) -> bool:
        self._trace(request, enabled_for=(TraceOptType.ALL, TraceOptType.SCRIPT))
        if not self._record("script", request):
            self._write_statistics(request, status="failed")
            return False
        self._last_script_trace_id = request.trace_id
        self._pending_script = self._explain_or_result(request)
        self._write_statistics(request, status="completed")
        return True

    def fetch_script_results(self) -> bool:
        if self._last_script_trace_id is None:
            logger.error("No script execution to fetch results for")
            return False
        if self._pending_script is not None:
            self.results.append(self._pending_script)
            self._pending_script = None
        return True

    def forget_execution(self) -> bool:
        if self._last_script_trace_id is None:
            logger.error("No script execution to forget")
            return False
        logger.debug("Forgot script execution %s", self._last_script_trace_id)
        self._last_script_trace_id = None
        self._pending_script = None
        return True

    def execute_query(self, request: ResolvedExecutionRequest) -> bool:
        return self._run_sync("query", request)

    def execute_yql_script(self, request: ResolvedExecutionRequest) -> bool:
        return self._run_sync("yql-script", request)

    def execute_query_async(self, request: ResolvedExecutionRequest) -> None:
        limit = self.policy.inflight_limit
        while limit and len(self._inflight) >= limit:
            self._complete_async(self._inflight.popleft())
        self._inflight.append(request)

    def finalize(self) -> None:
        while self._inflight:
            self._complete_async(self._inflight.popleft())
        if self.policy.async_verbose == AsyncVerbose.FINAL and (
            self.async_completed or self.async_failed
        ):
            logger.info(
                "Async queries finished: completed=%d failed=%d",
                self.async_completed,
                self.async_failed,
            )
        if self.outputs.timeline is not None:
            self.outputs.timeline.write(render_timeline(self._timeline))

    def close(self) -> None:
        self._inflight.clear()

    def print_results(self) -> None:
        sink = self.outputs.result
        if sink is None:
            return
        for result_set in self.results:
            if self.runner_options.result_format == ResultFormat.FULL_JSON:
                sink.write(json.dumps(result_set.to_payload(), ensure_ascii=False, indent=2))
                sink.write("\n")
                continue
            for row in result_set.rows:
                sink.write(json.dumps(row, ensure_ascii=False, sort_keys=True))
                sink.write("\n")
        sink.flush()

    def _run_sync(self, kind: str, request: ResolvedExecutionRequest) -> bool:
        self._trace(request, enabled_for=(TraceOptType.ALL, TraceOptType.SCRIPT))
        if not self._record(kind, request):
            return False
        result_set = self._explain_or_result(request)
        if result_set is not None:
            self.results.append(result_set)
        return True

    def _record(self, kind: str, request: ResolvedExecutionRequest) -> bool:
        ok = FAILURE_MARKER not in request.query
        self._timeline.append(TimelineEntry(kind=kind, trace_id=request.trace_id, ok=ok))
        if not ok:
            logger.error("%s %s failed: failure marker found", kind, request.trace_id)
        return ok

    def _explain_or_result(self, request: ResolvedExecutionRequest) -> EchoResultSet | None:
        if request.action == QueryAction.EXPLAIN:
            if self.outputs.script_ast is not None:
                self.outputs.script_ast.write(_render_ast(request))
            if self.outputs.script_plan is not None:
                self.outputs.script_plan.write(
                    _render_plan(request, plan_format=self.runner_options.plan_format),
                )
            return None
        if self.outputs.script_ast is not None:
            self.outputs.script_ast.write(_render_ast(request))
        return self._result_set(request)

    def _result_set(self, request: ResolvedExecutionRequest) -> EchoResultSet:
        rows: list[dict[str, object]] = [
            {"statement": statement, "trace_id": request.trace_id}
            for statement in _split_statements(request.query)
        ]
        truncated = False
        if self.results_rows_limit and len(rows) > self.results_rows_limit:
            rows = rows[: self.results_rows_limit]
            truncated = True
        return EchoResultSet(
            trace_id=request.trace_id,
            database=request.database,
            user_id=request.user_id,
            pool_id=request.pool_id,
            rows=rows,
            truncated=truncated,
        )

    def _complete_async(self, request: ResolvedExecutionRequest) -> None:
        ok = self._record("async", request)
        if ok:
            self.async_completed += 1
        else:
            self.async_failed += 1
        if self.policy.async_verbose == AsyncVerbose.EACH_QUERY:
            logger.info(
                "Async query %s %s",
                request.trace_id,
                "completed" if ok else "failed",
            )

    def _write_statistics(self, request: ResolvedExecutionRequest, *, status: str) -> None:
        if self.outputs.statistics is None:
            return
        self.outputs.statistics.write(
            render_statistics_line(
                trace_id=request.trace_id,
                status=status,
                statements=len(_split_statements(request.query)),
            ),
        )

    def _trace(
        self,
        request: ResolvedExecutionRequest,
        *,
        enabled_for: tuple[TraceOptType, ...],
    ) -> None:
        if self.runner_options.trace_opt in enabled_for:
            logger.debug("Trace %s:\n%s", request.trace_id, _render_ast(request))


def _split_statements(query: str) -> list[str]:
    statements: list[str] = []
    for part in query.split(";"):
        lines = [
            line for line in part.strip().splitlines() if not line.strip().startswith("--")
        ]
        statement = "\n".join(lines).strip()
        if statement:
            statements.append(statement)
    return statements


def _render_ast(request: ResolvedExecutionRequest) -> str:
    body = " ".join(f"(statement {json.dumps(s)})" for s in _split_statements(request.query))
    return f"(query {json.dumps(request.trace_id)} {body})\n"


def _render_plan(request: ResolvedExecutionRequest, *, plan_format: PlanFormat) -> str:
    statements = _split_statements(request.query)
    if plan_format == PlanFormat.JSON:
        payload = {
            "trace_id": request.trace_id,
            "plan": [{"operator": "Echo", "statement": s} for s in statements],
        }
        return json.dumps(payload, ensure_ascii=False) + "\n"
    if plan_format == PlanFormat.TABLE:
        lines = ["| # | operator | statement |", "|---|---|---|"]
        lines.extend(f"| {n} | Echo | {s} |" for n, s in enumerate(statements))
        return "\n".join(lines) + "\n"
    lines = [f"Query {request.trace_id}"]
    lines.extend(f"  └─ Echo: {s}" for s in statements)
    return "\n".join(lines) + "\n"


