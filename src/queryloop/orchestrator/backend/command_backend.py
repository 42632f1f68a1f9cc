"""Subprocess-based backend: one rendered shell command per request."""

from __future__ import annotations

import json
import logging
import os
import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from queryloop.orchestrator.backend.diagnostics import (
    TimelineEntry,
    render_statistics_line,
    render_timeline,
)
from queryloop.orchestrator.errors import ConfigurationError
from queryloop.orchestrator.models import (
    AsyncVerbose,
    QueryAction,
    ResolvedExecutionRequest,
    ResultFormat,
    RunnerOptions,
    RunPolicy,
)
from queryloop.orchestrator.outputs import RunOutputs

logger = logging.getLogger(__name__)

TEMPLATE_PLACEHOLDERS = (
    "query_file",
    "database",
    "trace_id",
    "pool",
    "user",
    "action",
    "timeout",
)
TIMEOUT_EXIT_CODE = 124


@dataclass(slots=True)
class CommandRunResult:
    """Outcome of one finished command."""

    exit_code: int
    timed_out: bool
    stdout_path: Path
    stderr_path: Path
    elapsed_seconds: float = 0.0


@dataclass(slots=True)
class _AsyncProcess:
    request: ResolvedExecutionRequest
    process: subprocess.Popen[str]
    handles: tuple[IO[str], IO[str]]
    request_dir: Path


@dataclass(slots=True)
class _CollectedResult:
    trace_id: str
    rows: list[str] = field(default_factory=list)
    truncated: bool = False


class CommandBackend:
    """Run each request through a shell command template.

    The query text is written to ``{query_file}``; exit code 0 means success
    and captured stdout lines are the result rows.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        template: str,
        workdir: Path,
        runner_options: RunnerOptions,
        outputs: RunOutputs,
        policy: RunPolicy | None = None,
        results_rows_limit: int = 0,
    ) -> None:
        validate_command_template(template)
        self.template = template.strip()
        self.workdir = workdir
        self.runner_options = runner_options
        self.outputs = outputs
        self.policy = policy or RunPolicy()
        self.results_rows_limit = results_rows_limit
        self.results: list[_CollectedResult] = []
        self._sequence = 0
        self._inflight: list[_AsyncProcess] = []
        self._last_script: tuple[ResolvedExecutionRequest, CommandRunResult] | None = None
        self._timeline: list[TimelineEntry] = []

    def execute_scheme_query(self, request: ResolvedExecutionRequest) -> bool:
        result = self._run_sync("scheme", request)
        return _succeeded(result)

    def execute_script(self, request: ResolvedExecutionRequest) -> bool:
        result = self._run_sync(
            "script",
            request,
            cancel_after_seconds=self.runner_options.script_cancel_after_seconds,
        )
        self._last_script = (request, result)
        if self.outputs.statistics is not None:
            self.outputs.statistics.write(
                render_statistics_line(
                    trace_id=request.trace_id,
                    status="completed" if _succeeded(result) else "failed",
                    exit_code=result.exit_code,
                    elapsed_seconds=round(result.elapsed_seconds, 3),
                ),
            )
        return _succeeded(result)

    def fetch_script_results(self) -> bool:
        if self._last_script is None:
            logger.error("No script execution to fetch results for")
            return False
        request, result = self._last_script
        if not result.stdout_path.exists():
            logger.error("Script output is missing: %s", result.stdout_path)
            return False
        self._collect(request, result)
        return True

    def forget_execution(self) -> bool:
        if self._last_script is None:
            logger.error("No script execution to forget")
            return False
        _, result = self._last_script
        shutil.rmtree(result.stdout_path.parent, ignore_errors=True)
        self._last_script = None
        return True

    def execute_query(self, request: ResolvedExecutionRequest) -> bool:
        result = self._run_sync("query", request)
        if not _succeeded(result):
            return False
        self._collect(request, result)
        return True

    def execute_yql_script(self, request: ResolvedExecutionRequest) -> bool:
        result = self._run_sync("yql-script", request)
        if not _succeeded(result):
            return False
        self._collect(request, result)
        return True

    def execute_query_async(self, request: ResolvedExecutionRequest) -> None:
        limit = self.policy.inflight_limit
        while limit and len(self._inflight) >= limit:
            self._wait_async(self._inflight.pop(0))

        request_dir, run_args = self._prepare("async", request)
        stdout_handle = (request_dir / "stdout.txt").open("w", encoding="utf-8")
        stderr_handle = (request_dir / "stderr.txt").open("w", encoding="utf-8")
        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                env=_request_env(request),
                stdout=stdout_handle,
                stderr=stderr_handle,
                text=True,
            )
        except OSError as error:
            stdout_handle.close()
            stderr_handle.close()
            logger.error("Async query %s failed to start: %s", request.trace_id, error)
            return
        self._inflight.append(
            _AsyncProcess(
                request=request,
                process=process,
                handles=(stdout_handle, stderr_handle),
                request_dir=request_dir,
            ),
        )

    def finalize(self) -> None:
        failed = 0
        completed = 0
        while self._inflight:
            if self._wait_async(self._inflight.pop(0)):
                completed += 1
            else:
                failed += 1
        if self.policy.async_verbose == AsyncVerbose.FINAL and (completed or failed):
            logger.info("Async queries finished: completed=%d failed=%d", completed, failed)
        if self.outputs.timeline is not None:
            self.outputs.timeline.write(render_timeline(self._timeline))

    def close(self) -> None:
        """Stop async commands that were never awaited by finalize."""

        while self._inflight:
            entry = self._inflight.pop(0)
            _terminate_process(entry.process)
            for handle in entry.handles:
                handle.close()
            logger.warning("Async query %s was stopped unfinished", entry.request.trace_id)

    def print_results(self) -> None:
        sink = self.outputs.result
        if sink is None:
            return
        for collected in self.results:
            if self.runner_options.result_format == ResultFormat.FULL_JSON:
                payload = {
                    "trace_id": collected.trace_id,
                    "rows": collected.rows,
                    "truncated": collected.truncated,
                }
                sink.write(json.dumps(payload, ensure_ascii=False, indent=2))
                sink.write("\n")
                continue
            for row in collected.rows:
                sink.write(row)
                sink.write("\n")
        sink.flush()

    def _run_sync(
        self,
        kind: str,
        request: ResolvedExecutionRequest,
        *,
        cancel_after_seconds: float | None = None,
    ) -> CommandRunResult:
        request_dir, run_args = self._prepare(kind, request)
        stdout_path = request_dir / "stdout.txt"
        stderr_path = request_dir / "stderr.txt"
        ast_sink = self.outputs.scheme_ast if kind == "scheme" else self.outputs.script_ast
        if ast_sink is not None:
            ast_sink.write(_render_query_record(request))
        limits = [
            value for value in (request.timeout_seconds, cancel_after_seconds) if value
        ]
        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                result = _run_subprocess(
                    run_args=run_args,
                    env=_request_env(request),
                    deadline_seconds=min(limits) if limits else None,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    stdout_path=stdout_path,
                    stderr_path=stderr_path,
                )
        except OSError as error:
            logger.error("%s %s failed to start: %s", kind, request.trace_id, error)
            result = CommandRunResult(
                exit_code=127,
                timed_out=False,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )
        self._timeline.append(
            TimelineEntry(kind=kind, trace_id=request.trace_id, ok=_succeeded(result)),
        )
        if result.timed_out:
            logger.error("%s %s was stopped after deadline", kind, request.trace_id)
        elif result.exit_code != 0:
            logger.error(
                "%s %s exited with code %d: %s",
                kind,
                request.trace_id,
                result.exit_code,
                _read_preview(stderr_path),
            )
        return result

    def _prepare(
        self,
        kind: str,
        request: ResolvedExecutionRequest,
    ) -> tuple[Path, list[str]]:
        self._sequence += 1
        request_dir = self.workdir / f"{self._sequence:06d}-{kind}"
        request_dir.mkdir(parents=True, exist_ok=True)
        query_file = request_dir / "query.sql"
        query_file.write_text(request.query, "utf-8")
        return request_dir, build_run_args(
            template=self.template,
            request=request,
            query_file=query_file,
        )

    def _collect(self, request: ResolvedExecutionRequest, result: CommandRunResult) -> None:
        lines = result.stdout_path.read_text("utf-8").splitlines()
        if request.action == QueryAction.EXPLAIN:
            if self.outputs.script_plan is not None:
                self.outputs.script_plan.write("\n".join(lines) + "\n")
            return
        truncated = False
        if self.results_rows_limit and len(lines) > self.results_rows_limit:
            lines = lines[: self.results_rows_limit]
            truncated = True
        self.results.append(
            _CollectedResult(trace_id=request.trace_id, rows=lines, truncated=truncated),
        )

    def _wait_async(self, entry: _AsyncProcess) -> bool:
        timeout = entry.request.timeout_seconds or None
        try:
            exit_code = entry.process.wait(timeout=timeout)
            timed_out = False
        except subprocess.TimeoutExpired:
            _terminate_process(entry.process)
            exit_code = TIMEOUT_EXIT_CODE
            timed_out = True
        finally:
            for handle in entry.handles:
                handle.close()
        ok = exit_code == 0 and not timed_out
        self._timeline.append(
            TimelineEntry(kind="async", trace_id=entry.request.trace_id, ok=ok),
        )
        if not ok:
            logger.error(
                "Async query %s failed with code %d: %s",
                entry.request.trace_id,
                exit_code,
                _read_preview(entry.request_dir / "stderr.txt"),
            )
        elif self.policy.async_verbose == AsyncVerbose.EACH_QUERY:
            logger.info("Async query %s completed", entry.request.trace_id)
        return ok


def validate_command_template(template: str) -> None:
    """Raise ConfigurationError if the template cannot be rendered."""

    stripped = template.strip()
    if not stripped:
        raise ConfigurationError("Command backend template is empty.")
    if "{query_file}" not in stripped:
        raise ConfigurationError("Command backend template must include {query_file}.")
    try:
        rendered = stripped.format(**{name: "x" for name in TEMPLATE_PLACEHOLDERS})
    except (KeyError, IndexError, ValueError) as error:
        raise ConfigurationError(
            f"Unsupported command template placeholder: {error}",
        ) from error
    try:
        shlex.split(rendered)
    except ValueError as error:
        raise ConfigurationError(f"Command backend template is not valid shell: {error}") from error


def build_run_args(
    *,
    template: str,
    request: ResolvedExecutionRequest,
    query_file: Path,
) -> list[str]:
    rendered = template.format(
        query_file=shlex.quote(str(query_file)),
        database=shlex.quote(request.database),
        trace_id=shlex.quote(request.trace_id),
        pool=shlex.quote(request.pool_id),
        user=shlex.quote(request.user_id),
        action=shlex.quote(request.action.value),
        timeout=shlex.quote(_format_seconds(request.timeout_seconds)),
    )
    try:
        argv = shlex.split(rendered)
    except ValueError as error:
        raise ConfigurationError(f"Command backend template is not valid shell: {error}") from error
    if not argv:
        raise ConfigurationError("Command backend template rendered empty command.")
    return argv


def _request_env(request: ResolvedExecutionRequest) -> dict[str, str]:
    env = os.environ.copy()
    env["QUERYLOOP_ACTION"] = request.action.value
    env["QUERYLOOP_TRACE_ID"] = request.trace_id
    env["QUERYLOOP_DATABASE"] = request.database
    env["QUERYLOOP_POOL_ID"] = request.pool_id
    env["QUERYLOOP_USER_ID"] = request.user_id
    return env


def _run_subprocess(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    deadline_seconds: float | None,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    stdout_path: Path,
    stderr_path: Path,
) -> CommandRunResult:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()

    while True:
        returncode = process.poll()
        if returncode is not None:
            return CommandRunResult(
                exit_code=returncode,
                timed_out=False,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
                elapsed_seconds=time.monotonic() - start_monotonic,
            )

        if deadline_seconds is not None and time.monotonic() - start_monotonic >= deadline_seconds:
            _terminate_process(process)
            return CommandRunResult(
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
                elapsed_seconds=time.monotonic() - start_monotonic,
            )

        time.sleep(0.05)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _succeeded(result: CommandRunResult) -> bool:
    return result.exit_code == 0 and not result.timed_out


def _format_seconds(value: float) -> str:
    return f"{value:g}"


def _read_preview(path: Path, limit: int = 500) -> str:
    try:
        text = path.read_text("utf-8")
    except OSError:
        return ""
    return text.strip()[:limit]


def _render_query_record(request: ResolvedExecutionRequest) -> str:
    return (
        f"-- trace_id={request.trace_id} action={request.action.value}\n"
        f"{request.query.rstrip()}\n"
    )
