"""CLI entrypoint for queryloop."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import rich_click as click

from queryloop import __version__
from queryloop.orchestrator.controllers import QueryLoopCliController, RunCommand
from queryloop.orchestrator.errors import QueryRunError
from queryloop.orchestrator.models import (
    AsyncVerbose,
    ExecutionKind,
    PlanFormat,
    QueryAction,
    ResultFormat,
    TraceOptType,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = QueryLoopCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_FILE_HANDLER_NAME = "queryloop-log-file"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _choices(enum_type: type) -> click.Choice:
    return click.Choice([member.value for member in enum_type], case_sensitive=False)


_QUERY_OPTIONS: tuple[Callable[[Callable[..., Any]], Callable[..., Any]], ...] = (
    click.option(
        "-s",
        "--scheme-query",
        "scheme_query_file",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        default=None,
        help="File with a scheme (DDL/DCL) statement, executed once before the loop.",
    ),
    click.option(
        "-p",
        "--script-query",
        "script_query_files",
        multiple=True,
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        help="File with a query to run. Can be repeated.",
    ),
    click.option(
        "--templates/--no-templates",
        default=None,
        help="Substitute ${YQL_TOKEN} and ${QUERY_ID}; defaults to QUERYLOOP_TEMPLATES.",
    ),
    click.option(
        "-C",
        "--execution-case",
        "execution_cases",
        multiple=True,
        type=_choices(ExecutionKind),
        help="Execution kind per query. Last value applies to remaining queries.",
    ),
    click.option(
        "-A",
        "--script-action",
        "script_actions",
        multiple=True,
        type=_choices(QueryAction),
        help="Execute or explain, per query. Last value applies to remaining queries.",
    ),
    click.option("-D", "--database", "databases", multiple=True, help="Database per query."),
    click.option("--trace-id", "trace_ids", multiple=True, help="Trace id base per query."),
    click.option("--pool", "pool_ids", multiple=True, help="Resource pool per query."),
    click.option("-U", "--user", "user_ids", multiple=True, help="User id per query."),
    click.option(
        "--timeout",
        "timeouts_ms",
        multiple=True,
        type=int,
        help="Per-query timeout in milliseconds, 0 means none.",
    ),
    click.option(
        "--loop-count",
        type=int,
        default=1,
        show_default=True,
        help="Number of passes over the query list, 0 loops until interrupted.",
    ),
    click.option(
        "--loop-delay",
        "loop_delay_ms",
        type=int,
        default=0,
        show_default=True,
        help="Delay between passes in milliseconds.",
    ),
    click.option(
        "--continue-after-fail/--no-continue-after-fail",
        default=False,
        show_default=True,
        help="Log failed queries and keep going.",
    ),
    click.option(
        "-F",
        "--forget",
        is_flag=True,
        default=False,
        help="Forget script execution operation after fetching results.",
    ),
    click.option(
        "--cancel-after",
        "cancel_after_ms",
        type=int,
        default=None,
        help="Cancel script execution after this many milliseconds.",
    ),
    click.option(
        "-L",
        "--result-rows-limit",
        type=int,
        default=0,
        show_default=True,
        help="Rows limit for script execution results, 0 means unlimited.",
    ),
    click.option(
        "--inflight-limit",
        type=int,
        default=0,
        show_default=True,
        help="Max in-flight async queries, 0 means unlimited.",
    ),
    click.option(
        "--async-verbose",
        type=_choices(AsyncVerbose),
        default=AsyncVerbose.EACH_QUERY.value,
        show_default=True,
        help="Report each async completion or a final total only.",
    ),
    click.option(
        "--same-session/--no-same-session",
        default=False,
        show_default=True,
        help="Run all queries in one session.",
    ),
    click.option(
        "-T",
        "--trace-opt",
        type=_choices(TraceOptType),
        default=TraceOptType.DISABLED.value,
        show_default=True,
        help="Print AST in the beginning of each transformation.",
    ),
    click.option(
        "--result-file",
        default="-",
        show_default=True,
        help="File to write script results to, '-' means stdout.",
    ),
    click.option(
        "-R",
        "--result-format",
        type=_choices(ResultFormat),
        default=ResultFormat.ROWS.value,
        show_default=True,
        help="Script query result format.",
    ),
    click.option("--scheme-ast-file", default=None, help="File to print scheme query AST."),
    click.option("--script-ast-file", default=None, help="File to print script query AST."),
    click.option("--script-plan-file", default=None, help="File to print script query plan."),
    click.option(
        "-P",
        "--plan-format",
        type=_choices(PlanFormat),
        default=PlanFormat.PRETTY.value,
        show_default=True,
        help="Script query plan format.",
    ),
    click.option(
        "--script-statistics",
        "statistics_file",
        default=None,
        help="File to write script execution statistics to.",
    ),
    click.option(
        "--script-timeline-file",
        "timeline_file",
        default=None,
        help="File to write script execution timeline (svg) to.",
    ),
    click.option(
        "-M",
        "--monitoring",
        "monitoring_port",
        type=click.IntRange(min=0, max=65535),
        default=None,
        help="Monitoring port; keeps the process running after the batch.",
    ),
    click.option(
        "-G",
        "--grpc",
        "grpc_port",
        type=click.IntRange(min=0, max=65535),
        default=None,
        help="gRPC port; keeps the process running after the batch.",
    ),
    click.option(
        "--backend",
        type=click.Choice(["echo", "command"], case_sensitive=False),
        default=None,
        help="Execution backend. If omitted, QUERYLOOP_BACKEND is used.",
    ),
    click.option(
        "--command-template",
        default=None,
        help=(
            "Run template for the command backend. Supports {query_file}, {database}, "
            "{trace_id}, {pool}, {user}, {action}, and {timeout}. "
            "If omitted, QUERYLOOP_COMMAND_TEMPLATE is used."
        ),
    ),
    click.option("--log-file", type=click.Path(path_type=Path), default=None, help="Log file."),
    click.option(
        "--log-level",
        type=click.Choice(LOG_LEVELS, case_sensitive=False),
        default=None,
        help="Log level. If omitted, QUERYLOOP_LOG_LEVEL is used.",
    ),
)


def query_options(func: Callable[..., Any]) -> Callable[..., Any]:
    for option in reversed(_QUERY_OPTIONS):
        func = option(func)
    return func


@click.group()
@click.version_option(version=__version__, prog_name="queryloop")
def queryloop() -> None:
    """Query loop orchestrator CLI."""


@queryloop.command("run")
@query_options
def run(log_file: Path | None, log_level: str | None, **options: Any) -> None:
    """Run the scheme statement and loop over queries against the backend."""

    _setup_logging(log_level, log_file)
    try:
        report = CONTROLLER.run(_run_command(options))
    except QueryRunError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(report.lines)
    if not report.success:
        raise click.ClickException("Query run failed.")


@queryloop.command("check")
@query_options
def check(log_file: Path | None, log_level: str | None, **options: Any) -> None:
    """Validate option combinations without running any query."""

    _setup_logging(log_level, log_file)
    try:
        lines = CONTROLLER.check(_run_command(options))
    except QueryRunError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _run_command(options: dict[str, Any]) -> RunCommand:
    normalized = {
        key: tuple(value.lower() for value in options[key])
        for key in ("execution_cases", "script_actions")
    }
    for key in ("async_verbose", "trace_opt", "result_format", "plan_format"):
        normalized[key] = options[key].lower()
    return RunCommand(**{**options, **normalized})


def _setup_logging(raw_level: str | None, log_file: Path | None) -> None:
    level = _normalize_log_level(raw_level)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    else:
        root.setLevel(level)
    for handler in list(root.handlers):
        if handler.get_name() == LOG_FILE_HANDLER_NAME:
            root.removeHandler(handler)
            handler.close()
    if log_file is None:
        return

    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
    file_handler.set_name(LOG_FILE_HANDLER_NAME)
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)


def _normalize_log_level(raw_level: str | None) -> int:
    value = (raw_level or os.getenv("QUERYLOOP_LOG_LEVEL") or "INFO").strip().upper()
    if value not in LOG_LEVELS:
        raise click.ClickException(f"Unsupported log level: {value}")
    return getattr(logging, value)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    queryloop()
