"""Controllers for query loop CLI commands."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path

from queryloop.config import Settings
from queryloop.orchestrator.backend import CommandBackend, EchoBackend, ExecutionBackend
from queryloop.orchestrator.errors import ConfigurationError
from queryloop.orchestrator.models import (
    STDOUT_TARGET,
    AsyncVerbose,
    ExecutionKind,
    ExecutionOptionSet,
    PlanFormat,
    QueryAction,
    ResultFormat,
    RunnerOptions,
    RunOutcome,
    RunPolicy,
    RunSummary,
    TraceOptType,
)
from queryloop.orchestrator.outputs import RunOutputs, open_outputs
from queryloop.orchestrator.runner import QueryRunner, run_batch
from queryloop.orchestrator.validator import validate_options

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunCommand:
    """CLI input shared by ``run`` and ``check``.

    Durations are in milliseconds, as typed by the operator.
    """

    scheme_query_file: Path | None = None
    script_query_files: tuple[Path, ...] = ()
    templates: bool | None = None
    execution_cases: tuple[str, ...] = ()
    script_actions: tuple[str, ...] = ()
    databases: tuple[str, ...] = ()
    trace_ids: tuple[str, ...] = ()
    pool_ids: tuple[str, ...] = ()
    user_ids: tuple[str, ...] = ()
    timeouts_ms: tuple[int, ...] = ()
    loop_count: int = 1
    loop_delay_ms: int = 0
    continue_after_fail: bool = False
    forget: bool = False
    cancel_after_ms: int | None = None
    result_rows_limit: int = 0
    inflight_limit: int = 0
    async_verbose: str = AsyncVerbose.EACH_QUERY.value
    same_session: bool = False
    trace_opt: str = TraceOptType.DISABLED.value
    result_file: str | None = STDOUT_TARGET
    result_format: str = ResultFormat.ROWS.value
    scheme_ast_file: str | None = None
    script_ast_file: str | None = None
    script_plan_file: str | None = None
    plan_format: str = PlanFormat.PRETTY.value
    statistics_file: str | None = None
    timeline_file: str | None = None
    monitoring_port: int | None = None
    grpc_port: int | None = None
    backend: str | None = None
    command_template: str | None = None


@dataclass(slots=True)
class RunReport:
    """Run report to render in CLI."""

    lines: list[str]
    success: bool


@dataclass(slots=True, frozen=True)
class RunConfiguration:
    """Everything the runner needs, derived from one :class:`RunCommand`."""

    option_set: ExecutionOptionSet
    policy: RunPolicy
    runner_options: RunnerOptions


class QueryLoopCliController:
    """Coordinates validation, backend wiring, and the run loop for CLI commands."""

    def run(self, command: RunCommand) -> RunReport:
        settings = _settings(command)
        configuration = build_run_configuration(command, settings=settings)
        warnings = validate_options(
            configuration.option_set,
            configuration.policy,
            configuration.runner_options,
        )
        runner_options = configuration.runner_options

        with open_outputs(runner_options) as outputs:
            backend = _build_backend(
                settings=settings,
                configuration=configuration,
                outputs=outputs,
            )
            runner = QueryRunner(
                backend=backend,
                option_set=configuration.option_set,
                policy=configuration.policy,
                settings=settings,
            )
            try:
                outcome = run_batch(
                    runner,
                    suppress_errors=runner_options.suppress_run_errors,
                )
            finally:
                backend.close()
            if runner_options.service_mode and not outcome.should_fail:
                runner.idle(
                    tick_seconds=settings.runner.idle_tick_seconds,
                    max_ticks=settings.runner.idle_max_ticks or None,
                )

        lines = [*warnings, *render_outcome_lines(outcome)]
        return RunReport(lines=lines, success=not outcome.should_fail)

    def check(self, command: RunCommand) -> list[str]:
        """Validate options without touching any backend."""

        settings = _settings(command)
        configuration = build_run_configuration(command, settings=settings)
        warnings = validate_options(
            configuration.option_set,
            configuration.policy,
            configuration.runner_options,
        )
        option_set = configuration.option_set
        kinds = sorted(
            {option_set.kind_at(index).value for index in range(len(option_set.queries))},
        )
        return [
            *warnings,
            "Options are valid: "
            f"queries={len(option_set.queries)} "
            f"scheme_query={'yes' if option_set.scheme_query else 'no'} "
            f"kinds={','.join(kinds) or '-'} "
            f"loop_count={configuration.policy.loop_count} "
            f"backend={settings.backend} "
            f"service_mode={'yes' if configuration.runner_options.service_mode else 'no'}",
        ]


def build_run_configuration(command: RunCommand, *, settings: Settings) -> RunConfiguration:
    """Read query files and convert CLI units into runner models."""

    scheme_query = ""
    if command.scheme_query_file is not None:
        scheme_query = _read_query(command.scheme_query_file)
    use_templates = (
        command.templates if command.templates is not None else settings.templates.enabled
    )

    option_set = ExecutionOptionSet(
        queries=tuple(_read_query(path) for path in command.script_query_files),
        scheme_query=scheme_query,
        use_templates=use_templates,
        execution_kinds=tuple(ExecutionKind(value) for value in command.execution_cases),
        actions=tuple(QueryAction(value) for value in command.script_actions),
        databases=command.databases,
        trace_ids=command.trace_ids,
        pool_ids=command.pool_ids,
        user_ids=command.user_ids,
        timeouts=tuple(_ms_to_seconds(value) for value in command.timeouts_ms),
        forget_execution=command.forget,
        results_rows_limit=command.result_rows_limit,
    )
    policy = RunPolicy(
        loop_count=command.loop_count,
        loop_delay_seconds=_ms_to_seconds(command.loop_delay_ms),
        continue_after_fail=command.continue_after_fail,
        inflight_limit=command.inflight_limit,
        async_verbose=AsyncVerbose(command.async_verbose),
    )
    runner_options = RunnerOptions(
        same_session=command.same_session,
        script_cancel_after_seconds=(
            _ms_to_seconds(command.cancel_after_ms) if command.cancel_after_ms else None
        ),
        trace_opt=TraceOptType(command.trace_opt),
        result_output=command.result_file,
        result_format=ResultFormat(command.result_format),
        scheme_ast_output=command.scheme_ast_file,
        script_ast_output=command.script_ast_file,
        script_plan_output=command.script_plan_file,
        plan_format=PlanFormat(command.plan_format),
        statistics_output=command.statistics_file,
        timeline_output=command.timeline_file,
        monitoring_port=command.monitoring_port,
        grpc_port=command.grpc_port,
    )
    return RunConfiguration(option_set=option_set, policy=policy, runner_options=runner_options)


def render_outcome_lines(outcome: RunOutcome) -> list[str]:
    lines = [_summary_line(outcome.summary)]
    lines.extend(f"  error: {message}" for message in outcome.summary.errors)
    if outcome.error is not None:
        prefix = (
            "Run error (suppressed, monitoring enabled)" if outcome.suppressed else "Run failed"
        )
        lines.append(f"{prefix}: {outcome.error}")
    return lines


def _summary_line(summary: RunSummary) -> str:
    return (
        "Run summary: "
        f"dispatched={summary.dispatched} succeeded={summary.succeeded} "
        f"failed={summary.failed} async_submitted={summary.submitted_async} "
        f"loops={summary.loops_completed} "
        f"interrupted={'yes' if summary.interrupted else 'no'}"
    )


def _settings(command: RunCommand) -> Settings:
    try:
        settings = Settings.from_env()
        if command.backend is not None:
            settings.backend = command.backend.strip().lower()
        if command.command_template is not None:
            settings.command = replace(settings.command, template=command.command_template)
        settings.validate()
    except ValueError as error:
        raise ConfigurationError(str(error)) from error
    return settings


def _build_backend(
    *,
    settings: Settings,
    configuration: RunConfiguration,
    outputs: RunOutputs,
) -> ExecutionBackend:
    rows_limit = configuration.option_set.results_rows_limit
    if settings.backend == "command":
        logger.info("Using command backend, workdir %s", settings.command.workdir)
        return CommandBackend(
            template=settings.command.template,
            workdir=settings.command.workdir,
            runner_options=configuration.runner_options,
            outputs=outputs,
            policy=configuration.policy,
            results_rows_limit=rows_limit,
        )
    return EchoBackend(
        runner_options=configuration.runner_options,
        outputs=outputs,
        policy=configuration.policy,
        results_rows_limit=rows_limit,
    )


def _read_query(path: Path) -> str:
    try:
        return path.read_text("utf-8")
    except OSError as error:
        raise ConfigurationError(f"Failed to read query file {path}: {error}") from error


def _ms_to_seconds(value: int) -> float:
    return value / 1000
