"""Pre-flight validation of option combinations.

Rules run once before any statement is submitted. The first violated rule
raises :class:`ConfigurationError`; non-fatal findings are logged and
returned as warnings.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from queryloop.orchestrator.errors import ConfigurationError
from queryloop.orchestrator.models import (
    STDOUT_TARGET,
    ExecutionKind,
    ExecutionOptionSet,
    RunnerOptions,
    RunPolicy,
    TraceOptType,
)

logger = logging.getLogger(__name__)

OptionCheck = Callable[[ExecutionOptionSet, RunnerOptions], bool]

_SPARSE_OPTIONS: tuple[tuple[str, str], ...] = (
    ("execution_kinds", "execution cases"),
    ("actions", "script query actions"),
    ("databases", "databases"),
    ("trace_ids", "trace ids"),
    ("pool_ids", "pool ids"),
    ("user_ids", "user ids"),
    ("timeouts", "timeouts"),
)


@dataclass(slots=True, frozen=True)
class CascadeStage:
    """Options that stay legal as long as ``kind`` (or an earlier stage's kind) is used."""

    kind: ExecutionKind
    rejected: tuple[tuple[OptionCheck, str], ...]


# Stages are evaluated top-down; the first stage whose kind is present ends
# the cascade, so later (more general) options are accepted with it.
SCRIPT_EXECUTION_CASCADE: tuple[CascadeStage, ...] = (
    CascadeStage(
        kind=ExecutionKind.SCRIPT,
        rejected=(
            (
                lambda options, _: options.forget_execution,
                "Forget execution can not be used without generic script queries",
            ),
            (
                lambda _, runner: bool(runner.script_cancel_after_seconds),
                "Cancel after can not be used without generic script queries",
            ),
        ),
    ),
    CascadeStage(
        kind=ExecutionKind.QUERY,
        rejected=(
            (
                lambda options, _: options.results_rows_limit > 0,
                "Result rows limit can not be used without script queries",
            ),
            (
                lambda _, runner: runner.statistics_output is not None,
                "Script statistics can not be used without script queries",
            ),
        ),
    ),
    CascadeStage(
        kind=ExecutionKind.YQL_SCRIPT,
        rejected=(
            (
                lambda _, runner: runner.script_ast_output is not None,
                "Script query AST output can not be used without script/yql queries",
            ),
            (
                lambda _, runner: runner.script_plan_output is not None,
                "Script query plan output can not be used without script/yql queries",
            ),
            (
                lambda _, runner: runner.same_session,
                "Same session can not be used without script/yql queries",
            ),
        ),
    ),
)


@dataclass(slots=True, frozen=True)
class TraceOptRule:
    """One entry of the trace-opt chain."""

    trace_opt: TraceOptType
    violated: OptionCheck | None
    message: str
    falls_through: bool


# `script` falls through into `all`; the order of this tuple is significant.
TRACE_OPT_CHAIN: tuple[TraceOptRule, ...] = (
    TraceOptRule(
        trace_opt=TraceOptType.SCHEME,
        violated=lambda options, _: not options.scheme_query,
        message="Trace opt type scheme cannot be used without scheme query",
        falls_through=False,
    ),
    TraceOptRule(
        trace_opt=TraceOptType.SCRIPT,
        violated=lambda options, _: not options.queries,
        message="Trace opt type script cannot be used without script queries",
        falls_through=True,
    ),
    TraceOptRule(
        trace_opt=TraceOptType.ALL,
        violated=lambda options, _: not options.scheme_query and not options.queries,
        message="Trace opt type all cannot be used without any queries",
        falls_through=True,
    ),
    TraceOptRule(
        trace_opt=TraceOptType.DISABLED,
        violated=None,
        message="",
        falls_through=False,
    ),
)


def validate_options(
    option_set: ExecutionOptionSet,
    policy: RunPolicy,
    runner_options: RunnerOptions,
) -> list[str]:
    """Validate the full option surface and return non-fatal warnings."""

    if not option_set.scheme_query and not option_set.queries and not runner_options.service_mode:
        raise ConfigurationError("Nothing to execute and is not running as daemon")

    _validate_option_sizes(option_set)
    _validate_numeric_ranges(option_set, policy, runner_options)
    _validate_file_only_outputs(runner_options)
    _validate_scheme_query_options(option_set, runner_options)
    _validate_script_execution_options(option_set, runner_options)
    warnings = _validate_async_options(option_set, policy)
    _validate_trace_opt(option_set, runner_options)
    return warnings


def _validate_option_sizes(option_set: ExecutionOptionSet) -> None:
    number_queries = len(option_set.queries)
    for attribute, option_name in _SPARSE_OPTIONS:
        size = len(getattr(option_set, attribute))
        if size > number_queries:
            raise ConfigurationError(
                f"Too many {option_name}. Specified {size}, "
                f"when number of queries is {number_queries}",
            )


def _validate_numeric_ranges(
    option_set: ExecutionOptionSet,
    policy: RunPolicy,
    runner_options: RunnerOptions,
) -> None:
    if policy.loop_count < 0:
        raise ConfigurationError("Loop count must be >= 0")
    if policy.loop_delay_seconds < 0:
        raise ConfigurationError("Loop delay must be >= 0")
    if policy.inflight_limit < 0:
        raise ConfigurationError("In flight limit must be >= 0")
    if option_set.results_rows_limit < 0:
        raise ConfigurationError("Result rows limit must be >= 0")
    if any(timeout < 0 for timeout in option_set.timeouts):
        raise ConfigurationError("Timeouts must be >= 0")
    cancel_after = runner_options.script_cancel_after_seconds
    if cancel_after is not None and cancel_after < 0:
        raise ConfigurationError("Cancel after must be >= 0")


def _validate_file_only_outputs(runner_options: RunnerOptions) -> None:
    if runner_options.statistics_output == STDOUT_TARGET:
        raise ConfigurationError(
            "Script in progress statistics cannot be printed to stdout, "
            "please specify file name",
        )
    if runner_options.timeline_output == STDOUT_TARGET:
        raise ConfigurationError(
            "Script timeline cannot be printed to stdout, please specify file name",
        )


def _validate_scheme_query_options(
    option_set: ExecutionOptionSet,
    runner_options: RunnerOptions,
) -> None:
    if option_set.scheme_query:
        return
    if runner_options.scheme_ast_output is not None:
        raise ConfigurationError("Scheme query AST output can not be used without scheme query")


def _validate_script_execution_options(
    option_set: ExecutionOptionSet,
    runner_options: RunnerOptions,
) -> None:
    if runner_options.same_session and option_set.has_kind(ExecutionKind.ASYNC):
        raise ConfigurationError("Same session can not be used with async queries")

    for stage in SCRIPT_EXECUTION_CASCADE:
        if option_set.has_kind(stage.kind):
            return
        for violated, message in stage.rejected:
            if violated(option_set, runner_options):
                raise ConfigurationError(message)


def _validate_async_options(option_set: ExecutionOptionSet, policy: RunPolicy) -> list[str]:
    if policy.inflight_limit and not option_set.has_kind(ExecutionKind.ASYNC):
        raise ConfigurationError("In flight limit can not be used without async queries")

    warnings: list[str] = []
    max_queries = len(option_set.queries) * policy.loop_count
    if policy.loop_count and policy.inflight_limit and policy.inflight_limit > max_queries:
        warning = (
            f"Warning: inflight limit is {policy.inflight_limit}, "
            f"that is larger than max possible number of queries {max_queries}"
        )
        logger.warning(warning)
        warnings.append(warning)
    return warnings


def _validate_trace_opt(option_set: ExecutionOptionSet, runner_options: RunnerOptions) -> None:
    started = False
    for rule in TRACE_OPT_CHAIN:
        if not started and rule.trace_opt != runner_options.trace_opt:
            continue
        started = True
        if rule.violated is not None and rule.violated(option_set, runner_options):
            raise ConfigurationError(rule.message)
        if not rule.falls_through:
            return
