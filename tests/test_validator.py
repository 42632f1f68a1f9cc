from __future__ import annotations

import allure
import pytest

from queryloop.orchestrator.errors import ConfigurationError
from queryloop.orchestrator.models import (
    ExecutionKind,
    ExecutionOptionSet,
    QueryAction,
    RunnerOptions,
    RunPolicy,
    TraceOptType,
)
from queryloop.orchestrator.validator import validate_options

pytestmark = [
    allure.epic("Query Loop"),
    allure.feature("Option Validation"),
]


def _queries(count: int = 1, **kwargs) -> ExecutionOptionSet:
    return ExecutionOptionSet(queries=tuple(f"SELECT {n}" for n in range(count)), **kwargs)


def test_valid_defaults_produce_no_warnings() -> None:
    assert validate_options(_queries(), RunPolicy(), RunnerOptions()) == []


def test_nothing_to_execute_outside_service_mode_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="Nothing to execute"):
        validate_options(ExecutionOptionSet(), RunPolicy(), RunnerOptions())


def test_nothing_to_execute_is_allowed_in_service_mode() -> None:
    warnings = validate_options(ExecutionOptionSet(), RunPolicy(), RunnerOptions(grpc_port=2135))

    assert warnings == []


@pytest.mark.parametrize(
    ("field_name", "values", "option_name"),
    [
        ("execution_kinds", (ExecutionKind.SCRIPT,) * 3, "execution cases"),
        ("actions", (QueryAction.EXECUTE,) * 3, "script query actions"),
        ("databases", ("a", "b", "c"), "databases"),
        ("trace_ids", ("a", "b", "c"), "trace ids"),
        ("pool_ids", ("a", "b", "c"), "pool ids"),
        ("user_ids", ("a", "b", "c"), "user ids"),
        ("timeouts", (1.0, 2.0, 3.0), "timeouts"),
    ],
)
def test_sparse_option_lists_cannot_exceed_query_count(
    field_name: str,
    values: tuple,
    option_name: str,
) -> None:
    option_set = _queries(2, **{field_name: values})

    with pytest.raises(
        ConfigurationError,
        match=f"Too many {option_name}. Specified 3, when number of queries is 2",
    ):
        validate_options(option_set, RunPolicy(), RunnerOptions())


def test_negative_loop_count_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="Loop count"):
        validate_options(_queries(), RunPolicy(loop_count=-1), RunnerOptions())


@pytest.mark.parametrize(
    ("runner_options", "message"),
    [
        (RunnerOptions(statistics_output="-"), "statistics cannot be printed to stdout"),
        (RunnerOptions(timeline_output="-"), "timeline cannot be printed to stdout"),
    ],
)
def test_file_only_outputs_reject_stdout(runner_options: RunnerOptions, message: str) -> None:
    with pytest.raises(ConfigurationError, match=message):
        validate_options(_queries(), RunPolicy(), runner_options)


def test_scheme_ast_requires_scheme_query() -> None:
    with pytest.raises(ConfigurationError, match="Scheme query AST output"):
        validate_options(_queries(), RunPolicy(), RunnerOptions(scheme_ast_output="ast.txt"))


def test_same_session_with_async_is_rejected() -> None:
    option_set = _queries(execution_kinds=(ExecutionKind.ASYNC,))

    with pytest.raises(ConfigurationError, match="Same session can not be used with async"):
        validate_options(option_set, RunPolicy(), RunnerOptions(same_session=True))


def test_forget_requires_generic_script_queries() -> None:
    option_set = _queries(execution_kinds=(ExecutionKind.QUERY,), forget_execution=True)

    with pytest.raises(ConfigurationError, match="Forget execution"):
        validate_options(option_set, RunPolicy(), RunnerOptions())


def test_rows_limit_is_accepted_with_generic_queries() -> None:
    option_set = _queries(execution_kinds=(ExecutionKind.QUERY,), results_rows_limit=10)

    assert validate_options(option_set, RunPolicy(), RunnerOptions()) == []


def test_rows_limit_is_rejected_with_only_yql_scripts() -> None:
    option_set = _queries(execution_kinds=(ExecutionKind.YQL_SCRIPT,), results_rows_limit=10)

    with pytest.raises(ConfigurationError, match="Result rows limit"):
        validate_options(option_set, RunPolicy(), RunnerOptions())


def test_plan_output_is_accepted_with_yql_scripts() -> None:
    option_set = _queries(execution_kinds=(ExecutionKind.YQL_SCRIPT,))

    warnings = validate_options(
        option_set,
        RunPolicy(),
        RunnerOptions(script_plan_output="plan.txt", same_session=True),
    )

    assert warnings == []


def test_plan_output_is_rejected_with_only_async_queries() -> None:
    option_set = _queries(execution_kinds=(ExecutionKind.ASYNC,))

    with pytest.raises(ConfigurationError, match="Script query plan output"):
        validate_options(option_set, RunPolicy(), RunnerOptions(script_plan_output="plan.txt"))


def test_inflight_limit_requires_async_queries() -> None:
    with pytest.raises(ConfigurationError, match="In flight limit"):
        validate_options(_queries(), RunPolicy(inflight_limit=2), RunnerOptions())


def test_inflight_limit_larger_than_total_queries_is_a_warning() -> None:
    option_set = _queries(2, execution_kinds=(ExecutionKind.ASYNC,))

    warnings = validate_options(
        option_set,
        RunPolicy(loop_count=5, inflight_limit=20),
        RunnerOptions(),
    )

    assert warnings == [
        "Warning: inflight limit is 20, that is larger than max possible number of queries 10",
    ]


def test_inflight_limit_with_unbounded_loop_has_no_warning() -> None:
    option_set = _queries(2, execution_kinds=(ExecutionKind.ASYNC,))

    warnings = validate_options(
        option_set,
        RunPolicy(loop_count=0, inflight_limit=20),
        RunnerOptions(),
    )

    assert warnings == []


def test_trace_opt_scheme_requires_scheme_query() -> None:
    with pytest.raises(ConfigurationError, match="Trace opt type scheme"):
        validate_options(_queries(), RunPolicy(), RunnerOptions(trace_opt=TraceOptType.SCHEME))


def test_trace_opt_script_requires_script_queries() -> None:
    option_set = ExecutionOptionSet(scheme_query="CREATE TABLE t (id Int32)")

    with pytest.raises(ConfigurationError, match="Trace opt type script"):
        validate_options(option_set, RunPolicy(), RunnerOptions(trace_opt=TraceOptType.SCRIPT))


def test_trace_opt_all_accepts_scheme_only_batches() -> None:
    option_set = ExecutionOptionSet(scheme_query="CREATE TABLE t (id Int32)")

    warnings = validate_options(
        option_set,
        RunPolicy(),
        RunnerOptions(trace_opt=TraceOptType.ALL),
    )

    assert warnings == []


@pytest.mark.parametrize(
    ("kinds", "option_set_fields", "runner_options", "message"),
    [
        (
            (ExecutionKind.QUERY,),
            {},
            RunnerOptions(script_cancel_after_seconds=1.0),
            "Cancel after can not be used without generic script queries",
        ),
        (
            (ExecutionKind.YQL_SCRIPT,),
            {},
            RunnerOptions(statistics_output="stats.jsonl"),
            "Script statistics can not be used without script queries",
        ),
        (
            (ExecutionKind.QUERY,),
            {},
            RunnerOptions(same_session=True),
            "Same session can not be used without script/yql queries",
        ),
        (
            (ExecutionKind.ASYNC,),
            {"results_rows_limit": 5},
            RunnerOptions(),
            "Result rows limit can not be used without script queries",
        ),
        (
            (ExecutionKind.ASYNC,),
            {},
            RunnerOptions(script_ast_output="ast.txt"),
            "Script query AST output can not be used without script/yql queries",
        ),
    ],
)
def test_cascade_rejects_options_without_matching_kind(
    kinds: tuple[ExecutionKind, ...],
    option_set_fields: dict,
    runner_options: RunnerOptions,
    message: str,
) -> None:
    option_set = _queries(execution_kinds=kinds, **option_set_fields)

    with pytest.raises(ConfigurationError, match=message):
        validate_options(option_set, RunPolicy(), runner_options)


@pytest.mark.parametrize(
    ("option_set_fields", "runner_options"),
    [
        ({"forget_execution": True}, RunnerOptions()),
        ({}, RunnerOptions(script_cancel_after_seconds=2.5)),
    ],
)
def test_script_stage_options_are_accepted_with_script_items(
    option_set_fields: dict,
    runner_options: RunnerOptions,
) -> None:
    option_set = _queries(
        2,
        execution_kinds=(ExecutionKind.QUERY, ExecutionKind.SCRIPT),
        **option_set_fields,
    )

    assert validate_options(option_set, RunPolicy(), runner_options) == []


def test_script_items_accept_every_later_stage_option() -> None:
    option_set = _queries(
        execution_kinds=(ExecutionKind.SCRIPT,),
        forget_execution=True,
        results_rows_limit=10,
    )
    runner_options = RunnerOptions(
        script_cancel_after_seconds=1.0,
        statistics_output="stats.jsonl",
        script_ast_output="ast.txt",
        script_plan_output="plan.txt",
        same_session=True,
    )

    assert validate_options(option_set, RunPolicy(), runner_options) == []
