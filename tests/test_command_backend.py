from __future__ import annotations

import io
import json
import shlex
import sys
from pathlib import Path

import allure
import pytest

from queryloop.orchestrator.backend import CommandBackend
from queryloop.orchestrator.backend.command_backend import (
    build_run_args,
    validate_command_template,
)
from queryloop.orchestrator.errors import ConfigurationError
from queryloop.orchestrator.models import (
    QueryAction,
    ResolvedExecutionRequest,
    RunnerOptions,
    RunPolicy,
)
from queryloop.orchestrator.outputs import RunOutputs

pytestmark = [
    allure.epic("Query Loop"),
    allure.feature("Command Backend"),
]

_FAKE_ENGINE = """
import sys
import time
from pathlib import Path

text = Path(sys.argv[1]).read_text("utf-8")
if "sleep" in text:
    time.sleep(5)
if "fail" in text:
    print("engine rejected query", file=sys.stderr)
    raise SystemExit(3)
for line in text.splitlines():
    if line.strip():
        print(line.strip())
"""


def _template(tmp_path: Path) -> str:
    engine = tmp_path / "fake_engine.py"
    engine.write_text(_FAKE_ENGINE.strip() + "\n", "utf-8")
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(engine))} {{query_file}}"


def _request(
    query: str,
    *,
    action: QueryAction = QueryAction.EXECUTE,
    timeout_seconds: float = 0.0,
) -> ResolvedExecutionRequest:
    return ResolvedExecutionRequest(
        query=query,
        action=action,
        trace_id="trace-1",
        pool_id="",
        user_id="root@builtin",
        database="/local db",
        timeout_seconds=timeout_seconds,
    )


def _backend(
    tmp_path: Path,
    *,
    outputs: RunOutputs | None = None,
    policy: RunPolicy | None = None,
    results_rows_limit: int = 0,
) -> CommandBackend:
    return CommandBackend(
        template=_template(tmp_path),
        workdir=tmp_path / "work",
        runner_options=RunnerOptions(),
        outputs=outputs or RunOutputs(),
        policy=policy,
        results_rows_limit=results_rows_limit,
    )


def test_build_run_args_quotes_placeholder_values() -> None:
    run_args = build_run_args(
        template="engine --db {database} --trace {trace_id} --timeout {timeout} {query_file}",
        request=_request("SELECT 1", timeout_seconds=1.5),
        query_file=Path("work dir/query.sql"),
    )

    assert run_args == [
        "engine",
        "--db",
        "/local db",
        "--trace",
        "trace-1",
        "--timeout",
        "1.5",
        "work dir/query.sql",
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "template is empty"),
        ("engine --db {database}", "must include {query_file}"),
        ("engine {query_file} --model {model}", "Unsupported command template placeholder"),
        ("engine {query_file} {", "Unsupported command template placeholder"),
        ('engine "{query_file}', "not valid shell"),
    ],
)
def test_validate_command_template_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(ConfigurationError, match=message):
        validate_command_template(template)


def test_query_stdout_lines_become_result_rows(tmp_path: Path) -> None:
    sink = io.StringIO()
    backend = _backend(tmp_path, outputs=RunOutputs(result=sink), results_rows_limit=2)

    assert backend.execute_query(_request("SELECT 1\nSELECT 2\nSELECT 3"))
    backend.print_results()

    assert sink.getvalue() == "SELECT 1\nSELECT 2\n"
    assert backend.results[0].truncated


def test_non_zero_exit_code_reports_failure(tmp_path: Path) -> None:
    backend = _backend(tmp_path)

    assert not backend.execute_yql_script(_request("SELECT fail"))
    assert backend.results == []


def test_timeout_stops_the_command(tmp_path: Path) -> None:
    backend = _backend(tmp_path)

    assert not backend.execute_query(_request("SELECT sleep", timeout_seconds=0.2))


def test_script_fetch_and_forget(tmp_path: Path) -> None:
    backend = _backend(tmp_path)

    assert backend.execute_script(_request("SELECT 1"))
    assert backend.fetch_script_results()
    assert backend.results[0].rows == ["SELECT 1"]
    assert backend.forget_execution()

    assert not any((tmp_path / "work").iterdir())
    assert not backend.fetch_script_results()


def test_explain_output_goes_to_plan_sink(tmp_path: Path) -> None:
    plan = io.StringIO()
    backend = _backend(tmp_path, outputs=RunOutputs(script_plan=plan))

    assert backend.execute_query(_request("SELECT 1", action=QueryAction.EXPLAIN))

    assert plan.getvalue() == "SELECT 1\n"
    assert backend.results == []


def test_async_queries_are_awaited_in_finalize(tmp_path: Path) -> None:
    backend = _backend(tmp_path, policy=RunPolicy(inflight_limit=1))

    backend.execute_query_async(_request("SELECT 1"))
    backend.execute_query_async(_request("SELECT 2"))
    backend.finalize()

    stdout_files = sorted((tmp_path / "work").glob("*-async/stdout.txt"))
    assert [path.read_text("utf-8") for path in stdout_files] == ["SELECT 1\n", "SELECT 2\n"]


def test_close_stops_async_commands_left_unfinished(tmp_path: Path) -> None:
    backend = _backend(tmp_path)

    backend.execute_query_async(_request("SELECT sleep"))
    process = backend._inflight[0].process
    backend.close()

    assert backend._inflight == []
    assert process.poll() is not None


def test_diagnostic_sinks_are_written(tmp_path: Path) -> None:
    scheme_ast = io.StringIO()
    script_ast = io.StringIO()
    statistics = io.StringIO()
    timeline = io.StringIO()
    backend = _backend(
        tmp_path,
        outputs=RunOutputs(
            scheme_ast=scheme_ast,
            script_ast=script_ast,
            statistics=statistics,
            timeline=timeline,
        ),
    )

    assert backend.execute_scheme_query(_request("CREATE TABLE t"))
    assert not backend.execute_script(_request("SELECT fail"))
    backend.finalize()

    assert "CREATE TABLE t" in scheme_ast.getvalue()
    assert "SELECT fail" in script_ast.getvalue()
    record = json.loads(statistics.getvalue())
    assert record["status"] == "failed"
    assert record["exit_code"] == 3
    assert timeline.getvalue().count("<rect") == 2
    assert "#f44336" in timeline.getvalue()
