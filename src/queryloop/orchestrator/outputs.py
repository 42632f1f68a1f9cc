"""Scoped output handles for results and diagnostics."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from queryloop.orchestrator.models import STDOUT_TARGET, RunnerOptions


@dataclass(slots=True)
class RunOutputs:
    """Open sinks for one run; ``None`` means the output is disabled."""

    result: TextIO | None = None
    scheme_ast: TextIO | None = None
    script_ast: TextIO | None = None
    script_plan: TextIO | None = None
    statistics: TextIO | None = None
    timeline: TextIO | None = None


@contextmanager
def open_outputs(
    runner_options: RunnerOptions,
    *,
    stdout: TextIO | None = None,
) -> Iterator[RunOutputs]:
    """Open every configured output and close the files on exit.

    ``"-"`` maps to ``stdout`` (``sys.stdout`` by default), which is never closed.
    """

    console = stdout if stdout is not None else sys.stdout
    with ExitStack() as stack:

        def _open(target: str | None) -> TextIO | None:
            if target is None or not target.strip():
                return None
            if target == STDOUT_TARGET:
                return console
            path = Path(target)
            path.parent.mkdir(parents=True, exist_ok=True)
            return stack.enter_context(path.open("w", encoding="utf-8"))

        yield RunOutputs(
            result=_open(runner_options.result_output),
            scheme_ast=_open(runner_options.scheme_ast_output),
            script_ast=_open(runner_options.script_ast_output),
            script_plan=_open(runner_options.script_plan_output),
            statistics=_open(runner_options.statistics_output),
            timeline=_open(runner_options.timeline_output),
        )
