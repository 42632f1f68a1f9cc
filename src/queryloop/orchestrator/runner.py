"""Run loop that drives query items against an execution backend."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime

from queryloop.config import Settings
from queryloop.orchestrator.backend.base import ExecutionBackend
from queryloop.orchestrator.errors import (
    ExecutionError,
    FinalizationError,
    PrintError,
    QueryRunError,
)
from queryloop.orchestrator.models import (
    ExecutionKind,
    ExecutionOptionSet,
    RunOutcome,
    RunPolicy,
    RunSummary,
)
from queryloop.orchestrator.request_builder import build_item_request, build_scheme_request

logger = logging.getLogger(__name__)


class QueryRunner:
    """Executes the scheme statement, then loops over query items.

    Loop counter ``i`` grows monotonically; item ``i % N`` is dispatched on
    each step. ``loop_count == 0`` loops until a stop signal arrives.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: ExecutionBackend,
        option_set: ExecutionOptionSet,
        policy: RunPolicy,
        settings: Settings,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.backend = backend
        self.option_set = option_set
        self.policy = policy
        self.settings = settings
        self.summary = RunSummary()
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._sleep = sleep or self._sleep_with_stop
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run(self) -> RunSummary:
        """Run the batch; errors not masked by continue-after-failure propagate."""

        self.summary = RunSummary()
        with self._signal_handlers():
            if self.option_set.scheme_query:
                self._execute_scheme_query()
            self._run_loop()
            self._aggregate()
        return self.summary

    def idle(self, tick_seconds: float, max_ticks: int | None = None) -> int:
        """Block in service mode until stopped; returns the number of ticks slept."""

        logger.info("Initialization finished")
        ticks = 0
        with self._signal_handlers():
            while not self._stop_requested:
                if max_ticks and ticks >= max_ticks:
                    break
                self._sleep(tick_seconds)
                ticks += 1
        if self._stop_signal_name is not None:
            logger.info("Stopped by %s", self._stop_signal_name)
        return ticks

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def _execute_scheme_query(self) -> None:
        logger.info("Executing scheme query...")
        request = build_scheme_request(self.option_set, settings=self.settings)
        if not self.backend.execute_scheme_query(request):
            raise ExecutionError.timestamped("Scheme query execution failed")

    def _run_loop(self) -> None:
        number_queries = len(self.option_set.queries)
        number_loops = self.policy.loop_count
        if number_queries == 0:
            return

        iteration = 0
        while iteration < number_queries * number_loops or number_loops == 0:
            if self._stop_requested:
                self.summary.interrupted = True
                break

            index = iteration % number_queries
            if index == 0 and iteration > 0:
                self._pause(self.policy.loop_delay_seconds)
                if self._stop_requested:
                    self.summary.interrupted = True
                    break

            start_time = self._clock()
            kind = self.option_set.kind_at(index)
            if kind != ExecutionKind.ASYNC:
                logger.info(
                    _progress_message(
                        index=index,
                        iteration=iteration,
                        number_queries=number_queries,
                        number_loops=number_loops,
                    ),
                )

            self.summary.dispatched += 1
            try:
                self._dispatch(index=index, iteration=iteration, start_time=start_time, kind=kind)
            except QueryRunError as error:
                if not self.policy.continue_after_fail:
                    self.summary.failed += 1
                    raise
                logger.error("%s", error)
                self.summary.failed += 1
                self.summary.errors.append(str(error))
            else:
                if kind == ExecutionKind.ASYNC:
                    self.summary.submitted_async += 1
                else:
                    self.summary.succeeded += 1
            iteration += 1

        self.summary.loops_completed = iteration // number_queries

    def _dispatch(
        self,
        *,
        index: int,
        iteration: int,
        start_time: datetime,
        kind: ExecutionKind,
    ) -> None:
        request = build_item_request(
            self.option_set,
            index,
            iteration,
            start_time,
            settings=self.settings,
        )

        if kind == ExecutionKind.SCRIPT:
            if not self.backend.execute_script(request):
                raise ExecutionError.timestamped("Script execution failed")
            logger.info("Fetching script results...")
            if not self.backend.fetch_script_results():
                raise ExecutionError.timestamped("Fetch script results failed")
            if self.option_set.forget_execution:
                logger.info("Forgetting script execution operation...")
                if not self.backend.forget_execution():
                    raise ExecutionError.timestamped("Forget script execution operation failed")
            return

        if kind == ExecutionKind.QUERY:
            if not self.backend.execute_query(request):
                raise ExecutionError.timestamped("Query execution failed")
            return

        if kind == ExecutionKind.YQL_SCRIPT:
            if not self.backend.execute_yql_script(request):
                raise ExecutionError.timestamped("Yql script execution failed")
            return

        self.backend.execute_query_async(request)

    def _aggregate(self) -> None:
        try:
            self.backend.finalize()
        except Exception as error:  # noqa: BLE001
            raise FinalizationError(f"Failed to finalize backend, reason:\n{error}") from error

        if not self.option_set.has_results():
            return
        try:
            self.backend.print_results()
        except Exception as error:  # noqa: BLE001
            raise PrintError(f"Failed to print script results, reason:\n{error}") from error

    def _pause(self, seconds: float) -> None:
        if seconds > 0:
            self._sleep(seconds)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.warning("Stop requested by %s", name)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def run_batch(runner: QueryRunner, *, suppress_errors: bool) -> RunOutcome:
    """Run the batch and decide how an escaping error reaches the process.

    One-shot runs must fail loudly; with monitoring enabled the error is logged
    and suppressed so the process stays up.
    """

    try:
        summary = runner.run()
    except QueryRunError as error:
        if suppress_errors:
            logger.error("%s", error)
        return RunOutcome(summary=runner.summary, error=error, suppressed=suppress_errors)
    return RunOutcome(summary=summary)


def _progress_message(
    *,
    index: int,
    iteration: int,
    number_queries: int,
    number_loops: int,
) -> str:
    message = "Executing script"
    if number_queries > 1:
        message += f" {index}"
    if number_loops != 1:
        message += f", loop {iteration // number_queries}"
    return message + "..."
