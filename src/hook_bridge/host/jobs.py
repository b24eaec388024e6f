"""Host-thread jobs: test run and compile check.

Both jobs are started from the main-thread queue and never block the host
thread. A test run waits for the engine's completion callback, a compile
check polls the compiler pipeline once per host tick. Each job reports
through its ``ResponseStream`` and ends it exactly once.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Protocol

from hook_bridge.commands import (
    BUSY_MESSAGE,
    COMPILE_FAILED_MARKER,
    COMPILE_PASSED_MARKER,
    TESTS_FAILED_MARKER,
    CommandKind,
    CommandRequest,
)
from hook_bridge.config import CompileCheckSettings
from hook_bridge.host.engines import (
    CompilationUnsupportedError,
    CompilePipeline,
    TestEngine,
    TestFilter,
    TestRunResult,
)
from hook_bridge.host.loop import HostLoop, LogMessage, LogSubscription
from hook_bridge.host.stream import ResponseStream, StreamClosedError
from hook_bridge.state.models import TestSummary
from hook_bridge.state.store import StateStore

logger = logging.getLogger(__name__)

HTTP_OK = 200
HTTP_CONFLICT = 409
HTTP_SERVER_ERROR = 500

COMPILE_CHECK_STEP = "compile_check"


class HostJob(Protocol):
    @property
    def is_finished(self) -> bool: ...

    def start(self) -> None: ...

    def cancel(self) -> None: ...


JobFinishedCallback = Callable[[HostJob], None]


class TestRunPhase(str, Enum):
    IDLE = "idle"
    CONFIGURING = "configuring"
    RUNNING = "running"
    REPORTING = "reporting"


class CompilePhase(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    WAITING = "waiting"
    COMPILING = "compiling"
    EVALUATING = "evaluating"


class CompileOutcome(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class TestRunJob:
    """Runs one filtered test pass and streams its log and verdict."""

    def __init__(  # noqa: PLR0913
        self,
        request: CommandRequest,
        stream: ResponseStream,
        *,
        engine: TestEngine,
        loop: HostLoop,
        state_store: StateStore | None = None,
        on_finished: JobFinishedCallback | None = None,
    ) -> None:
        self._request = request
        self._stream = stream
        self._engine = engine
        self._loop = loop
        self._state_store = state_store
        self._on_finished = on_finished
        self._subscription: LogSubscription | None = None
        self._registered = False
        self.phase = TestRunPhase.IDLE
        self.result: TestRunResult | None = None

    @property
    def is_finished(self) -> bool:
        return self._stream.finished

    @property
    def test_filter(self) -> TestFilter:
        return TestFilter(mode=self._request.mode, categories=self._request.categories)

    def start(self) -> None:
        self.phase = TestRunPhase.CONFIGURING
        test_filter = self.test_filter
        logger.info(
            "Starting %s tests (categories: %s)",
            test_filter.mode.value,
            test_filter.category_label or "all",
        )
        try:
            self._subscription = self._loop.log_bus.subscribe(self._on_log)
            self._engine.register_callbacks(self)
            self._registered = True
            self.phase = TestRunPhase.RUNNING
            self._engine.execute(test_filter)
        except Exception as exc:  # noqa: BLE001
            self._release()
            logger.warning("Test run failed to start: %s", exc)
            self._write(f"Test run failed to start: {exc}")
            self._finish(HTTP_SERVER_ERROR)

    def run_finished(self, result: TestRunResult) -> None:
        """Engine callback; only the first call per run is honoured."""

        if self.phase is not TestRunPhase.RUNNING:
            logger.debug("Ignoring run_finished in phase %s", self.phase.value)
            return
        self.phase = TestRunPhase.REPORTING
        self.result = result
        self._release()

        summary = TestSummary(
            pass_count=result.pass_count,
            fail_count=result.fail_count,
            mode=self._request.mode.value,
            category=",".join(self._request.categories),
            log_reference=result.log_reference,
        )
        if self._state_store is not None:
            try:
                self._state_store.update_test_summary(summary)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to record test summary")

        self._write(f"Passed: {result.pass_count}, Failed: {result.fail_count}")
        if result.fail_count > 0:
            self._write(TESTS_FAILED_MARKER)
        self._finish(HTTP_SERVER_ERROR if result.fail_count > 0 else HTTP_OK)

    def cancel(self) -> None:
        self._release()
        if self._stream.abort():
            logger.warning("Test run cancelled")
        self.phase = TestRunPhase.IDLE

    def _on_log(self, message: LogMessage) -> None:
        if self.phase is not TestRunPhase.RUNNING:
            return
        self._write(message.format())

    def _release(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._registered:
            self._registered = False
            try:
                self._engine.unregister_callbacks(self)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to unregister test run callbacks")

    def _write(self, line: str) -> None:
        try:
            self._stream.write_line(line)
        except StreamClosedError as exc:
            logger.debug("Dropping test run output: %s", exc)

    def _finish(self, status_code: int) -> None:
        self._stream.close(status_code)
        self.phase = TestRunPhase.IDLE
        if self._on_finished is not None:
            self._on_finished(self)


class CompileCheckJob:
    """Requests a compilation and reports whether it produced compiler errors."""

    def __init__(  # noqa: PLR0913
        self,
        stream: ResponseStream,
        *,
        pipeline: CompilePipeline,
        loop: HostLoop,
        settings: CompileCheckSettings | None = None,
        state_store: StateStore | None = None,
        step_name: str = COMPILE_CHECK_STEP,
        clock: Callable[[], float] = time.monotonic,
        on_finished: JobFinishedCallback | None = None,
    ) -> None:
        self._stream = stream
        self._pipeline = pipeline
        self._loop = loop
        self._settings = settings or CompileCheckSettings()
        self._state_store = state_store
        self._step_name = step_name
        self._clock = clock
        self._on_finished = on_finished
        self._subscription: LogSubscription | None = None
        self._started_at = 0.0
        self.phase = CompilePhase.IDLE
        self.outcome: CompileOutcome | None = None
        self.error_count = 0

    @property
    def is_finished(self) -> bool:
        return self._stream.finished

    def start(self) -> None:
        self.phase = CompilePhase.REQUESTED
        self._started_at = self._clock()
        self._subscription = self._loop.log_bus.subscribe(self._on_log)
        logger.info("Compile check requested")

        try:
            self._pipeline.refresh()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Asset refresh before compile check failed: %s", exc)
        try:
            self._pipeline.request_compilation()
        except CompilationUnsupportedError as exc:
            logger.warning("Compilation request not supported, waiting for a pending one: %s", exc)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Compilation request failed: %s", exc)

        self.phase = CompilePhase.WAITING
        self._mirror_detail("Waiting for compilation")
        self._loop.add_update(self.poll)

    def poll(self) -> None:
        """One host tick of the compile check."""

        if self.phase not in (CompilePhase.WAITING, CompilePhase.COMPILING):
            return
        elapsed = self._clock() - self._started_at
        if elapsed >= self._settings.timeout_seconds:
            self._complete(CompileOutcome.TIMED_OUT, elapsed)
            return

        try:
            compiling = self._pipeline.is_compiling
        except Exception as exc:  # noqa: BLE001
            logger.exception("Compiler pipeline state unavailable")
            self._complete(CompileOutcome.FAILED, elapsed, reason=f"pipeline error: {exc}")
            return

        if compiling:
            if self.phase is CompilePhase.WAITING:
                self.phase = CompilePhase.COMPILING
                self._mirror_detail("Compiling")
            return

        if self.phase is CompilePhase.WAITING and elapsed < self._settings.grace_seconds:
            return
        self._complete(
            CompileOutcome.PASSED if self.error_count == 0 else CompileOutcome.FAILED,
            elapsed,
        )

    def cancel(self) -> None:
        self._release()
        if self._stream.abort():
            logger.warning("Compile check cancelled")
        self.phase = CompilePhase.IDLE

    def _on_log(self, message: LogMessage) -> None:
        if self.phase in (CompilePhase.IDLE, CompilePhase.EVALUATING):
            return
        if not message.is_error:
            return
        marker = self._settings.error_marker
        if marker and marker not in message.text:
            return
        self.error_count += 1
        self._write(message.text)

    def _complete(
        self,
        outcome: CompileOutcome,
        elapsed: float,
        *,
        reason: str | None = None,
    ) -> None:
        previous_phase = self.phase
        self.phase = CompilePhase.EVALUATING
        self.outcome = outcome
        self._release()

        if outcome is CompileOutcome.PASSED:
            logger.info("Compile check passed in %.1f s", elapsed)
            self._write(COMPILE_PASSED_MARKER)
            self._mirror_detail(COMPILE_PASSED_MARKER)
            status_code = HTTP_OK
        else:
            if reason is not None:
                logger.warning("Compile check aborted: %s", reason)
            elif outcome is CompileOutcome.TIMED_OUT:
                timeout = self._settings.timeout_seconds
                reason = f"Compile check timed out after {timeout:g} s"
                logger.error(
                    "Compile check timed out after %g s (%s)",
                    timeout,
                    previous_phase.value,
                )
            else:
                reason = f"Compile check failed with {self.error_count} error(s)"
                logger.warning("Compilation finished with %d compiler error(s)", self.error_count)
            verdict = f"{COMPILE_FAILED_MARKER}: {reason}"
            self._write(verdict)
            self._mirror_detail(verdict)
            status_code = HTTP_SERVER_ERROR

        self._stream.close(status_code)
        self.phase = CompilePhase.IDLE
        if self._on_finished is not None:
            self._on_finished(self)

    def _release(self) -> None:
        self._loop.remove_update(self.poll)
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def _write(self, line: str) -> None:
        try:
            self._stream.write_line(line)
        except StreamClosedError as exc:
            logger.debug("Dropping compile check output: %s", exc)

    def _mirror_detail(self, detail: str) -> None:
        if self._state_store is None:
            return
        try:
            state = self._state_store.read()
            if state is None or state.find_step(self._step_name) is None:
                return
            self._state_store.update_step(self._step_name, detail=detail)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to mirror compile check progress")


class JobRunner:
    """Builds and starts the job for a command; one job at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        engine: TestEngine,
        pipeline: CompilePipeline,
        loop: HostLoop,
        state_store: StateStore | None = None,
        compile_settings: CompileCheckSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._engine = engine
        self._pipeline = pipeline
        self._loop = loop
        self._state_store = state_store
        self._compile_settings = compile_settings or CompileCheckSettings()
        self._clock = clock
        self._active: HostJob | None = None

    @property
    def active_job(self) -> HostJob | None:
        if self._active is not None and self._active.is_finished:
            self._active = None
        return self._active

    def run(self, request: CommandRequest, stream: ResponseStream) -> None:
        """Start the job for ``request``. Must be called on the host thread."""

        if self.active_job is not None:
            logger.warning("Rejecting %s: a job is already active", request.command.value)
            try:
                stream.write_line(BUSY_MESSAGE)
            except StreamClosedError:
                logger.debug("Busy response reader already gone")
            stream.close(HTTP_CONFLICT)
            return

        if request.repo_path:
            logger.info("Request for repository %s", request.repo_path)

        job: HostJob
        if request.command is CommandKind.COMPILE_CHECK:
            job = CompileCheckJob(
                stream,
                pipeline=self._pipeline,
                loop=self._loop,
                settings=self._compile_settings,
                state_store=self._state_store,
                clock=self._clock,
                on_finished=self._job_finished,
            )
        else:
            job = TestRunJob(
                request,
                stream,
                engine=self._engine,
                loop=self._loop,
                state_store=self._state_store,
                on_finished=self._job_finished,
            )
        self._active = job
        job.start()

    def cancel_active(self) -> None:
        job = self.active_job
        self._active = None
        if job is not None:
            job.cancel()

    def _job_finished(self, job: HostJob) -> None:
        if self._active is job:
            self._active = None


def run_blocking_compile_check(  # noqa: PLR0913
    pipeline: CompilePipeline,
    *,
    batch_mode: bool,
    timeout_seconds: float = 600.0,
    poll_interval_seconds: float = 0.2,
    progress_interval_seconds: float = 10.0,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Compile check for a headless host; returns a process exit code.

    A batch-mode host has compiled the project while opening it, so there is
    nothing left to wait for.
    """

    if batch_mode:
        logger.info("Batch mode: scripts compiled at project open")
        return 0

    try:
        pipeline.refresh()
    except Exception as exc:  # noqa: BLE001
        logger.warning("Asset refresh before compile check failed: %s", exc)
    try:
        pipeline.request_compilation()
    except Exception as exc:  # noqa: BLE001
        logger.warning("Compilation request failed: %s", exc)

    started_at = clock()
    last_progress = started_at
    while pipeline.is_compiling:
        now = clock()
        if now - started_at >= timeout_seconds:
            logger.error("Compilation timed out after %g s", timeout_seconds)
            return 1
        if now - last_progress >= progress_interval_seconds:
            logger.info("Still compiling (%.0f s elapsed)", now - started_at)
            last_progress = now
        sleep(poll_interval_seconds)

    logger.info("Compilation finished")
    return 0
