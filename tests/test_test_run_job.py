from __future__ import annotations

import logging

import allure
from conftest import FakeTestEngine

from hook_bridge.commands import CommandKind, CommandRequest
from hook_bridge.host.engines import TestMode, TestRunResult
from hook_bridge.host.jobs import JobRunner, TestRunJob, TestRunPhase
from hook_bridge.host.loop import HostLoop, LogMessage
from hook_bridge.host.stream import ResponseStream
from hook_bridge.state.models import StepStatus
from hook_bridge.state.store import StateStore

pytestmark = [
    allure.epic("Host Coordination"),
    allure.feature("Test Run Job"),
]


def _drain(stream: ResponseStream) -> list[str]:
    lines = []
    while True:
        line = stream.read(timeout=1)
        if line is None:
            return lines
        lines.append(line.rstrip("\n"))


def _job(
    loop: HostLoop,
    engine: FakeTestEngine,
    *,
    request: CommandRequest | None = None,
    store: StateStore | None = None,
) -> tuple[TestRunJob, ResponseStream]:
    stream = ResponseStream()
    job = TestRunJob(
        request or CommandRequest(),
        stream,
        engine=engine,
        loop=loop,
        state_store=store,
    )
    return job, stream


def test_passing_run_streams_summary_and_closes_with_200(host_loop: HostLoop) -> None:
    engine = FakeTestEngine(host_loop, result=TestRunResult(pass_count=4, fail_count=0))
    job, stream = _job(host_loop, engine)

    job.start()
    assert job.phase is TestRunPhase.RUNNING
    assert not stream.finished

    host_loop.tick()

    assert _drain(stream) == ["Passed: 4, Failed: 0"]
    assert stream.status_code == 200
    assert job.phase is TestRunPhase.IDLE
    assert engine.registered == []


def test_failing_run_reports_failure_marker_and_500(host_loop: HostLoop) -> None:
    engine = FakeTestEngine(host_loop, result=TestRunResult(pass_count=1, fail_count=2))
    job, stream = _job(host_loop, engine)

    job.start()
    host_loop.tick()

    assert _drain(stream) == ["Passed: 1, Failed: 2", "Tests failed"]
    assert stream.status_code == 500


def test_log_messages_during_run_are_streamed_before_summary(host_loop: HostLoop) -> None:
    engine = FakeTestEngine(host_loop, log_lines=("Running FooTests", "FooTests.Bar passed"))
    job, stream = _job(host_loop, engine)

    job.start()
    host_loop.log_bus.emit(
        LogMessage(text="NullReferenceException", level=logging.ERROR, stacktrace="at Foo.Bar()"),
    )
    host_loop.tick()

    assert _drain(stream) == [
        "NullReferenceException at Foo.Bar() ERROR",
        "Running FooTests INFO",
        "FooTests.Bar passed INFO",
        "Passed: 3, Failed: 0",
    ]


def test_filter_uses_request_mode_and_all_categories(host_loop: HostLoop) -> None:
    engine = FakeTestEngine(host_loop)
    request = CommandRequest(mode=TestMode.PLAY_MODE, categories=("Fast", "Physics"))
    job, _stream = _job(host_loop, engine, request=request)

    job.start()

    test_filter = engine.executed[0]
    assert test_filter.mode is TestMode.PLAY_MODE
    assert test_filter.categories == ("Fast", "Physics")
    assert test_filter.matches(["Physics", "Fast", "Slow"])
    assert not test_filter.matches(["Fast"])


def test_execute_failure_reports_start_error_and_500(host_loop: HostLoop) -> None:
    engine = FakeTestEngine(host_loop, start_error=RuntimeError("test runner busy"))
    job, stream = _job(host_loop, engine)

    job.start()

    assert _drain(stream) == ["Test run failed to start: test runner busy"]
    assert stream.status_code == 500
    assert engine.registered == []
    assert len(host_loop.log_bus) == 0


def test_duplicate_finish_callback_is_ignored(host_loop: HostLoop) -> None:
    engine = FakeTestEngine(host_loop, finish_after_ticks=None)
    job, stream = _job(host_loop, engine)
    job.start()

    job.run_finished(TestRunResult(pass_count=2, fail_count=0))
    job.run_finished(TestRunResult(pass_count=0, fail_count=9))

    assert _drain(stream) == ["Passed: 2, Failed: 0"]
    assert stream.status_code == 200


def test_summary_is_written_to_state_store(host_loop: HostLoop, state_store: StateStore) -> None:
    state_store.start_job("pre-push", ["tests"])
    engine = FakeTestEngine(
        host_loop,
        result=TestRunResult(pass_count=7, fail_count=1, log_reference="TestResults.xml"),
    )
    request = CommandRequest(mode=TestMode.PLAY_MODE, categories=("Smoke",))
    job, _stream = _job(host_loop, engine, request=request, store=state_store)

    job.start()
    host_loop.tick()

    summary = state_store.read().test_summary
    assert summary.pass_count == 7
    assert summary.fail_count == 1
    assert summary.mode == "PlayMode"
    assert summary.category == "Smoke"
    assert summary.log_reference == "TestResults.xml"
    assert state_store.read().find_step("tests").status is StepStatus.PENDING


def test_reader_disconnect_does_not_prevent_close(host_loop: HostLoop) -> None:
    engine = FakeTestEngine(host_loop, log_lines=("noise",))
    job, stream = _job(host_loop, engine)
    job.start()
    stream.detach()

    host_loop.tick()

    assert stream.finished
    assert stream.status_code == 200


def test_cancel_aborts_stream_and_unregisters(host_loop: HostLoop) -> None:
    engine = FakeTestEngine(host_loop, finish_after_ticks=None)
    job, stream = _job(host_loop, engine)
    job.start()

    job.cancel()

    assert stream.aborted
    assert engine.registered == []
    assert len(host_loop.log_bus) == 0


def test_runner_rejects_second_job_while_first_is_active(host_loop: HostLoop) -> None:
    engine = FakeTestEngine(host_loop, finish_after_ticks=None)
    runner = JobRunner(engine=engine, pipeline=None, loop=host_loop)
    first = ResponseStream()
    second = ResponseStream()

    runner.run(CommandRequest(), first)
    runner.run(CommandRequest(command=CommandKind.RUN_TESTS), second)

    assert _drain(second) == ["Another job is already running"]
    assert second.status_code == 409
    assert not first.finished

    engine.finish()
    assert first.status_code == 200
    assert runner.active_job is None


class _UnreadyEngine(FakeTestEngine):
    def register_callbacks(self, callbacks) -> None:
        raise RuntimeError("engine not ready")


def test_registration_failure_closes_stream_and_frees_runner(host_loop: HostLoop) -> None:
    engine = _UnreadyEngine(host_loop)
    runner = JobRunner(engine=engine, pipeline=None, loop=host_loop)
    failed = ResponseStream()

    runner.run(CommandRequest(), failed)

    assert _drain(failed) == ["Test run failed to start: engine not ready"]
    assert failed.status_code == 500
    assert len(host_loop.log_bus) == 0
    assert runner.active_job is None
    assert engine.executed == []

    retry = ResponseStream()
    runner.run(CommandRequest(), retry)

    assert retry.status_code == 500
    assert _drain(retry) == ["Test run failed to start: engine not ready"]
