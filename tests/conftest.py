"""Shared test fixtures."""

from __future__ import annotations

import logging
import os
import stat
import sys
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

import pytest

from hook_bridge.config import ChannelSettings, CompileCheckSettings, Settings
from hook_bridge.host.engines import (
    CompilationUnsupportedError,
    TestFilter,
    TestRunCallbacks,
    TestRunResult,
)
from hook_bridge.host.loop import HostLoop, LogMessage
from hook_bridge.host.service import HookBridgeService
from hook_bridge.state.store import StateStore


class FakeTestEngine:
    """In-process test engine that reports its result on a later host tick."""

    def __init__(
        self,
        loop: HostLoop,
        *,
        result: TestRunResult | None = None,
        log_lines: tuple[str, ...] = (),
        finish_after_ticks: int | None = 1,
        start_error: Exception | None = None,
    ) -> None:
        self.loop = loop
        self.result = result or TestRunResult(pass_count=3, fail_count=0)
        self.log_lines = log_lines
        self.finish_after_ticks = finish_after_ticks
        self.start_error = start_error
        self.registered: list[TestRunCallbacks] = []
        self.executed: list[TestFilter] = []

    def register_callbacks(self, callbacks: TestRunCallbacks) -> None:
        self.registered.append(callbacks)

    def unregister_callbacks(self, callbacks: TestRunCallbacks) -> None:
        if callbacks in self.registered:
            self.registered.remove(callbacks)

    def execute(self, test_filter: TestFilter) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.executed.append(test_filter)
        if self.finish_after_ticks is None:
            return
        remaining = [self.finish_after_ticks]

        def _countdown() -> None:
            remaining[0] -= 1
            if remaining[0] > 0:
                return
            self.loop.remove_update(_countdown)
            self.finish()

        self.loop.add_update(_countdown)

    def finish(self) -> None:
        for line in self.log_lines:
            self.loop.log_bus.emit(LogMessage(text=line))
        for callbacks in list(self.registered):
            callbacks.run_finished(self.result)


class FakeCompilePipeline:
    """Compiler pipeline that compiles for a number of host ticks."""

    def __init__(
        self,
        loop: HostLoop,
        *,
        compile_ticks: int | None = 2,
        error_lines: tuple[str, ...] = (),
        starts_compilation: bool = True,
        unsupported: bool = False,
    ) -> None:
        self.loop = loop
        self.compile_ticks = compile_ticks
        self.error_lines = error_lines
        self.starts_compilation = starts_compilation
        self.unsupported = unsupported
        self.refresh_calls = 0
        self.request_calls = 0
        self._compiling = False

    @property
    def is_compiling(self) -> bool:
        return self._compiling

    def refresh(self) -> None:
        self.refresh_calls += 1

    def request_compilation(self) -> None:
        self.request_calls += 1
        if self.unsupported:
            raise CompilationUnsupportedError("compilation API unavailable")
        if self.starts_compilation:
            self.begin()

    def begin(self) -> None:
        self._compiling = True
        remaining = [self.compile_ticks]
        emitted = [False]

        def _compile_tick() -> None:
            if not emitted[0]:
                emitted[0] = True
                for line in self.error_lines:
                    self.loop.log_bus.emit(LogMessage(text=line, level=logging.ERROR))
            if remaining[0] is None:
                return
            remaining[0] -= 1
            if remaining[0] <= 0:
                self._compiling = False
                self.loop.remove_update(_compile_tick)

        self.loop.add_update(_compile_tick)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass(slots=True)
class RunningHost:
    """A bridge service served on an ephemeral port with a pumping host loop."""

    loop: HostLoop
    engine: FakeTestEngine
    pipeline: FakeCompilePipeline
    service: HookBridgeService
    store: StateStore

    @property
    def port(self) -> int:
        port = self.service.channel.port
        assert port is not None
        return port


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    (repo / ".git").mkdir(parents=True)
    return repo


@pytest.fixture()
def state_store(git_repo: Path) -> StateStore:
    return StateStore.for_repository(git_repo)


@pytest.fixture()
def host_loop() -> HostLoop:
    return HostLoop()


@pytest.fixture()
def running_host(state_store: StateStore) -> Iterator[RunningHost]:
    loop = HostLoop()
    engine = FakeTestEngine(loop)
    pipeline = FakeCompilePipeline(loop)
    settings = Settings(
        channel=ChannelSettings(port=0, shutdown_timeout_seconds=1),
        compile_check=CompileCheckSettings(timeout_seconds=5.0, grace_seconds=0.05),
    )
    service = HookBridgeService.install(
        loop=loop,
        engine=engine,
        pipeline=pipeline,
        settings=settings,
        state_store=state_store,
        hook_runner=None,
    )
    stop = threading.Event()
    pump = threading.Thread(target=loop.run, args=(stop, 0.005), daemon=True)
    pump.start()
    try:
        yield RunningHost(
            loop=loop,
            engine=engine,
            pipeline=pipeline,
            service=service,
            store=state_store,
        )
    finally:
        HookBridgeService.uninstall()
        stop.set()
        pump.join(timeout=5)


def write_fake_executable(path: Path, script: str) -> Path:
    """Create an executable at ``path`` that runs ``script`` with this interpreter."""

    path.parent.mkdir(parents=True, exist_ok=True)
    implementation = path.parent / f"{path.name}_impl.py"
    implementation.write_text(script.strip() + "\n", "utf-8")
    if os.name == "nt":
        launcher = path.with_suffix(".cmd")
        launcher.write_text(
            f'@echo off\r\n"{sys.executable}" "{implementation}" %*\r\n',
            "utf-8",
        )
        return launcher
    path.write_text(
        f'#!/usr/bin/env sh\nexec "{sys.executable}" "{implementation}" "$@"\n',
        "utf-8",
    )
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path
