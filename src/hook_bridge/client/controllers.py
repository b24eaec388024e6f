"""CLI controller for hook-side commands."""

from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from hook_bridge.client.driver import ClientDriver
from hook_bridge.client.headless import (
    HeadlessLauncher,
    HeadlessLaunchError,
    find_project_root,
    sync_background_project,
)
from hook_bridge.commands import CommandKind, CommandRequest, parse_categories
from hook_bridge.config import HostPreferences, Settings
from hook_bridge.host.engines import TestMode
from hook_bridge.state.models import JobStatus
from hook_bridge.state.observer import render_state, watch_state
from hook_bridge.state.store import StateStore

logger = logging.getLogger(__name__)

EmitLine = Callable[[str], None]

COMMAND_NOT_FOUND_EXIT_CODE = 127


@dataclass(slots=True)
class RunTestsCommand:
    """CLI input for run-tests."""

    mode: str = TestMode.EDIT_MODE.value
    categories: str = ""
    host_path: Path | None = None
    port: int | None = None
    timeout_ms: int | None = None
    project_path: Path | None = None
    step: str | None = None
    background_project: bool | None = None
    background_project_suffix: str | None = None


@dataclass(slots=True)
class CompileCheckCommand:
    """CLI input for compile-check."""

    host_path: Path | None = None
    port: int | None = None
    timeout_ms: int | None = None
    project_path: Path | None = None
    step: str | None = "compile_check"


@dataclass(slots=True)
class StateInitCommand:
    """CLI input for state init."""

    hook_name: str
    steps_csv: str


@dataclass(slots=True)
class StateStepCommand:
    """CLI input for state start-step / finish-step / skip-step."""

    step_name: str
    detail: str | None = None
    passed: bool = True


@dataclass(slots=True)
class StateFinishCommand:
    """CLI input for state finish."""

    status: str
    error: str | None = None


@dataclass(slots=True)
class StateWatchCommand:
    """CLI input for state watch."""

    interval_seconds: float = 1.0
    max_polls: int | None = None


@dataclass(slots=True)
class RunStepCommand:
    """CLI input for run-step."""

    step_name: str
    command: Sequence[str] = field(default_factory=tuple)


class HookCliController:
    """CLI controller for hook-side operations."""

    def __init__(
        self,
        *,
        emit: EmitLine,
        store_factory: Callable[[Path | None], StateStore] = StateStore.for_repository,
    ) -> None:
        self._emit = emit
        self._store_factory = store_factory

    # -- host commands --------------------------------------------------------

    def run_tests(self, command: RunTestsCommand) -> int:
        """Run tests in the host (or headless) and return the hook exit code."""

        settings = self._load_settings(
            port=command.port,
            host_path=command.host_path,
            timeout_ms=command.timeout_ms,
        )
        if command.background_project is not None:
            settings.background_project.enabled = command.background_project
        if command.background_project_suffix:
            settings.background_project.suffix = command.background_project_suffix
        settings.validate()

        project_root = find_project_root(command.project_path)
        request = CommandRequest(
            command=CommandKind.RUN_TESTS,
            mode=TestMode.parse(command.mode),
            categories=parse_categories(command.categories),
            repo_path=str(project_root),
        )
        store = self._store_factory(project_root)
        self._start_step(store, command.step)

        launcher = HeadlessLauncher(settings=settings.headless, emit=self._emit)
        try:
            if settings.background_project.enabled:
                self._emit("Background project mode: running tests headless")
                mirror = sync_background_project(
                    project_root,
                    settings.background_project.suffix,
                    emit=self._emit,
                )
                exit_code = launcher.run(request, mirror)
            else:
                exit_code = self._driver(settings, launcher, project_root).run(request)
        except HeadlessLaunchError as exc:
            self._emit(str(exc))
            exit_code = 1

        self._finish_step(store, command.step, exit_code)
        return exit_code

    def compile_check(self, command: CompileCheckCommand) -> int:
        """Ask the host to verify the project compiles."""

        settings = self._load_settings(
            port=command.port,
            host_path=command.host_path,
            timeout_ms=command.timeout_ms,
        )
        settings.validate()

        project_root = find_project_root(command.project_path)
        request = CommandRequest(command=CommandKind.COMPILE_CHECK, repo_path=str(project_root))
        store = self._store_factory(project_root)
        self._start_step(store, command.step)

        launcher = HeadlessLauncher(settings=settings.headless, emit=self._emit)
        try:
            exit_code = self._driver(settings, launcher, project_root).run(request)
        except HeadlessLaunchError as exc:
            self._emit(str(exc))
            exit_code = 1

        self._finish_step(store, command.step, exit_code)
        return exit_code

    # -- state commands -------------------------------------------------------

    def state_init(self, command: StateInitCommand) -> list[str]:
        steps = list(parse_categories(command.steps_csv))
        if not steps:
            raise ValueError("At least one step name is required.")
        self._store_factory(None).start_job(command.hook_name, steps)
        return [f"Initialized {command.hook_name} with {len(steps)} steps"]

    def state_start_step(self, command: StateStepCommand) -> list[str]:
        self._store_factory(None).start_step(command.step_name, command.detail)
        return []

    def state_finish_step(self, command: StateStepCommand) -> list[str]:
        self._store_factory(None).finish_step(
            command.step_name,
            success=command.passed,
            detail=command.detail,
        )
        return []

    def state_skip_step(self, command: StateStepCommand) -> list[str]:
        self._store_factory(None).skip_step(command.step_name, command.detail)
        return []

    def state_finish(self, command: StateFinishCommand) -> list[str]:
        try:
            status = JobStatus(command.status)
        except ValueError as error:
            raise ValueError(f"Unknown job status: {command.status!r}") from error
        if not status.is_terminal:
            raise ValueError("Job can only finish as passed, failed or error.")
        self._store_factory(None).finish(status, error=command.error)
        return [f"Hook finished: {status.value}"]

    def state_read(self) -> list[str]:
        state = self._store_factory(None).read()
        if state is None:
            return ["No state file found"]
        return json.dumps(state.to_dict(), ensure_ascii=False, indent=2).splitlines()

    def state_status(self) -> list[str]:
        store = self._store_factory(None)
        return render_state(store.read(), active=store.is_job_running())

    def state_watch(self, command: StateWatchCommand) -> None:
        watch_state(
            self._store_factory(None),
            emit=self._emit,
            interval_seconds=command.interval_seconds,
            max_polls=command.max_polls,
        )

    def run_step(self, command: RunStepCommand) -> int:
        """Run a hook step command while tracking it in the job state."""

        store = self._store_factory(None)
        argv = [part for part in command.command if part.strip()]
        if not argv:
            store.skip_step(command.step_name, "No command provided")
            return 0

        store.start_step(command.step_name)
        try:
            completed = subprocess.run(argv, check=False)  # noqa: S603
            exit_code = completed.returncode
        except OSError as exc:
            self._emit(f"Failed to run {argv[0]}: {exc}")
            exit_code = COMMAND_NOT_FOUND_EXIT_CODE

        if exit_code == 0:
            store.finish_step(command.step_name, success=True)
        else:
            store.finish_step(command.step_name, success=False, detail=f"Exit code: {exit_code}")
        return exit_code

    # -- preferences ----------------------------------------------------------

    def preferences_port(self, port: int | None) -> list[str]:
        preferences = HostPreferences(Settings.from_env().preferences_path)
        if port is None:
            return [f"Port: {preferences.load_port()}"]
        preferences.save_port(port)
        return [f"Port set to {port} (restart the host channel to apply)"]

    # -- helpers --------------------------------------------------------------

    def _load_settings(
        self,
        *,
        port: int | None,
        host_path: Path | None,
        timeout_ms: int | None,
    ) -> Settings:
        settings = Settings.from_env()
        if port is not None:
            settings.channel.port = port
        if host_path is not None:
            settings.headless.host_path = host_path
        if timeout_ms is not None:
            settings.client.request_timeout_seconds = timeout_ms / 1000
        return settings

    def _driver(
        self,
        settings: Settings,
        launcher: HeadlessLauncher,
        project_root: Path,
    ) -> ClientDriver:
        return ClientDriver(
            port=settings.channel.port,
            settings=settings.client,
            emit=self._emit,
            fallback=lambda request: launcher.run(request, project_root),
        )

    def _start_step(self, store: StateStore, step: str | None) -> None:
        if step:
            store.start_step(step)

    def _finish_step(self, store: StateStore, step: str | None, exit_code: int) -> None:
        if not step:
            return
        if exit_code == 0:
            store.finish_step(step, success=True)
        else:
            store.finish_step(step, success=False, detail=f"Exit code: {exit_code}")
