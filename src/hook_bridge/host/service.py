"""Process-wide lifecycle of the hook bridge inside a host."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import threading
from collections.abc import Mapping, Sequence

from hook_bridge.config import Settings
from hook_bridge.host.channel import CommandChannel
from hook_bridge.host.engines import CompilePipeline, TestEngine
from hook_bridge.host.jobs import JobRunner
from hook_bridge.host.loop import HostLoop
from hook_bridge.host.queue import MainThreadQueue
from hook_bridge.state.store import StateStore

logger = logging.getLogger(__name__)

CI_ENVIRONMENT_VARIABLES = (
    "CI",
    "GITHUB_ACTIONS",
    "JENKINS_URL",
    "BUILDKITE",
    "CIRCLECI",
    "TRAVIS",
    "APPVEYOR",
)
DISABLE_VARIABLE = "HOOK_BRIDGE_DISABLE"
HEADLESS_ARGUMENTS = ("-batchmode", "-nographics")
HOOK_RUNNER_INSTALL_HINT = (
    "lefthook is not installed; hooks will not trigger host jobs. "
    "See https://github.com/evilmartians/lefthook#install"
)


def should_skip_initialization(
    environ: Mapping[str, str] | None = None,
    argv: Sequence[str] | None = None,
    *,
    batch_mode: bool = False,
) -> bool:
    """True for batch, CI, headless or explicitly disabled hosts."""

    env = os.environ if environ is None else environ
    args = sys.argv if argv is None else argv

    disable = env.get(DISABLE_VARIABLE, "").strip().lower()
    if disable in {"1", "true"}:
        return True
    if batch_mode:
        return True
    if any(env.get(name) for name in CI_ENVIRONMENT_VARIABLES):
        return True
    return any(marker in arg for arg in args for marker in HEADLESS_ARGUMENTS)


def check_hook_runner_installed(executable: str = "lefthook", timeout: float = 5.0) -> bool:
    """Run ``<executable> version``; log an install hint when it is unusable."""

    resolved = shutil.which(executable)
    if resolved is None:
        logger.info(HOOK_RUNNER_INSTALL_HINT)
        return False
    try:
        completed = subprocess.run(  # noqa: S603
            [resolved, "version"],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        logger.warning("%s version check timed out", executable)
        return False
    except OSError as exc:
        logger.warning("Failed to check %s version: %s", executable, exc)
        return False
    if completed.returncode != 0:
        logger.info(HOOK_RUNNER_INSTALL_HINT)
        return False
    logger.info("%s version check: %s", executable, completed.stdout.strip())
    return True


class HookBridgeService:
    """Owns the queue, job runner and command channel of one host process."""

    _instance: HookBridgeService | None = None
    _instance_lock = threading.Lock()

    def __init__(
        self,
        *,
        loop: HostLoop,
        engine: TestEngine,
        pipeline: CompilePipeline,
        settings: Settings | None = None,
        state_store: StateStore | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.loop = loop
        self.queue = MainThreadQueue()
        self.runner = JobRunner(
            engine=engine,
            pipeline=pipeline,
            loop=loop,
            state_store=state_store,
            compile_settings=self.settings.compile_check,
        )
        self.channel = CommandChannel(
            job_queue=self.queue,
            runner=self.runner,
            settings=self.settings.channel,
        )
        self._drain_registered = False
        self._stopped = False

    @classmethod
    def install(  # noqa: PLR0913
        cls,
        *,
        loop: HostLoop,
        engine: TestEngine,
        pipeline: CompilePipeline,
        settings: Settings | None = None,
        state_store: StateStore | None = None,
        hook_runner: str | None = "lefthook",
    ) -> HookBridgeService:
        """Start the bridge, replacing any previously installed instance."""

        with cls._instance_lock:
            previous = cls._instance
            cls._instance = None
        if previous is not None:
            previous.stop()

        if hook_runner:
            check_hook_runner_installed(hook_runner)

        service = cls(
            loop=loop,
            engine=engine,
            pipeline=pipeline,
            settings=settings,
            state_store=state_store,
        )
        service.start()
        with cls._instance_lock:
            cls._instance = service
        return service

    @classmethod
    def install_for_host(
        cls,
        *,
        batch_mode: bool,
        environ: Mapping[str, str] | None = None,
        argv: Sequence[str] | None = None,
        **install_kwargs,
    ) -> HookBridgeService | None:
        """Host startup entry point; installs unless the host should be skipped."""

        if should_skip_initialization(environ, argv, batch_mode=batch_mode):
            logger.info("Hook bridge disabled for this host")
            return None
        return cls.install(**install_kwargs)

    @classmethod
    def current(cls) -> HookBridgeService | None:
        with cls._instance_lock:
            return cls._instance

    @classmethod
    def uninstall(cls) -> None:
        with cls._instance_lock:
            service = cls._instance
            cls._instance = None
        if service is not None:
            service.stop()

    def start(self) -> None:
        self.channel.start()
        self.loop.add_update(self.drain)
        self._drain_registered = True

    def drain(self) -> None:
        self.queue.drain_once()

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self._drain_registered:
            self.loop.remove_update(self.drain)
            self._drain_registered = False
        self.runner.cancel_active()
        self.channel.stop()
        logger.info("Hook bridge stopped")
