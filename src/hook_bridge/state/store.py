"""File-backed store for the current hook job state.

Both the hook-side client scripts and the host process read and write the
same JSON file. Writes go through a temporary file followed by an atomic
replace, so a reader sees either the previous complete record or the new one.
There is no cross-process lock: only one driver starts a job at a time.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import socket
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import psutil

from hook_bridge.state.models import (
    JobState,
    JobStatus,
    StepState,
    StepStatus,
    TestSummary,
    can_transition,
    utc_now,
)
from hook_bridge.state.paths import find_git_dir, state_path_for

logger = logging.getLogger(__name__)

_UNSET = object()

_CacheKey = tuple[int, int, int]


class StateStore:
    """Reads and atomically writes ``hook-state.json``."""

    def __init__(
        self,
        path: Path | None,
        *,
        clock: Callable[[], datetime] = utc_now,
        process_id: int | None = None,
        hostname: str | None = None,
    ) -> None:
        self._path = path
        self._clock = clock
        self._process_id = process_id if process_id is not None else os.getpid()
        self._hostname = hostname if hostname is not None else socket.gethostname()
        self._cached_state: JobState | None = None
        self._cached_key: _CacheKey | None = None

    @classmethod
    def for_repository(cls, start: Path | None = None) -> StateStore:
        """Build a store for the repository containing ``start`` (default: cwd)."""

        git_dir = find_git_dir(start)
        if git_dir is None:
            logger.warning("No .git directory found above %s; job state is disabled", start)
            return cls(None)
        return cls(state_path_for(git_dir))

    @property
    def path(self) -> Path | None:
        return self._path

    # -- raw access -----------------------------------------------------------

    def read(self, *, use_cache: bool = True) -> JobState | None:
        """Return the current record, or None when absent or unreadable."""

        if self._path is None:
            return None
        try:
            stat = self._path.stat()
        except FileNotFoundError:
            self.invalidate_cache()
            return None
        except OSError as exc:
            logger.warning("Failed to stat job state %s: %s", self._path, exc)
            return None

        key = (stat.st_mtime_ns, stat.st_ino, stat.st_size)
        if use_cache and self._cached_state is not None and key == self._cached_key:
            return copy.deepcopy(self._cached_state)

        try:
            state = JobState.from_dict(json.loads(self._path.read_text("utf-8")))
        except FileNotFoundError:
            self.invalidate_cache()
            return None
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Failed to read job state %s: %s", self._path, exc)
            return None

        self._cached_state = state
        self._cached_key = key
        return copy.deepcopy(state)

    def write(self, state: JobState) -> bool:
        """Persist ``state`` atomically; return False (and log) on I/O failure."""

        if self._path is None:
            logger.warning("Cannot write job state: .git directory not found")
            return False

        payload = json.dumps(state.to_dict(), ensure_ascii=False, indent=2)
        tmp_path = self._path.with_name(f"{self._path.name}.{self._process_id}.tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, "utf-8")
            tmp_path.replace(self._path)
        except OSError as exc:
            logger.warning("Failed to write job state %s: %s", self._path, exc)
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                logger.debug("Could not remove %s", tmp_path, exc_info=True)
            return False

        self._cached_state = copy.deepcopy(state)
        try:
            stat = self._path.stat()
            self._cached_key = (stat.st_mtime_ns, stat.st_ino, stat.st_size)
        except OSError:
            self.invalidate_cache()
        return True

    def invalidate_cache(self) -> None:
        self._cached_state = None
        self._cached_key = None

    # -- job lifecycle --------------------------------------------------------

    def start_job(self, job_name: str, step_names: list[str]) -> JobState:
        """Overwrite any prior record with a fresh running job."""

        previous = self.read(use_cache=False)
        if previous is not None and previous.status is JobStatus.RUNNING and self.is_owner_alive(
            previous,
        ):
            logger.warning(
                "Overwriting running job %s owned by pid %s",
                previous.job_name,
                previous.owner_process_id,
            )

        state = JobState(
            job_name=job_name,
            status=JobStatus.RUNNING,
            start_time=self._clock(),
            owner_process_id=self._process_id,
            owner_host=self._hostname,
            steps=[StepState(name=name) for name in step_names],
        )
        self.write(state)
        return state

    def update_step(  # noqa: PLR0913
        self,
        step_name: str,
        *,
        status: StepStatus | None = None,
        start_time: datetime | None | object = _UNSET,
        end_time: datetime | None | object = _UNSET,
        detail: str | None | object = _UNSET,
    ) -> JobState | None:
        """Merge fields into one step. Missing job or step is logged and ignored."""

        state = self.read()
        if state is None:
            logger.debug("No job state; ignoring update of step %s", step_name)
            return None

        step = state.find_step(step_name)
        if step is None:
            logger.warning("Step not found in job %s: %s", state.job_name, step_name)
            return state

        if status is not None and not can_transition(step.status, status):
            logger.warning(
                "Refusing step %s transition %s -> %s",
                step_name,
                step.status.value,
                status.value,
            )
            return state

        if status is not None:
            step.status = status
        if start_time is not _UNSET:
            step.start_time = start_time  # type: ignore[assignment]
        if end_time is not _UNSET:
            step.end_time = end_time  # type: ignore[assignment]
        if detail is not _UNSET:
            step.detail = detail  # type: ignore[assignment]

        self.write(state)
        return state

    def start_step(self, step_name: str, detail: str | None = None) -> JobState | None:
        if detail is None:
            return self.update_step(step_name, status=StepStatus.RUNNING, start_time=self._clock())
        return self.update_step(
            step_name,
            status=StepStatus.RUNNING,
            start_time=self._clock(),
            detail=detail,
        )

    def finish_step(
        self,
        step_name: str,
        *,
        success: bool,
        detail: str | None = None,
    ) -> JobState | None:
        status = StepStatus.COMPLETED if success else StepStatus.FAILED
        if detail is None:
            return self.update_step(step_name, status=status, end_time=self._clock())
        return self.update_step(step_name, status=status, end_time=self._clock(), detail=detail)

    def skip_step(self, step_name: str, detail: str | None = None) -> JobState | None:
        return self.update_step(step_name, status=StepStatus.SKIPPED, detail=detail)

    def finish(
        self,
        status: JobStatus,
        *,
        error: str | None = None,
        test_summary: TestSummary | None = None,
        result: str | None = None,
    ) -> JobState | None:
        """Finalize the job. Steps are left as they are."""

        if not status.is_terminal:
            raise ValueError(f"Job can only finish with a terminal status, got {status.value}")

        state = self.read()
        if state is None:
            logger.debug("No job state to finish")
            return None

        state.status = status
        state.end_time = self._clock()
        state.error = error
        if result is not None:
            state.result = result
        if test_summary is not None:
            state.test_summary = test_summary
        self.write(state)
        return state

    def update_test_summary(self, summary: TestSummary) -> JobState | None:
        """Attach a test summary to the current record; no-op without one."""

        state = self.read()
        if state is None:
            return None
        state.test_summary = summary
        self.write(state)
        return state

    # -- staleness ------------------------------------------------------------

    def is_job_running(self) -> bool:
        """True when a running record exists and its owner is still alive."""

        state = self.read()
        if state is None or state.status is not JobStatus.RUNNING:
            return False
        return self.is_owner_alive(state)

    def is_owner_alive(self, state: JobState) -> bool:
        if state.owner_process_id <= 0:
            return True
        if state.owner_host and state.owner_host != self._hostname:
            # A pid from another machine cannot be checked here.
            return True
        return psutil.pid_exists(state.owner_process_id)
