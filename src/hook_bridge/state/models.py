"""Domain models for the persisted hook job state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Job lifecycle states. A missing state file means idle."""

    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.RUNNING


class StepStatus(str, Enum):
    """Per-step states; transitions only move forward."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STEP_STATUSES


_TERMINAL_STEP_STATUSES = frozenset(
    {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED},
)

_ALLOWED_STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset(
        {StepStatus.RUNNING, StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED},
    ),
    StepStatus.RUNNING: frozenset({StepStatus.COMPLETED, StepStatus.FAILED}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
}


def can_transition(current: StepStatus, target: StepStatus) -> bool:
    """Return True when moving a step from ``current`` to ``target`` is allowed."""

    return current == target or target in _ALLOWED_STEP_TRANSITIONS[current]


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


@dataclass(slots=True)
class TestSummary:
    """Pass/fail counters reported by the host after a test run."""

    pass_count: int
    fail_count: int
    mode: str
    category: str = ""
    log_reference: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "passCount": self.pass_count,
            "failCount": self.fail_count,
            "mode": self.mode,
            "category": self.category,
            "logReference": self.log_reference,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> TestSummary:
        if not isinstance(raw, dict):
            raise TypeError("testSummary must be an object")
        pass_count = raw.get("passCount")
        fail_count = raw.get("failCount")
        if not isinstance(pass_count, int) or not isinstance(fail_count, int):
            raise TypeError("testSummary.passCount/failCount must be integers")
        return cls(
            pass_count=pass_count,
            fail_count=fail_count,
            mode=_optional_str(raw, "mode") or "",
            category=_optional_str(raw, "category") or "",
            log_reference=_optional_str(raw, "logReference"),
        )


@dataclass(slots=True)
class StepState:
    """One hook step. Order inside a job is fixed at job start."""

    name: str
    status: StepStatus = StepStatus.PENDING
    start_time: datetime | None = None
    end_time: datetime | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "startTime": _to_iso(self.start_time),
            "endTime": _to_iso(self.end_time),
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> StepState:
        if not isinstance(raw, dict):
            raise TypeError("step entry must be an object")
        name = raw.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError("step.name must be a non-empty string")
        return cls(
            name=name,
            status=StepStatus(raw.get("status", StepStatus.PENDING.value)),
            start_time=_from_iso(raw.get("startTime")),
            end_time=_from_iso(raw.get("endTime")),
            detail=_optional_str(raw, "detail"),
        )


@dataclass(slots=True)
class JobState:
    """Durable record of the current (or last) hook job."""

    job_name: str
    status: JobStatus
    start_time: datetime
    owner_process_id: int
    owner_host: str
    end_time: datetime | None = None
    steps: list[StepState] = field(default_factory=list)
    result: str | None = None
    error: str | None = None
    test_summary: TestSummary | None = None

    def find_step(self, name: str) -> StepState | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobName": self.job_name,
            "status": self.status.value,
            "startTime": _to_iso(self.start_time),
            "endTime": _to_iso(self.end_time),
            "ownerProcessId": self.owner_process_id,
            "ownerHost": self.owner_host,
            "steps": [step.to_dict() for step in self.steps],
            "result": self.result,
            "error": self.error,
            "testSummary": self.test_summary.to_dict() if self.test_summary else None,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> JobState:
        if not isinstance(raw, dict):
            raise TypeError("job state must be a JSON object")
        job_name = raw.get("jobName")
        if not isinstance(job_name, str) or not job_name:
            raise ValueError("jobName must be a non-empty string")
        start_time = _from_iso(raw.get("startTime"))
        if start_time is None:
            raise ValueError("startTime is required")
        owner_process_id = raw.get("ownerProcessId", 0)
        if not isinstance(owner_process_id, int):
            raise TypeError("ownerProcessId must be an integer")
        raw_steps = raw.get("steps") or []
        if not isinstance(raw_steps, list):
            raise TypeError("steps must be an array")
        raw_summary = raw.get("testSummary")
        return cls(
            job_name=job_name,
            status=JobStatus(raw.get("status")),
            start_time=start_time,
            end_time=_from_iso(raw.get("endTime")),
            owner_process_id=owner_process_id,
            owner_host=_optional_str(raw, "ownerHost") or "",
            steps=[StepState.from_dict(item) for item in raw_steps],
            result=_optional_str(raw, "result"),
            error=_optional_str(raw, "error"),
            test_summary=TestSummary.from_dict(raw_summary) if raw_summary is not None else None,
        )


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: Any) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError("timestamps must be ISO-8601 strings")
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def _optional_str(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value
