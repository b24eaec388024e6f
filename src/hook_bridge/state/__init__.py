"""Durable job/step state shared by the hook scripts and the host."""

from hook_bridge.state.models import JobState, JobStatus, StepState, StepStatus, TestSummary
from hook_bridge.state.store import StateStore

__all__ = [
    "JobState",
    "JobStatus",
    "StateStore",
    "StepState",
    "StepStatus",
    "TestSummary",
]
