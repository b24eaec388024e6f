"""Polling observer that renders the job state for status displays."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from hook_bridge.state.models import JobState, StepStatus
from hook_bridge.state.store import StateStore

logger = logging.getLogger(__name__)

_STEP_MARKERS = {
    StepStatus.PENDING: " ",
    StepStatus.RUNNING: ">",
    StepStatus.COMPLETED: "+",
    StepStatus.FAILED: "x",
    StepStatus.SKIPPED: "-",
}


def render_state(state: JobState | None, *, active: bool = True) -> list[str]:
    """Render ``state`` as human-readable lines."""

    if state is None:
        return ["No hook job recorded."]

    status = state.status.value
    if not state.status.is_terminal and not active:
        status = f"{status} (stale: owner pid {state.owner_process_id} is gone)"
    lines = [
        f"Job: {state.job_name}",
        f"Status: {status}",
        f"Started: {state.start_time.isoformat()}",
    ]
    if state.end_time is not None:
        lines.append(f"Finished: {state.end_time.isoformat()}")
    for step in state.steps:
        line = f"  [{_STEP_MARKERS[step.status]}] {step.name}: {step.status.value}"
        if step.detail:
            line = f"{line} - {step.detail}"
        lines.append(line)
    if state.test_summary is not None:
        summary = state.test_summary
        scope = summary.mode
        if summary.category:
            scope = f"{scope} [{summary.category}]"
        lines.append(
            f"Tests ({scope}): passed={summary.pass_count} failed={summary.fail_count}",
        )
    if state.result:
        lines.append(f"Result: {state.result}")
    if state.error:
        lines.append(f"Error: {state.error}")
    return lines


def watch_state(
    store: StateStore,
    *,
    emit: Callable[[str], None],
    interval_seconds: float = 1.0,
    max_polls: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> JobState | None:
    """Poll ``store`` and emit a rendering each time the record changes.

    Returns the last observed state once it is terminal, once its owner is
    gone, or after ``max_polls`` polls.
    """

    last_rendered: list[str] | None = None
    state: JobState | None = None
    polls = 0
    while True:
        state = store.read()
        active = state is None or store.is_owner_alive(state)
        rendered = render_state(state, active=active)
        if rendered != last_rendered:
            for line in rendered:
                emit(line)
            last_rendered = rendered
        polls += 1
        if state is not None and state.status.is_terminal:
            return state
        if not active:
            logger.info("Job owner pid %s is gone; stopped watching", state.owner_process_id)
            return state
        if max_polls is not None and polls >= max_polls:
            logger.debug("Stopped watching job state after %d polls", polls)
            return state
        sleep(interval_seconds)
