"""FIFO hand-off of work from background threads to the host thread."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable

logger = logging.getLogger(__name__)

QueuedAction = Callable[[], None]


class MainThreadQueue:
    """Collects actions from any thread and runs them on the host thread.

    ``drain_once`` swaps the pending batch out under the lock and runs it
    without holding the lock, so an action may enqueue more work. Such work
    lands in the next batch and runs on the next drain.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: deque[QueuedAction] = deque()

    def enqueue(self, action: QueuedAction) -> None:
        with self._lock:
            self._pending.append(action)

    def drain_once(self) -> int:
        with self._lock:
            if not self._pending:
                return 0
            batch = self._pending
            self._pending = deque()

        for action in batch:
            try:
                action()
            except Exception:  # noqa: BLE001
                logger.exception("Queued host action failed: %r", action)
        return len(batch)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
