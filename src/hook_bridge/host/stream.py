"""Line stream shared between a host-thread job and an HTTP response."""

from __future__ import annotations

import logging
import queue
import threading

logger = logging.getLogger(__name__)

_END = object()
_ABORT = object()


class StreamClosedError(RuntimeError):
    """Raised when writing to a stream that was closed or abandoned by its reader."""


class StreamAbortedError(RuntimeError):
    """Raised to the reader when the stream was aborted without a verdict."""


class ResponseStream:
    """Producer/consumer bridge for one command response.

    The job writes lines and finally closes the stream with an HTTP status.
    The response iterator reads until the end marker. ``abort`` ends the
    stream without a status, ``detach`` marks the reader as gone.
    """

    def __init__(self) -> None:
        self._items: queue.SimpleQueue[object] = queue.SimpleQueue()
        self._lock = threading.Lock()
        self._status_code: int | None = None
        self._finished = False
        self._aborted = False
        self._detached = False

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def detached(self) -> bool:
        return self._detached

    @property
    def status_code(self) -> int | None:
        return self._status_code

    def write_line(self, line: str) -> None:
        with self._lock:
            if self._finished:
                raise StreamClosedError("Response stream is already finished")
            if self._detached:
                raise StreamClosedError("Response reader disconnected")
            self._items.put(line.rstrip("\r\n") + "\n")

    def close(self, status_code: int) -> bool:
        """Finish the stream with ``status_code``; later calls are ignored."""

        with self._lock:
            if self._finished:
                return False
            self._status_code = status_code
            self._finished = True
            self._items.put(_END)
        return True

    def abort(self) -> bool:
        with self._lock:
            if self._finished:
                return False
            self._aborted = True
            self._finished = True
            self._items.put(_ABORT)
        return True

    def detach(self) -> None:
        with self._lock:
            self._detached = True

    def read(self, timeout: float | None = None) -> str | None:
        """Return the next line, or None at the end of the stream.

        Raises ``queue.Empty`` when nothing arrives within ``timeout`` and
        ``StreamAbortedError`` once the stream was aborted.
        """

        item = self._items.get(timeout=timeout)
        if item is _END:
            self._items.put(_END)
            return None
        if item is _ABORT:
            self._items.put(_ABORT)
            raise StreamAbortedError("Response stream aborted")
        return item  # type: ignore[return-value]
