"""Cooperative host scheduler and the host's log stream."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[], None]


@dataclass(slots=True, frozen=True)
class LogMessage:
    """One host log entry as seen by stream subscribers."""

    text: str
    level: int = logging.INFO
    stacktrace: str = ""

    @property
    def is_error(self) -> bool:
        return self.level >= logging.ERROR

    def format(self) -> str:
        parts = [self.text.strip(), self.stacktrace.strip(), logging.getLevelName(self.level)]
        return " ".join(part for part in parts if part)


LogCallback = Callable[[LogMessage], None]


class LogSubscription:
    """Handle returned by ``LogBus.subscribe``; closing it unsubscribes."""

    def __init__(self, bus: LogBus, callback: LogCallback) -> None:
        self._bus = bus
        self._callback = callback
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus._unsubscribe(self._callback)  # noqa: SLF001

    def __enter__(self) -> LogSubscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class LogBus:
    """Fan-out of host log messages to subscribers.

    A subscriber that itself logs while handling a message would feed back
    into the bus; nested emission on the same thread is dropped.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[LogCallback] = []
        self._local = threading.local()

    def subscribe(self, callback: LogCallback) -> LogSubscription:
        with self._lock:
            self._subscribers.append(callback)
        return LogSubscription(self, callback)

    def emit(self, message: LogMessage) -> None:
        if getattr(self._local, "emitting", False):
            return
        with self._lock:
            subscribers = list(self._subscribers)
        self._local.emitting = True
        try:
            for callback in subscribers:
                try:
                    callback(message)
                except Exception:  # noqa: BLE001
                    logger.exception("Log subscriber failed")
        finally:
            self._local.emitting = False

    def _unsubscribe(self, callback: LogCallback) -> None:
        with self._lock:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)


class LogBusHandler(logging.Handler):
    """Forward ``logging`` records into a ``LogBus``."""

    def __init__(self, bus: LogBus, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self._bus = bus

    def emit(self, record: logging.LogRecord) -> None:
        try:
            stacktrace = ""
            if record.exc_info:
                stacktrace = logging.Formatter().formatException(record.exc_info)
            elif record.stack_info:
                stacktrace = record.stack_info
            self._bus.emit(
                LogMessage(text=record.getMessage(), level=record.levelno, stacktrace=stacktrace),
            )
        except Exception:  # noqa: BLE001
            self.handleError(record)


class HostLoop:
    """Single-threaded cooperative scheduler standing in for the host's update tick."""

    def __init__(self, log_bus: LogBus | None = None) -> None:
        self.log_bus = log_bus or LogBus()
        self._lock = threading.Lock()
        self._updates: list[UpdateCallback] = []
        self._ticks = 0

    @property
    def ticks(self) -> int:
        return self._ticks

    def add_update(self, callback: UpdateCallback) -> None:
        with self._lock:
            self._updates.append(callback)

    def remove_update(self, callback: UpdateCallback) -> None:
        with self._lock:
            try:
                self._updates.remove(callback)
            except ValueError:
                pass

    def has_update(self, callback: UpdateCallback) -> bool:
        with self._lock:
            return callback in self._updates

    def tick(self) -> None:
        with self._lock:
            snapshot = list(self._updates)
        for callback in snapshot:
            # Skip callbacks removed earlier in this tick.
            if not self.has_update(callback):
                continue
            try:
                callback()
            except Exception:  # noqa: BLE001
                logger.exception("Host update callback failed: %r", callback)
        self._ticks += 1

    def run(self, stop_event: threading.Event, interval_seconds: float = 0.01) -> None:
        """Tick until ``stop_event`` is set."""

        while not stop_event.is_set():
            self.tick()
            if interval_seconds > 0:
                time.sleep(interval_seconds)
