"""Hook-side driver: send a command to the host and relay its output."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

import httpx

from hook_bridge.commands import CommandRequest, is_failure_line
from hook_bridge.config import ClientSettings

logger = logging.getLogger(__name__)

EmitLine = Callable[[str], None]
Fallback = Callable[[CommandRequest], int]


class ClientDriver:
    """Issues one command over the channel and maps the outcome to an exit code.

    When nothing listens on the port the request is handed to ``fallback``
    (normally a headless launch). Once the host was reached, failures are
    reported and never retried elsewhere.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        port: int,
        host: str = "127.0.0.1",
        settings: ClientSettings | None = None,
        emit: EmitLine,
        fallback: Fallback | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = f"http://{host}:{port}/"
        self._settings = settings or ClientSettings()
        self._emit = emit
        self._fallback = fallback
        self._transport = transport

    @property
    def url(self) -> str:
        return self._url

    def run(self, request: CommandRequest) -> int:
        timeout = httpx.Timeout(
            self._settings.request_timeout_seconds,
            connect=self._settings.connect_timeout_seconds,
        )
        deadline = time.monotonic() + self._settings.request_timeout_seconds
        failed = False
        try:
            with httpx.Client(timeout=timeout, transport=self._transport) as client, client.stream(
                "GET",
                self._url,
                headers=request.to_headers(),
            ) as response:
                logger.info("Host responded with HTTP %d", response.status_code)
                if not response.is_success:
                    failed = True
                    self._emit(f"Host responded with HTTP {response.status_code}")
                for line in response.iter_lines():
                    self._emit(line)
                    if is_failure_line(line):
                        failed = True
                    if time.monotonic() >= deadline:
                        self._emit(self._timeout_message())
                        return 1
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            logger.info("Host not reachable at %s: %s", self._url, exc)
            if self._fallback is None:
                self._emit(f"Host not reachable at {self._url}")
                return 1
            self._emit("Host not reachable, falling back to a headless run")
            return self._fallback(request)
        except httpx.TimeoutException:
            self._emit(self._timeout_message())
            return 1
        except httpx.HTTPError as exc:
            logger.warning("Connection to host lost: %s", exc)
            self._emit(f"Connection to host lost: {exc}")
            return 1
        return 1 if failed else 0

    def _timeout_message(self) -> str:
        return f"Request timed out after {self._settings.request_timeout_seconds:g} s"
