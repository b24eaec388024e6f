"""Inbound command channel served by uvicorn on a background thread."""

from __future__ import annotations

import functools
import logging
import os
import queue
import socket
import threading
import time
from collections.abc import Iterator, Mapping

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse

from hook_bridge.commands import BUSY_MESSAGE, CommandRequest
from hook_bridge.config import ChannelSettings
from hook_bridge.host.jobs import HTTP_CONFLICT, JobRunner
from hook_bridge.host.queue import MainThreadQueue
from hook_bridge.host.stream import ResponseStream, StreamAbortedError

logger = logging.getLogger(__name__)

TEXT_MEDIA_TYPE = "text/plain; charset=utf-8"
HTTP_UNAVAILABLE = 503
_FIRST_LINE_POLL_SECONDS = 0.5


class ChannelBindError(RuntimeError):
    """Raised when the channel cannot listen on its configured address."""


def create_app(channel: CommandChannel) -> FastAPI:
    app = FastAPI(title="hook-bridge", docs_url=None, redoc_url=None, openapi_url=None)

    @app.api_route("/{path:path}", methods=["GET", "POST"])
    def handle_command(request: Request) -> Response:
        return channel.handle(request.headers)

    return app


class CommandChannel:
    """Accepts job commands and streams the job's output back.

    One request at a time is served; a second request while a job stream is
    still open gets ``409``.
    """

    def __init__(
        self,
        *,
        job_queue: MainThreadQueue,
        runner: JobRunner,
        settings: ChannelSettings | None = None,
    ) -> None:
        self._queue = job_queue
        self._runner = runner
        self._settings = settings or ChannelSettings()
        self._lock = threading.Lock()
        self._active_stream: ResponseStream | None = None
        self._socket: socket.socket | None = None
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None
        self._stopping = threading.Event()

    @property
    def port(self) -> int | None:
        if self._socket is None:
            return None
        return self._socket.getsockname()[1]

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def active_stream(self) -> ResponseStream | None:
        return self._active_stream

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stopping.clear()
        self._socket = self._bind()
        config = uvicorn.Config(
            create_app(self),
            log_config=None,
            log_level="warning",
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=self._settings.shutdown_timeout_seconds,
        )
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._server.run,
            kwargs={"sockets": [self._socket]},
            name="hook-bridge-channel",
            daemon=True,
        )
        self._thread.start()

        deadline = time.monotonic() + self._settings.startup_timeout_seconds
        while not self._server.started:
            if not self._thread.is_alive() or time.monotonic() >= deadline:
                self.stop()
                raise ChannelBindError(
                    f"Command channel failed to start on "
                    f"{self._settings.host}:{self._settings.port}",
                )
            time.sleep(0.01)
        logger.info("Command channel listening on %s:%s", self._settings.host, self.port)

    def stop(self) -> None:
        self._stopping.set()
        with self._lock:
            stream = self._active_stream
        if stream is not None and stream.abort():
            logger.info("Aborted in-flight command response")

        server, thread, sock = self._server, self._thread, self._socket
        self._server = None
        self._thread = None
        self._socket = None
        if server is not None:
            server.should_exit = True
        if thread is not None:
            thread.join(timeout=self._settings.shutdown_timeout_seconds + 5)
            if thread.is_alive():
                logger.warning("Command channel thread did not stop in time")
        if sock is not None:
            sock.close()
            logger.info("Command channel stopped")

    def handle(self, headers: Mapping[str, str]) -> Response:
        """Serve one command request; called on a server worker thread."""

        with self._lock:
            if self._active_stream is not None and not self._active_stream.finished:
                logger.warning("Rejecting request: %s", BUSY_MESSAGE)
                return PlainTextResponse(f"{BUSY_MESSAGE}\n", status_code=HTTP_CONFLICT)
            stream = ResponseStream()
            self._active_stream = stream

        request = CommandRequest.from_headers(headers)
        logger.info(
            "Received %s (mode=%s, categories=%s)",
            request.command.value,
            request.mode.value,
            ",".join(request.categories) or "all",
        )
        self._queue.enqueue(functools.partial(self._runner.run, request, stream))

        try:
            first = self._read_first(stream)
            if first is None:
                return Response(status_code=stream.status_code or 200, media_type=TEXT_MEDIA_TYPE)
            if stream.finished:
                # Whole result is already known, report its real status.
                lines = [first]
                while True:
                    line = stream.read()
                    if line is None:
                        break
                    lines.append(line)
                return Response(
                    content="".join(lines),
                    status_code=stream.status_code or 200,
                    media_type=TEXT_MEDIA_TYPE,
                )
        except StreamAbortedError:
            stream.detach()
            return PlainTextResponse("Host is shutting down\n", status_code=HTTP_UNAVAILABLE)

        return StreamingResponse(
            _iter_body(stream, first),
            status_code=200,
            media_type=TEXT_MEDIA_TYPE,
        )

    def _read_first(self, stream: ResponseStream) -> str | None:
        while True:
            try:
                return stream.read(timeout=_FIRST_LINE_POLL_SECONDS)
            except queue.Empty:
                if self._stopping.is_set():
                    stream.abort()

    def _bind(self) -> socket.socket:
        host, port = self._settings.host, self._settings.port
        sock = socket.socket(socket.AF_INET6 if ":" in host else socket.AF_INET)
        try:
            if os.name != "nt":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            sock.listen(128)
        except OSError as exc:
            sock.close()
            raise ChannelBindError(f"Cannot listen on {host}:{port}: {exc}") from exc
        return sock


def _iter_body(stream: ResponseStream, first: str) -> Iterator[bytes]:
    try:
        yield first.encode("utf-8")
        while True:
            line = stream.read()
            if line is None:
                return
            yield line.encode("utf-8")
    finally:
        stream.detach()
