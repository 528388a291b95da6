"""Mock HTTP/HTTPS server instance and connection lifecycle orchestration."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import ssl
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from config import HOST, LOG_FORMAT, MAX_BODY_BYTES, MAX_HEADER_BYTES, PORT
from dispatch import Dispatcher
from forms import decode_form
from handler_table import Handler, HandlerTable
from request import HTTPRequest, HTTPRequestParseError
from response import HTTPResponse, error_response
from socket_handler import (
    HeaderTooLargeError,
    MalformedRequestError,
    PayloadTooLargeError,
    read_http_request,
    write_http_response,
)

logger = logging.getLogger(__name__)

Callback = Callable[[], Any]
KeyMaterial = str | os.PathLike[str] | None


@dataclass(eq=False, slots=True)
class TrackedConnection:
    """A live client connection the server may have to close on shutdown."""

    writer: asyncio.StreamWriter
    task: asyncio.Task[Any] | None
    address: tuple[str, int]
    connection_id: int

    def close(self) -> None:
        """Abort the transport and abandon any response still in progress."""
        if self.task is not None:
            self.task.cancel()
        self.writer.transport.abort()


class HTTPServer:
    """One listener (plaintext, or TLS when ``key`` and ``cert`` are given).

    The listener runs on a private asyncio loop in a daemon thread, so
    :meth:`start` and :meth:`stop` are plain blocking calls usable from any
    test. Handlers are registered with :meth:`will` before :meth:`start`;
    :meth:`stop` clears them.
    """

    def __init__(
        self,
        host: str = HOST,
        port: int = PORT,
        key: KeyMaterial = None,
        cert: KeyMaterial = None,
        *,
        log_format: str = LOG_FORMAT,
        max_header_bytes: int = MAX_HEADER_BYTES,
        max_body_bytes: int = MAX_BODY_BYTES,
    ) -> None:
        self.host = host
        self.port = port
        self.key = key
        self.cert = cert
        self.log_format = log_format
        self.max_header_bytes = max_header_bytes
        self.max_body_bytes = max_body_bytes
        self.handlers = HandlerTable()
        self.state = "stopped"

        self._dispatcher = Dispatcher(self.handlers)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._listener: asyncio.Server | None = None
        self._connections: set[TrackedConnection] = set()
        self._all_closed: asyncio.Event | None = None
        self._closing = False
        self._next_connection_id = 0

    def __enter__(self) -> "HTTPServer":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    @property
    def tls(self) -> bool:
        return bool(self.key and self.cert)

    @property
    def url(self) -> str:
        scheme = "https" if self.tls else "http"
        return f"{scheme}://{self.host}:{self.port}"

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def will(self, handler: Handler | Mapping[str, Any]) -> "HTTPServer":
        """Register a handler (a :class:`Handler` or a dict descriptor)."""
        self.handlers.register(handler)
        return self

    register = will

    def start(self, callback: Callback | None = None) -> "HTTPServer":
        """Bind the listener; return once it accepts connections."""
        if self._listener is not None:
            raise RuntimeError(f"Server already listening on {self.url}")

        ssl_context = self._build_ssl_context()
        self.state = "starting"
        self._closing = False
        loop = asyncio.new_event_loop()
        thread = threading.Thread(target=loop.run_forever, name="http-mock-loop", daemon=True)
        thread.start()
        try:
            listener = asyncio.run_coroutine_threadsafe(self._listen(ssl_context), loop).result()
        except BaseException:
            _shutdown_loop(loop, thread)
            self.state = "stopped"
            raise

        self._loop = loop
        self._thread = thread
        self._listener = listener
        self.port = listener.sockets[0].getsockname()[1]
        self.state = "listening"
        logger.info("Listening on %s", self.url)
        if callback is not None:
            callback()
        return self

    def stop(self, callback: Callback | None = None) -> None:
        """Close the listener, clear handlers and drain tracked connections."""
        if self._listener is None or self._loop is None or self._thread is None:
            if callback is not None:
                callback()
            return

        self.state = "stopping"
        loop, thread = self._loop, self._thread
        try:
            asyncio.run_coroutine_threadsafe(self._close(), loop).result()
        finally:
            _shutdown_loop(loop, thread)
            self._loop = None
            self._thread = None
            self._listener = None
            self.state = "stopped"

        logger.info("Stopped %s", self.url)
        if callback is not None:
            callback()

    def _build_ssl_context(self) -> ssl.SSLContext | None:
        if not self.tls:
            return None
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(certfile=self.cert, keyfile=self.key)
        return context

    async def _listen(self, ssl_context: ssl.SSLContext | None) -> asyncio.Server:
        self._all_closed = asyncio.Event()
        self._all_closed.set()
        return await asyncio.start_server(
            self._handle_client,
            self.host,
            self.port,
            ssl=ssl_context,
            limit=self.max_header_bytes,
        )

    async def _close(self) -> None:
        listener = self._listener
        if listener is None:
            raise RuntimeError("Server is not listening")
        all_closed = self._drain_event()

        self._closing = True
        listener.close()
        self.handlers.reset()
        for connection in list(self._connections):
            logger.debug(
                "Force-closing connection_id=%s client=%s",
                connection.connection_id,
                connection.address[0],
            )
            connection.close()
        await all_closed.wait()
        await listener.wait_closed()

    def _drain_event(self) -> asyncio.Event:
        if self._all_closed is None:
            raise RuntimeError("Connection tracking used before the listener started")
        return self._all_closed

    def _track(self, connection: TrackedConnection) -> None:
        self._connections.add(connection)
        self._drain_event().clear()

    def _forget(self, connection: TrackedConnection) -> None:
        self._connections.discard(connection)
        if not self._connections:
            self._drain_event().set()

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        if self._closing:
            writer.transport.abort()
            return

        peer = writer.get_extra_info("peername") or ("-", 0)
        self._next_connection_id += 1
        connection = TrackedConnection(
            writer=writer,
            task=asyncio.current_task(),
            address=(str(peer[0]), int(peer[1])),
            connection_id=self._next_connection_id,
        )
        self._track(connection)
        try:
            await self._serve_connection(connection, reader)
        except OSError as exc:
            logger.debug(
                "Connection %s dropped: %s",
                connection.connection_id,
                exc.__class__.__name__,
            )
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except OSError:
                logger.debug("Connection %s closed uncleanly", connection.connection_id)
            finally:
                self._forget(connection)

    async def _serve_connection(
        self,
        connection: TrackedConnection,
        reader: asyncio.StreamReader,
    ) -> None:
        writer = connection.writer
        request_count = 0
        while True:
            started_at = time.perf_counter()
            try:
                request = await read_http_request(
                    reader,
                    writer,
                    max_body_bytes=self.max_body_bytes,
                )
            except HTTPRequestParseError as exc:
                await self._reject(connection, exc.status_code, started_at)
                return
            except HeaderTooLargeError:
                await self._reject(connection, 431, started_at)
                return
            except PayloadTooLargeError:
                await self._reject(connection, 413, started_at)
                return
            except MalformedRequestError:
                await self._reject(connection, 400, started_at)
                return

            if request is None:
                return

            request_count += 1
            request.client = connection.address
            decode_form(request)
            response = await self._dispatcher.dispatch(request)
            should_close = self._apply_connection_header(request, response)

            if response.delay_ms > 0:
                await asyncio.sleep(response.delay_ms / 1000)

            bytes_sent = await write_http_response(
                writer,
                response,
                include_body=request.method != "HEAD",
            )
            self._record_and_log(
                connection=connection,
                method=request.method,
                path=request.pathname,
                response=response,
                payload_size=bytes_sent,
                bytes_in=len(request.body),
                started_at=started_at,
                request_id=request_count,
            )
            if should_close:
                return

    def _apply_connection_header(self, request: HTTPRequest, response: HTTPResponse) -> bool:
        requested = response.header("connection").lower()
        should_close = not request.keep_alive or requested == "close"
        if response.has_header("connection"):
            return should_close
        if should_close:
            response.headers["connection"] = "close"
        elif request.http_version == "HTTP/1.0":
            response.headers["connection"] = "keep-alive"
        return should_close

    async def _reject(
        self,
        connection: TrackedConnection,
        status_code: int,
        started_at: float,
    ) -> None:
        response = error_response(status_code)
        response.headers["connection"] = "close"
        bytes_sent = await write_http_response(connection.writer, response)
        self._record_and_log(
            connection=connection,
            method="-",
            path="-",
            response=response,
            payload_size=bytes_sent,
            bytes_in=0,
            started_at=started_at,
            request_id=0,
        )

    def _record_and_log(
        self,
        *,
        connection: TrackedConnection,
        method: str,
        path: str,
        response: HTTPResponse,
        payload_size: int,
        bytes_in: int,
        started_at: float,
        request_id: int,
    ) -> None:
        duration_ms = (time.perf_counter() - started_at) * 1000
        event = {
            "client": connection.address[0],
            "method": method,
            "path": path,
            "status": response.status_code,
            "matched": response.matched,
            "tls": self.tls,
            "connection_id": connection.connection_id,
            "request_id": request_id,
            "bytes_in": bytes_in,
            "bytes_out": payload_size,
            "latency_ms": round(duration_ms, 3),
        }
        if self.log_format == "json":
            logger.info(json.dumps(event, sort_keys=True))
            return

        logger.info(
            (
                "client=%s method=%s path=%s status=%s matched=%s tls=%s "
                "connection_id=%s request_id=%s bytes_in=%s bytes_out=%s duration_ms=%.2f"
            ),
            event["client"],
            event["method"],
            event["path"],
            event["status"],
            event["matched"],
            event["tls"],
            event["connection_id"],
            event["request_id"],
            event["bytes_in"],
            event["bytes_out"],
            duration_ms,
        )


def _shutdown_loop(loop: asyncio.AbstractEventLoop, thread: threading.Thread) -> None:
    loop.call_soon_threadsafe(loop.stop)
    thread.join()
    loop.close()
