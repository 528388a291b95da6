"""Handler matching and status/body/header resolution."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from handler_table import AsyncBody, Handler, HandlerTable, StatusSource, SyncBody, is_suppressed
from request import HTTPRequest
from response import HTTPResponse, HeaderValue, error_response, not_found_response

logger = logging.getLogger(__name__)

_HEADER_NAME = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")


class Dispatcher:
    """Turns a parsed request into a response using a :class:`HandlerTable`."""

    def __init__(self, table: HandlerTable) -> None:
        self.table = table

    async def dispatch(self, request: HTTPRequest) -> HTTPResponse:
        try:
            handler = self.table.match(request)
            if handler is None:
                return not_found_response()
            return await build_response(handler, request)
        except Exception:
            logger.exception(
                "Unhandled error in handler for %s %s",
                request.method,
                request.pathname,
            )
            return error_response(500)


async def build_response(handler: Handler, request: HTTPRequest) -> HTTPResponse:
    """Resolve body, then status, then compose headers for a matched handler."""
    content = encode_body(await resolve_body(handler.reply.body, request))
    status = resolve_status(handler.reply.status, request)
    if not 100 <= status <= 999:
        logger.error(
            "Handler for %s %s resolved unusable status %r",
            request.method,
            request.pathname,
            status,
        )
        return error_response(500)

    return HTTPResponse(
        status_code=status,
        headers=compose_headers(
            handler.reply.headers,
            len(content),
            handler.reply.headers_overrides,
        ),
        body=content,
        delay_ms=handler.delay or 0,
        matched=True,
    )


def resolve_status(status: StatusSource, request: HTTPRequest) -> int:
    value = status(request) if callable(status) else status
    return int(value or 0)


async def resolve_body(body: Any, request: HTTPRequest) -> Any:
    if isinstance(body, AsyncBody):
        return await wait_for_completion(body, request) or ""
    if isinstance(body, SyncBody):
        return body.fn(request) or ""
    if callable(body):
        return body(request) or ""
    return body or ""


async def wait_for_completion(body: AsyncBody, request: HTTPRequest) -> Any:
    """Run a continuation-style body function and await its first completion."""
    loop = asyncio.get_running_loop()
    future: asyncio.Future[Any] = loop.create_future()

    def settle(value: Any) -> None:
        if not future.done():
            future.set_result(value)

    def complete(value: Any = None) -> None:
        try:
            loop.call_soon_threadsafe(settle, value)
        except RuntimeError:
            logger.debug("Dropping body completion for %s after server stop", request.pathname)

    body.fn(request, complete)
    return await future


def encode_body(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value).encode("utf-8")


def compose_headers(
    headers: Mapping[str, Any],
    content_length: int,
    overrides: Mapping[str, Any],
) -> dict[str, HeaderValue]:
    """Merge handler headers, computed length and overrides; drop suppressed names.

    A list or tuple value becomes one header line per element. Names must be
    HTTP tokens and values must be single-line Latin-1 text, otherwise
    :class:`ValueError` is raised before anything reaches the wire.
    """
    merged: dict[str, Any] = {name.lower(): value for name, value in headers.items()}
    merged["content-length"] = content_length
    for name, value in overrides.items():
        merged[name.lower()] = value

    composed: dict[str, HeaderValue] = {}
    for name, value in merged.items():
        if is_suppressed(value):
            continue
        if not _HEADER_NAME.fullmatch(name):
            raise ValueError(f"Invalid header name {name!r}")
        if isinstance(value, (list, tuple)):
            composed[name] = [_header_text(name, item) for item in value]
        else:
            composed[name] = _header_text(name, value)
    return composed


def _header_text(name: str, value: Any) -> str:
    text = str(value)
    if any(char in text for char in "\r\n\x00"):
        raise ValueError(f"Header {name!r} value contains a line break or NUL")
    try:
        text.encode("iso-8859-1")
    except UnicodeEncodeError as exc:
        raise ValueError(f"Header {name!r} value is not Latin-1 encodable") from exc
    return text
