"""Low-level stream read/write utilities for the asyncio listener."""

from __future__ import annotations

import asyncio

from config import MAX_BODY_BYTES
from request import HTTPRequest
from response import HTTPResponse

CONTINUE_RESPONSE = b"HTTP/1.1 100 Continue\r\n\r\n"


class HTTPReadError(Exception):
    """Raised when a client request cannot be safely read from the stream."""


class MalformedRequestError(HTTPReadError):
    """Raised when stream bytes do not form a complete HTTP request."""


class HeaderTooLargeError(HTTPReadError):
    """Raised when HTTP headers exceed the reader limit."""


class PayloadTooLargeError(HTTPReadError):
    """Raised when request body exceeds configured maximum size."""


async def read_http_request(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    *,
    max_body_bytes: int = MAX_BODY_BYTES,
) -> HTTPRequest | None:
    """Read one request head and body; ``None`` when the peer closed cleanly.

    The head is bounded by the reader's ``limit``. Parse errors from the
    request line surface as :class:`request.HTTPRequestParseError`.
    """
    try:
        raw_head = await reader.readuntil(b"\r\n\r\n")
    except asyncio.IncompleteReadError as exc:
        if not exc.partial.strip():
            return None
        raise MalformedRequestError("Connection closed before request head completed") from exc
    except asyncio.LimitOverrunError as exc:
        raise HeaderTooLargeError("Headers exceeded MAX_HEADER_BYTES") from exc

    request = HTTPRequest.from_head(raw_head[:-4].lstrip(b"\r\n"))

    transfer_encoding = request.headers.get("transfer-encoding", "").lower()
    uses_chunked_transfer = "chunked" in transfer_encoding
    has_content_length = "content-length" in request.headers
    if uses_chunked_transfer and has_content_length:
        raise MalformedRequestError("Content-Length cannot be combined with chunked transfer")

    try:
        if uses_chunked_transfer:
            await _send_continue_if_expected(request, writer)
            request.body = await _read_chunked_body(reader, max_body_bytes)
        elif has_content_length:
            expected_body_length = _parse_content_length(request.headers["content-length"])
            if expected_body_length > max_body_bytes:
                raise PayloadTooLargeError("Body exceeded MAX_BODY_BYTES")
            if expected_body_length:
                await _send_continue_if_expected(request, writer)
                request.body = await reader.readexactly(expected_body_length)
    except asyncio.IncompleteReadError as exc:
        raise MalformedRequestError("Connection closed before body completed") from exc

    return request


async def write_http_response(
    writer: asyncio.StreamWriter,
    response: HTTPResponse,
    *,
    include_body: bool = True,
) -> int:
    """Write status line, headers and (optionally) the body; return bytes sent."""
    head = response.head_bytes()
    writer.write(head)
    bytes_sent = len(head)
    if include_body and response.body:
        writer.write(response.body)
        bytes_sent += len(response.body)
    await writer.drain()
    return bytes_sent


def _parse_content_length(value: str) -> int:
    try:
        parsed_length = int(value.strip())
    except ValueError as exc:
        raise MalformedRequestError("Invalid Content-Length header") from exc
    if parsed_length < 0:
        raise MalformedRequestError("Negative Content-Length header")
    return parsed_length


async def _send_continue_if_expected(
    request: HTTPRequest,
    writer: asyncio.StreamWriter,
) -> None:
    if request.headers.get("expect", "").lower() != "100-continue":
        return
    writer.write(CONTINUE_RESPONSE)
    await writer.drain()


async def _read_chunk_line(reader: asyncio.StreamReader) -> bytes:
    try:
        line = await reader.readline()
    except ValueError as exc:
        raise MalformedRequestError("Chunk line exceeded reader limit") from exc
    if not line.endswith(b"\r\n"):
        raise MalformedRequestError("Incomplete chunked line")
    return line[:-2]


async def _read_chunked_body(reader: asyncio.StreamReader, max_body_bytes: int) -> bytes:
    decoded = bytearray()
    while True:
        size_token = (await _read_chunk_line(reader)).split(b";", 1)[0].strip()
        if not size_token:
            raise MalformedRequestError("Missing chunk size")
        try:
            chunk_size = int(size_token, 16)
        except ValueError as exc:
            raise MalformedRequestError("Malformed chunk size") from exc

        if chunk_size == 0:
            while True:
                trailer_line = await _read_chunk_line(reader)
                if not trailer_line:
                    return bytes(decoded)
                if b":" not in trailer_line:
                    raise MalformedRequestError("Malformed chunked trailer")

        if len(decoded) + chunk_size > max_body_bytes:
            raise PayloadTooLargeError("Decoded chunked body exceeded MAX_BODY_BYTES")
        chunk = await reader.readexactly(chunk_size + 2)
        if chunk[-2:] != b"\r\n":
            raise MalformedRequestError("Chunk missing CRLF terminator")
        decoded.extend(chunk[:-2])
