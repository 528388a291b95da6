"""Unit tests for request framing on asyncio streams."""

import asyncio

import pytest

from request import HTTPRequestParseError
from socket_handler import (
    CONTINUE_RESPONSE,
    HeaderTooLargeError,
    MalformedRequestError,
    PayloadTooLargeError,
    read_http_request,
)


class _RecordingWriter:
    def __init__(self) -> None:
        self.written = bytearray()

    def write(self, data: bytes) -> None:
        self.written.extend(data)

    async def drain(self) -> None:
        return None


def _read(payload: bytes, *, limit: int = 16_384, max_body_bytes: int = 1024):
    async def run():
        reader = asyncio.StreamReader(limit=limit)
        reader.feed_data(payload)
        reader.feed_eof()
        writer = _RecordingWriter()
        request = await read_http_request(reader, writer, max_body_bytes=max_body_bytes)
        return request, bytes(writer.written)

    return asyncio.run(run())


def test_reads_content_length_body() -> None:
    request, _ = _read(
        b"POST /submit HTTP/1.1\r\n"
        b"Host: localhost\r\n"
        b"Content-Length: 9\r\n"
        b"\r\n"
        b"name=test"
    )

    assert request is not None
    assert request.pathname == "/submit"
    assert request.body == b"name=test"


def test_clean_eof_returns_none() -> None:
    request, _ = _read(b"")

    assert request is None


def test_chunked_body_is_decoded() -> None:
    request, _ = _read(
        b"POST /submit HTTP/1.1\r\n"
        b"Host: localhost\r\n"
        b"Transfer-Encoding: chunked\r\n"
        b"\r\n"
        b"4\r\nname\r\n"
        b"5\r\n=test\r\n"
        b"0\r\n"
        b"X-Trailer: yes\r\n"
        b"\r\n"
    )

    assert request is not None
    assert request.body == b"name=test"


def test_expect_continue_is_acknowledged_before_body() -> None:
    request, written = _read(
        b"PUT /upload HTTP/1.1\r\n"
        b"Host: localhost\r\n"
        b"Expect: 100-continue\r\n"
        b"Content-Length: 3\r\n"
        b"\r\n"
        b"abc"
    )

    assert request is not None
    assert request.body == b"abc"
    assert written == CONTINUE_RESPONSE


@pytest.mark.parametrize(
    ("payload", "error"),
    [
        (b"GET / HTTP/1.1\r\nHost: local", MalformedRequestError),
        (b"POST / HTTP/1.1\r\nContent-Length: 10\r\n\r\nshort", MalformedRequestError),
        (b"POST / HTTP/1.1\r\nContent-Length: nope\r\n\r\n", MalformedRequestError),
        (
            b"POST / HTTP/1.1\r\nContent-Length: 3\r\nTransfer-Encoding: chunked\r\n\r\n",
            MalformedRequestError,
        ),
        (b"POST / HTTP/1.1\r\nTransfer-Encoding: chunked\r\n\r\nzz\r\n", MalformedRequestError),
        (b"POST / HTTP/1.1\r\nContent-Length: 4096\r\n\r\n", PayloadTooLargeError),
        (b"GET / HTTP/9.9\r\n\r\n", HTTPRequestParseError),
    ],
)
def test_framing_errors(payload: bytes, error: type[Exception]) -> None:
    with pytest.raises(error):
        _read(payload)


def test_oversized_head_raises_header_too_large() -> None:
    payload = b"GET / HTTP/1.1\r\nX-Big: " + b"a" * 512 + b"\r\n\r\n"

    with pytest.raises(HeaderTooLargeError):
        _read(payload, limit=128)
