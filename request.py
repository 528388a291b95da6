"""HTTP request model and request-head parser."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qs, urlsplit

from config import MAX_TARGET_LENGTH

ALLOWED_HTTP_VERSIONS = {"HTTP/1.1", "HTTP/1.0"}
KNOWN_METHODS = {
    "GET",
    "HEAD",
    "POST",
    "PUT",
    "DELETE",
    "OPTIONS",
    "PATCH",
    "TRACE",
    "CONNECT",
}


class HTTPRequestParseError(ValueError):
    """Request parse error carrying an HTTP status code."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class HTTPRequest:
    """An inbound request as seen by handler filters, status and body callables.

    ``form`` and ``files`` are filled by :mod:`forms` for form submissions;
    ``query`` holds query-string values, collapsed to a scalar when a name
    occurs once.
    """

    method: str
    pathname: str
    http_version: str = "HTTP/1.1"
    raw_target: str = "/"
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    query: dict[str, Any] = field(default_factory=dict)
    form: dict[str, Any] = field(default_factory=dict)
    files: dict[str, Any] = field(default_factory=dict)
    keep_alive: bool = False
    client: tuple[str, int] = ("-", 0)

    @property
    def content_type(self) -> str:
        """Media type of the body without parameters, lowercased."""
        return self.headers.get("content-type", "").split(";", 1)[0].strip().lower()

    @classmethod
    def from_head(cls, raw_head: bytes, body: bytes = b"") -> "HTTPRequest":
        """Parse a request line plus header block (without the blank line)."""
        lines = raw_head.decode("iso-8859-1").split("\r\n")
        if not lines or not lines[0]:
            raise HTTPRequestParseError("Missing request line")

        first_line_parts = lines[0].split(" ")
        if len(first_line_parts) != 3:
            raise HTTPRequestParseError("Invalid request line")

        method, target, http_version = first_line_parts
        if not method or not target or not http_version:
            raise HTTPRequestParseError("Request line contains empty tokens")

        normalized_method = method.upper()
        if normalized_method not in KNOWN_METHODS:
            raise HTTPRequestParseError("Method not implemented", status_code=501)

        if http_version not in ALLOWED_HTTP_VERSIONS:
            raise HTTPRequestParseError("Unsupported HTTP version", status_code=505)

        if len(target) > MAX_TARGET_LENGTH:
            raise HTTPRequestParseError("Request target too long", status_code=414)

        headers: dict[str, str] = {}
        for line in lines[1:]:
            if not line:
                continue
            if ":" not in line:
                raise HTTPRequestParseError("Malformed header line")
            name, value = line.split(":", 1)
            header_name = name.strip().lower()
            if not header_name:
                raise HTTPRequestParseError("Header name cannot be empty")
            headers[header_name] = value.strip()

        parsed_target = urlsplit(target)
        return cls(
            method=normalized_method,
            pathname=parsed_target.path or "/",
            http_version=http_version,
            raw_target=target,
            headers=headers,
            body=body,
            query=collapse_single_values(
                parse_qs(parsed_target.query, keep_blank_values=True)
            ),
            keep_alive=_is_keep_alive(http_version, headers.get("connection", "")),
        )


def collapse_single_values(values: dict[str, list[Any]]) -> dict[str, Any]:
    """Replace one-element lists by their element; longer lists pass through."""
    collapsed: dict[str, Any] = {}
    for name, items in values.items():
        if isinstance(items, list) and len(items) == 1:
            collapsed[name] = items[0]
        else:
            collapsed[name] = items
    return collapsed


def _is_keep_alive(http_version: str, connection_header: str) -> bool:
    token = connection_header.lower()
    if http_version == "HTTP/1.1":
        return "close" not in token
    if http_version == "HTTP/1.0":
        return "keep-alive" in token
    return False
