"""HTTP response model and head serializer."""

from __future__ import annotations

from dataclasses import dataclass, field

REASON_PHRASES: dict[int, str] = {
    100: "Continue",
    200: "OK",
    201: "Created",
    202: "Accepted",
    204: "No Content",
    206: "Partial Content",
    301: "Moved Permanently",
    302: "Found",
    304: "Not Modified",
    307: "Temporary Redirect",
    308: "Permanent Redirect",
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    408: "Request Timeout",
    409: "Conflict",
    413: "Payload Too Large",
    414: "URI Too Long",
    415: "Unsupported Media Type",
    422: "Unprocessable Entity",
    429: "Too Many Requests",
    431: "Request Header Fields Too Large",
    500: "Internal Server Error",
    501: "Not Implemented",
    502: "Bad Gateway",
    503: "Service Unavailable",
    504: "Gateway Timeout",
    505: "HTTP Version Not Supported",
}

NOT_FOUND_BODY = b"Not Found"

HeaderValue = str | list[str]


@dataclass(slots=True)
class HTTPResponse:
    """A fully resolved response, ready to be written after ``delay_ms``."""

    status_code: int
    headers: dict[str, HeaderValue] = field(default_factory=dict)
    body: bytes = b""
    delay_ms: float = 0
    matched: bool = False

    def head_bytes(self) -> bytes:
        """Serialize the status line and headers into HTTP/1.1 wire format."""
        reason = REASON_PHRASES.get(self.status_code, "Unknown")
        header_lines = [f"HTTP/1.1 {self.status_code} {reason}"]
        for name, value in self.headers.items():
            values = value if isinstance(value, list) else [value]
            header_lines.extend(f"{name}: {item}" for item in values)
        return "\r\n".join(header_lines).encode("iso-8859-1") + b"\r\n\r\n"

    def has_header(self, name: str) -> bool:
        lowered = name.lower()
        return any(key.lower() == lowered for key in self.headers)

    def header(self, name: str, default: str = "") -> str:
        """Case-insensitive lookup; repeated values are joined with commas."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return ", ".join(value) if isinstance(value, list) else value
        return default


def not_found_response() -> HTTPResponse:
    """The fixed fallback sent when no handler matches."""
    return HTTPResponse(
        status_code=404,
        headers={"content-type": "plain/text", "content-length": str(len(NOT_FOUND_BODY))},
        body=NOT_FOUND_BODY,
    )


def error_response(status_code: int) -> HTTPResponse:
    body = REASON_PHRASES.get(status_code, "Error").encode("utf-8")
    return HTTPResponse(
        status_code=status_code,
        headers={
            "content-type": "text/plain; charset=utf-8",
            "content-length": str(len(body)),
        },
        body=body,
    )
