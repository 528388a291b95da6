"""Registered response rules and the ordered table that holds them."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from config import ANY_METHOD, DEFAULT_CONTENT_TYPE, DEFAULT_METHOD, DEFAULT_STATUS
from request import HTTPRequest

Complete = Callable[[Any], None]
StatusSource = int | Callable[[HTTPRequest], int] | None


class _Suppressed:
    __slots__ = ()

    def __repr__(self) -> str:
        return "SUPPRESS"


SUPPRESS = _Suppressed()
"""Header value meaning "omit this header", even one set by a default."""


def is_suppressed(value: Any) -> bool:
    return value is SUPPRESS or value is None


@dataclass(frozen=True, slots=True)
class SyncBody:
    """Body computed by ``fn(request)`` when the request is dispatched."""

    fn: Callable[[HTTPRequest], Any]


@dataclass(frozen=True, slots=True)
class AsyncBody:
    """Body delivered later through ``fn(request, complete)``.

    ``complete(value)`` may be called from any thread. There is no timeout:
    a function that never calls it leaves the response pending until the
    server stops.
    """

    fn: Callable[[HTTPRequest, Complete], None]


@dataclass(frozen=True, slots=True)
class Reply:
    """What a matched handler answers with.

    Header values are text (non-text values are stringified), a list of texts
    sent as one header line each (repeated ``set-cookie``), or ``SUPPRESS``.
    """

    status: StatusSource = DEFAULT_STATUS
    body: Any = ""
    headers: Mapping[str, Any] = field(default_factory=dict)
    headers_overrides: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Handler:
    """One response rule: ``on`` path, ``when`` method, optional ``filter``."""

    on: str
    when: str = DEFAULT_METHOD
    reply: Reply = field(default_factory=Reply)
    filter: Callable[[HTTPRequest], bool] | None = None
    delay: float = 0

    @classmethod
    def from_dict(cls, descriptor: Mapping[str, Any]) -> "Handler":
        """Build a handler from a ``{"on", "when", "reply", ...}`` descriptor."""
        reply = descriptor.get("reply") or {}
        overrides = reply.get("headersOverrides", reply.get("headers_overrides"))
        return cls(
            on=descriptor.get("on", ""),
            when=descriptor.get("when") or DEFAULT_METHOD,
            reply=Reply(
                status=reply.get("status", DEFAULT_STATUS),
                body=reply.get("body", ""),
                headers=dict(reply.get("headers") or {}),
                headers_overrides=dict(overrides or {}),
            ),
            filter=descriptor.get("filter"),
            delay=descriptor.get("delay") or 0,
        )

    def matches(self, request: HTTPRequest) -> bool:
        if self.when != ANY_METHOD and self.when.upper() != request.method:
            return False
        if self.on != request.pathname:
            return False
        return self.filter is None or self.filter(request) is True


class HandlerTable:
    """Handlers in registration order; the first match wins."""

    def __init__(self) -> None:
        self._handlers: list[Handler] = []

    def register(self, handler: Handler | Mapping[str, Any]) -> "HandlerTable":
        if not isinstance(handler, Handler):
            handler = Handler.from_dict(handler)
        reply = handler.reply
        headers = {"content-type": DEFAULT_CONTENT_TYPE}
        headers.update(reply.headers)
        self._handlers.append(
            replace(
                handler,
                reply=replace(
                    reply,
                    headers=headers,
                    headers_overrides=dict(reply.headers_overrides),
                ),
            )
        )
        return self

    def reset(self) -> None:
        self._handlers.clear()

    def match(self, request: HTTPRequest) -> Handler | None:
        for handler in self._handlers:
            if handler.matches(request):
                return handler
        return None

    def __len__(self) -> int:
        return len(self._handlers)

    def __iter__(self) -> Iterator[Handler]:
        return iter(list(self._handlers))
