"""Dual-protocol facade over an HTTP and an HTTPS mock server, plus CLI."""

from __future__ import annotations

import argparse
import json
import logging
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from config import HOST, HTTPS_PORT, LOG_FORMAT, PORT
from handler_table import Handler
from server import Callback, HTTPServer

logger = logging.getLogger(__name__)


class VoidServer:
    """Stand-in for an absent side of :class:`ServerMock`; records nothing."""

    def will(self, handler: Handler | Mapping[str, Any]) -> "VoidServer":
        return self

    register = will

    def start(self, callback: Callback | None = None) -> "VoidServer":
        if callback is not None:
            callback()
        return self

    def stop(self, callback: Callback | None = None) -> None:
        if callback is not None:
            callback()


class ServerMock:
    """Registers every handler on both sides and starts/stops them in order.

    ``http`` is a ``{"host", "port"}`` mapping, ``https`` additionally takes
    ``"key"`` and ``"cert"`` (PEM file paths). A side left as ``None`` is a
    :class:`VoidServer`.
    """

    def __init__(
        self,
        http: Mapping[str, Any] | None = None,
        https: Mapping[str, Any] | None = None,
        *,
        log_format: str = LOG_FORMAT,
    ) -> None:
        self.http: HTTPServer | VoidServer = VoidServer()
        self.https: HTTPServer | VoidServer = VoidServer()
        if http is not None:
            self.http = HTTPServer(
                http.get("host", HOST),
                http.get("port", PORT),
                log_format=log_format,
            )
        if https is not None:
            self.https = HTTPServer(
                https.get("host", HOST),
                https.get("port", HTTPS_PORT),
                https.get("key"),
                https.get("cert"),
                log_format=log_format,
            )

    def __enter__(self) -> "ServerMock":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def will(self, handler: Handler | Mapping[str, Any]) -> "ServerMock":
        self.http.will(handler)
        self.https.will(handler)
        return self

    register = will

    def start(self, callback: Callback | None = None) -> "ServerMock":
        self.http.start()
        try:
            self.https.start()
        except BaseException:
            self.http.stop()
            raise
        if callback is not None:
            callback()
        return self

    def stop(self, callback: Callback | None = None) -> None:
        try:
            self.http.stop()
        finally:
            self.https.stop()
        if callback is not None:
            callback()


def load_handlers(path: str | Path) -> list[dict[str, Any]]:
    """Read declarative handler descriptors from a JSON file.

    The file holds either a list of descriptors or ``{"handlers": [...]}``.
    """
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("handlers", [])
    if not isinstance(payload, list):
        raise ValueError("handlers file must contain a list of handler descriptors")
    return payload


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the mock HTTP/HTTPS server")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--http-port", type=int, default=PORT)
    parser.add_argument("--no-http", action="store_true", help="disable the plaintext listener")
    parser.add_argument("--https-port", type=int, default=HTTPS_PORT)
    parser.add_argument("--tls-cert", default=None)
    parser.add_argument("--tls-key", default=None)
    parser.add_argument("--handlers", default=None, help="JSON file of handler descriptors")
    parser.add_argument("--log-format", choices=["plain", "json"], default=LOG_FORMAT)
    args = parser.parse_args(argv)
    if bool(args.tls_cert) != bool(args.tls_key):
        parser.error("--tls-cert and --tls-key must be given together")
    return args


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    http_config = None if args.no_http else {"host": args.host, "port": args.http_port}
    https_config = None
    if args.tls_cert:
        https_config = {
            "host": args.host,
            "port": args.https_port,
            "key": args.tls_key,
            "cert": args.tls_cert,
        }

    mock = ServerMock(http_config, https_config, log_format=args.log_format)
    if args.handlers:
        for descriptor in load_handlers(args.handlers):
            mock.will(descriptor)

    mock.start()
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        mock.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
