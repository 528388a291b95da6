"""Form body decoding for POST/PUT submissions.

``multipart/form-data`` bodies are parsed with ``python-multipart``; URL-encoded
bodies use stdlib ``urllib.parse``. Decoded values land on ``request.form`` and
``request.files``. A body that cannot be decoded leaves both maps empty and the
request is dispatched anyway.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qs

from python_multipart.multipart import MultipartParser, parse_options_header

from request import HTTPRequest, collapse_single_values

logger = logging.getLogger(__name__)

FORM_METHODS = {"POST", "PUT"}
MULTIPART_FORM = "multipart/form-data"
URLENCODED_FORM = "application/x-www-form-urlencoded"

FieldMap = dict[str, list[Any]]


@dataclass(frozen=True, slots=True)
class UploadedFile:
    """Metadata and content of one uploaded file part."""

    field_name: str
    filename: str
    content_type: str
    size: int
    content: bytes = field(repr=False)

    def text(self, encoding: str = "utf-8") -> str:
        return self.content.decode(encoding, errors="replace")


def decode_form(request: HTTPRequest) -> None:
    """Populate ``request.form``/``request.files`` for form submissions."""
    if request.method not in FORM_METHODS:
        return

    if request.content_type == MULTIPART_FORM:
        decoder = _parse_multipart
    elif request.content_type == URLENCODED_FORM:
        decoder = _parse_urlencoded
    else:
        return

    try:
        fields, files = decoder(request)
    except ValueError:
        logger.debug("Ignoring undecodable %s body on %s", request.content_type, request.pathname, exc_info=True)
        fields, files = {}, {}

    request.form = collapse_single_values(fields)
    request.files = collapse_single_values(files)


def _parse_urlencoded(request: HTTPRequest) -> tuple[FieldMap, FieldMap]:
    return parse_qs(request.body.decode("utf-8"), keep_blank_values=True), {}


@dataclass(slots=True)
class _PartState:
    headers: dict[str, str] = field(default_factory=dict)
    data: bytearray = field(default_factory=bytearray)
    header_field: bytearray = field(default_factory=bytearray)
    header_value: bytearray = field(default_factory=bytearray)


def _parse_multipart(request: HTTPRequest) -> tuple[FieldMap, FieldMap]:
    _, options = parse_options_header(request.headers.get("content-type", ""))
    boundary = options.get(b"boundary")
    if not boundary:
        raise ValueError("Multipart form data missing boundary parameter")

    fields: FieldMap = {}
    files: FieldMap = {}
    part = _PartState()

    def on_part_begin() -> None:
        nonlocal part
        part = _PartState()

    def on_header_field(data: bytes, start: int, end: int) -> None:
        part.header_field.extend(data[start:end])

    def on_header_value(data: bytes, start: int, end: int) -> None:
        part.header_value.extend(data[start:end])

    def on_header_end() -> None:
        name = part.header_field.decode("latin-1").strip().lower()
        part.headers[name] = part.header_value.decode("latin-1").strip()
        part.header_field.clear()
        part.header_value.clear()

    def on_part_data(data: bytes, start: int, end: int) -> None:
        part.data.extend(data[start:end])

    def on_part_end() -> None:
        _, params = parse_options_header(part.headers.get("content-disposition", ""))
        name = params.get(b"name")
        if name is None:
            return
        field_name = name.decode("utf-8")
        filename = params.get(b"filename")
        if filename is None:
            fields.setdefault(field_name, []).append(part.data.decode("utf-8", errors="replace"))
            return
        content = bytes(part.data)
        files.setdefault(field_name, []).append(
            UploadedFile(
                field_name=field_name,
                filename=filename.decode("utf-8"),
                content_type=part.headers.get("content-type", "application/octet-stream"),
                size=len(content),
                content=content,
            )
        )

    callbacks: dict[str, Any] = {
        "on_part_begin": on_part_begin,
        "on_header_field": on_header_field,
        "on_header_value": on_header_value,
        "on_header_end": on_header_end,
        "on_part_data": on_part_data,
        "on_part_end": on_part_end,
    }
    parser = MultipartParser(boundary, callbacks)
    parser.write(request.body)
    parser.finalize()
    return fields, files
