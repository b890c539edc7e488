"""Content decoder: interpret a raw payload on demand.

The stored bytes are never touched; every accessor decodes from scratch, so
calls are repeatable and side-effect free.
"""
from __future__ import annotations

import json
import re
from types import MappingProxyType
from typing import Any, Mapping
from xml.etree import ElementTree

from rmq_channel.app.domain.errors import DecodeFailed

# ASCII decimal literals only, surrounding whitespace allowed.
_INT_LITERAL = re.compile(r"[+-]?[0-9]+")
_FLOAT_LITERAL = re.compile(r"[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")


class MessageContent:
    """Read-only payload plus its message properties."""

    def __init__(self, body: bytes, properties: Mapping[str, Any] | None = None) -> None:
        if not isinstance(body, (bytes, bytearray, memoryview)):
            raise TypeError("message body must be bytes")
        self._body = bytes(body)
        self._properties = MappingProxyType(dict(properties or {}))

    @property
    def properties(self) -> Mapping[str, Any]:
        return self._properties

    @property
    def content_type(self) -> str | None:
        return self._properties.get("content_type")

    @property
    def headers(self) -> Mapping[str, Any]:
        return MappingProxyType(dict(self._properties.get("headers") or {}))

    def as_bytes(self) -> bytes:
        return self._body

    def as_text(self) -> str:
        try:
            return self._body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeFailed(f"payload is not valid UTF-8: {exc}") from exc

    def as_int(self) -> int:
        text = self.as_text()
        if not _INT_LITERAL.fullmatch(text.strip()):
            raise DecodeFailed(f"payload is not an integer: {text!r}")
        return int(text)

    def as_float(self) -> float:
        text = self.as_text()
        if not _FLOAT_LITERAL.fullmatch(text.strip()):
            raise DecodeFailed(f"payload is not a float: {text!r}")
        return float(text)

    def as_json(self) -> Any:
        text = self.as_text()
        try:
            return json.loads(text)
        except ValueError as exc:
            raise DecodeFailed(f"payload is not valid JSON: {exc}") from exc

    def as_xml(self) -> ElementTree.Element:
        # Validates UTF-8 first; expat then honours any XML declaration.
        self.as_text()
        try:
            return ElementTree.fromstring(self._body)
        except ElementTree.ParseError as exc:
            raise DecodeFailed(f"payload is not valid XML: {exc}") from exc
