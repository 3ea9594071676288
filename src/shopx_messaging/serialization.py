"""UTF-8 JSON bodies, the wire format shared by every service."""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel

from .exceptions import MessagingSerializationError


def _json_default(obj: Any) -> Any:
    """Serialize datetime, pydantic models and other non-JSON types."""
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json", by_alias=True)
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class JsonSerializer:
    """Encode payloads to JSON bytes and decode them back.

    Pydantic models are dumped with their aliases so the camelCase field names
    the other services expect end up on the wire.
    """

    def __init__(self, *, encoding: str = "utf-8") -> None:
        self._encoding = encoding

    @property
    def content_type(self) -> str:
        return "application/json"

    def encode(self, payload: Any) -> bytes:
        """Encode *payload* to JSON bytes."""
        if isinstance(payload, bytes):
            return payload
        try:
            if isinstance(payload, BaseModel):
                payload = payload.model_dump(mode="json", by_alias=True)
            return json.dumps(payload, default=_json_default).encode(self._encoding)
        except (TypeError, ValueError) as e:
            raise MessagingSerializationError(str(e)) from e

    def decode(self, raw: bytes) -> Any:
        """Decode JSON bytes to Python objects."""
        try:
            return json.loads(raw.decode(self._encoding))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MessagingSerializationError(str(e)) from e
