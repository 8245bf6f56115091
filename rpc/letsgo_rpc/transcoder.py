"""Envelope transcoders for values that JSON cannot represent natively.

A transcoder is applied once to a whole envelope on each side of the wire.
The default is the identity; :data:`TAGGED_JSON_TRANSCODER` round-trips
dates, sets, bytes and a few other standard types.
"""

from __future__ import annotations

import base64
import datetime as dt
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

TYPE_KEY = "__rpc_type__"
VALUE_KEY = "value"


def _identity(data: Any) -> Any:
    return data


@dataclass(frozen=True)
class Transcoder:
    """A symmetric serialize/deserialize pair.

    ``deserialize(serialize(x))`` must be equivalent to ``x`` for every value
    the service methods accept or return.
    """

    serialize: Callable[[Any], Any] = _identity
    deserialize: Callable[[Any], Any] = _identity


IDENTITY_TRANSCODER = Transcoder()


# ---------------------------------------------------------------------------
# Tagged JSON
# ---------------------------------------------------------------------------

# tag -> (type, encode, decode); order matters: datetime is a date subclass
_CODECS: list[tuple[str, type, Callable[[Any], Any], Callable[[Any], Any]]] = [
    ("datetime", dt.datetime, lambda v: v.isoformat(), dt.datetime.fromisoformat),
    ("date", dt.date, lambda v: v.isoformat(), dt.date.fromisoformat),
    ("time", dt.time, lambda v: v.isoformat(), dt.time.fromisoformat),
    ("timedelta", dt.timedelta, lambda v: v.total_seconds(), lambda s: dt.timedelta(seconds=s)),
    ("decimal", Decimal, str, Decimal),
    ("uuid", uuid.UUID, str, uuid.UUID),
    ("bytes", bytes, lambda v: base64.b64encode(v).decode("ascii"), base64.b64decode),
]


def _encode(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, list):
        return [_encode(item) for item in value]
    if isinstance(value, dict):
        encoded = {key: _encode(item) for key, item in value.items()}
        if TYPE_KEY in value:
            return {TYPE_KEY: "dict", VALUE_KEY: encoded}
        return encoded
    if isinstance(value, tuple):
        return {TYPE_KEY: "tuple", VALUE_KEY: [_encode(item) for item in value]}
    if isinstance(value, frozenset):
        return {TYPE_KEY: "frozenset", VALUE_KEY: [_encode(item) for item in value]}
    if isinstance(value, set):
        return {TYPE_KEY: "set", VALUE_KEY: [_encode(item) for item in value]}
    for tag, kind, encode, _decode in _CODECS:
        if isinstance(value, kind):
            return {TYPE_KEY: tag, VALUE_KEY: encode(value)}
    msg = f"Cannot transcode value of type {type(value).__name__}"
    raise TypeError(msg)


def _decode(value: Any) -> Any:
    if isinstance(value, list):
        return [_decode(item) for item in value]
    if not isinstance(value, dict):
        return value

    tag = value.get(TYPE_KEY)
    if tag is None:
        return {key: _decode(item) for key, item in value.items()}

    raw = value.get(VALUE_KEY)
    if tag == "dict":
        return {key: _decode(item) for key, item in raw.items()}
    if tag == "tuple":
        return tuple(_decode(item) for item in raw)
    if tag == "set":
        return {_decode(item) for item in raw}
    if tag == "frozenset":
        return frozenset(_decode(item) for item in raw)
    for name, _kind, _encode_fn, decode in _CODECS:
        if name == tag:
            return decode(raw)
    msg = f"Unknown transcoder tag: {tag!r}"
    raise ValueError(msg)


def tagged_json_transcoder() -> Transcoder:
    """Return a transcoder that tags non-JSON values as ``{"__rpc_type__": ...}``.

    The envelope keys themselves (``jsonrpc``, ``id``, ``method``) are plain
    JSON and pass through unchanged, so transports can still read the ``id``.
    """
    return Transcoder(serialize=_encode, deserialize=_decode)


TAGGED_JSON_TRANSCODER = tagged_json_transcoder()

TRANSCODERS: dict[str, Transcoder] = {
    "identity": IDENTITY_TRANSCODER,
    "tagged-json": TAGGED_JSON_TRANSCODER,
}
