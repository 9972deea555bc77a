"""Bencode encoding and decoding.

Byte strings decode to ``bytes``, dictionaries to ``dict[bytes, Any]``.
"""

from __future__ import annotations

from typing import Any

from peerwire.exceptions import BencodeError

_DIGITS = frozenset(b"0123456789")

# Lists and dictionaries nested deeper than this are rejected.
MAX_DEPTH = 256


class BencodeDecoder:
    """Recursive-descent decoder over a byte buffer.

    Records the raw byte span of every top-level dictionary value so callers
    can hash the exact encoding of e.g. the ``info`` dictionary.
    """

    def __init__(self, data: bytes):
        """Initialize decoder over ``data``."""
        if not isinstance(data, (bytes, bytearray, memoryview)):
            msg = f"Cannot decode {type(data).__name__}, expected bytes"
            raise BencodeError(msg)
        self.data = bytes(data)
        self.pos = 0
        self.spans: dict[bytes, tuple[int, int]] = {}

    def decode(self) -> Any:
        """Decode a single value spanning the whole buffer."""
        if not self.data:
            msg = "Empty input"
            raise BencodeError(msg)
        value = self._decode_next(depth=0)
        if self.pos != len(self.data):
            msg = f"Trailing data at offset {self.pos}"
            raise BencodeError(msg, {"offset": self.pos})
        return value

    def raw(self, key: bytes) -> bytes:
        """Raw encoding of top-level dictionary value ``key``."""
        try:
            start, end = self.spans[key]
        except KeyError:
            msg = f"Key {key!r} not present at top level"
            raise BencodeError(msg) from None
        return self.data[start:end]

    def _peek(self) -> int:
        if self.pos >= len(self.data):
            msg = "Unexpected end of data"
            raise BencodeError(msg, {"offset": self.pos})
        return self.data[self.pos]

    def _check_depth(self, depth: int) -> None:
        if depth >= MAX_DEPTH:
            msg = f"Nesting deeper than {MAX_DEPTH} levels at offset {self.pos}"
            raise BencodeError(msg, {"offset": self.pos})

    def _decode_next(self, depth: int) -> Any:
        token = self._peek()
        if token == ord("i"):
            return self._decode_int()
        if token == ord("l"):
            return self._decode_list(depth)
        if token == ord("d"):
            return self._decode_dict(depth)
        if token in _DIGITS:
            return self._decode_bytes()
        msg = f"Invalid token {chr(token)!r} at offset {self.pos}"
        raise BencodeError(msg, {"offset": self.pos})

    def _decode_int(self) -> int:
        start = self.pos + 1
        end = self.data.find(b"e", start)
        if end == -1:
            msg = "Unterminated integer"
            raise BencodeError(msg, {"offset": self.pos})
        raw = self.data[start:end]
        digits = raw[1:] if raw.startswith(b"-") else raw
        if not digits or any(b not in _DIGITS for b in digits):
            msg = f"Malformed integer {raw!r}"
            raise BencodeError(msg, {"offset": self.pos})
        if (len(digits) > 1 and digits.startswith(b"0")) or raw == b"-0":
            msg = f"Non-canonical integer {raw!r}"
            raise BencodeError(msg, {"offset": self.pos})
        self.pos = end + 1
        return int(raw)

    def _decode_bytes(self) -> bytes:
        colon = self.data.find(b":", self.pos)
        if colon == -1:
            msg = "Missing ':' in byte string"
            raise BencodeError(msg, {"offset": self.pos})
        raw_len = self.data[self.pos:colon]
        if any(b not in _DIGITS for b in raw_len):
            msg = f"Malformed string length {raw_len!r}"
            raise BencodeError(msg, {"offset": self.pos})
        if len(raw_len) > 1 and raw_len.startswith(b"0"):
            msg = f"Non-canonical string length {raw_len!r}"
            raise BencodeError(msg, {"offset": self.pos})
        length = int(raw_len)
        start = colon + 1
        end = start + length
        if end > len(self.data):
            msg = f"String of length {length} runs past end of data"
            raise BencodeError(msg, {"offset": self.pos})
        self.pos = end
        return self.data[start:end]

    def _decode_list(self, depth: int) -> list[Any]:
        self._check_depth(depth)
        self.pos += 1
        result = []
        while self._peek() != ord("e"):
            result.append(self._decode_next(depth + 1))
        self.pos += 1
        return result

    def _decode_dict(self, depth: int) -> dict[bytes, Any]:
        self._check_depth(depth)
        self.pos += 1
        result: dict[bytes, Any] = {}
        while self._peek() != ord("e"):
            if self._peek() not in _DIGITS:
                msg = f"Dictionary key must be a byte string at offset {self.pos}"
                raise BencodeError(msg, {"offset": self.pos})
            key = self._decode_bytes()
            start = self.pos
            result[key] = self._decode_next(depth + 1)
            if depth == 0:
                self.spans[key] = (start, self.pos)
        self.pos += 1
        return result


def decode(data: bytes) -> Any:
    """Decode a bencoded value."""
    return BencodeDecoder(data).decode()


def encode(value: Any) -> bytes:
    """Encode a value to bencode."""
    out = bytearray()
    _encode_into(value, out)
    return bytes(out)


def _encode_into(value: Any, out: bytearray) -> None:
    if isinstance(value, bool):
        msg = "Booleans have no bencode representation"
        raise BencodeError(msg)
    if isinstance(value, int):
        out += b"i%de" % value
    elif isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        out += b"%d:" % len(raw)
        out += raw
    elif isinstance(value, str):
        _encode_into(value.encode("utf-8"), out)
    elif isinstance(value, (list, tuple)):
        out += b"l"
        for item in value:
            _encode_into(item, out)
        out += b"e"
    elif isinstance(value, dict):
        out += b"d"
        items = [
            (k.encode("utf-8") if isinstance(k, str) else bytes(k), v)
            for k, v in value.items()
        ]
        for key, item in sorted(items, key=lambda kv: kv[0]):
            _encode_into(key, out)
            _encode_into(item, out)
        out += b"e"
    else:
        msg = f"Cannot bencode {type(value).__name__}"
        raise BencodeError(msg)
