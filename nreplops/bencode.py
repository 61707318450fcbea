"""Bencode codec for the nREPL transport.

Values are byte strings (``<len>:<bytes>``), integers (``i<n>e``), lists
(``l...e``) and maps (``d...e``, byte string keys).  The stream has no outer
framing, so ``Decoder`` is fed raw chunks and hands back every complete
top-level value.  Parsing resumes where the previous feed stopped, so a
large value arriving in many chunks is scanned once.
"""

from typing import Any, List, Optional, Tuple

from nreplops.errors import ProtocolError

MAX_LENGTH_DIGITS = 19


def encode(value: Any) -> bytes:
    out = bytearray()
    _encode_into(value, out)
    return bytes(out)


def _encode_into(value: Any, out: bytearray) -> None:
    if isinstance(value, str):
        value = value.encode("utf-8")
    if isinstance(value, (bytes, bytearray)):
        out += str(len(value)).encode("ascii") + b":" + value
    elif isinstance(value, bool):
        raise TypeError("cannot bencode bool")
    elif isinstance(value, int):
        out += b"i" + str(value).encode("ascii") + b"e"
    elif isinstance(value, (list, tuple)):
        out += b"l"
        for item in value:
            _encode_into(item, out)
        out += b"e"
    elif isinstance(value, dict):
        out += b"d"
        for key, item in value.items():
            if not isinstance(key, (str, bytes)):
                raise TypeError(f"map keys must be strings, got {type(key).__name__}")
            _encode_into(key, out)
            _encode_into(item, out)
        out += b"e"
    else:
        raise TypeError(f"cannot bencode {type(value).__name__}")


def _is_digit(byte: int) -> bool:
    return 0x30 <= byte <= 0x39


def _valid_int_prefix(digits: bytes) -> bool:
    body = digits[1:] if digits[:1] == b"-" else digits
    if not body:
        return digits == b"-"
    if not body.isdigit():
        return False
    if body[:1] == b"0" and (len(body) > 1 or digits[:1] == b"-"):
        return False
    return True


def _scan_int(buf: bytearray, pos: int, offset: int) -> Optional[Tuple[int, int]]:
    """Parse ``i<n>e`` at ``pos``; ``None`` while the terminator is missing."""
    start = pos + 1
    end = buf.find(b"e", start)
    if end < 0:
        digits = bytes(buf[start:])
        if digits and not _valid_int_prefix(digits):
            raise ProtocolError(f"malformed integer at offset {offset + start}")
        return None
    digits = bytes(buf[start:end])
    if not _valid_int_prefix(digits) or digits in (b"", b"-"):
        raise ProtocolError(f"malformed integer at offset {offset + start}")
    return int(digits), end + 1


def _scan_bytes(buf: bytearray, pos: int, offset: int) -> Optional[Tuple[bytes, int]]:
    """Parse ``<len>:<bytes>`` at ``pos``; ``None`` while it is incomplete."""
    colon = buf.find(b":", pos, pos + MAX_LENGTH_DIGITS + 1)
    if colon < 0:
        prefix = bytes(buf[pos:pos + MAX_LENGTH_DIGITS + 1])
        if len(prefix) > MAX_LENGTH_DIGITS or not prefix.isdigit():
            raise ProtocolError(f"malformed length prefix at offset {offset + pos}")
        return None
    prefix = bytes(buf[pos:colon])
    if not prefix.isdigit() or (len(prefix) > 1 and prefix[:1] == b"0"):
        raise ProtocolError(f"malformed length prefix at offset {offset + pos}")
    start = colon + 1
    end = start + int(prefix)
    if end > len(buf):
        return None
    return bytes(buf[start:end]), end


class _Frame:
    """An open list or map; ``key`` holds a map key still waiting for its value."""

    __slots__ = ("value", "key")

    def __init__(self, value: Any):
        self.value = value
        self.key: Optional[bytes] = None

    @property
    def wants_key(self) -> bool:
        return isinstance(self.value, dict) and self.key is None

    def add(self, item: Any) -> None:
        if isinstance(self.value, list):
            self.value.append(item)
        elif self.key is None:
            self.key = item
        else:
            # Duplicate keys: the last value wins.
            self.value[self.key] = item
            self.key = None


class Decoder:
    """Incremental decoder over an unframed stream of values.

    Open containers live on an explicit stack and consumed bytes are dropped
    from the buffer, so each feed only scans new input plus at most one
    incomplete scalar.  Any ``ProtocolError`` is final: the stream has no
    synchronization marker, so the decoder refuses further input afterwards.
    """

    def __init__(self):
        self._buffer = bytearray()
        self._stack: List[_Frame] = []
        self._partial = 0
        self._offset = 0
        self._failed = False

    @property
    def pending(self) -> int:
        """Bytes received that do not yet belong to a complete value."""
        return self._partial + len(self._buffer)

    def feed(self, chunk: bytes) -> List[Any]:
        if self._failed:
            raise ProtocolError("decoder is unusable after a protocol error")
        self._buffer += chunk
        values: List[Any] = []
        try:
            self._drain(values)
        except ProtocolError:
            self._failed = True
            raise
        return values

    def _drain(self, values: List[Any]) -> None:
        buf = self._buffer
        pos = 0
        mark = 0
        try:
            while pos < len(buf):
                lead = buf[pos]
                top = self._stack[-1] if self._stack else None
                if lead == 0x65:  # e
                    if top is None:
                        raise ProtocolError(f"unexpected end marker at offset {self._offset + pos}")
                    if top.key is not None:
                        raise ProtocolError(f"map key without a value at offset {self._offset + pos}")
                    self._stack.pop()
                    pos += 1
                    item = top.value
                elif top is not None and top.wants_key and not _is_digit(lead):
                    raise ProtocolError(f"map key is not a byte string at offset {self._offset + pos}")
                elif lead == 0x6C:  # l
                    self._stack.append(_Frame([]))
                    pos += 1
                    continue
                elif lead == 0x64:  # d
                    self._stack.append(_Frame({}))
                    pos += 1
                    continue
                else:
                    if lead == 0x69:  # i
                        scanned = _scan_int(buf, pos, self._offset)
                    elif _is_digit(lead):
                        scanned = _scan_bytes(buf, pos, self._offset)
                    else:
                        raise ProtocolError(f"unexpected byte {bytes([lead])!r} at offset {self._offset + pos}")
                    if scanned is None:
                        break
                    item, pos = scanned

                if self._stack:
                    self._stack[-1].add(item)
                else:
                    values.append(item)
                    self._partial = 0
                    mark = pos
        finally:
            self._partial += pos - mark
            self._offset += pos
            del buf[:pos]


def decode(data: bytes) -> Any:
    """Decode exactly one complete value."""
    decoder = Decoder()
    values = decoder.feed(bytes(data))
    if decoder.pending or not values:
        raise ProtocolError("truncated bencode value")
    if len(values) > 1:
        raise ProtocolError("trailing data after value")
    return values[0]
