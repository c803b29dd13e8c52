"""Binary wire encoding of RFMP frames in protocol-buffer format."""

from __future__ import annotations

from typing import Iterator, Union

from rfmpd.frames import Frag, Msg, Svec
from rfmpd.message import (
    ID_LENGTH,
    InvalidFrameError,
    UnknownFrameTypeError,
    from_epoch,
    to_epoch,
)

__all__ = ["encode", "decode", "encode_msg_raw", "decode_msg_raw"]

Frame = Union[Msg, Frag, Svec]

MAX_FRAGMENTS = 255

_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_BYTES = 2
_WIRE_FIXED32 = 5

# Frame payload (oneof) field numbers.
_FRAME_MSG = 1
_FRAME_FRAG = 2
_FRAME_SVEC = 3

_UINT32_MASK = 0xFFFFFFFF
_UINT64_MASK = 0xFFFFFFFFFFFFFFFF


def _varint(value: int) -> bytes:
    value &= _UINT64_MASK
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


class _Writer:
    """Accumulates protobuf fields, skipping proto3 default values."""

    def __init__(self) -> None:
        self._out = bytearray()

    def varint(self, field: int, value: int) -> None:
        if value:
            self._out += _varint((field << 3) | _WIRE_VARINT)
            self._out += _varint(value)

    def raw(self, field: int, data: bytes, *, always: bool = False) -> None:
        if data or always:
            self._out += _varint((field << 3) | _WIRE_BYTES)
            self._out += _varint(len(data))
            self._out += data

    def text(self, field: int, value: str) -> None:
        self.raw(field, value.encode("utf-8"))

    def getvalue(self) -> bytes:
        return bytes(self._out)


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data) or shift >= 70:
            raise InvalidFrameError()
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & _UINT64_MASK, pos
        shift += 7


def _fields(data: bytes) -> Iterator[tuple[int, int, Union[int, bytes]]]:
    """Yield (field number, wire type, value) for every field in *data*."""
    pos = 0
    while pos < len(data):
        key, pos = _read_varint(data, pos)
        field, wire = key >> 3, key & 0x07
        if field == 0:
            raise InvalidFrameError()
        if wire == _WIRE_VARINT:
            value, pos = _read_varint(data, pos)
            yield field, wire, value
        elif wire == _WIRE_BYTES:
            length, pos = _read_varint(data, pos)
            end = pos + length
            if end > len(data):
                raise InvalidFrameError()
            yield field, wire, data[pos:end]
            pos = end
        elif wire in (_WIRE_FIXED64, _WIRE_FIXED32):
            size = 8 if wire == _WIRE_FIXED64 else 4
            end = pos + size
            if end > len(data):
                raise InvalidFrameError()
            yield field, wire, data[pos:end]
            pos = end
        else:
            raise InvalidFrameError()


def _collect(data: bytes, schema: dict[int, int]) -> dict[int, Union[int, bytes]]:
    """Read the last value of each known field; unknown fields are skipped."""
    values: dict[int, Union[int, bytes]] = {}
    for field, wire, value in _fields(data):
        expected = schema.get(field)
        if expected is None:
            continue
        if expected != wire:
            raise InvalidFrameError()
        values[field] = value
    return values


def _text(value: Union[int, bytes, None]) -> str:
    if value is None:
        return ""
    try:
        return bytes(value).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidFrameError() from exc


# --- Msg -------------------------------------------------------------------

_MSG_SCHEMA = {
    1: _WIRE_BYTES,  # id
    2: _WIRE_BYTES,  # from_node
    3: _WIRE_VARINT,  # timestamp
    4: _WIRE_BYTES,  # channel
    5: _WIRE_BYTES,  # reply_to
    6: _WIRE_BYTES,  # body
    7: _WIRE_VARINT,  # seq
    8: _WIRE_BYTES,  # author
}


def _msg_to_pb(msg: Msg) -> bytes:
    writer = _Writer()
    writer.raw(1, bytes(msg.id))
    writer.text(2, msg.from_node)
    writer.varint(3, to_epoch(msg.time))
    writer.text(4, msg.channel)
    if msg.reply_to is not None:
        writer.raw(5, bytes(msg.reply_to))
    writer.text(6, msg.body)
    if msg.seq is not None:
        writer.varint(7, msg.seq & _UINT32_MASK)
    writer.text(8, msg.author)
    return writer.getvalue()


def _msg_from_pb(data: bytes) -> Msg:
    values = _collect(data, _MSG_SCHEMA)
    message_id = bytes(values.get(1, b""))
    if len(message_id) != ID_LENGTH:
        raise InvalidFrameError()
    reply = bytes(values.get(5, b""))
    seq = int(values.get(7, 0)) & _UINT32_MASK
    return Msg(
        id=message_id,
        from_node=_text(values.get(2)),
        time=from_epoch(int(values.get(3, 0)) & _UINT32_MASK),
        channel=_text(values.get(4)),
        body=_text(values.get(6)),
        reply_to=reply if len(reply) == ID_LENGTH else None,
        seq=seq if seq > 0 else None,
        author=_text(values.get(8)),
    )


# --- Frag ------------------------------------------------------------------

_FRAG_SCHEMA = {1: _WIRE_BYTES, 2: _WIRE_VARINT, 3: _WIRE_VARINT, 4: _WIRE_BYTES}


def _frag_to_pb(frag: Frag) -> bytes:
    writer = _Writer()
    writer.raw(1, bytes(frag.message_id))
    writer.varint(2, frag.idx & _UINT32_MASK)
    writer.varint(3, frag.total & _UINT32_MASK)
    writer.raw(4, bytes(frag.data))
    return writer.getvalue()


def _frag_from_pb(data: bytes) -> Frag:
    values = _collect(data, _FRAG_SCHEMA)
    message_id = bytes(values.get(1, b""))
    if len(message_id) != ID_LENGTH:
        raise InvalidFrameError()
    idx = int(values.get(2, 0)) & _UINT32_MASK
    total = int(values.get(3, 0)) & _UINT32_MASK
    if total < 1 or total > MAX_FRAGMENTS or idx >= total:
        raise InvalidFrameError()
    return Frag(message_id=message_id, idx=idx, total=total, data=bytes(values.get(4, b"")))


# --- Svec ------------------------------------------------------------------

_SVEC_ENTRY_SCHEMA = {1: _WIRE_BYTES, 2: _WIRE_VARINT}


def _svec_to_pb(svec: Svec) -> bytes:
    writer = _Writer()
    writer.text(1, svec.from_node)
    for node in sorted(svec.vector):
        entry = _Writer()
        entry.text(1, node)
        entry.varint(2, svec.vector[node] & _UINT32_MASK)
        writer.raw(2, entry.getvalue(), always=True)
    return writer.getvalue()


def _svec_from_pb(data: bytes) -> Svec:
    from_node = ""
    vector: dict[str, int] = {}
    for field, wire, value in _fields(data):
        if field == 1:
            if wire != _WIRE_BYTES:
                raise InvalidFrameError()
            from_node = _text(value)
        elif field == 2:
            if wire != _WIRE_BYTES:
                raise InvalidFrameError()
            entry = _collect(bytes(value), _SVEC_ENTRY_SCHEMA)
            vector[_text(entry.get(1))] = int(entry.get(2, 0)) & _UINT32_MASK
    return Svec(from_node=from_node, vector=vector)


# --- Public API ------------------------------------------------------------


def encode(frame: Frame) -> bytes:
    """Serialise a frame to its binary form for RF transmission."""
    if isinstance(frame, Msg):
        field, body = _FRAME_MSG, _msg_to_pb(frame)
    elif isinstance(frame, Frag):
        field, body = _FRAME_FRAG, _frag_to_pb(frame)
    elif isinstance(frame, Svec):
        field, body = _FRAME_SVEC, _svec_to_pb(frame)
    else:
        raise UnknownFrameTypeError()
    writer = _Writer()
    writer.raw(field, body, always=True)
    return writer.getvalue()


def decode(data: bytes | None) -> Frame:
    """Deserialise binary data received over RF into a frame."""
    payload: tuple[int, bytes] | None = None
    for field, wire, value in _fields(bytes(data or b"")):
        if field in (_FRAME_MSG, _FRAME_FRAG, _FRAME_SVEC):
            if wire != _WIRE_BYTES:
                raise InvalidFrameError()
            payload = (field, bytes(value))
    if payload is None:
        raise InvalidFrameError()
    field, body = payload
    if field == _FRAME_MSG:
        return _msg_from_pb(body)
    if field == _FRAME_FRAG:
        return _frag_from_pb(body)
    return _svec_from_pb(body)


def encode_msg_raw(msg: Msg) -> bytes:
    """Serialise a message without the frame wrapper, for fragmentation."""
    return _msg_to_pb(msg)


def decode_msg_raw(data: bytes) -> Msg:
    """Deserialise raw message bytes reassembled from fragments."""
    return _msg_from_pb(bytes(data or b""))