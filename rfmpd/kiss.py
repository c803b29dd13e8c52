"""KISS framing: byte stuffing and stream decoding for TNC links."""

from __future__ import annotations

import enum
from dataclasses import dataclass

__all__ = [
    "FEND",
    "FESC",
    "TFEND",
    "TFESC",
    "KISSCommand",
    "KISSFrame",
    "KISSProtocol",
    "decode_kiss_frame",
]

FEND = 0xC0
FESC = 0xDB
TFEND = 0xDC
TFESC = 0xDD


class KISSCommand(enum.IntEnum):
    """Command codes carried in the low nibble of a KISS type byte."""

    DATA_FRAME = 0x00
    TX_DELAY = 0x01
    PERSISTENCE = 0x02
    SLOT_TIME = 0x03
    TX_TAIL = 0x04
    FULL_DUPLEX = 0x05
    SET_HARDWARE = 0x06
    RETURN = 0x0F


_VALID_COMMANDS = frozenset(int(command) for command in KISSCommand)


@dataclass
class KISSFrame:
    """One KISS frame: port number, command and payload."""

    port: int
    command: KISSCommand
    data: bytes

    def encode(self) -> bytes:
        """Return the frame delimited by FEND with FEND and FESC escaped."""
        type_byte = ((self.port << 4) | int(self.command)) & 0xFF
        escaped = bytearray([FEND])
        for byte in bytes([type_byte]) + bytes(self.data):
            if byte == FEND:
                escaped += bytes((FESC, TFEND))
            elif byte == FESC:
                escaped += bytes((FESC, TFESC))
            else:
                escaped.append(byte)
        escaped.append(FEND)
        return bytes(escaped)


def decode_kiss_frame(data: bytes) -> KISSFrame | None:
    """Decode one delimited KISS frame, or return None if it is not valid."""
    body = bytes(data)
    if not body:
        return None
    if body[0] == FEND:
        body = body[1:]
    if body and body[-1] == FEND:
        body = body[:-1]
    if not body:
        return None

    unescaped = bytearray()
    escaping = False
    for byte in body:
        if escaping:
            if byte == TFEND:
                unescaped.append(FEND)
            elif byte == TFESC:
                unescaped.append(FESC)
            else:
                return None
            escaping = False
        elif byte == FESC:
            escaping = True
        else:
            unescaped.append(byte)
    if escaping or not unescaped:
        return None

    type_byte = unescaped[0]
    command = type_byte & 0x0F
    if command not in _VALID_COMMANDS:
        return None
    return KISSFrame(
        port=(type_byte >> 4) & 0x0F,
        command=KISSCommand(command),
        data=bytes(unescaped[1:]),
    )


class KISSProtocol:
    """Encodes outgoing data frames and splits an incoming byte stream into frames."""

    def __init__(self, port: int = 0) -> None:
        self.port = port
        self._buffer = bytearray()

    def encode_data(self, data: bytes) -> bytes:
        return KISSFrame(port=self.port, command=KISSCommand.DATA_FRAME, data=bytes(data)).encode()

    def reset(self) -> None:
        """Discard any partially received frame."""
        self._buffer = bytearray()

    def decode_frames(self, data: bytes) -> list[KISSFrame]:
        """Feed received bytes and return the complete data frames now available."""
        self._buffer += data
        frames: list[KISSFrame] = []
        while True:
            start = self._buffer.find(FEND)
            if start < 0:
                self._buffer = bytearray()
                break
            if start > 0:
                del self._buffer[:start]
            end = self._buffer.find(FEND, 1)
            if end < 0:
                break
            chunk = bytes(self._buffer[: end + 1])
            del self._buffer[: end + 1]
            frame = decode_kiss_frame(chunk)
            if frame is not None and frame.command == KISSCommand.DATA_FRAME:
                frames.append(frame)
        return frames