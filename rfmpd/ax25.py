"""AX.25 addresses and UI frames."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

__all__ = [
    "AX25Address",
    "AX25Frame",
    "parse_address",
    "decode_address",
    "decode_frame",
    "create_ui_frame",
]

UI_CONTROL = 0x03
NO_LAYER3_PID = 0xF0

_INTEGER = re.compile(r"[+-]?[0-9]+")


@dataclass
class AX25Address:
    """A station callsign with its secondary station identifier (SSID)."""

    callsign: str
    ssid: int = 0

    @classmethod
    def create(cls, callsign: str, ssid: int) -> "AX25Address":
        """Build a validated address; the callsign is upper-cased."""
        callsign = callsign.upper()
        if len(callsign.encode("utf-8")) > 6:
            raise ValueError(f"callsign too long: {callsign}")
        if not 0 <= ssid <= 15:
            raise ValueError(f"SSID must be 0-15, got {ssid}")
        return cls(callsign=callsign, ssid=ssid)

    def __str__(self) -> str:
        if self.ssid == 0:
            return self.callsign
        return f"{self.callsign}-{self.ssid}"

    def encode(self, is_last: bool) -> bytes:
        """Return the 7-byte shifted address field."""
        padded = self.callsign.encode("utf-8").ljust(6, b" ")[:6]
        result = bytearray((byte << 1) & 0xFF for byte in padded)
        ssid_byte = (0x60 | (self.ssid << 1)) & 0xFF
        if is_last:
            ssid_byte |= 0x01
        result.append(ssid_byte)
        return bytes(result)


def parse_address(text: str) -> AX25Address:
    """Parse "CALL" or "CALL-SSID" into an address."""
    callsign, dash, ssid_text = text.partition("-")
    if not dash:
        return AX25Address.create(text, 0)
    if not _INTEGER.fullmatch(ssid_text):
        raise ValueError(f"invalid SSID in address: {text!r}")
    ssid = int(ssid_text)
    if not 0 <= ssid <= 15:
        raise ValueError(f"SSID out of range (0-15): {ssid}")
    return AX25Address.create(callsign, ssid)


def decode_address(data: bytes) -> AX25Address | None:
    """Decode a 7-byte address field, or return None if the length is wrong."""
    if len(data) != 7:
        return None
    chars = bytes(c for c in (byte >> 1 for byte in data[:6]) if c != ord(" "))
    return AX25Address(callsign=chars.decode("ascii"), ssid=(data[6] >> 1) & 0x0F)


@dataclass
class AX25Frame:
    """An AX.25 frame with addresses, control, PID and information field."""

    destination: AX25Address
    source: AX25Address
    digipeaters: list[AX25Address] = field(default_factory=list)
    control: int = UI_CONTROL
    pid: int = NO_LAYER3_PID
    info: bytes = b""

    def encode(self) -> bytes:
        parts = [
            self.destination.encode(False),
            self.source.encode(not self.digipeaters),
        ]
        last = len(self.digipeaters) - 1
        parts.extend(digi.encode(i == last) for i, digi in enumerate(self.digipeaters))
        parts.append(bytes((self.control & 0xFF, self.pid & 0xFF)))
        parts.append(bytes(self.info))
        return b"".join(parts)


def decode_frame(data: bytes) -> AX25Frame | None:
    """Decode an AX.25 frame, or return None if it is too short or truncated."""
    data = bytes(data)
    if len(data) < 16:
        return None
    destination = decode_address(data[0:7])
    source = decode_address(data[7:14])
    if destination is None or source is None:
        return None

    digipeaters: list[AX25Address] = []
    idx = 14
    if data[13] & 0x01 == 0:
        while idx + 7 <= len(data):
            digi = decode_address(data[idx:idx + 7])
            if digi is None:
                break
            digipeaters.append(digi)
            idx += 7
            if data[idx - 1] & 0x01:
                break

    if idx >= len(data):
        return None
    control = data[idx]
    idx += 1
    if idx >= len(data):
        return None
    pid = data[idx]
    idx += 1

    return AX25Frame(
        destination=destination,
        source=source,
        digipeaters=digipeaters,
        control=control,
        pid=pid,
        info=data[idx:],
    )


def create_ui_frame(source: str, destination: str, info: bytes) -> AX25Frame:
    """Build an unnumbered-information frame with no layer-3 protocol."""
    return AX25Frame(
        destination=parse_address(destination),
        source=parse_address(source),
        control=UI_CONTROL,
        pid=NO_LAYER3_PID,
        info=bytes(info),
    )