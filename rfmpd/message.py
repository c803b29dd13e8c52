"""Message identifiers, timestamps and protocol error types."""

from __future__ import annotations

import hashlib
import math
import re
import struct
from datetime import datetime, timezone

__all__ = [
    "FrameError",
    "InvalidFrameError",
    "UnknownFrameTypeError",
    "generate_message_id",
    "id_to_hex",
    "id_from_hex",
    "to_epoch",
    "from_epoch",
    "format_timestamp",
    "parse_timestamp",
]

ID_LENGTH = 6
TIMESTAMP_FORMAT = "%Y%m%dT%H%M%SZ"

_HEX_ID = re.compile(r"[0-9a-fA-F]{12}")
_TIMESTAMP = re.compile(r"\d{8}T\d{6}Z")


class FrameError(ValueError):
    """Base class for frame encoding and decoding errors."""


class InvalidFrameError(FrameError):
    """Raised when received bytes are not a valid frame."""

    def __init__(self, message: str = "invalid protobuf frame") -> None:
        super().__init__(message)


class UnknownFrameTypeError(FrameError):
    """Raised when a frame is of a type the protocol does not know."""

    def __init__(self, message: str = "unknown frame type") -> None:
        super().__init__(message)


def _as_utc(moment: datetime) -> datetime:
    """Return *moment* in UTC; naive datetimes are taken to be UTC already."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def generate_message_id(from_node: str, epoch: int, body: str) -> bytes:
    """Return a deterministic 6-byte ID for a sender, epoch and body."""
    digest = hashlib.sha256()
    digest.update(from_node.encode("utf-8"))
    digest.update(struct.pack(">I", epoch & 0xFFFFFFFF))
    digest.update(body.encode("utf-8"))
    return digest.digest()[:ID_LENGTH]


def id_to_hex(message_id: bytes) -> str:
    """Return the 12-character hex form of a message ID."""
    return bytes(message_id).hex()


def id_from_hex(text: str) -> bytes:
    """Parse a 12-character hex string into a 6-byte message ID."""
    if not isinstance(text, str) or not _HEX_ID.fullmatch(text):
        raise ValueError(f"invalid message ID: {text}")
    return bytes.fromhex(text)


def to_epoch(moment: datetime) -> int:
    """Convert a datetime to an unsigned 32-bit Unix epoch."""
    return math.floor(_as_utc(moment).timestamp()) & 0xFFFFFFFF


def from_epoch(epoch: int) -> datetime:
    """Convert a Unix epoch to an aware UTC datetime."""
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Format a datetime as YYYYMMDDTHHMMSSZ in UTC."""
    return _as_utc(moment).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(text: str) -> datetime:
    """Parse a YYYYMMDDTHHMMSSZ string into an aware UTC datetime."""
    if not isinstance(text, str) or not _TIMESTAMP.fullmatch(text):
        raise ValueError(f"invalid timestamp: {text}")
    try:
        parsed = datetime.strptime(text, TIMESTAMP_FORMAT)
    except ValueError as exc:
        raise ValueError(f"invalid timestamp: {text}") from exc
    return parsed.replace(tzinfo=timezone.utc)