"""RFMP frame types: messages, fragments and state vectors."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping

from rfmpd.message import format_timestamp, id_from_hex, id_to_hex, parse_timestamp

__all__ = ["FrameType", "Msg", "Frag", "Svec", "is_valid_channel"]

_INTEGER = re.compile(r"[+-]?[0-9]+")
_HEX_BYTES = re.compile(r"(?:[0-9a-fA-F]{2})*")


class FrameType(str, enum.Enum):
    """Kinds of frame carried on the wire."""

    MSG = "MSG"
    FRAG = "FRAG"
    SVEC = "SVEC"


def _parse_int(text: str) -> int:
    if not _INTEGER.fullmatch(text):
        raise ValueError(f"not an integer: {text!r}")
    return int(text)


def is_valid_channel(channel: str) -> bool:
    """Return True if the channel is ASCII and has no uppercase letters."""
    return all(ord(c) <= 127 and not ("A" <= c <= "Z") for c in channel)


@dataclass
class Msg:
    """A message with a unique ID, sender, timestamp, channel and body."""

    id: bytes
    from_node: str
    time: datetime
    channel: str
    body: str
    reply_to: bytes | None = None
    seq: int | None = None
    author: str = ""

    def frame_type(self) -> FrameType:
        return FrameType.MSG

    def to_dict(self) -> dict[str, str]:
        result = {
            "id": id_to_hex(self.id),
            "from": self.from_node,
            "time": format_timestamp(self.time),
            "chan": self.channel,
            "reply": id_to_hex(self.reply_to) if self.reply_to is not None else "",
            "body": self.body,
            "author": self.author,
        }
        if self.seq is not None:
            result["seq"] = str(self.seq)
        return result

    @classmethod
    def from_dict(cls, d: Mapping[str, str]) -> "Msg":
        message_id = id_from_hex(d.get("id", ""))

        channel = d.get("chan", "")
        if not is_valid_channel(channel):
            raise ValueError("channel must be ASCII without uppercase letters")

        moment = parse_timestamp(d.get("time", ""))

        reply_to = None
        reply = d.get("reply", "")
        if reply not in ("", "-"):
            try:
                reply_to = id_from_hex(reply)
            except ValueError as exc:
                raise ValueError(f"invalid reply_to ID: {reply}") from exc

        seq = None
        seq_text = d.get("seq", "")
        if seq_text:
            try:
                seq = _parse_int(seq_text)
            except ValueError:
                seq = None
            if seq is None or seq < 1:
                raise ValueError(f"seq must be >= 1, got {seq_text}")

        return cls(
            id=message_id,
            from_node=d.get("from", ""),
            time=moment,
            channel=channel,
            body=d.get("body", ""),
            reply_to=reply_to,
            seq=seq,
            author=d.get("author", ""),
        )


@dataclass
class Frag:
    """One fragment of a message that exceeded the transmission threshold."""

    message_id: bytes
    idx: int
    total: int
    data: bytes

    def frame_type(self) -> FrameType:
        return FrameType.FRAG

    def to_dict(self) -> dict[str, str]:
        return {
            "msgid": id_to_hex(self.message_id),
            "idx": str(self.idx),
            "total": str(self.total),
            "data": bytes(self.data).hex(),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, str]) -> "Frag":
        message_id = id_from_hex(d.get("msgid", ""))
        idx_text = d.get("idx", "")
        total_text = d.get("total", "")
        try:
            idx = _parse_int(idx_text)
        except ValueError as exc:
            raise ValueError(f"invalid idx: {idx_text}") from exc
        try:
            total = _parse_int(total_text)
        except ValueError as exc:
            raise ValueError(f"invalid total: {total_text}") from exc
        if idx < 0 or idx >= total:
            raise ValueError(f"invalid fragment index {idx}/{total}")
        data_text = d.get("data", "")
        if not _HEX_BYTES.fullmatch(data_text):
            raise ValueError(f"invalid hex data: {data_text!r}")
        return cls(message_id=message_id, idx=idx, total=total, data=bytes.fromhex(data_text))


@dataclass
class Svec:
    """A state vector: the sender's view of each node's sequence number."""

    from_node: str
    vector: dict[str, int] = field(default_factory=dict)

    def frame_type(self) -> FrameType:
        return FrameType.SVEC

    def to_dict(self) -> dict[str, str]:
        entries = ",".join(f"{node}:{self.vector[node]}" for node in sorted(self.vector))
        return {"from": self.from_node, "vec": entries}

    @classmethod
    def from_dict(cls, d: Mapping[str, str]) -> "Svec":
        from_node = d.get("from", "")
        if not from_node:
            raise ValueError("from must be non-empty")

        vector: dict[str, int] = {}
        vec_text = d.get("vec", "")
        if vec_text:
            for entry in vec_text.split(","):
                if ":" not in entry:
                    continue
                callsign, _, seq_text = entry.rpartition(":")
                try:
                    vector[callsign] = _parse_int(seq_text)
                except ValueError as exc:
                    raise ValueError(f"invalid seq in vector: {entry}") from exc
        return cls(from_node=from_node, vector=vector)