"""Splitting large messages into fragments and reassembling them."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from rfmpd.frames import Frag, Msg
from rfmpd.message import FrameError, id_to_hex
from rfmpd.parser import MAX_FRAGMENTS, decode_msg_raw, encode_msg_raw

__all__ = ["FragmentCollector", "Fragmenter", "MAX_FRAGMENTS"]

FRAG_OVERHEAD = 15
DEFAULT_TIMEOUT = timedelta(minutes=5)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FragmentCollector:
    """Gathers the fragments of one message until all have arrived."""

    message_id: bytes
    total_fragments: int
    fragments: dict[int, bytes] = field(default_factory=dict)
    first_seen: datetime = field(default_factory=_now)
    timeout: timedelta = DEFAULT_TIMEOUT

    def add_fragment(self, frag: Frag) -> bool:
        """Store a fragment; return False if it is foreign or a duplicate."""
        if bytes(frag.message_id) != bytes(self.message_id):
            return False
        if frag.total != self.total_fragments:
            return False
        if frag.idx in self.fragments:
            return False
        self.fragments[frag.idx] = bytes(frag.data)
        return True

    def is_complete(self) -> bool:
        return len(self.fragments) == self.total_fragments

    def is_expired(self) -> bool:
        return _now() - self.first_seen > self.timeout

    def get_missing_indexes(self) -> list[int]:
        return [i for i in range(self.total_fragments) if i not in self.fragments]

    def reassemble(self) -> bytes | None:
        """Join the fragments in order, or return None if any are missing."""
        if not self.is_complete():
            return None
        return b"".join(self.fragments.get(i, b"") for i in range(self.total_fragments))


class Fragmenter:
    """Splits messages above a size threshold and reassembles received fragments."""

    def __init__(self, threshold: int) -> None:
        self.threshold = threshold
        self.collectors: dict[str, FragmentCollector] = {}
        self._lock = threading.Lock()

    def fragment_message(self, msg: Msg) -> list[Frag]:
        """Return the fragments of *msg*, or an empty list if it fits whole."""
        encoded = encode_msg_raw(msg)
        if len(encoded) <= self.threshold:
            return []
        size = max(1, self.threshold - FRAG_OVERHEAD)
        total = math.ceil(len(encoded) / size)
        return [
            Frag(message_id=msg.id, idx=i, total=total, data=encoded[i * size:(i + 1) * size])
            for i in range(total)
        ]

    def add_fragment(self, frag: Frag) -> tuple[bool, Msg | None]:
        """Add a received fragment; return (is_new, reassembled message or None)."""
        if frag.total > MAX_FRAGMENTS:
            return False, None

        with self._lock:
            key = id_to_hex(frag.message_id)
            collector = self.collectors.get(key)
            if collector is None:
                collector = FragmentCollector(bytes(frag.message_id), frag.total)
                self.collectors[key] = collector

            is_new = collector.add_fragment(frag)

            if collector.is_complete():
                data = collector.reassemble()
                if data is not None:
                    try:
                        msg = decode_msg_raw(data)
                    except FrameError:
                        return is_new, None
                    del self.collectors[key]
                    return is_new, msg

            return is_new, None

    def cleanup_expired(self) -> list[str]:
        """Drop collectors that have timed out and return their keys."""
        with self._lock:
            expired = [key for key, collector in self.collectors.items() if collector.is_expired()]
            for key in expired:
                del self.collectors[key]
            return expired