"""SQLite storage for messages, fragments, the transmission queue and sync state."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Sequence

__all__ = [
    "StorageError",
    "ChannelNotEmptyError",
    "ChannelNotFoundError",
    "MessageRow",
    "Database",
    "round_half_away",
]

_log = logging.getLogger(__name__)

_SEEN_CACHE_TABLE = """CREATE TABLE IF NOT EXISTS seen_cache (
    message_id TEXT NOT NULL,
    fragment_idx INTEGER NOT NULL DEFAULT -1,
    seen_at INTEGER NOT NULL,
    rebroadcast INTEGER DEFAULT 0,
    PRIMARY KEY (message_id, fragment_idx)
)"""

_SCHEMA = (
    """CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        from_node TEXT NOT NULL,
        author TEXT,
        timestamp TEXT NOT NULL,
        channel TEXT NOT NULL,
        reply_to TEXT,
        body TEXT NOT NULL,
        received_at INTEGER NOT NULL,
        transmitted_at INTEGER,
        rebroadcast_count INTEGER DEFAULT 0,
        seq INTEGER,
        raw_frame TEXT DEFAULT ''
    )""",
    "CREATE INDEX IF NOT EXISTS idx_messages_channel ON messages(channel)",
    "CREATE INDEX IF NOT EXISTS idx_messages_from_node ON messages(from_node)",
    "CREATE INDEX IF NOT EXISTS idx_messages_received_at ON messages(received_at)",
    "CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS idx_messages_from_node_seq ON messages(from_node, seq)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_from_node_seq_unique "
    "ON messages(from_node, seq) WHERE seq IS NOT NULL",
    """CREATE TABLE IF NOT EXISTS fragments (
        message_id TEXT NOT NULL,
        idx INTEGER NOT NULL,
        total INTEGER NOT NULL,
        data BLOB NOT NULL,
        received_at INTEGER NOT NULL,
        PRIMARY KEY (message_id, idx)
    )""",
    _SEEN_CACHE_TABLE,
    "CREATE INDEX IF NOT EXISTS idx_seen_cache_cleanup ON seen_cache(seen_at)",
    """CREATE TABLE IF NOT EXISTS transmission_queue (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        frame_type TEXT NOT NULL,
        frame_data TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        attempts INTEGER DEFAULT 0,
        created_at INTEGER NOT NULL,
        scheduled_at INTEGER NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_tx_queue_status ON transmission_queue(status, scheduled_at)",
    """CREATE TABLE IF NOT EXISTS nodes (
        callsign TEXT PRIMARY KEY,
        first_seen INTEGER NOT NULL,
        last_seen INTEGER NOT NULL,
        last_sync INTEGER,
        message_count INTEGER DEFAULT 0,
        sync_count INTEGER DEFAULT 0,
        req_count INTEGER DEFAULT 0,
        metadata TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS channels (
        name TEXT PRIMARY KEY,
        first_message INTEGER NOT NULL,
        last_message INTEGER NOT NULL,
        message_count INTEGER DEFAULT 0,
        unique_nodes INTEGER DEFAULT 0,
        metadata TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS users (
        username TEXT PRIMARY KEY,
        first_seen INTEGER NOT NULL,
        last_seen INTEGER NOT NULL,
        message_count INTEGER DEFAULT 0,
        last_activity TEXT,
        metadata TEXT
    )""",
)

_MIGRATIONS = (
    "ALTER TABLE messages ADD COLUMN transmitted_at INTEGER",
    "ALTER TABLE messages ADD COLUMN rebroadcast_count INTEGER DEFAULT 0",
    "ALTER TABLE nodes ADD COLUMN metadata TEXT",
    "ALTER TABLE channels ADD COLUMN metadata TEXT",
    # The seen cache is rebuilt on every start.
    "DROP TABLE IF EXISTS seen_cache",
    _SEEN_CACHE_TABLE,
    "CREATE INDEX IF NOT EXISTS idx_seen_cache_cleanup ON seen_cache(seen_at)",
    # Tables from earlier protocol versions.
    "DROP TABLE IF EXISTS bloom_windows",
    "DROP TABLE IF EXISTS request_tracking",
)

_MESSAGE_COLUMNS = (
    "id, from_node, author, timestamp, channel, reply_to, body, received_at, transmitted_at, seq"
)

_INSERT_MESSAGE = (
    "INSERT {verb} INTO messages (id, from_node, author, timestamp, channel, reply_to, body, "
    "received_at, seq, raw_frame) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
)


class StorageError(Exception):
    """Raised when a database operation fails."""


class ChannelNotEmptyError(StorageError):
    """Raised when deleting a channel that still holds messages."""

    def __init__(self, message: str = "channel has messages") -> None:
        super().__init__(message)


class ChannelNotFoundError(StorageError):
    """Raised when deleting a channel that does not exist."""

    def __init__(self, message: str = "channel not found") -> None:
        super().__init__(message)


def round_half_away(value: float) -> int:
    """Round to the nearest integer, halves away from zero."""
    if value < 0:
        return int(value - 0.5)
    return int(value + 0.5)


def _now() -> int:
    return int(time.time())


def _rfc3339(epoch: int) -> str:
    text = datetime.fromtimestamp(epoch).astimezone().isoformat(timespec="seconds")
    if text.endswith("+00:00"):
        text = text[:-6] + "Z"
    return text


@dataclass
class MessageRow:
    """One stored message."""

    id: str
    from_node: str
    author: str | None
    timestamp: str
    channel: str
    reply_to: str | None
    body: str
    received_at: int
    transmitted_at: int | None
    seq: int | None

    def to_api_dict(self) -> dict[str, Any]:
        """The message as served to API clients, with RFC 3339 times."""
        return {
            "id": self.id,
            "from_node": self.from_node,
            "author": self.author,
            "timestamp": self.timestamp,
            "channel": self.channel,
            "reply_to": self.reply_to,
            "body": self.body,
            "received_at": _rfc3339(self.received_at),
            "transmitted_at": (
                _rfc3339(self.transmitted_at) if self.transmitted_at is not None else None
            ),
        }


class Database:
    """Persistent store backed by a single SQLite connection."""

    def __init__(self, path: str) -> None:
        try:
            self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        self._lock = threading.RLock()
        for pragma in (
            "PRAGMA journal_mode=WAL",
            "PRAGMA synchronous=NORMAL",
            "PRAGMA foreign_keys=ON",
            "PRAGMA busy_timeout=5000",
        ):
            try:
                self._conn.execute(pragma)
            except sqlite3.Error:
                pass
        try:
            self._create_tables()
        except StorageError:
            self._conn.close()
            raise

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # --- low-level helpers ------------------------------------------------

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a statement and return the number of rows it changed."""
        with self._lock:
            try:
                return self._conn.execute(sql, params).rowcount
            except sqlite3.Error as exc:
                raise StorageError(str(exc)) from exc

    def _query(self, sql: str, params: Sequence[Any] = ()) -> list[tuple]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise StorageError(str(exc)) from exc

    def _query_one(self, sql: str, params: Sequence[Any] = ()) -> tuple | None:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchone()
            except sqlite3.Error as exc:
                raise StorageError(str(exc)) from exc

    def _create_tables(self) -> None:
        for statement in _SCHEMA:
            try:
                self._conn.execute(statement)
            except sqlite3.Error as exc:
                raise StorageError(f"failed to execute {statement[:50]!r}: {exc}") from exc
        for statement in _MIGRATIONS:
            try:
                self._conn.execute(statement)
            except sqlite3.Error:
                pass

    @staticmethod
    def _row(values: tuple) -> MessageRow:
        return MessageRow(*values)

    # --- messages ---------------------------------------------------------

    def save_message(self, msg: Mapping[str, Any]) -> bool:
        """Insert a message unless its ID is known; return True if it was new."""
        with self._lock:
            changed = self._execute(
                _INSERT_MESSAGE.format(verb="OR IGNORE"),
                (
                    msg.get("id"), msg.get("from_node"), msg.get("author"),
                    msg.get("timestamp"), msg.get("channel"), msg.get("reply_to"),
                    msg.get("body"), _now(), msg.get("seq"), msg.get("raw_frame"),
                ),
            )
            if changed == 0:
                return False
            self._update_channel_stats(msg["channel"], msg["from_node"])
            self._update_node_stats(msg["from_node"], "message")
            return True

    def save_message_with_seq(self, msg: Mapping[str, Any], from_node: str) -> tuple[bool, int]:
        """Insert a locally originated message with the node's next sequence number.

        Returns (True, seq). A duplicate ID raises StorageError.
        """
        with self._lock:
            row = self._query_one(
                "SELECT COALESCE(MAX(seq), 0) + 1 FROM messages WHERE from_node = ?",
                (from_node,),
            )
            next_seq = int(row[0]) if row else 1
            self._execute(
                _INSERT_MESSAGE.format(verb=""),
                (
                    msg.get("id"), msg.get("from_node"), msg.get("author"),
                    msg.get("timestamp"), msg.get("channel"), msg.get("reply_to"),
                    msg.get("body"), _now(), next_seq, msg.get("raw_frame"),
                ),
            )
            self._update_channel_stats(msg["channel"], from_node)
            self._update_node_stats(from_node, "message")
            return True, next_seq

    def get_message(self, message_id: str) -> MessageRow | None:
        row = self._query_one(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,)
        )
        return self._row(row) if row is not None else None

    def get_recent_messages(
        self, limit: int, channel: str | None = None, from_node: str | None = None
    ) -> list[MessageRow]:
        """Most recently received messages, optionally filtered."""
        conditions: list[str] = []
        params: list[Any] = []
        if channel is not None:
            conditions.append("channel = ?")
            params.append(channel)
        if from_node is not None:
            conditions.append("from_node = ?")
            params.append(from_node)
        sql = f"SELECT {_MESSAGE_COLUMNS} FROM messages"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY received_at DESC LIMIT ?"
        params.append(limit)
        return [self._row(row) for row in self._query(sql, params)]

    def get_message_count(self) -> int:
        row = self._query_one("SELECT COUNT(*) FROM messages")
        return int(row[0]) if row else 0

    def get_message_for_api(self, message_id: str) -> dict[str, Any] | None:
        row = self.get_message(message_id)
        return row.to_api_dict() if row is not None else None

    def get_recent_messages_for_api(
        self, limit: int, channel: str | None = None, from_node: str | None = None
    ) -> list[dict[str, Any]]:
        return [row.to_api_dict() for row in self.get_recent_messages(limit, channel, from_node)]

    def mark_message_transmitted(self, message_id: str) -> None:
        self._execute("UPDATE messages SET transmitted_at = ? WHERE id = ?", (_now(), message_id))

    def increment_rebroadcast_count(self, message_id: str) -> None:
        self._execute(
            "UPDATE messages SET rebroadcast_count = rebroadcast_count + 1 WHERE id = ?",
            (message_id,),
        )

    # --- seen cache -------------------------------------------------------

    def mark_seen(
        self, message_id: str, fragment_idx: int | None = None, rebroadcast: bool = False
    ) -> None:
        self._execute(
            "INSERT OR REPLACE INTO seen_cache (message_id, fragment_idx, seen_at, rebroadcast) "
            "VALUES (?, ?, ?, ?)",
            (message_id, -1 if fragment_idx is None else fragment_idx, _now(), int(rebroadcast)),
        )

    def mark_seen_if_new(self, message_id: str, fragment_idx: int | None = None) -> bool:
        """Record a sighting; return True if it had not been seen before."""
        changed = self._execute(
            "INSERT OR IGNORE INTO seen_cache (message_id, fragment_idx, seen_at, rebroadcast) "
            "VALUES (?, ?, ?, 0)",
            (message_id, -1 if fragment_idx is None else fragment_idx, _now()),
        )
        return changed > 0

    def cleanup_seen_cache(self, ttl_seconds: int) -> int:
        """Forget sightings older than the TTL; return how many were removed."""
        return self._execute(
            "DELETE FROM seen_cache WHERE seen_at < ?", (_now() - ttl_seconds,)
        )

    # --- sync state -------------------------------------------------------

    def get_vector_clock(self) -> dict[str, int]:
        """Highest gap-free sequence number stored for each node."""
        rows = self._query(
            "SELECT from_node, seq FROM messages WHERE seq IS NOT NULL ORDER BY from_node, seq"
        )
        contiguous: dict[str, int] = {}
        for node, seq in rows:
            current = contiguous.get(node, 0)
            if seq == current + 1:
                current = seq
            contiguous[node] = current
        return {node: seq for node, seq in contiguous.items() if seq > 0}

    def get_messages_after_seq(self, from_node: str, after_seq: int) -> list[MessageRow]:
        rows = self._query(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE from_node = ? AND seq > ? ORDER BY seq",
            (from_node, after_seq),
        )
        return [self._row(row) for row in rows]

    # --- transmission queue -----------------------------------------------

    def queue_transmission(self, frame_type: str, frame_data: str, delay_seconds: float) -> None:
        now = _now()
        scheduled = max(now, now + round_half_away(delay_seconds))
        self._execute(
            "INSERT INTO transmission_queue (frame_type, frame_data, status, created_at, "
            "scheduled_at) VALUES (?, ?, 'pending', ?, ?)",
            (frame_type, frame_data, now, scheduled),
        )

    def get_next_transmission(self) -> dict[str, Any] | None:
        """Claim the earliest due pending item, or return None if nothing is due."""
        with self._lock:
            row = self._query_one(
                "SELECT id, frame_type, frame_data FROM transmission_queue "
                "WHERE status = 'pending' AND scheduled_at <= ? "
                "ORDER BY scheduled_at ASC LIMIT 1",
                (_now(),),
            )
            if row is None:
                return None
            item_id, frame_type, frame_data = row
            self._execute(
                "UPDATE transmission_queue SET status = 'transmitting' WHERE id = ?", (item_id,)
            )
            return {"id": item_id, "frame_type": frame_type, "frame_data": frame_data}

    def mark_transmitted(self, item_id: int) -> None:
        self._execute("UPDATE transmission_queue SET status = 'sent' WHERE id = ?", (item_id,))

    def mark_transmission_failed(self, item_id: int, max_retries: int) -> None:
        """Retry in a minute, or give up once the retries are used."""
        with self._lock:
            row = self._query_one(
                "SELECT attempts FROM transmission_queue WHERE id = ?", (item_id,)
            )
            attempts = int(row[0] or 0) if row else 0
            if attempts >= max_retries - 1:
                self._execute(
                    "UPDATE transmission_queue SET status = 'failed', attempts = attempts + 1 "
                    "WHERE id = ?",
                    (item_id,),
                )
                return
            self._execute(
                "UPDATE transmission_queue SET status = 'pending', attempts = attempts + 1, "
                "scheduled_at = ? WHERE id = ?",
                (_now() + 60, item_id),
            )

    def cleanup_transmission_queue(self) -> None:
        """Drop old sent and failed items and release stale claims; errors are logged."""
        now = _now()
        for sql, params, what in (
            (
                "DELETE FROM transmission_queue WHERE status = 'sent' AND created_at < ?",
                (now - 3600,),
                "delete sent items",
            ),
            (
                "UPDATE transmission_queue SET status = 'pending' "
                "WHERE status = 'transmitting' AND scheduled_at < ?",
                (now - 60,),
                "reset stale transmitting items",
            ),
            (
                "DELETE FROM transmission_queue WHERE status = 'failed' AND created_at < ?",
                (now - 86400,),
                "delete failed items",
            ),
        ):
            try:
                self._execute(sql, params)
            except StorageError as exc:
                _log.error("cleanup: failed to %s: %s", what, exc)

    # --- nodes, channels, users -------------------------------------------

    def get_active_nodes(self, since_sec: int) -> list[dict[str, Any]]:
        rows = self._query(
            "SELECT callsign, first_seen, last_seen, last_sync, message_count, sync_count, "
            "req_count FROM nodes WHERE last_seen > ?",
            (_now() - since_sec,),
        )
        keys = (
            "callsign", "first_seen", "last_seen", "last_sync",
            "message_count", "sync_count", "req_count",
        )
        return [dict(zip(keys, row)) for row in rows]

    def get_channels(self) -> list[dict[str, Any]]:
        rows = self._query(
            "SELECT name, first_message, last_message, message_count, unique_nodes "
            "FROM channels ORDER BY last_message DESC"
        )
        keys = ("name", "first_message", "last_message", "message_count", "unique_nodes")
        return [dict(zip(keys, row)) for row in rows]

    def create_channel(self, name: str) -> None:
        now = _now()
        self._execute(
            "INSERT OR IGNORE INTO channels (name, first_message, last_message, message_count, "
            "unique_nodes) VALUES (?, ?, ?, 0, 0)",
            (name, now, now),
        )

    def delete_channel(self, name: str) -> None:
        """Delete an empty channel; raises if it has messages or does not exist."""
        with self._lock:
            row = self._query_one("SELECT COUNT(*) FROM messages WHERE channel = ?", (name,))
            if row and row[0] > 0:
                raise ChannelNotEmptyError()
            if self._execute("DELETE FROM channels WHERE name = ?", (name,)) == 0:
                raise ChannelNotFoundError()

    def update_user_stats(self, username: str) -> None:
        now = _now()
        try:
            self._execute(
                "INSERT INTO users (username, first_seen, last_seen, message_count) "
                "VALUES (?, ?, ?, 1) ON CONFLICT(username) DO UPDATE SET last_seen = ?, "
                "message_count = message_count + 1",
                (username, now, now, now),
            )
        except StorageError as exc:
            _log.error("update_user_stats failed for %s: %s", username, exc)

    def update_node_sync(self, callsign: str) -> None:
        """Record a sync vector received from a node."""
        self._update_node_stats(callsign, "sync")

    def _update_channel_stats(self, channel: str, from_node: str) -> None:
        now = _now()
        try:
            self._execute(
                "INSERT INTO channels (name, first_message, last_message, message_count, "
                "unique_nodes) VALUES (?, ?, ?, 1, 1) ON CONFLICT(name) DO UPDATE SET "
                "last_message = ?, message_count = message_count + 1",
                (channel, now, now, now),
            )
        except StorageError as exc:
            _log.error("channel stats update failed for %s: %s", channel, exc)
        try:
            self._execute(
                "UPDATE channels SET unique_nodes = (SELECT COUNT(DISTINCT from_node) "
                "FROM messages WHERE channel = ?) WHERE name = ?",
                (channel, channel),
            )
        except StorageError as exc:
            _log.error("channel unique_nodes update failed for %s: %s", channel, exc)

    def _update_node_stats(self, callsign: str, event: str) -> None:
        now = _now()
        try:
            if event == "message":
                self._execute(
                    "INSERT INTO nodes (callsign, first_seen, last_seen, message_count, "
                    "sync_count, req_count) VALUES (?, ?, ?, 1, 0, 0) ON CONFLICT(callsign) "
                    "DO UPDATE SET last_seen = ?, message_count = message_count + 1",
                    (callsign, now, now, now),
                )
            elif event == "sync":
                self._execute(
                    "INSERT INTO nodes (callsign, first_seen, last_seen, last_sync, "
                    "message_count, sync_count, req_count) VALUES (?, ?, ?, ?, 0, 1, 0) "
                    "ON CONFLICT(callsign) DO UPDATE SET last_seen = ?, last_sync = ?, "
                    "sync_count = sync_count + 1",
                    (callsign, now, now, now, now, now),
                )
        except StorageError as exc:
            _log.error("node stats update failed for %s (%s): %s", callsign, event, exc)

    # --- fragments --------------------------------------------------------

    def save_fragment(self, message_id: str, idx: int, total: int, data: bytes) -> None:
        self._execute(
            "INSERT OR IGNORE INTO fragments (message_id, idx, total, data, received_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (message_id, idx, total, bytes(data), _now()),
        )

    def cleanup_old_fragments(self, max_age_sec: int) -> int:
        """Delete fragments older than the given age; return how many were removed."""
        return self._execute(
            "DELETE FROM fragments WHERE received_at < ?", (_now() - max_age_sec,)
        )