"""The RFMP node: receives and relays frames, queues transmissions and syncs state."""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Protocol, Union

from rfmpd.config import Config
from rfmpd.direwolf import DirewolfClient
from rfmpd.fragmentation import Fragmenter
from rfmpd.frames import Frag, Msg, Svec
from rfmpd.message import (
    format_timestamp,
    generate_message_id,
    id_from_hex,
    id_to_hex,
    parse_timestamp,
    to_epoch,
)
from rfmpd.parser import decode, encode
from rfmpd.storage import Database, MessageRow, StorageError
from rfmpd.timing import Timing

__all__ = ["APIBroadcaster", "Daemon"]

MAX_SEND_RETRIES = 3
CLEANUP_INTERVAL = 300.0
SEEN_CACHE_TTL = 3600
FRAGMENT_MAX_AGE = 3600
ACTIVE_NODE_WINDOW = 3600
_JOIN_TIMEOUT = 5.0

_FRAME_CLASSES: dict[str, Any] = {"MSG": Msg, "FRAG": Frag, "SVEC": Svec}

Frame = Union[Msg, Frag, Svec]


class APIBroadcaster(Protocol):
    """Anything that can push a message to connected API clients."""

    def broadcast_message(self, data: dict[str, Any]) -> None:
        ...


def _rfc3339(moment: datetime) -> str:
    text = moment.astimezone().isoformat(timespec="seconds")
    if text.endswith("+00:00"):
        text = text[:-6] + "Z"
    return text


def _parse_frame_dict(text: str) -> dict[str, str] | None:
    """Parse queued frame data; it must be a JSON object of strings."""
    try:
        value = json.loads(text)
    except (TypeError, ValueError):
        return None
    if not isinstance(value, dict):
        return None
    if not all(isinstance(k, str) and isinstance(v, str) for k, v in value.items()):
        return None
    return value


class Daemon:
    """Bridges the radio network, the local store and the API."""

    def __init__(self, config: Config, logger: logging.Logger | None = None) -> None:
        self.config = config
        self.config_path = ""
        self.logger = logger or logging.getLogger(__name__)
        try:
            self.db = Database(config.storage.database_path)
        except StorageError as exc:
            raise StorageError(f"failed to open database: {exc}") from exc
        self.direwolf = DirewolfClient(
            config.network.direwolf_host,
            config.network.direwolf_port,
            config.node.callsign,
            config.node.ssid,
            float(config.network.reconnect_interval),
            self.logger,
        )
        self.timing = Timing(config.timing.base_delay, config.timing.jitter)
        self.fragmenter = Fragmenter(config.protocol.fragment_threshold)
        self._started = time.monotonic()
        self._api_server: APIBroadcaster | None = None
        self.direwolf.on_frame = self.handle_received_frame

    def set_api_server(self, server: APIBroadcaster | None) -> None:
        self._api_server = server

    # --- main loop --------------------------------------------------------

    def run(self, stop_event: threading.Event) -> None:
        """Run all background work until *stop_event* is set, then close the store."""
        if self.config.sync.sync_interval <= 0:
            raise ValueError("sync interval must be positive")
        workers = [
            threading.Thread(target=self._transmission_loop, args=(stop_event,), daemon=True),
            threading.Thread(target=self._sync_loop, args=(stop_event,), daemon=True),
            threading.Thread(target=self._cleanup_loop, args=(stop_event,), daemon=True),
        ]
        if not self.config.network.offline_mode:
            workers.insert(
                0, threading.Thread(target=self.direwolf.run, args=(stop_event,), daemon=True)
            )
        for worker in workers:
            worker.start()
        stop_event.wait()
        for worker in workers:
            worker.join(_JOIN_TIMEOUT)
        self.direwolf.close()
        self.db.close()

    def _transmission_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                item = self.db.get_next_transmission()
            except StorageError:
                stop_event.wait(1.0)
                continue
            if item is None:
                stop_event.wait(0.1)
                continue
            try:
                self._transmit(item, stop_event)
            except StorageError as exc:
                self.logger.error("Transmission queue error: %s", exc)

    def _transmit(self, item: dict[str, Any], stop_event: threading.Event) -> None:
        item_id = item["id"]
        frame_type = item["frame_type"]
        frame_dict = _parse_frame_dict(item["frame_data"])
        frame_class = _FRAME_CLASSES.get(frame_type)
        if frame_dict is None or frame_class is None:
            self.db.mark_transmitted(item_id)
            return
        try:
            frame = frame_class.from_dict(frame_dict)
        except (ValueError, KeyError, TypeError):
            self.db.mark_transmitted(item_id)
            return
        try:
            encoded = encode(frame)
        except ValueError as exc:
            self.logger.error("Failed to encode %s frame: %s", frame_type, exc)
            self.db.mark_transmitted(item_id)
            return
        try:
            self.direwolf.send_frame(encoded)
        except (OSError, ValueError):
            self.db.mark_transmission_failed(item_id, MAX_SEND_RETRIES)
            stop_event.wait(1.0)
            return

        self.db.mark_transmitted(item_id)
        self.timing.record_transmission()
        if frame_type == "MSG" and "id" in frame_dict:
            self.db.mark_message_transmitted(frame_dict["id"])

    def _sync_loop(self, stop_event: threading.Event) -> None:
        interval = float(self.config.sync.sync_interval)
        while not stop_event.wait(interval):
            self.broadcast_svec()

    def _cleanup_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(CLEANUP_INTERVAL):
            try:
                self.db.cleanup_seen_cache(SEEN_CACHE_TTL)
                self.db.cleanup_transmission_queue()
                self.db.cleanup_old_fragments(FRAGMENT_MAX_AGE)
            except StorageError as exc:
                self.logger.error("Cleanup failed: %s", exc)
            self.fragmenter.cleanup_expired()

    # --- receiving --------------------------------------------------------

    def handle_received_frame(self, info: bytes) -> None:
        """Decode a frame payload received over the air and act on it."""
        try:
            frame = decode(info)
        except ValueError as exc:
            self.logger.debug("Failed to decode frame: %s", exc)
            return
        if isinstance(frame, Msg):
            self._handle_msg(frame)
        elif isinstance(frame, Frag):
            self._handle_frag(frame)
        elif isinstance(frame, Svec):
            self._handle_svec(frame)

    def _handle_msg(self, msg: Msg) -> None:
        msg_id = id_to_hex(msg.id)
        try:
            if not self.db.mark_seen_if_new(msg_id):
                return
        except StorageError:
            return

        msg_data: dict[str, Any] = {
            "id": msg_id,
            "from_node": msg.from_node,
            "author": msg.author or None,
            "timestamp": format_timestamp(msg.time),
            "channel": msg.channel,
            "reply_to": id_to_hex(msg.reply_to) if msg.reply_to is not None else None,
            "body": msg.body,
            "seq": msg.seq,
            "raw_frame": "",
        }
        try:
            self.db.save_message(msg_data)
        except StorageError as exc:
            self.logger.error("Failed to save message %s: %s", msg_id, exc)

        if self._api_server is not None:
            self._api_server.broadcast_message(self._serialize_for_client(msg_data))

        if msg.from_node == self.config.full_callsign():
            return

        delay = self.timing.calculate_rebroadcast_delay()
        self._queue_message(msg, delay, delay)
        try:
            self.db.mark_seen(msg_id, None, True)
            self.db.increment_rebroadcast_count(msg_id)
        except StorageError as exc:
            self.logger.error("Failed to mark %s as rebroadcast: %s", msg_id, exc)

    def _handle_frag(self, frag: Frag) -> None:
        msg_id = id_to_hex(frag.message_id)
        try:
            if not self.db.mark_seen_if_new(msg_id, frag.idx):
                return
            self.db.save_fragment(msg_id, frag.idx, frag.total, frag.data)
        except StorageError:
            return
        _, reassembled = self.fragmenter.add_fragment(frag)
        if reassembled is not None:
            self._handle_msg(reassembled)

    def _handle_svec(self, svec: Svec) -> None:
        try:
            self.db.mark_seen(svec.from_node, None, False)
            self.db.update_node_sync(svec.from_node)
            our_clock = self.db.get_vector_clock()
        except StorageError:
            return

        to_check = dict(svec.vector)
        for node in our_clock:
            to_check.setdefault(node, 0)

        for node, remote_seq in to_check.items():
            if node == svec.from_node:
                continue
            try:
                rows = self.db.get_messages_after_seq(node, remote_seq)
            except StorageError:
                continue
            for row in rows:
                frame = self._message_row_to_frame(row)
                if frame is None:
                    continue
                delay = self.timing.calculate_rebroadcast_delay()
                self._queue_message(frame, delay, delay)

    # --- sending ----------------------------------------------------------

    def _queue(self, frame_type: str, frame: Frame, delay: float) -> None:
        try:
            self.db.queue_transmission(frame_type, json.dumps(frame.to_dict()), delay)
        except StorageError as exc:
            self.logger.error("Failed to queue %s frame: %s", frame_type, exc)

    def _queue_message(self, msg: Msg, base_delay: float, single_delay: float) -> None:
        """Queue a message whole, or as fragments when it is too large."""
        frags = self.fragmenter.fragment_message(msg)
        if not frags:
            self._queue("MSG", msg, single_delay)
            return
        for index, frag in enumerate(frags):
            delay = base_delay + self.timing.calculate_fragment_delay(index, len(frags))
            self._queue("FRAG", frag, delay)

    def broadcast_svec(self) -> None:
        """Queue a sync vector describing what this node holds."""
        try:
            clock = self.db.get_vector_clock()
        except StorageError:
            return
        svec = Svec(from_node=self.config.full_callsign(), vector=clock)
        self._queue("SVEC", svec, self.timing.calculate_sync_delay())

    def send_message(
        self,
        channel: str,
        body: str,
        reply_to: str | None = None,
        author: str | None = None,
    ) -> dict[str, Any]:
        """Store and queue a message from this node; return it as API clients see it."""
        from_node = self.config.full_callsign()
        sender_for_id = author if author else from_node

        now = datetime.now(timezone.utc)
        msg_id = generate_message_id(sender_for_id, to_epoch(now), body)
        msg_id_hex = id_to_hex(msg_id)

        msg_data: dict[str, Any] = {
            "id": msg_id_hex,
            "from_node": from_node,
            "author": author,
            "timestamp": format_timestamp(now),
            "channel": channel,
            "reply_to": reply_to,
            "body": body,
            "raw_frame": "",
        }
        _, seq = self.db.save_message_with_seq(msg_data, from_node)

        reply_id = None
        if reply_to is not None:
            try:
                reply_id = id_from_hex(reply_to)
            except ValueError:
                reply_id = None
        msg = Msg(
            id=msg_id,
            from_node=from_node,
            time=now,
            channel=channel,
            body=body,
            reply_to=reply_id,
            seq=seq,
            author=author or "",
        )
        self._queue_message(msg, 0.0, self.timing.calculate_delay())

        try:
            self.db.mark_seen(msg_id_hex, None, False)
        except StorageError as exc:
            self.logger.error("Failed to mark %s as seen: %s", msg_id_hex, exc)
        if author:
            self.db.update_user_stats(author)

        result = self._serialize_for_client(msg_data)
        if self._api_server is not None:
            self._api_server.broadcast_message(result)
        return result

    # --- API helpers ------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        def attempt(query: Any, fallback: Any) -> Any:
            try:
                return query()
            except StorageError:
                return fallback

        return {
            "uptime_seconds": time.monotonic() - self._started,
            "message_count": attempt(self.db.get_message_count, 0),
            "active_nodes": len(attempt(lambda: self.db.get_active_nodes(ACTIVE_NODE_WINDOW), [])),
            "vector_clock": attempt(self.db.get_vector_clock, {}),
            "timing": self.timing.get_stats(),
        }

    def get_config(self) -> tuple[str, int, str]:
        """Return (callsign, ssid, full callsign)."""
        node = self.config.node
        return node.callsign, node.ssid, self.config.full_callsign()

    def set_callsign(self, callsign: str, ssid: int) -> None:
        """Change the node's callsign and persist it when a config file is known."""
        self.config.node.callsign = callsign.upper()
        self.config.node.ssid = ssid
        self.direwolf.callsign = self.config.node.callsign
        self.direwolf.ssid = ssid
        path = self.config_path or self.config.loaded_from
        if path:
            try:
                self.config.save_to_file(path)
            except OSError as exc:
                self.logger.warning("Failed to persist config change: %s", exc)

    def get_full_config(self) -> Config:
        return self.config

    def save_config(self, cfg: Config) -> None:
        """Write *cfg* to the known config file; raises ValueError if none is known."""
        path = self.config_path or self.config.loaded_from
        if not path:
            raise ValueError("no config file path known")
        cfg.loaded_from = path
        cfg.save_to_file(path)

    def is_connected(self) -> bool:
        return self.direwolf.is_connected()

    def _message_row_to_frame(self, row: MessageRow) -> Msg | None:
        try:
            msg_id = id_from_hex(row.id)
            moment = parse_timestamp(row.timestamp)
        except ValueError:
            return None
        reply_id = None
        if row.reply_to is not None:
            try:
                reply_id = id_from_hex(row.reply_to)
            except ValueError:
                reply_id = None
        return Msg(
            id=msg_id,
            from_node=row.from_node,
            time=moment,
            channel=row.channel,
            body=row.body,
            reply_to=reply_id,
            seq=row.seq,
            author=row.author or "",
        )

    @staticmethod
    def _serialize_for_client(msg: dict[str, Any]) -> dict[str, Any]:
        result = {
            key: msg.get(key)
            for key in ("id", "from_node", "author", "timestamp", "channel", "reply_to", "body")
        }
        received = msg.get("received_at")
        if isinstance(received, int) and not isinstance(received, bool):
            result["received_at"] = _rfc3339(datetime.fromtimestamp(received, tz=timezone.utc))
        else:
            result["received_at"] = _rfc3339(datetime.now(timezone.utc))
        result["transmitted_at"] = None
        return result