"""TCP KISS client for the Direwolf software TNC, with reconnection."""

from __future__ import annotations

import logging
import socket
import threading
from typing import Callable

from rfmpd.ax25 import NO_LAYER3_PID, UI_CONTROL, create_ui_frame, decode_frame
from rfmpd.kiss import KISSProtocol

__all__ = ["DirewolfClient"]

CONNECT_TIMEOUT = 5.0
READ_TIMEOUT = 1.0
DESTINATION = "RFMP"


class DirewolfClient:
    """Sends and receives AX.25 UI frames through Direwolf's KISS TCP port."""

    def __init__(
        self,
        host: str,
        port: int,
        callsign: str,
        ssid: int,
        reconnect_interval: float,
        logger: logging.Logger | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.callsign = callsign
        self.ssid = ssid
        self.reconnect_interval = reconnect_interval
        self.on_frame: Callable[[bytes], None] | None = None
        self._logger = logger or logging.getLogger(__name__)
        self._kiss = KISSProtocol(0)
        self._lock = threading.Lock()
        self._sock: socket.socket | None = None
        self._connected = False

    def is_connected(self) -> bool:
        with self._lock:
            return self._connected

    def run(self, stop_event: threading.Event) -> None:
        """Connect and receive until *stop_event* is set, reconnecting on failure."""
        while True:
            if stop_event.is_set():
                self.close()
                return
            try:
                self.connect()
            except OSError as exc:
                self._logger.warning("Failed to connect to Direwolf: %s", exc)
                if stop_event.wait(self.reconnect_interval):
                    return
                continue
            self.receive_loop(stop_event)

    def connect(self) -> None:
        """Open the TCP connection; raises OSError on failure."""
        sock = socket.create_connection((self.host, self.port), timeout=CONNECT_TIMEOUT)
        sock.settimeout(READ_TIMEOUT)
        with self._lock:
            self._sock = sock
            self._connected = True
        self._kiss.reset()
        self._logger.info("Connected to Direwolf at %s:%d", self.host, self.port)

    def close(self) -> None:
        with self._lock:
            if self._sock is not None:
                try:
                    self._sock.close()
                except OSError:
                    pass
                self._sock = None
            self._connected = False

    def receive_loop(self, stop_event: threading.Event) -> None:
        """Read frames and pass UI payloads to on_frame until stopped or disconnected."""
        while True:
            if stop_event.is_set():
                self.close()
                return
            with self._lock:
                sock = self._sock
            if sock is None:
                return
            try:
                data = sock.recv(4096)
            except socket.timeout:
                continue
            except OSError as exc:
                self._logger.warning("Direwolf connection lost: %s", exc)
                self.close()
                return
            if not data:
                self._logger.warning("Direwolf connection lost: connection closed")
                self.close()
                return

            for kiss_frame in self._kiss.decode_frames(data):
                frame = decode_frame(kiss_frame.data)
                if (
                    frame is not None
                    and frame.control == UI_CONTROL
                    and frame.pid == NO_LAYER3_PID
                    and self.on_frame is not None
                ):
                    self.on_frame(frame.info)

    def send_frame(self, info: bytes) -> None:
        """Wrap *info* in a UI frame addressed to RFMP and send it."""
        with self._lock:
            sock = self._sock
        if sock is None:
            raise ConnectionError("not connected")
        frame = create_ui_frame(self.full_callsign(), DESTINATION, info)
        sock.sendall(self._kiss.encode_data(frame.encode()))

    def full_callsign(self) -> str:
        if self.ssid == 0:
            return self.callsign
        return f"{self.callsign}-{self.ssid}"