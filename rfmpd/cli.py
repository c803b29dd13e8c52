"""Command-line entry point for the RFMP daemon."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from importlib import metadata
from typing import Sequence

import yaml

from rfmpd.config import load
from rfmpd.daemon import Daemon
from rfmpd.storage import StorageError

__all__ = ["RotatingWriter", "main"]

_LOG_FORMAT = "time=%(asctime)s level=%(levelname)s msg=%(message)s"


def _version() -> str:
    try:
        return metadata.version("rfmpd")
    except metadata.PackageNotFoundError:
        return "dev"


class RotatingWriter:
    """A writable stream that rotates its file once it would exceed a size limit."""

    def __init__(self, path: str, max_size: int = 0, backup_count: int = 0) -> None:
        self.path = path
        self.max_size = max_size
        self.backup_count = backup_count
        self._lock = threading.Lock()
        self._file = None
        self._size = 0

    def write(self, data: str | bytes) -> int:
        """Append *data*, rotating first if the limit would be passed; return its length."""
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        with self._lock:
            if self._file is None:
                self._open()
            if self.max_size > 0 and self._size + len(payload) > self.max_size:
                self._rotate()
            written = self._file.write(payload)
            self._file.flush()
            self._size += written
        return len(data)

    def flush(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.flush()

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    def _open(self) -> None:
        self._file = open(self.path, "ab")
        self._size = os.fstat(self._file.fileno()).st_size

    def _rotate(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
        for index in range(self.backup_count - 1, 0, -1):
            try:
                os.replace(f"{self.path}.{index}", f"{self.path}.{index + 1}")
            except OSError:
                pass
        try:
            if self.backup_count > 0:
                os.replace(self.path, f"{self.path}.1")
            else:
                os.remove(self.path)
        except OSError:
            pass
        self._open()


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="rfmpd",
        description="RFMP daemon: resilient mesh messaging over AX.25 packet radio.",
    )
    parser.add_argument("-c", dest="config", default="", help="path to config file")
    parser.add_argument("-v", dest="verbose", action="store_true", help="verbose logging")
    parser.add_argument(
        "-version", "--version", dest="show_version", action="store_true",
        help="print version and exit",
    )
    parser.add_argument(
        "-sim", "--sim", dest="sim", action="store_true",
        help="connect to RF simulator broker instead of Direwolf",
    )
    parser.add_argument(
        "-sim-port", "--sim-port", dest="sim_port", type=int, default=8055,
        help="RF simulator broker port",
    )
    return parser.parse_args(argv)


def _log_level(verbose: bool, name: str) -> int:
    if verbose:
        return logging.DEBUG
    name = (name or "").upper()
    if name == "DEBUG":
        return logging.DEBUG
    if name in ("WARNING", "WARN"):
        return logging.WARNING
    if name == "ERROR":
        return logging.ERROR
    return logging.INFO


def _ensure_parent(path: str) -> None:
    directory = os.path.dirname(path)
    if directory and directory != ".":
        os.makedirs(directory, mode=0o755, exist_ok=True)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the daemon until interrupted; return the process exit status."""
    args = _parse_args(argv)

    if args.show_version:
        print(_version())
        return 0

    try:
        cfg = load(args.config)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"Failed to load config: {exc}", file=sys.stderr)
        return 1

    if args.sim:
        cfg.network.direwolf_host = "127.0.0.1"
        cfg.network.direwolf_port = args.sim_port
        cfg.network.offline_mode = False

    logger = logging.getLogger("rfmpd")
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    writer: RotatingWriter | None = None
    if cfg.logging.file:
        try:
            _ensure_parent(cfg.logging.file)
        except OSError as exc:
            directory = os.path.dirname(cfg.logging.file)
            print(f"FATAL: cannot create log directory {directory}: {exc}", file=sys.stderr)
            return 1
        writer = RotatingWriter(
            cfg.logging.file, int(cfg.logging.max_size), int(cfg.logging.backup_count)
        )
        handlers.append(logging.StreamHandler(writer))

    formatter = logging.Formatter(_LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(_log_level(args.verbose, cfg.logging.level))
    logger.propagate = False

    try:
        return _serve(cfg, args, logger)
    finally:
        for handler in handlers:
            logger.removeHandler(handler)
            handler.close()
        if writer is not None:
            writer.close()


def _serve(cfg, args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        _ensure_parent(cfg.storage.database_path)
    except OSError as exc:
        directory = os.path.dirname(cfg.storage.database_path)
        print(f"FATAL: cannot create database directory {directory}: {exc}", file=sys.stderr)
        return 1

    logger.info(
        "Starting RFMP daemon callsign=%s ssid=%d offline=%s",
        cfg.node.callsign, cfg.node.ssid, cfg.network.offline_mode,
    )

    try:
        daemon = Daemon(cfg, logger)
    except StorageError as exc:
        print(f"Failed to initialize daemon: {exc}", file=sys.stderr)
        return 1
    daemon.config_path = args.config

    stop_event = threading.Event()

    def _shutdown(signum, frame) -> None:
        logger.info("Shutting down...")
        stop_event.set()

    previous: dict[int, object] = {}
    if threading.current_thread() is threading.main_thread():
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, _shutdown)
    try:
        daemon.run(stop_event)
    except (ValueError, StorageError) as exc:
        logger.error("Daemon error: %s", exc)
        return 1
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
    return 0