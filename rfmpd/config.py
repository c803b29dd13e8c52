"""Daemon configuration loaded from YAML, with defaults for unset fields."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from typing import Any

import yaml

__all__ = [
    "NodeConfig",
    "NetworkConfig",
    "ProtocolConfig",
    "TimingConfig",
    "SyncConfig",
    "StorageConfig",
    "APIConfig",
    "LoggingConfig",
    "Config",
    "default_config",
    "load",
    "expand_path",
]


@dataclass
class NodeConfig:
    callsign: str = "N0CALL"
    ssid: int = 0


@dataclass
class NetworkConfig:
    direwolf_host: str = "127.0.0.1"
    direwolf_port: int = 8001
    reconnect_interval: int = 5
    offline_mode: bool = False


@dataclass
class ProtocolConfig:
    fragment_threshold: int = 200


@dataclass
class TimingConfig:
    base_delay: float = 0.2
    jitter: float = 0.4


@dataclass
class SyncConfig:
    sync_interval: int = 60


@dataclass
class StorageConfig:
    database_path: str = "/var/lib/rfmpd/messages.db"


@dataclass
class APIConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: list[str] = field(default_factory=lambda: ["*"])


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str = ""
    max_size: int = 10485760
    backup_count: int = 5


_SECTIONS = ("node", "network", "protocol", "timing", "sync", "storage", "api", "logging")


@dataclass
class Config:
    """Complete daemon configuration."""

    node: NodeConfig = field(default_factory=NodeConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    protocol: ProtocolConfig = field(default_factory=ProtocolConfig)
    timing: TimingConfig = field(default_factory=TimingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    api: APIConfig = field(default_factory=APIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    loaded_from: str = ""

    def full_callsign(self) -> str:
        """Callsign with "-SSID" appended when the SSID is not zero."""
        if self.node.ssid == 0:
            return self.node.callsign
        return f"{self.node.callsign}-{self.node.ssid}"

    def to_dict(self) -> dict[str, Any]:
        """All persisted settings as plain data, without the load path."""
        return {name: asdict(getattr(self, name)) for name in _SECTIONS}

    def save_to_file(self, path: str) -> None:
        """Write the configuration as YAML, creating the directory if needed."""
        text = yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)
        directory = os.path.dirname(path)
        if directory and directory != ".":
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(text)


def default_config() -> Config:
    return Config()


def _coerce(name: str, current: Any, value: Any) -> Any:
    """Convert a YAML value to the type of the setting it replaces."""
    if value is None:
        return [] if isinstance(current, list) else current
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
    elif isinstance(current, int):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
    elif isinstance(current, float):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    elif isinstance(current, str):
        if isinstance(value, bool):
            return "true" if value else "false"
        if not isinstance(value, (dict, list)):
            return str(value)
    elif isinstance(current, list):
        if isinstance(value, list):
            return [_coerce(name, "", item) for item in value]
    raise ValueError(f"cannot use {value!r} for {name}")


def _apply(cfg: Config, document: Any) -> None:
    """Overlay a parsed YAML document onto *cfg*, keeping unset values."""
    if document is None:
        return
    if not isinstance(document, dict):
        raise ValueError("configuration document must be a mapping")
    for section_name, section_values in document.items():
        if section_name not in _SECTIONS or section_values is None:
            continue
        if not isinstance(section_values, dict):
            raise ValueError(f"section {section_name!r} must be a mapping")
        section = getattr(cfg, section_name)
        known = {f.name for f in fields(section)}
        for key, value in section_values.items():
            if key not in known:
                continue
            current = getattr(section, key)
            setattr(section, key, _coerce(f"{section_name}.{key}", current, value))


def _read(path: str) -> str:
    with open(path, encoding="utf-8") as handle:
        return handle.read()


def load(path: str | None = None) -> Config:
    """Load configuration from *path*, or from the first default location found.

    The default locations are ./config.yaml, ~/.config/rfmpd/config.yaml and
    /etc/rfmpd/config.yaml. Without any file the defaults are returned.
    """
    cfg = default_config()

    if path:
        _apply(cfg, yaml.safe_load(_read(path)))
        cfg.loaded_from = path
    else:
        for candidate in (
            "config.yaml",
            expand_path("~/.config/rfmpd/config.yaml"),
            "/etc/rfmpd/config.yaml",
        ):
            try:
                text = _read(candidate)
            except OSError:
                continue
            _apply(cfg, yaml.safe_load(text))
            cfg.loaded_from = candidate
            break

    cfg.storage.database_path = expand_path(cfg.storage.database_path)
    cfg.logging.file = expand_path(cfg.logging.file)
    return cfg


def expand_path(path: str) -> str:
    """Replace a leading ~ with the user's home directory."""
    if not path:
        return path
    if path == "~" or path.startswith("~/"):
        home = os.path.expanduser("~")
        if home == "~" or not home:
            return path
        if path == "~":
            return home
        return os.path.normpath(os.path.join(home, path[2:]))
    return path