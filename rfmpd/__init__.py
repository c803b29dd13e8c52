"""RFMP daemon: mesh messaging over AX.25 packet radio, with KISS, framing and SQLite storage."""

__version__ = "0.5.2"

__all__ = ["__version__"]