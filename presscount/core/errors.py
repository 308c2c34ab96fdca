# presscount/core/errors.py
# Exception hierarchy shared by reader, recorder, orchestrator and app

from __future__ import annotations


class PressCountError(Exception):
    """Base class for all presscount errors."""


class ConfigurationError(PressCountError):
    """Bad or missing configuration (no active devices, malformed machine entry)."""


class TransportError(PressCountError):
    """Field-bus read failed: connect refused, timeout, exception or short response."""

    def __init__(self, message: str, host: str = "", port: int = 0):
        super().__init__(message)
        self.host = host
        self.port = port


class PersistenceError(PressCountError):
    """A count record could not be written to the store."""
