"""Exception taxonomy shared by the engine components.

Transient failures (:class:`DecodeError`, :class:`TransportError`) are
handled inside the polling loops and never escape them.  Script failures
force the affected run into ``fail``.  Only the command errors
(:class:`ConfigError`, :class:`ConflictError`, :class:`NotRunningError`)
are raised synchronously to callers of the supervisor.
"""

from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    """Base class for every error raised by the aging engine."""


class DecodeError(EngineError):
    """Raw register bytes could not be decoded for a mapping."""


class TransportError(EngineError):
    """I/O failure, timeout or error response from a device transport."""


class ScriptError(EngineError):
    """A script or condition failed to evaluate or exceeded its budget."""

    def __init__(self, message: str, *, source: Optional[str] = None):
        super().__init__(message)
        self.source = source

    def __str__(self) -> str:
        base = super().__str__()
        if self.source:
            return f"{base} [source: {self.source.strip()}]"
        return base


class ConfigError(EngineError):
    """Invalid or missing configuration, detected before any run exists."""


class ConflictError(EngineError):
    """The command conflicts with the workstation's current state."""


class NotRunningError(ConflictError):
    """The command requires an active run and there is none."""


class NotFoundError(EngineError, LookupError):
    """A workstation, device or process id is unknown."""


__all__ = [
    "ConfigError",
    "ConflictError",
    "DecodeError",
    "EngineError",
    "NotFoundError",
    "NotRunningError",
    "ScriptError",
    "TransportError",
]
