"""
Error taxonomy for the rollup pipeline

Every failure carries an ErrorKind so jobs and HTTP responses can report it
without inspecting exception types.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    SOURCE_UNAVAILABLE = "SourceUnavailable"
    INSUFFICIENT_SOURCES = "InsufficientSources"
    TIMEOUT = "Timeout"
    CONFIGURATION = "ConfigurationError"
    CONFLICT = "Conflict"
    INTERNAL = "Internal"


class RollupError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, family: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.family = family


class SourceUnavailable(RollupError):
    """One upstream call failed or timed out. Absorbed by the collector."""

    kind = ErrorKind.SOURCE_UNAVAILABLE

    def __init__(self, source_key: str, reason: str):
        super().__init__(f"source '{source_key}' unavailable: {reason}")
        self.source_key = source_key
        self.reason = reason


class InsufficientSources(RollupError):
    """A family's required sources failed, so no snapshot can be built."""

    kind = ErrorKind.INSUFFICIENT_SOURCES

    def __init__(self, family: str, missing: list[str]):
        super().__init__(
            f"required sources failed for '{family}': {', '.join(sorted(missing))}",
            family=family,
        )
        self.missing = sorted(missing)


class RollupTimeout(RollupError):
    kind = ErrorKind.TIMEOUT


class ConfigurationError(RollupError):
    kind = ErrorKind.CONFIGURATION


class Conflict(RollupError):
    kind = ErrorKind.CONFLICT
