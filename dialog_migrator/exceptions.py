"""Custom exception hierarchy for the conversation migration tool.

Exceptions are reserved for the edges of the tool: configuration loading,
the remote client, and the command layer. Internal components hand failures
to each other as tagged results (see :mod:`dialog_migrator.result`).
"""

from __future__ import annotations


class MigratorError(Exception):
    """Base exception for all migration-related errors."""


class ConfigError(MigratorError):
    """Raised when configuration is invalid or missing."""


class RemoteClientError(MigratorError):
    """Raised when a remote platform call fails in a non rate-limit way."""


class RateExceededError(RemoteClientError):
    """Raised by a remote client when the platform asks the caller to pause.

    Attributes:
        seconds: How long the platform asked us to wait before retrying.
        operation: Optional name of the call that was throttled.
    """

    def __init__(self, seconds: float, operation: str | None = None) -> None:
        self.seconds = seconds
        self.operation = operation
        where = f" during {operation}" if operation else ""
        super().__init__(f"Rate exceeded{where}, retry after {seconds}s")


class MigrationAbortedError(MigratorError):
    """Raised when the migration run is aborted as a whole."""
