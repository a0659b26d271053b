"""
Error types for the InnoDB metrics poller.

Every failure that crosses a component boundary (source reader, catalog,
measurement store, poller) is expressed as a PollerError subclass. Library
exceptions from sqlite3 and SQLAlchemy are wrapped with ``raise ... from e``
so the entry point only has to understand this hierarchy when it maps
failures to log records and exit codes.
"""

from __future__ import annotations

from typing import Any


class PollerError(Exception):
    """
    Base exception class for poller errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "unavailable", "failed_precondition", "internal").
        message: Human-readable error message.
        details: Optional structured details (e.g., view name, db path).

    Example:
        >>> raise PollerError(
        ...     error_code="unavailable",
        ...     message="Cannot connect to the monitored server",
        ...     details={"dsn": "mysql+pymysql://root@localhost/"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize a PollerError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(PollerError):
    """
    Error raised when a component receives invalid input.

    Used for configuration values that pass type validation but cannot be
    used, e.g. an unknown unknown-metric policy handed to the poller.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class UnavailableError(PollerError):
    """
    Error raised when the monitored server cannot be reached.

    Covers failed connection attempts at startup and connections lost in the
    middle of a poll cycle. The poller does not retry.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class FailedPreconditionError(PollerError):
    """
    Error raised when a database operation cannot be completed.

    Used for schema creation, catalog bootstrap, source queries and
    measurement commits.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class InternalError(PollerError):
    """Error raised for unexpected internal errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)
