"""
Base Exception Class

This module contains ONLY the base exception class that all other exceptions
inherit from. Specialized exceptions live in their themed modules.

Author: Platform Engineering
Date: 2026-03-02
"""

from typing import Any


class BackboneError(Exception):
    """
    Base exception for all engagement backbone errors.

    All custom exceptions inherit from this class to enable:
    - Consistent error handling
    - Correlation ID propagation (request id or job id)
    - Structured error logging

    Attributes:
        message: Error message
        correlation_id: Request or job id for correlation (if available)
        details: Additional error details (dict)

    Example:
        raise BrokerUnavailableError(
            "Broker GET failed",
            correlation_id="import-user-42",
            details={"key": "leaderboard:all_time:50"}
        )
    """

    def __init__(
        self,
        message: str,
        correlation_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.correlation_id = correlation_id
        self.details = (details or {}).copy()
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for logging/API responses.

        Returns:
            Dict with error_type, message, correlation_id, and details
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "correlation_id": self.correlation_id,
            "details": self.details,
        }

    def with_suggestion(self, suggestion: str) -> "BackboneError":
        """Add a suggestion to help operators fix the error."""
        self.details["suggestion"] = suggestion
        return self

    def with_context(self, **context) -> "BackboneError":
        """Add additional context to the error details."""
        self.details.update(context)
        return self

    def __repr__(self) -> str:
        details_str = f", details={self.details}" if self.details else ""
        correlation_str = f", correlation_id='{self.correlation_id}'" if self.correlation_id else ""
        return f"{self.__class__.__name__}(message='{self.message}'{correlation_str}{details_str})"

    @classmethod
    def from_exception(
        cls,
        exc: Exception,
        message: str | None = None,
        correlation_id: str | None = None,
        **details,
    ) -> "BackboneError":
        """
        Create an error from another exception.

        Useful for wrapping third-party exceptions with additional context.

        Example:
            >>> try:
            ...     await client.ping()
            ... except redis.ConnectionError as e:
            ...     raise BrokerUnavailableError.from_exception(e, url=safe_url)
        """
        error_message = message or str(exc)
        error_details = {
            "original_error": exc.__class__.__name__,
            "original_message": str(exc),
            **details,
        }
        return cls(error_message, correlation_id=correlation_id, details=error_details)


class ConfigurationError(BackboneError):
    """Raised when configuration is invalid or missing. Fatal at startup."""
    pass
