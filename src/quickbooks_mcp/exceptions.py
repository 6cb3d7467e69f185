"""Custom exceptions for the QuickBooks Online MCP server.

This module defines the exception hierarchy for handling the error conditions
that can occur while talking to the QuickBooks Online API and its OAuth2
authorization server.
"""

from typing import Any


class QuickBooksError(Exception):
    """Base exception for all QuickBooks Online errors.

    All custom exceptions in this module inherit from this class, allowing
    for broad exception handling at the tool boundary.
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        action: str | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message.
            code: Optional machine-readable error code (e.g. QuickBooks fault code).
            action: Optional suggested action to resolve the error.
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.action = action

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for structured error responses."""
        result: dict[str, Any] = {"error": self.message}
        if self.code:
            result["code"] = self.code
        if self.action:
            result["action"] = self.action
        return result


class AuthenticationError(QuickBooksError):
    """Raised when the refresh-token exchange fails or a token is rejected.

    This error indicates that:
    - The client id / secret pair is invalid
    - The refresh token was revoked or has expired (100 days of non-use)
    - The authorization server could not be reached
    - The API rejected the access token (HTTP 401)
    """

    def __init__(
        self,
        message: str = "Authentication failed",
        code: str | None = None,
        action: str = "Run 'quickbooks-mcp-auth' to obtain a new refresh token",
    ) -> None:
        """Initialize authentication error with default action."""
        super().__init__(message, code, action)


class RemoteAPIError(QuickBooksError):
    """Raised when a QuickBooks API endpoint returns a non-success response."""

    def __init__(
        self,
        message: str,
        status_code: int,
        body: str = "",
        code: str | None = None,
        action: str | None = None,
    ) -> None:
        """Initialize remote API error.

        Args:
            message: Error message, taken from the QuickBooks fault if present.
            status_code: HTTP status returned by the API.
            body: Raw response body, kept verbatim for diagnosis.
            code: QuickBooks fault code (e.g. "610").
            action: Optional suggested action.
        """
        super().__init__(message, code, action)
        self.status_code = status_code
        self.body = body

    @property
    def is_transient(self) -> bool:
        """Whether the failure is worth retrying later (5xx)."""
        return self.status_code >= 500

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary including the HTTP status."""
        result = super().to_dict()
        result["status_code"] = self.status_code
        return result


class NotFoundError(RemoteAPIError):
    """Raised when the requested resource does not exist (HTTP 404)."""

    def __init__(self, resource: str, body: str = "") -> None:
        super().__init__(
            f"Resource '{resource}' not found",
            status_code=404,
            body=body,
        )
        self.resource = resource


class RateLimitError(RemoteAPIError):
    """Raised when the QuickBooks API throttles the request (HTTP 429).

    QuickBooks Online allows 500 requests per minute per company. The server
    does not retry; the caller decides when to try again.
    """

    def __init__(
        self,
        retry_after: int | None = None,
        body: str = "",
    ) -> None:
        """Initialize rate limit error.

        Args:
            retry_after: Optional seconds to wait before retrying.
            body: Raw response body.
        """
        action = "Please wait before making more requests"
        if retry_after:
            action = f"Please wait {retry_after} seconds before retrying"
        super().__init__("Rate limit exceeded", 429, body, action=action)
        self.retry_after = retry_after

    @property
    def is_transient(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary including retry_after if available."""
        result = super().to_dict()
        if self.retry_after:
            result["retry_after"] = self.retry_after
        return result


class NetworkError(QuickBooksError):
    """Raised when the QuickBooks API cannot be reached.

    Wraps the underlying httpx transport or timeout error. These failures are
    transient and may resolve on a later attempt.
    """

    def __init__(
        self,
        message: str = "Network error occurred",
        original_error: Exception | None = None,
    ) -> None:
        """Initialize network error.

        Args:
            message: Error message.
            original_error: The underlying exception that caused this error.
        """
        action = "Check your network connection and try again"
        super().__init__(message, action=action)
        self.original_error = original_error


class ValidationError(QuickBooksError):
    """Raised when caller input cannot be turned into a valid request."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message, code="validation_error")
        self.field = field
