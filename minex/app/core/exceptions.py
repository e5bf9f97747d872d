"""
Custom exceptions for consistent error handling across the client.

Provides standardized error codes and classification helpers so callers can
tell a business conflict from a not-found from a server/network failure.
"""

from typing import Any, Dict, Optional

import httpx

from minex.app.core.constants import TRANSIENT_STATUS_CODES


# Map status code to error code
ERROR_CODE_MAP = {
    400: "ERR_BAD_REQUEST",
    401: "ERR_UNAUTHORIZED",
    403: "ERR_FORBIDDEN",
    404: "ERR_NOT_FOUND",
    409: "ERR_CONFLICT",
    422: "ERR_VALIDATION",
    500: "ERR_INTERNAL_SERVER",
    502: "ERR_BAD_GATEWAY",
    503: "ERR_UNAVAILABLE",
    504: "ERR_GATEWAY_TIMEOUT",
}


class AppException(Exception):
    """Base client exception."""

    def __init__(
        self,
        message: str,
        error_code: str,
        status_code: Optional[int] = None,
        details: Dict[str, Any] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class InvalidInputError(AppException):
    """Raised for malformed user input (QR payload, weight, unknown trip)."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_INPUT_001",
            details=details,
        )


class InsufficientPermissionsError(AppException):
    """Raised when the signed-in role may not perform an action."""

    def __init__(self, message: str = "Insufficient permissions", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PERM_001",
            status_code=403,
            details=details,
        )


class ApiError(AppException):
    """Raised when a remote call fails; carries the HTTP status if there was one."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        details: Dict[str, Any] = None,
    ):
        super().__init__(
            message=message,
            error_code=error_code or ERROR_CODE_MAP.get(status_code, "ERR_UNKNOWN"),
            status_code=status_code,
            details=details,
        )

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ApiError":
        """Build the typed error for a non-2xx response."""
        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}
        if not isinstance(body, dict):
            body = {"raw": body}

        message = (
            body.get("error")
            or body.get("message")
            or body.get("detail")
            or f"HTTP {response.status_code}"
        )
        if response.status_code == 401:
            return AuthenticationError(str(message), details=body)
        return cls(str(message), status_code=response.status_code, details=body)

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_transient(self) -> bool:
        return self.status_code in TRANSIENT_STATUS_CODES

    @property
    def conflict_token(self) -> Optional[str]:
        """Trip token named by a 409 body (later protocol revisions send it)."""
        if not self.is_conflict:
            return None
        token = self.details.get("tripToken")
        if token is None and isinstance(self.details.get("trip"), dict):
            token = self.details["trip"].get("tripToken")
        return token.strip() if isinstance(token, str) and token.strip() else None


class NetworkError(ApiError):
    """Raised for timeouts, resets, refused connections and DNS failures."""

    def __init__(self, message: str = "Network error", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            status_code=None,
            error_code="ERR_NETWORK_001",
            details=details,
        )

    @property
    def is_transient(self) -> bool:
        return True


class AuthenticationError(ApiError):
    """Raised when the session cannot be recovered by a token refresh."""

    def __init__(self, message: str = "Authentication failed", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            status_code=401,
            error_code="ERR_AUTH_001",
            details=details,
        )
