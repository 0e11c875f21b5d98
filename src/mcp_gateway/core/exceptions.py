"""
Exception classes for MCP Gateway.

Defines the error taxonomy shared by the connection registry, the
capability proxy and the package orchestrator. Every public gateway
operation raises one of these kinds.
"""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base exception for all MCP Gateway errors."""

    default_code = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize GatewayError.

        Args:
            message: Error message
            error_code: Optional error code for categorization
            details: Optional additional error details
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}

    def __str__(self) -> str:
        """String representation of the error."""
        return f"[{self.error_code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary representation."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class NotFoundError(GatewayError):
    """Requested server, copy or package does not exist."""

    default_code = "NOT_FOUND"


class SecretNotFoundError(NotFoundError):
    """No secret stored for the (user, server, name) triple."""

    default_code = "SECRET_NOT_FOUND"


class ValidationError(GatewayError):
    """Invalid input: runtime fields, versions, copy method sets."""

    default_code = "VALIDATION_ERROR"


class PermissionDeniedError(GatewayError):
    """Method is not allowlisted on a server copy."""

    default_code = "PERMISSION_DENIED"


class ConflictError(GatewayError):
    """Name already taken, or record owned by another lifecycle."""

    default_code = "CONFLICT"


class BackendUnavailableError(GatewayError):
    """Backend is disabled, not connected, or has exhausted its retries."""

    default_code = "BACKEND_UNAVAILABLE"


class InstallFailedError(GatewayError):
    """Package installation failed."""

    default_code = "INSTALL_FAILED"


class UpgradeFailedError(GatewayError):
    """Package upgrade failed; previous version stays recorded."""

    default_code = "UPGRADE_FAILED"


class TransportError(GatewayError):
    """Wrapped failure of a backend call."""

    default_code = "TRANSPORT_ERROR"
