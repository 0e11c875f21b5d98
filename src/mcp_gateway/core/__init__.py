"""Core MCP Gateway functionality."""

from mcp_gateway.core.exceptions import (
    BackendUnavailableError,
    ConflictError,
    GatewayError,
    InstallFailedError,
    NotFoundError,
    PermissionDeniedError,
    SecretNotFoundError,
    TransportError,
    UpgradeFailedError,
    ValidationError,
)
from mcp_gateway.core.models import PackageRecord, ServerRecord, ServerStatus, ToolInfo

__all__ = [
    "BackendUnavailableError",
    "ConflictError",
    "GatewayError",
    "InstallFailedError",
    "NotFoundError",
    "PermissionDeniedError",
    "SecretNotFoundError",
    "TransportError",
    "UpgradeFailedError",
    "ValidationError",
    "PackageRecord",
    "ServerRecord",
    "ServerStatus",
    "ToolInfo",
]
