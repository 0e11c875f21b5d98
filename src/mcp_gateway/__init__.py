"""
MCP Gateway - one control plane for many MCP servers.

Forwards tool calls to independently running MCP servers, exposes
method-scoped server copies, and owns the install/upgrade lifecycle of
the npm and Python packages behind them.
"""

__version__ = "1.0.0"
__description__ = "Gateway and package lifecycle manager for MCP servers"

# Public API
from mcp_gateway.core.exceptions import GatewayError
from mcp_gateway.core.models import PackageRecord, ServerRecord, ServerStatus
from mcp_gateway.gateway import Gateway

__all__ = [
    "__version__",
    "__description__",
    "Gateway",
    "GatewayError",
    "PackageRecord",
    "ServerRecord",
    "ServerStatus",
]
