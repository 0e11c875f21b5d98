"""Utility modules for MCP Gateway."""

from mcp_gateway.utils.logging import get_logger, setup_logging
from mcp_gateway.utils.config import GatewayConfig, get_config, load_config

__all__ = [
    "get_logger",
    "setup_logging",
    "GatewayConfig",
    "get_config",
    "load_config",
]
