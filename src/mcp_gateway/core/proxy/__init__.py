"""Capability-scoped forwarding through server copies."""

from mcp_gateway.core.proxy.capability_proxy import CapabilityProxy

__all__ = ["CapabilityProxy"]
