"""Package install/upgrade lifecycle."""

from mcp_gateway.core.packages.orchestrator import PackageOrchestrator
from mcp_gateway.core.packages.runner import CommandResult, CommandRunner

__all__ = ["PackageOrchestrator", "CommandResult", "CommandRunner"]
