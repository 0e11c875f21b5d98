"""
Data models for MCP Gateway.

Defines Pydantic models for server records, server copies, package
records and the request/result shapes used by the gateway surface.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


SERVER_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")


class ServerStatus(str, Enum):
    """Reported status of a server identity."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    DISABLED = "disabled"


class TransportType(str, Enum):
    """How the gateway reaches a backend."""

    STDIO = "stdio"
    STREAMABLE_HTTP = "streamable_http"


class Runtime(str, Enum):
    """Package runtime managed by the orchestrator."""

    NODE = "node"
    PYTHON = "python"


class PackageStatus(str, Enum):
    """Package lifecycle status."""

    INSTALLING = "installing"
    INSTALLED = "installed"
    UPGRADING = "upgrading"
    ERROR = "error"


def _validate_server_name(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("Server name cannot be empty")
    if len(v) > 100:
        raise ValueError("Server name too long (max 100 characters)")
    if not SERVER_NAME_PATTERN.match(v):
        raise ValueError(f"Invalid server name: {v}")
    return v


def _dedupe(values: List[str]) -> List[str]:
    seen = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


class ToolInfo(BaseModel):
    """A tool advertised by a backend."""

    name: str = Field(description="Tool name")
    description: Optional[str] = Field(default=None, description="Tool description")
    input_schema: Dict[str, Any] = Field(default_factory=dict, description="JSON schema of the arguments")


class ServerRecord(BaseModel):
    """A server identity: a real backend connection or a copy of one."""

    name: str = Field(description="Unique server name")
    transport_type: TransportType = Field(default=TransportType.STDIO, description="Transport type")
    command: Optional[str] = Field(default=None, description="Command to spawn (stdio)")
    args: List[str] = Field(default_factory=list, description="Command arguments (stdio)")
    env: Dict[str, str] = Field(default_factory=dict, description="Environment overrides (stdio)")
    url: Optional[str] = Field(default=None, description="Remote endpoint (streamable_http)")
    headers: Dict[str, str] = Field(default_factory=dict, description="Request headers (streamable_http)")
    secret_names: List[str] = Field(default_factory=list, description="Per-user secrets injected into the environment")
    startup_timeout: Optional[float] = Field(default=None, description="Per-call timeout in seconds")
    enabled: bool = Field(default=True, description="Whether server is enabled")
    status: ServerStatus = Field(default=ServerStatus.DISCONNECTED, description="Current status")
    tools: List[ToolInfo] = Field(default_factory=list, description="Cached advertised tools")

    # Server copies
    is_copy: bool = Field(default=False, description="Whether this record aliases another server")
    original_name: Optional[str] = Field(default=None, description="Aliased server (copies only)")
    allowed_methods: Optional[List[str]] = Field(default=None, description="Allowlisted methods (copies only)")
    warning: Optional[str] = Field(default=None, description="Standing warning")

    last_error: Optional[str] = Field(default=None, description="Last error message")
    logs: List[str] = Field(default_factory=list, exclude=True, description="Recent stderr/transport messages")
    created_at: datetime = Field(default_factory=datetime.now, description="Creation time")
    updated_at: datetime = Field(default_factory=datetime.now, description="Last update time")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate server name."""
        return _validate_server_name(v)

    @field_validator("allowed_methods")
    @classmethod
    def validate_allowed_methods(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        """Allowed methods behave as a set."""
        if v is None:
            return v
        return _dedupe(v)

    @property
    def tool_names(self) -> List[str]:
        """Names of the cached advertised tools."""
        return [tool.name for tool in self.tools]

    def to_document(self) -> Dict[str, Any]:
        """Serialize for the document store."""
        return self.model_dump(mode="json", exclude={"status", "logs"})

    def __str__(self) -> str:
        """String representation."""
        if self.is_copy:
            return f"{self.name} (copy of {self.original_name})"
        return f"{self.name} ({self.transport_type.value})"


class AddServerRequest(BaseModel):
    """Input for registering a server."""

    name: str
    transport_type: TransportType = TransportType.STDIO
    command: Optional[str] = None
    args: Optional[List[str]] = None
    env: Optional[Dict[str, str]] = None
    url: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    secret_names: List[str] = Field(default_factory=list)
    startup_timeout: Optional[float] = None
    enabled: bool = True

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate server name."""
        return _validate_server_name(v)


class UpdateServerRequest(BaseModel):
    """Partial update of a server descriptor; unset fields are kept."""

    transport_type: Optional[TransportType] = None
    command: Optional[str] = None
    args: Optional[List[str]] = None
    env: Optional[Dict[str, str]] = None
    url: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    secret_names: Optional[List[str]] = None
    startup_timeout: Optional[float] = None
    enabled: Optional[bool] = None


class PackageRecord(BaseModel):
    """An installed package backing exactly one non-copy server."""

    server_name: str = Field(description="Owning server name")
    name: str = Field(description="Package name")
    version: str = Field(default="", description="Installed version; empty until an install succeeds")
    latest_version: Optional[str] = Field(default=None, description="Latest known registry version")
    update_available: bool = Field(default=False, description="Whether a newer version exists")
    install_path: str = Field(description="Install directory")
    runtime: Runtime = Field(default=Runtime.NODE, description="Package runtime")
    python_module: Optional[str] = Field(default=None, description="Module run with python -m")
    python_args: List[str] = Field(default_factory=list, description="Arguments after the module")
    status: PackageStatus = Field(default=PackageStatus.INSTALLING, description="Lifecycle status")
    installed: datetime = Field(default_factory=datetime.now, description="Install time")
    last_upgraded: Optional[datetime] = Field(default=None, description="Last successful upgrade")
    error: Optional[str] = Field(default=None, description="Last error message")
    enabled: bool = Field(default=True, description="Whether the owning server is enabled")

    def to_document(self) -> Dict[str, Any]:
        """Serialize for the document store."""
        return self.model_dump(mode="json")


class InstallPackageRequest(BaseModel):
    """Input for installing a package and registering its server."""

    name: str
    server_name: str
    version: Optional[str] = None
    runtime: Runtime = Runtime.NODE
    command: Optional[str] = None
    args: Optional[List[str]] = None
    env: Optional[Dict[str, str]] = None
    python_module: Optional[str] = None
    python_args: List[str] = Field(default_factory=list)
    secret_names: List[str] = Field(default_factory=list)
    startup_timeout: Optional[float] = None
    enabled: bool = True
    fail_on_warning: bool = False


class UpdateInfo(BaseModel):
    """Result of an update check for one package."""

    server_name: str
    current_version: str
    latest_version: str
    update_available: bool


class UpgradeResult(BaseModel):
    """Outcome of upgrading one package."""

    server_name: str
    success: bool
    error: Optional[str] = None
    package: Optional[PackageRecord] = None
    server: Optional[ServerRecord] = None


class UpgradeAllResult(BaseModel):
    """Aggregated outcome of upgrading every package."""

    success: bool
    results: List[UpgradeResult] = Field(default_factory=list)
