"""
Gateway composition root.

Builds every component from a ``GatewayConfig``, owns their lifecycle and
exposes the public operations. Each operation raises only ``GatewayError``
kinds; anything unexpected is wrapped in the operation's kind with the
original message under ``details["cause"]``.
"""

import asyncio
import functools
from typing import Any, Callable, Dict, List, Optional, Type

import pydantic

from mcp_gateway.core.base import Resource
from mcp_gateway.core.exceptions import (
    BackendUnavailableError,
    ConflictError,
    GatewayError,
    InstallFailedError,
    NotFoundError,
    TransportError,
    UpgradeFailedError,
    ValidationError,
)
from mcp_gateway.core.models import (
    AddServerRequest,
    InstallPackageRequest,
    PackageRecord,
    ServerRecord,
    ToolInfo,
    UpdateInfo,
    UpdateServerRequest,
    UpgradeAllResult,
    UpgradeResult,
)
from mcp_gateway.core.packages import CommandRunner, PackageOrchestrator
from mcp_gateway.core.proxy import CapabilityProxy
from mcp_gateway.core.registry import ConnectionRegistry
from mcp_gateway.core.retry import RetryPolicy
from mcp_gateway.core.secrets import StoreSecretResolver
from mcp_gateway.core.store import DocumentStore, MemoryDocumentStore, SQLiteDocumentStore
from mcp_gateway.core.transport import McpTransportFactory, TransportFactory
from mcp_gateway.core.versions import VersionOracle
from mcp_gateway.utils.config import GatewayConfig
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)


def translate_errors(kind: Type[GatewayError]) -> Callable:
    """Wrap non-gateway exceptions raised by an operation in ``kind``."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return await func(*args, **kwargs)
            except (GatewayError, asyncio.CancelledError):
                raise
            except pydantic.ValidationError as e:
                raise ValidationError(
                    f"Invalid input for {func.__name__}: {e}",
                    details={"cause": str(e)},
                ) from e
            except Exception as e:
                logger.exception(f"Unexpected error in {func.__name__}: {e}")
                raise kind(
                    f"{func.__name__} failed: {e}",
                    details={"cause": str(e)},
                ) from e

        return wrapper

    return decorator


class Gateway(Resource):
    """Public surface over the registry, proxy and package orchestrator."""

    def __init__(
        self,
        config: GatewayConfig,
        transport_factory: Optional[TransportFactory] = None,
        runner: Optional[CommandRunner] = None,
        http_transport: Any = None,
    ):
        """
        Initialize the gateway.

        Args:
            config: Gateway configuration
            transport_factory: Backend transport (defaults to the MCP SDK)
            runner: Subprocess runner for package tooling
            http_transport: httpx transport for registry lookups
        """
        self.config = config
        retry = RetryPolicy(
            max_attempts=config.retry.max_attempts,
            base_delay=config.retry.base_delay,
            max_delay=config.retry.max_delay,
            jitter=config.retry.jitter,
        )

        self.secrets = StoreSecretResolver(
            self._store("secrets"),
            key=config.secrets.key,
            key_file=config.secrets.key_file,
        )
        self.registry = ConnectionRegistry(
            self._store("servers"),
            transport_factory or McpTransportFactory(),
            self.secrets,
            retry_policy=retry,
            log_buffer_size=config.log_buffer_size,
        )
        self.proxy = CapabilityProxy(self.registry)
        self.oracle = VersionOracle(
            npm_registry=config.registry.npm_registry,
            pypi_index=config.registry.pypi_index,
            timeout=config.registry.timeout,
            retry_policy=retry.with_attempts(config.retry.lookup_attempts),
            transport=http_transport,
        )
        self.packages = PackageOrchestrator(
            self._store("packages"),
            self.registry,
            self.oracle,
            runner=runner,
            packages_dir=config.get_packages_dir(),
            npm_executable=config.packages.npm_executable,
            python_executable=config.packages.python_executable,
            fail_on_warning=config.packages.fail_on_warning,
        )

    def _store(self, collection: str) -> DocumentStore:
        if self.config.store.backend == "memory":
            return MemoryDocumentStore(collection)
        return SQLiteDocumentStore(self.config.get_store_path(), collection)

    async def init(self) -> None:
        """Load persisted state and connect enabled servers."""
        await self.secrets.init()
        await self.packages.init()
        await self.registry.init()
        await self.proxy.init()
        logger.info("Gateway started")

    async def stop(self) -> None:
        """Close every connection and store."""
        await self.proxy.stop()
        await self.registry.stop()
        await self.packages.stop()
        await self.secrets.stop()
        logger.info("Gateway stopped")

    async def __aenter__(self) -> "Gateway":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # Servers

    @translate_errors(BackendUnavailableError)
    async def add_server(self, request: AddServerRequest) -> ServerRecord:
        return await self.registry.add(request)

    @translate_errors(BackendUnavailableError)
    async def update_server(self, name: str, request: UpdateServerRequest) -> ServerRecord:
        record = await self.registry.update(name, request)
        if request.enabled is not None:
            self.packages.sync_enabled(name, record.enabled)
        return record

    @translate_errors(BackendUnavailableError)
    async def enable_server(self, name: str) -> ServerRecord:
        record = await self.registry.enable(name)
        self.packages.sync_enabled(name, True)
        return record

    @translate_errors(BackendUnavailableError)
    async def disable_server(self, name: str) -> ServerRecord:
        record = await self.registry.disable(name)
        self.packages.sync_enabled(name, False)
        return record

    @translate_errors(BackendUnavailableError)
    async def delete_server(self, name: str) -> None:
        """Delete a server; package-owned servers must be uninstalled instead."""
        record = self.registry.get(name)
        if not record.is_copy and self.packages.has_package(name):
            raise ConflictError(
                f"Server '{name}' is owned by a package; use uninstall_package",
                details={"server": name},
            )
        await self.registry.delete(name)

    @translate_errors(BackendUnavailableError)
    async def get_server(self, name: str) -> ServerRecord:
        return self.registry.get(name)

    @translate_errors(BackendUnavailableError)
    async def list_servers(self) -> List[ServerRecord]:
        return self.registry.list()

    @translate_errors(BackendUnavailableError)
    async def list_tools(self) -> Dict[str, List[ToolInfo]]:
        return self.registry.list_tools()

    @translate_errors(TransportError)
    async def call_tool(
        self,
        user: str,
        name: str,
        method: str,
        args: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Call ``method`` on server (or copy) ``name`` on behalf of ``user``."""
        return await self.registry.call_tool(user, name, method, args)

    # Packages

    @translate_errors(InstallFailedError)
    async def install_package(self, request: InstallPackageRequest) -> PackageRecord:
        return await self.packages.install(request)

    @translate_errors(UpgradeFailedError)
    async def upgrade_package(self, name: str, version: Optional[str] = None) -> UpgradeResult:
        return await self.packages.upgrade(name, version)

    @translate_errors(UpgradeFailedError)
    async def upgrade_all_packages(self) -> UpgradeAllResult:
        return await self.packages.upgrade_all()

    @translate_errors(BackendUnavailableError)
    async def check_for_updates(self, name: Optional[str] = None) -> List[UpdateInfo]:
        return await self.packages.check_for_updates(name)

    @translate_errors(BackendUnavailableError)
    async def uninstall_package(self, name: str) -> None:
        await self.packages.uninstall(name)

    @translate_errors(BackendUnavailableError)
    async def get_package(self, name: str) -> PackageRecord:
        return self.packages.get(name)

    @translate_errors(BackendUnavailableError)
    async def list_packages(self) -> List[PackageRecord]:
        return self.packages.list()

    # Copies

    @translate_errors(BackendUnavailableError)
    async def create_server_copy(self, original: str, name: str, allowed_methods: List[str]) -> ServerRecord:
        return await self.proxy.create(original, name, allowed_methods)

    @translate_errors(BackendUnavailableError)
    async def update_server_copy_methods(self, name: str, allowed_methods: List[str]) -> ServerRecord:
        return await self.proxy.update_methods(name, allowed_methods)

    @translate_errors(BackendUnavailableError)
    async def delete_server_copy(self, name: str) -> None:
        await self.proxy.delete(name)

    # Secrets

    @translate_errors(BackendUnavailableError)
    async def set_secret(self, user: str, server: str, name: str, value: str) -> None:
        """Store a per-user secret for a non-copy server."""
        record = self.registry.get(server)
        if record.is_copy:
            raise ValidationError(
                f"Secrets belong to the original server '{record.original_name}'",
                details={"server": server},
            )
        await self.secrets.set(user, server, name, value)

    @translate_errors(BackendUnavailableError)
    async def delete_secret(self, user: str, server: str, name: str) -> None:
        if not self.registry.has(server):
            raise NotFoundError(f"Server '{server}' not found", details={"server": server})
        await self.secrets.delete(user, server, name)
