"""
Connection registry.

Maps server identities to their records and backend connections, drives
connect/retry/restart under per-server locks, and forwards tool calls.
Copies are plain records here; ``CapabilityProxy`` owns their rules and
subscribes to tool list changes through ``on_tools_changed``.
"""

import asyncio
import hashlib
import json
import os
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from mcp_gateway.core.base import KeyedLocks, Resource
from mcp_gateway.core.connection import BackendConnection, ConnectionState, ToolsListener
from mcp_gateway.core.exceptions import (
    BackendUnavailableError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    SecretNotFoundError,
    ValidationError,
)
from mcp_gateway.core.models import (
    AddServerRequest,
    ServerRecord,
    ServerStatus,
    ToolInfo,
    TransportType,
    UpdateServerRequest,
)
from mcp_gateway.core.retry import RetryAborted, RetryExhausted, RetryPolicy
from mcp_gateway.core.secrets import SecretResolver
from mcp_gateway.core.store import DocumentStore
from mcp_gateway.core.transport import TransportFactory
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)

STDIO_FIELDS = ("command", "args", "env")
REMOTE_FIELDS = ("url", "headers")


def validate_transport(
    transport_type: TransportType,
    command: Optional[str] = None,
    args: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    url: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> None:
    """
    Check that a descriptor only uses fields of its transport.

    Raises:
        ValidationError: Missing required field or fields of the other transport
    """
    if transport_type == TransportType.STREAMABLE_HTTP:
        if command or args or env:
            raise ValidationError("Streamable HTTP servers cannot define stdio fields (command, args, env)")
        if not url:
            raise ValidationError("Streamable HTTP servers require a url")
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError(f"Invalid server url: {url}")
        return

    if url or headers:
        raise ValidationError("Stdio servers cannot define streamable HTTP fields (url, headers)")
    if not command:
        raise ValidationError("Stdio servers require a command")


def merge_path(override: str, inherited: Optional[str]) -> str:
    """Prefix ``override`` onto an inherited PATH."""
    if not inherited:
        return override
    return f"{override}{os.pathsep}{inherited}"


class ConnectionRegistry(Resource):
    """Server identity to {record, connection, status}."""

    def __init__(
        self,
        store: DocumentStore,
        transport_factory: TransportFactory,
        secret_resolver: SecretResolver,
        retry_policy: Optional[RetryPolicy] = None,
        log_buffer_size: int = 100,
    ):
        self.store = store
        self.transport_factory = transport_factory
        self.secret_resolver = secret_resolver
        self.retry_policy = retry_policy or RetryPolicy()
        self.log_buffer_size = log_buffer_size
        self._records: Dict[str, ServerRecord] = {}
        self._connections: Dict[str, BackendConnection] = {}
        self._locks = KeyedLocks()
        self._listeners: List[ToolsListener] = []

    # Lifecycle

    async def init(self) -> None:
        """Load persisted records and connect every enabled original."""
        await self.store.init()
        for document in self.store.find():
            try:
                record = ServerRecord.model_validate(document)
            except Exception as e:
                logger.error(f"Skipping invalid server record {document.get('name')}: {e}")
                continue
            self._records[record.name] = record
        logger.info(f"Loaded {len(self._records)} server record(s)")

        originals = [r.name for r in self._records.values() if not r.is_copy and r.enabled]
        await asyncio.gather(*(self._start(name) for name in originals))

    async def stop(self) -> None:
        """Cancel retries and close every connection."""
        for connection in list(self._connections.values()):
            await self._cancel_retry(connection)
        for name, connection in list(self._connections.items()):
            try:
                await connection.close()
            except Exception as e:
                logger.warning(f"Error closing server '{name}': {e}")
        await self.store.stop()

    def on_tools_changed(self, listener: ToolsListener) -> None:
        """Subscribe to ``(server_name, tools)`` events."""
        self._listeners.append(listener)

    async def _publish(self, name: str, tools: List[ToolInfo]) -> None:
        for listener in self._listeners:
            try:
                await listener(name, tools)
            except Exception as e:
                logger.error(f"Tools-changed listener failed for '{name}': {e}")

    # Records

    def _persist(self, record: ServerRecord) -> None:
        record.updated_at = datetime.now()
        try:
            self.store.upsert(record.to_document(), {"name": record.name})
        except Exception as e:
            logger.error(f"Failed to persist server '{record.name}': {e}")

    def _require(self, name: str) -> ServerRecord:
        record = self._records.get(name)
        if record is None:
            raise NotFoundError(f"Server '{name}' not found", details={"server": name})
        return record

    def _connection(self, name: str) -> BackendConnection:
        connection = self._connections.get(name)
        if connection is None:
            connection = BackendConnection(
                name,
                self.transport_factory,
                on_tools_changed=self._backend_tools_changed,
                log_buffer_size=self.log_buffer_size,
            )
            self._connections[name] = connection
        return connection

    def _status(self, record: ServerRecord) -> ServerStatus:
        if record.is_copy:
            original = self._records.get(record.original_name or "")
            if not record.enabled or original is None:
                return ServerStatus.DISABLED
            return self._status(original)
        if not record.enabled:
            return ServerStatus.DISABLED
        connection = self._connections.get(record.name)
        if connection is None:
            return ServerStatus.DISCONNECTED
        return connection.state.to_status()

    def _view(self, record: ServerRecord) -> ServerRecord:
        view = record.model_copy(deep=True)
        view.status = self._status(record)
        source = record.original_name if record.is_copy else record.name
        connection = self._connections.get(source or "")
        if connection is not None:
            view.logs = list(connection.logs)
            if not record.is_copy:
                view.last_error = connection.last_error or record.last_error
        return view

    def get_record(self, name: str) -> ServerRecord:
        """Live record; callers mutating it must ``save`` it."""
        return self._require(name)

    def has(self, name: str) -> bool:
        return name in self._records

    def copies_of(self, name: str) -> List[ServerRecord]:
        return [r for r in self._records.values() if r.is_copy and r.original_name == name]

    def register_copy(self, record: ServerRecord) -> ServerRecord:
        """Insert a copy record without touching connections."""
        if record.name in self._records:
            raise ConflictError(f"Server '{record.name}' already exists", details={"server": record.name})
        self._records[record.name] = record
        self._persist(record)
        return self._view(record)

    def save(self, record: ServerRecord) -> ServerRecord:
        self._records[record.name] = record
        self._persist(record)
        return self._view(record)

    def get(self, name: str) -> ServerRecord:
        """Server record with its reported status."""
        return self._view(self._require(name))

    def list(self) -> List[ServerRecord]:
        return [self._view(record) for record in self._records.values()]

    def list_tools(self) -> Dict[str, List[ToolInfo]]:
        """Tools per enabled server; copies see only their allowed methods."""
        result: Dict[str, List[ToolInfo]] = {}
        for record in self._records.values():
            if self._status(record) == ServerStatus.DISABLED:
                continue
            if record.is_copy:
                original = self._records[record.original_name]
                allowed = set(record.allowed_methods or [])
                result[record.name] = [t for t in original.tools if t.name in allowed]
            else:
                result[record.name] = list(record.tools)
        return result

    # Mutations

    async def add(self, request: AddServerRequest) -> ServerRecord:
        """Register a server and connect it when enabled."""
        validate_transport(
            request.transport_type,
            request.command,
            request.args,
            request.env,
            request.url,
            request.headers,
        )
        if request.name in self._records:
            raise ConflictError(f"Server '{request.name}' already exists", details={"server": request.name})

        record = ServerRecord(
            name=request.name,
            transport_type=request.transport_type,
            command=request.command,
            args=request.args or [],
            env=request.env or {},
            url=request.url,
            headers=request.headers or {},
            secret_names=request.secret_names,
            startup_timeout=request.startup_timeout,
            enabled=request.enabled,
        )
        self._records[record.name] = record
        self._persist(record)
        logger.info(f"Added server: {record}", extra={"server": record.name})

        if record.enabled:
            await self._start(record.name)
        return self._view(record)

    async def update(self, name: str, request: UpdateServerRequest) -> ServerRecord:
        """Apply a partial descriptor update, reconnecting as needed."""
        record = self._require(name)
        if record.is_copy:
            raise ValidationError(
                f"Server '{name}' is a copy; update its methods instead",
                details={"server": name},
            )

        changes = request.model_dump(exclude_none=True)
        if set(changes) == {"enabled"}:
            if changes["enabled"]:
                return await self.enable(name)
            return await self.disable(name)

        transport_type = changes.get("transport_type", record.transport_type)
        if transport_type != record.transport_type:
            stale = STDIO_FIELDS if transport_type == TransportType.STREAMABLE_HTTP else REMOTE_FIELDS
            for field in stale:
                changes.setdefault(field, None)

        merged = record.model_copy(update=changes)
        merged.args = merged.args or []
        merged.env = merged.env or {}
        merged.headers = merged.headers or {}
        validate_transport(
            merged.transport_type, merged.command, merged.args, merged.env, merged.url, merged.headers
        )

        connection = self._connection(name)
        await self._cancel_retry(connection)
        async with self._locks(name):
            await connection.close()
            self._records[name] = merged
            self._persist(merged)
        logger.info(f"Updated server: {merged}", extra={"server": name})

        if merged.enabled:
            connection.retries_exhausted = False
            await self._start(name)
        return self._view(merged)

    async def enable(self, name: str) -> ServerRecord:
        """Enable a server, resetting exhausted retries, and connect it."""
        record = self._require(name)
        record.enabled = True
        self._persist(record)
        if record.is_copy:
            return self._view(record)

        connection = self._connection(name)
        await self._cancel_retry(connection)
        connection.retries_exhausted = False
        logger.info(f"Enabled server '{name}'", extra={"server": name})
        await self._start(name)
        return self._view(record)

    async def disable(self, name: str) -> ServerRecord:
        """Disable a server and close its connection."""
        record = self._require(name)
        if record.is_copy:
            record.enabled = False
            self._persist(record)
            return self._view(record)

        connection = self._connection(name)
        await self._cancel_retry(connection)
        async with self._locks(name):
            record.enabled = False
            self._persist(record)
            await connection.close()
        logger.info(f"Disabled server '{name}'", extra={"server": name})
        return self._view(record)

    async def delete(self, name: str) -> None:
        """Remove a server; deleting an original also removes its copies."""
        record = self._require(name)
        if not record.is_copy:
            for copy_record in self.copies_of(name):
                logger.warning(
                    f"Deleting copy '{copy_record.name}' of removed server '{name}'",
                    extra={"server": copy_record.name},
                )
                self._remove(copy_record.name)

            connection = self._connections.get(name)
            if connection is not None:
                await self._cancel_retry(connection)
                async with self._locks(name):
                    await connection.close()
                del self._connections[name]
            self._locks.discard(name)

        self._remove(name)
        logger.info(f"Deleted server '{name}'", extra={"server": name})

    def _remove(self, name: str) -> None:
        self._records.pop(name, None)
        try:
            self.store.delete({"name": name})
        except Exception as e:
            logger.error(f"Failed to delete server '{name}' from store: {e}")

    # Connecting

    def _build_env(self, record: ServerRecord, secrets: Dict[str, str]) -> Dict[str, str]:
        if record.transport_type != TransportType.STDIO:
            return {}
        env = dict(os.environ)
        overrides = {**record.env, **secrets}
        path = overrides.pop("PATH", None)
        env.update(overrides)
        if path:
            env["PATH"] = merge_path(path, os.environ.get("PATH"))
        return env

    @staticmethod
    def _fingerprint(record: ServerRecord, secrets: Dict[str, str]) -> str:
        payload = json.dumps(
            {"env": record.env, "headers": record.headers, "secrets": secrets},
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode()).hexdigest()

    async def _connect(
        self,
        record: ServerRecord,
        connection: BackendConnection,
        secrets: Optional[Dict[str, str]] = None,
    ) -> List[ToolInfo]:
        secrets = secrets or {}
        try:
            tools = await connection.connect(
                record,
                self._build_env(record, secrets),
                self._fingerprint(record, secrets),
            )
        except Exception as e:
            record.last_error = str(e)
            raise
        record.tools = tools
        record.last_error = None
        self._persist(record)
        return tools

    async def _start(self, name: str) -> bool:
        """One inline connect attempt; failures continue in the background."""
        connection = self._connection(name)
        async with self._locks(name):
            record = self._records.get(name)
            if record is None or not record.enabled:
                return False
            if connection.state == ConnectionState.CONNECTED:
                return True
            try:
                tools = await self._connect(record, connection)
            except Exception as e:
                logger.warning(f"Failed to connect to server '{name}': {e}", extra={"server": name})
                tools = None

        if tools is None:
            self._schedule_retry(name)
            return False
        await self._publish(name, tools)
        return True

    def _schedule_retry(self, name: str) -> None:
        connection = self._connection(name)
        if connection.retrying or connection.retries_exhausted:
            return
        connection.retry_task = asyncio.create_task(self._retry(name), name=f"retry-{name}")

    async def _retry(self, name: str) -> None:
        connection = self._connection(name)

        async def attempt() -> Optional[List[ToolInfo]]:
            async with self._locks(name):
                record = self._records.get(name)
                if record is None or not record.enabled:
                    return None
                if connection.state == ConnectionState.CONNECTED:
                    return None
                return await self._connect(record, connection)

        def on_retry(attempt_no: int, delay: float, error: Optional[BaseException]) -> None:
            logger.info(
                f"Retrying server '{name}' in {delay:.1f}s "
                f"(attempt {attempt_no}/{self.retry_policy.max_attempts})",
                extra={"server": name},
            )

        def still_wanted() -> bool:
            record = self._records.get(name)
            return record is not None and record.enabled

        try:
            tools = await self.retry_policy.run(
                attempt,
                first_attempt=2,
                should_continue=still_wanted,
                on_retry=on_retry,
            )
        except RetryAborted:
            logger.debug(f"Retries for server '{name}' stopped")
            return
        except RetryExhausted as e:
            connection.retries_exhausted = True
            logger.error(
                f"Giving up on server '{name}' after {e.attempts} attempt(s): {e.last_error}",
                extra={"server": name},
            )
            return

        if tools is not None:
            await self._publish(name, tools)

    async def _cancel_retry(self, connection: BackendConnection) -> None:
        task = connection.retry_task
        connection.retry_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _backend_tools_changed(self, name: str, tools: List[ToolInfo]) -> None:
        record = self._records.get(name)
        if record is None:
            return
        record.tools = tools
        self._persist(record)
        await self._publish(name, tools)

    async def refresh(self, name: str) -> ServerRecord:
        """Re-announce an original's current tools to subscribers."""
        record = self._require(name)
        await self._publish(name, list(record.tools))
        return self._view(record)

    # Calls

    async def _resolve_secrets(self, user: str, record: ServerRecord) -> Dict[str, str]:
        secrets: Dict[str, str] = {}
        for secret_name in record.secret_names:
            try:
                secrets[secret_name] = await self.secret_resolver.resolve(user, record.name, secret_name)
            except SecretNotFoundError:
                logger.debug(f"No secret '{secret_name}' for server '{record.name}'")
        return secrets

    async def call_tool(
        self,
        user: str,
        name: str,
        method: str,
        args: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Forward a tool call to a server or through a copy to its original.

        Args:
            user: Calling user; selects per-user secrets
            name: Server or copy name
            method: Tool name
            args: Tool arguments

        Returns:
            The backend's structured result

        Raises:
            NotFoundError: Unknown server
            PermissionDeniedError: Method not allowed on the copy
            BackendUnavailableError: Disabled, retrying, or failed to connect
            TransportError: The backend call failed
        """
        record = self._require(name)
        target = record
        if record.is_copy:
            if method not in (record.allowed_methods or []):
                raise PermissionDeniedError(
                    f"Method '{method}' is not allowed on server '{name}'",
                    details={"server": name, "method": method},
                )
            target = self._require(record.original_name)

        if not record.enabled or not target.enabled:
            raise BackendUnavailableError(f"Server '{name}' is disabled", details={"server": name})

        connection = self._connection(target.name)
        if connection.retrying or connection.retries_exhausted:
            raise BackendUnavailableError(
                f"Server '{target.name}' is unavailable: {connection.last_error or 'reconnecting'}",
                details={"server": target.name, "state": connection.state.value},
            )

        secrets: Dict[str, str] = {}
        if target.transport_type == TransportType.STDIO:
            secrets = await self._resolve_secrets(user, target)
        fingerprint = self._fingerprint(target, secrets)
        tools: Optional[List[ToolInfo]] = None

        async with self._locks(target.name):
            # An update may have replaced the record while this call waited.
            current = self._records.get(target.name)
            if current is None:
                raise NotFoundError(f"Server '{target.name}' not found", details={"server": target.name})
            if current is not target:
                target = current
                connection = self._connection(target.name)
                secrets = {}
                if target.transport_type == TransportType.STDIO:
                    secrets = await self._resolve_secrets(user, target)
                fingerprint = self._fingerprint(target, secrets)
            if not target.enabled or not self._records.get(name, record).enabled:
                raise BackendUnavailableError(f"Server '{name}' is disabled", details={"server": name})
            if connection.state != ConnectionState.CONNECTED or connection.fingerprint != fingerprint:
                if connection.state == ConnectionState.CONNECTED:
                    logger.info(
                        f"Restarting server '{target.name}' for a new environment",
                        extra={"server": target.name},
                    )
                    await connection.close()
                try:
                    tools = await self._connect(target, connection, secrets)
                except Exception as e:
                    self._schedule_retry(target.name)
                    raise BackendUnavailableError(
                        f"Server '{target.name}' is unavailable: {e}",
                        details={"server": target.name, "cause": str(e)},
                    ) from e
            connection.acquire_lease()

        try:
            if tools is not None:
                await self._publish(target.name, tools)
            logger.debug(f"Calling {target.name}.{method}", extra={"server": target.name, "user": user})
            return await connection.invoke(method, args or {}, target.startup_timeout)
        finally:
            connection.release_lease()
