"""
Test the connection registry: server lifecycle, retries and call routing.
"""

import asyncio
import os

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet

from mcp_gateway.core.connection import ConnectionState
from mcp_gateway.core.exceptions import (
    BackendUnavailableError,
    ConflictError,
    NotFoundError,
    TransportError,
    ValidationError,
)
from mcp_gateway.core.models import AddServerRequest, ServerStatus, TransportType, UpdateServerRequest
from mcp_gateway.core.registry import ConnectionRegistry, validate_transport
from mcp_gateway.core.retry import RetryPolicy
from mcp_gateway.core.secrets import StoreSecretResolver
from mcp_gateway.core.store import MemoryDocumentStore
from tests.conftest import FakeTransportFactory


def _stdio(name: str = "alpha", **kwargs) -> AddServerRequest:
    return AddServerRequest(name=name, command="node", args=["server.js"], **kwargs)


class TestValidateTransport:
    """Test transport field compatibility."""

    def test_stdio_requires_command(self):
        with pytest.raises(ValidationError):
            validate_transport(TransportType.STDIO)

    def test_stdio_rejects_remote_fields(self):
        with pytest.raises(ValidationError):
            validate_transport(TransportType.STDIO, command="node", url="http://localhost:8080/mcp")

    def test_remote_rejects_stdio_fields(self):
        with pytest.raises(ValidationError):
            validate_transport(
                TransportType.STREAMABLE_HTTP, command="node", url="http://localhost:8080/mcp"
            )

    def test_remote_requires_http_url(self):
        with pytest.raises(ValidationError):
            validate_transport(TransportType.STREAMABLE_HTTP, url="ftp://example.com")
        validate_transport(TransportType.STREAMABLE_HTTP, url="https://example.com/mcp")


class TestConnectionRegistry:
    """Test registry operations against fake backends."""

    @pytest_asyncio.fixture(autouse=True)
    async def setup_registry(self):
        self.factory = FakeTransportFactory()
        self.secrets = StoreSecretResolver(MemoryDocumentStore("secrets"), key=Fernet.generate_key().decode())
        self.store = MemoryDocumentStore("servers")
        self.registry = ConnectionRegistry(
            self.store,
            self.factory,
            self.secrets,
            retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0),
        )
        await self.secrets.init()
        await self.registry.init()
        yield
        await self.registry.stop()

    async def _settle_retries(self, name: str):
        task = self.registry._connection(name).retry_task
        if task is not None:
            await task

    @pytest.mark.asyncio
    async def test_add_connects_enabled_server(self):
        record = await self.registry.add(_stdio())

        assert record.status == ServerStatus.CONNECTED
        assert record.tool_names == ["echo", "add"]
        assert self.store.find_one({"name": "alpha"}) is not None

    @pytest.mark.asyncio
    async def test_add_disabled_does_not_connect(self):
        record = await self.registry.add(_stdio(enabled=False))

        assert record.status == ServerStatus.DISABLED
        assert self.factory.backend("alpha").opens == 0

    @pytest.mark.asyncio
    async def test_add_duplicate_conflicts(self):
        await self.registry.add(_stdio())
        with pytest.raises(ConflictError):
            await self.registry.add(_stdio())

    @pytest.mark.asyncio
    async def test_failed_connect_retries_in_background(self):
        self.factory.backend("alpha").fail_opens = 1

        record = await self.registry.add(_stdio())
        assert record.status == ServerStatus.ERROR

        await self._settle_retries("alpha")
        assert self.registry.get("alpha").status == ServerStatus.CONNECTED
        assert self.factory.backend("alpha").opens == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_fast(self):
        self.factory.backend("alpha").fail_always = True

        await self.registry.add(_stdio())
        await self._settle_retries("alpha")
        opens = self.factory.backend("alpha").opens

        assert opens == 3
        assert self.registry._connection("alpha").retries_exhausted
        with pytest.raises(BackendUnavailableError):
            await self.registry.call_tool("u1", "alpha", "echo", {})
        assert self.factory.backend("alpha").opens == opens

    @pytest.mark.asyncio
    async def test_enable_resets_exhausted_retries(self):
        backend = self.factory.backend("alpha")
        backend.fail_always = True
        await self.registry.add(_stdio())
        await self._settle_retries("alpha")

        backend.fail_always = False
        record = await self.registry.enable("alpha")

        assert record.status == ServerStatus.CONNECTED
        assert not self.registry._connection("alpha").retries_exhausted

    @pytest.mark.asyncio
    async def test_disable_closes_connection(self):
        await self.registry.add(_stdio())

        record = await self.registry.disable("alpha")

        assert record.status == ServerStatus.DISABLED
        assert self.factory.backend("alpha").closes == 1
        assert self.registry._connection("alpha").state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_call_disabled_server_never_connects(self):
        await self.registry.add(_stdio(enabled=False))

        with pytest.raises(BackendUnavailableError):
            await self.registry.call_tool("u1", "alpha", "echo", {})
        assert self.factory.backend("alpha").opens == 0

    @pytest.mark.asyncio
    async def test_call_unknown_server(self):
        with pytest.raises(NotFoundError):
            await self.registry.call_tool("u1", "missing", "echo", {})

    @pytest.mark.asyncio
    async def test_call_returns_backend_content(self):
        await self.registry.add(_stdio())

        result = await self.registry.call_tool("u1", "alpha", "echo", {"text": "hi"})

        assert result["content"][0]["text"] == 'echo:{"text": "hi"}'
        assert result["isError"] is False

    @pytest.mark.asyncio
    async def test_call_lazily_reconnects_after_exit(self):
        await self.registry.add(_stdio())
        self.factory.backend("alpha").current.on_closed(None)
        assert self.registry.get("alpha").status == ServerStatus.DISCONNECTED

        await self.registry.call_tool("u1", "alpha", "echo", {})

        assert self.factory.backend("alpha").opens == 2
        assert self.registry.get("alpha").status == ServerStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_transport_failure_is_wrapped(self):
        await self.registry.add(_stdio())
        self.factory.backend("alpha").call_error = BrokenPipeError("gone")

        with pytest.raises(TransportError):
            await self.registry.call_tool("u1", "alpha", "echo", {})
        assert self.registry.get("alpha").status == ServerStatus.ERROR

    @pytest.mark.asyncio
    async def test_secrets_restart_connection_per_user(self):
        await self.registry.add(_stdio(secret_names=["API_KEY"], env={"MODE": "test"}))
        await self.secrets.set("u1", "alpha", "API_KEY", "secret-1")
        await self.secrets.set("u2", "alpha", "API_KEY", "secret-2")
        backend = self.factory.backend("alpha")

        await self.registry.call_tool("u1", "alpha", "echo", {})
        await self.registry.call_tool("u1", "alpha", "echo", {})
        assert backend.opens == 2
        assert backend.calls[-1]["env"]["API_KEY"] == "secret-1"
        assert backend.calls[-1]["env"]["MODE"] == "test"

        await self.registry.call_tool("u2", "alpha", "echo", {})
        assert backend.opens == 3
        assert backend.calls[-1]["env"]["API_KEY"] == "secret-2"

    @pytest.mark.asyncio
    async def test_missing_secret_is_skipped(self):
        await self.registry.add(_stdio(secret_names=["API_KEY"]))

        await self.registry.call_tool("nobody", "alpha", "echo", {})

        assert self.factory.backend("alpha").opens == 1
        assert len(self.factory.backend("alpha").calls) == 1

    @pytest.mark.asyncio
    async def test_path_override_is_prefixed(self):
        await self.registry.add(_stdio(env={"PATH": "/opt/tool/bin"}))

        env = self.factory.backend("alpha").current.env
        assert env["PATH"].startswith("/opt/tool/bin")
        if os.environ.get("PATH"):
            assert env["PATH"].endswith(os.environ["PATH"])

    @pytest.mark.asyncio
    async def test_restart_waits_for_inflight_call(self):
        await self.registry.add(_stdio(secret_names=["API_KEY"]))
        await self.secrets.set("u2", "alpha", "API_KEY", "other")
        connection = self.registry._connection("alpha")
        await self.registry.call_tool("u1", "alpha", "echo", {})
        connection.acquire_lease()

        restart = asyncio.create_task(self.registry.call_tool("u2", "alpha", "echo", {}))
        await asyncio.sleep(0.01)
        assert not restart.done()

        connection.release_lease()
        await restart
        assert self.factory.backend("alpha").calls[-1]["env"]["API_KEY"] == "other"

    @pytest.mark.asyncio
    async def test_call_queued_behind_update_uses_new_descriptor(self):
        await self.registry.add(_stdio())
        connection = self.registry._connection("alpha")
        connection.acquire_lease()

        update = asyncio.create_task(
            self.registry.update("alpha", UpdateServerRequest(args=["new.js"], env={"X": "1"}))
        )
        await asyncio.sleep(0.01)
        call = asyncio.create_task(self.registry.call_tool("u1", "alpha", "echo", {}))
        await asyncio.sleep(0.01)
        assert not call.done()

        connection.release_lease()
        await update
        await call

        backend = self.factory.backend("alpha")
        assert backend.current.record.args == ["new.js"]
        assert backend.calls[-1]["env"]["X"] == "1"
        assert self.store.find_one({"name": "alpha"})["args"] == ["new.js"]
        assert (self.registry.get("alpha")).status == ServerStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_stop_with_connection_created_during_shutdown(self):
        await self.registry.add(_stdio())
        retry = asyncio.create_task(asyncio.sleep(0.01))
        self.registry._connection("alpha").retry_task = retry

        async def create_late_connection():
            self.registry._connection("late")

        late = asyncio.create_task(create_late_connection())
        await self.registry.stop()
        await late

    @pytest.mark.asyncio
    async def test_update_only_enabled_delegates(self):
        await self.registry.add(_stdio())

        record = await self.registry.update("alpha", UpdateServerRequest(enabled=False))
        assert record.status == ServerStatus.DISABLED

        record = await self.registry.update("alpha", UpdateServerRequest(enabled=True))
        assert record.status == ServerStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_update_restarts_with_new_descriptor(self):
        await self.registry.add(_stdio())

        record = await self.registry.update("alpha", UpdateServerRequest(args=["other.js"]))

        assert record.args == ["other.js"]
        assert record.status == ServerStatus.CONNECTED
        assert self.factory.backend("alpha").opens == 2
        assert self.factory.backend("alpha").current.record.args == ["other.js"]

    @pytest.mark.asyncio
    async def test_update_switches_transport(self):
        await self.registry.add(_stdio(enabled=False))

        record = await self.registry.update(
            "alpha",
            UpdateServerRequest(transport_type=TransportType.STREAMABLE_HTTP, url="http://localhost:9000/mcp"),
        )

        assert record.command is None
        assert record.args == []
        assert record.url == "http://localhost:9000/mcp"

    @pytest.mark.asyncio
    async def test_update_unknown_server(self):
        with pytest.raises(NotFoundError):
            await self.registry.update("missing", UpdateServerRequest(args=[]))

    @pytest.mark.asyncio
    async def test_delete_releases_connection(self):
        await self.registry.add(_stdio())

        await self.registry.delete("alpha")

        assert not self.registry.has("alpha")
        assert self.factory.backend("alpha").closes == 1
        assert self.store.find_one({"name": "alpha"}) is None

    @pytest.mark.asyncio
    async def test_init_reloads_persisted_servers(self):
        await self.registry.add(_stdio())
        await self.registry.add(_stdio("beta", enabled=False))

        registry = ConnectionRegistry(self.store, self.factory, self.secrets)
        await registry.init()

        assert registry.get("alpha").status == ServerStatus.CONNECTED
        assert registry.get("beta").status == ServerStatus.DISABLED
        await registry.stop()

    @pytest.mark.asyncio
    async def test_list_tools_skips_disabled(self):
        await self.registry.add(_stdio())
        await self.registry.add(_stdio("beta", enabled=False))

        tools = self.registry.list_tools()

        assert list(tools) == ["alpha"]
        assert [t.name for t in tools["alpha"]] == ["echo", "add"]
