"""
Test server copies: creation rules, method scoping and reconciliation.
"""

import pytest

from mcp_gateway.core.exceptions import (
    BackendUnavailableError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from mcp_gateway.core.models import AddServerRequest, ServerStatus, UpdateServerRequest


class TestCapabilityProxy:
    """Test copy behaviour through the gateway."""

    async def _original(self, gateway, name: str = "alpha", **kwargs):
        return await gateway.add_server(AddServerRequest(name=name, command="node", args=["server.js"], **kwargs))

    @pytest.mark.asyncio
    async def test_create_copy(self, gateway):
        await self._original(gateway)

        copy = await gateway.create_server_copy("alpha", "alpha-echo", ["echo", "echo"])

        assert copy.is_copy
        assert copy.original_name == "alpha"
        assert copy.allowed_methods == ["echo"]
        assert copy.status == ServerStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_copy_of_missing_original(self, gateway):
        with pytest.raises(NotFoundError):
            await gateway.create_server_copy("missing", "copy", ["echo"])

    @pytest.mark.asyncio
    async def test_copy_of_copy_rejected(self, gateway):
        await self._original(gateway)
        await gateway.create_server_copy("alpha", "alpha-echo", ["echo"])

        with pytest.raises(ValidationError):
            await gateway.create_server_copy("alpha-echo", "alpha-echo-2", ["echo"])

    @pytest.mark.asyncio
    async def test_unknown_method_rejected(self, gateway):
        await self._original(gateway)

        with pytest.raises(ValidationError):
            await gateway.create_server_copy("alpha", "alpha-x", ["echo", "delete_everything"])
        assert not gateway.registry.has("alpha-x")

    @pytest.mark.asyncio
    async def test_duplicate_copy_name(self, gateway):
        await self._original(gateway)
        await self._original(gateway, "beta")

        with pytest.raises(ConflictError):
            await gateway.create_server_copy("alpha", "beta", ["echo"])

    @pytest.mark.asyncio
    async def test_call_outside_allowlist_never_reaches_backend(self, gateway, transport_factory):
        await self._original(gateway)
        await gateway.create_server_copy("alpha", "alpha-echo", ["echo"])
        backend = transport_factory.backend("alpha")
        opens = backend.opens

        with pytest.raises(PermissionDeniedError):
            await gateway.call_tool("u1", "alpha-echo", "add", {"a": 1})

        assert backend.calls == []
        assert backend.opens == opens

    @pytest.mark.asyncio
    async def test_call_through_copy_uses_original_connection(self, gateway, transport_factory):
        await self._original(gateway)
        await gateway.create_server_copy("alpha", "alpha-echo", ["echo"])

        result = await gateway.call_tool("u1", "alpha-echo", "echo", {"text": "hi"})

        assert result["content"][0]["text"] == 'echo:{"text": "hi"}'
        assert transport_factory.backend("alpha").opens == 1
        assert "alpha-echo" not in transport_factory.backends

    @pytest.mark.asyncio
    async def test_copy_reports_disabled_original(self, gateway):
        await self._original(gateway)
        await gateway.create_server_copy("alpha", "alpha-echo", ["echo"])

        await gateway.disable_server("alpha")

        assert (await gateway.get_server("alpha-echo")).status == ServerStatus.DISABLED
        with pytest.raises(BackendUnavailableError):
            await gateway.call_tool("u1", "alpha-echo", "echo", {})

    @pytest.mark.asyncio
    async def test_disabled_copy_leaves_original_running(self, gateway):
        await self._original(gateway)
        await gateway.create_server_copy("alpha", "alpha-echo", ["echo"])

        await gateway.disable_server("alpha-echo")

        assert (await gateway.get_server("alpha")).status == ServerStatus.CONNECTED
        assert (await gateway.get_server("alpha-echo")).status == ServerStatus.DISABLED
        with pytest.raises(BackendUnavailableError):
            await gateway.call_tool("u1", "alpha-echo", "echo", {})

    @pytest.mark.asyncio
    async def test_list_tools_filters_copy(self, gateway):
        await self._original(gateway)
        await gateway.create_server_copy("alpha", "alpha-echo", ["echo"])

        tools = await gateway.list_tools()

        assert [t.name for t in tools["alpha-echo"]] == ["echo"]
        assert [t.name for t in tools["alpha"]] == ["echo", "add"]

    @pytest.mark.asyncio
    async def test_update_methods(self, gateway):
        await self._original(gateway)
        await gateway.create_server_copy("alpha", "alpha-echo", ["echo"])

        copy = await gateway.update_server_copy_methods("alpha-echo", ["add"])
        assert copy.allowed_methods == ["add"]

        with pytest.raises(ValidationError):
            await gateway.update_server_copy_methods("alpha-echo", ["nope"])
        with pytest.raises(ValidationError):
            await gateway.update_server_copy_methods("alpha", ["echo"])

    @pytest.mark.asyncio
    async def test_reconcile_prunes_but_keeps_copy(self, gateway, transport_factory):
        await self._original(gateway)
        await gateway.create_server_copy("alpha", "alpha-add", ["add"])

        transport_factory.backend("alpha").tools = ["echo"]
        await gateway.update_server("alpha", UpdateServerRequest(args=["server.js", "--reload"]))

        copy = await gateway.get_server("alpha-add")
        assert copy.allowed_methods == []
        assert copy.warning
        assert gateway.registry.has("alpha-add")

    @pytest.mark.asyncio
    async def test_reconcile_on_backend_notification(self, gateway, transport_factory):
        await self._original(gateway)
        await gateway.create_server_copy("alpha", "alpha-both", ["echo", "add"])
        backend = transport_factory.backend("alpha")
        connection = gateway.registry._connection("alpha")

        backend.tools = ["add"]
        backend.current.on_tools_changed()
        await connection._refresh_task

        copy = await gateway.get_server("alpha-both")
        assert copy.allowed_methods == ["add"]
        assert copy.warning is None

    @pytest.mark.asyncio
    async def test_delete_copy(self, gateway):
        await self._original(gateway)
        await gateway.create_server_copy("alpha", "alpha-echo", ["echo"])

        await gateway.delete_server_copy("alpha-echo")

        assert not gateway.registry.has("alpha-echo")
        assert gateway.registry.has("alpha")
        with pytest.raises(ValidationError):
            await gateway.delete_server_copy("alpha")

    @pytest.mark.asyncio
    async def test_deleting_original_cascades(self, gateway):
        await self._original(gateway)
        await gateway.create_server_copy("alpha", "alpha-echo", ["echo"])

        await gateway.delete_server("alpha")

        assert not gateway.registry.has("alpha-echo")
