"""
Pytest configuration and fixtures for MCP Gateway testing.

Backends and package tooling are replaced by in-process fakes so the
gateway can be exercised end to end without spawning processes or
touching the network.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from cryptography.fernet import Fernet

from mcp_gateway.core.exceptions import TransportError
from mcp_gateway.core.models import ServerRecord, ToolInfo
from mcp_gateway.core.packages.runner import CommandResult, CommandRunner
from mcp_gateway.core.transport import TransportFactory, TransportSession
from mcp_gateway.gateway import Gateway
from mcp_gateway.utils.config import GatewayConfig


class FakeBackend:
    """State of one fake MCP server, shared across its sessions."""

    def __init__(self, tools: Optional[List[str]] = None):
        self.tools = list(tools or ["echo", "add"])
        self.opens = 0
        self.closes = 0
        self.fail_opens = 0
        self.fail_always = False
        self.call_error: Optional[Exception] = None
        self.calls: List[Dict[str, Any]] = []
        self.sessions: List["FakeSession"] = []

    @property
    def current(self) -> "FakeSession":
        return self.sessions[-1]


class FakeSession(TransportSession):
    def __init__(self, backend: FakeBackend, record: ServerRecord, env: Dict[str, str], on_tools_changed, on_closed):
        self.backend = backend
        self.record = record
        self.env = env
        self.on_tools_changed = on_tools_changed
        self.on_closed = on_closed
        self.closed = False

    async def list_tools(self) -> List[ToolInfo]:
        return [ToolInfo(name=name, description=f"{name} tool") for name in self.backend.tools]

    async def call_tool(self, method: str, args: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        self.backend.calls.append({"method": method, "args": args, "env": self.env})
        if self.backend.call_error is not None:
            raise self.backend.call_error
        return {
            "content": [{"type": "text", "text": f"{method}:{json.dumps(args, sort_keys=True)}"}],
            "isError": False,
        }

    async def close(self) -> None:
        self.closed = True
        self.backend.closes += 1


class FakeTransportFactory(TransportFactory):
    def __init__(self):
        self.backends: Dict[str, FakeBackend] = {}

    def backend(self, name: str, tools: Optional[List[str]] = None) -> FakeBackend:
        if name not in self.backends:
            self.backends[name] = FakeBackend(tools)
        elif tools is not None:
            self.backends[name].tools = list(tools)
        return self.backends[name]

    async def open(self, record, env, on_tools_changed=None, on_closed=None) -> TransportSession:
        backend = self.backend(record.name)
        backend.opens += 1
        if backend.fail_always or backend.fail_opens > 0:
            backend.fail_opens = max(0, backend.fail_opens - 1)
            raise TransportError(f"Failed to start server '{record.name}': boom")
        session = FakeSession(backend, record, env, on_tools_changed, on_closed)
        backend.sessions.append(session)
        return session


class FakeCommandRunner(CommandRunner):
    """Simulates npm, venv and pip by writing the files they would produce."""

    def __init__(self):
        self.calls: List[List[str]] = []
        self.npm_latest = "1.2.0"
        self.npm_manifest: Dict[str, Any] = {"bin": {"demo": "dist/index.js"}}
        self.npm_stderr = ""
        self.npm_fail = False
        self.pip_version = "0.3.0"
        self.pip_fail = False

    @staticmethod
    def _ok(args: List[str], stdout: str = "", stderr: str = "") -> CommandResult:
        return CommandResult(args=list(args), returncode=0, stdout=stdout, stderr=stderr)

    async def run(self, args, cwd=None, env=None) -> CommandResult:
        args = list(args)
        self.calls.append(args)

        if args[0] == "npm" and args[1] == "init":
            Path(cwd, "package.json").write_text(json.dumps({"name": "install", "version": "1.0.0"}))
            return self._ok(args)

        if args[0] == "npm" and args[1] == "install":
            if self.npm_fail:
                return CommandResult(args=args, returncode=1, stdout="", stderr="npm ERR! code E404")
            spec = args[2]
            at = spec.rfind("@")
            name, version = (spec[:at], spec[at + 1:]) if at > 0 else (spec, "latest")
            if version == "latest":
                version = self.npm_latest
            package_dir = Path(cwd, "node_modules", name)
            package_dir.mkdir(parents=True, exist_ok=True)
            manifest = {"name": name, "version": version, **self.npm_manifest}
            (package_dir / "package.json").write_text(json.dumps(manifest))
            return self._ok(args, stderr=self.npm_stderr)

        if args[1:3] == ["-m", "venv"]:
            return self._ok(args)

        if args[1:4] == ["-m", "pip", "install"]:
            if self.pip_fail:
                return CommandResult(args=args, returncode=1, stdout="", stderr="ERROR: No matching distribution")
            return self._ok(args)

        if args[1:4] == ["-m", "pip", "show"]:
            return self._ok(args, stdout=f"Name: {args[4]}\nVersion: {self.pip_version}\nSummary: test\n")

        return CommandResult(args=args, returncode=127, stdout="", stderr=f"unknown command {args[0]}")


def registry_handler(versions: Dict[str, str]):
    """httpx handler answering npm ``/latest`` and PyPI JSON lookups."""

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/pypi/"):
            name = path.split("/")[2]
            if name not in versions:
                return httpx.Response(404)
            return httpx.Response(200, json={"releases": {"0.1.0": [], versions[name]: [], "0.2.0": []}})
        name = path.strip("/").rsplit("/latest", 1)[0]
        if name not in versions:
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json={"name": name, "version": versions[name]})

    return handler


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def command_runner():
    return FakeCommandRunner()


@pytest.fixture
def registry_versions():
    return {"demo-pkg": "1.2.0", "demo-py": "0.4.0"}


@pytest.fixture
def gateway_config(tmp_path):
    return GatewayConfig(
        store={"backend": "memory"},
        secrets={"key": Fernet.generate_key().decode()},
        packages={"packages_dir": str(tmp_path / "packages")},
        retry={"max_attempts": 3, "base_delay": 0.0, "lookup_attempts": 1},
    )


@pytest_asyncio.fixture
async def gateway(gateway_config, transport_factory, command_runner, registry_versions):
    gw = Gateway(
        gateway_config,
        transport_factory=transport_factory,
        runner=command_runner,
        http_transport=httpx.MockTransport(registry_handler(registry_versions)),
    )
    await gw.init()
    yield gw
    await gw.stop()
