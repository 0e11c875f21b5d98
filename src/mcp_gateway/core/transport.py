"""
Backend transports.

A transport session is one live MCP client session with a backend
process (stdio) or a remote endpoint (streamable HTTP). The gateway only
needs to list tools, call a tool and close; everything else about the
wire protocol stays inside the ``mcp`` SDK.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from mcp import ClientSession, StdioServerParameters, types
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from mcp_gateway.core.exceptions import TransportError
from mcp_gateway.core.models import ServerRecord, ToolInfo, TransportType
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)

ToolsChangedCallback = Callable[[], None]
ClosedCallback = Callable[[Optional[str]], None]


class TransportSession(ABC):
    """An open session with one backend."""

    @abstractmethod
    async def list_tools(self) -> List[ToolInfo]:
        """Tools currently advertised by the backend."""

    @abstractmethod
    async def call_tool(
        self,
        method: str,
        args: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Invoke a tool and return its result as a JSON dict."""

    @abstractmethod
    async def close(self) -> None:
        """Close the session and release the backend."""


class TransportFactory(ABC):
    """Opens transport sessions for server records."""

    @abstractmethod
    async def open(
        self,
        record: ServerRecord,
        env: Dict[str, str],
        on_tools_changed: Optional[ToolsChangedCallback] = None,
        on_closed: Optional[ClosedCallback] = None,
    ) -> TransportSession:
        """
        Open a session for ``record``.

        Args:
            record: Server descriptor
            env: Full process environment (stdio only)
            on_tools_changed: Called when the backend reports a new tool list
            on_closed: Called with an error message (or None) when the
                session ends without ``close()`` being called

        Raises:
            TransportError: The backend could not be started or initialized
        """


class McpSession(TransportSession):
    """
    MCP ``ClientSession`` driven by a dedicated task.

    The SDK's streams are anyio task groups that must be entered and
    exited from the same task, so the whole session lifetime lives in
    ``_run`` and callers only talk to the initialized session object.
    """

    def __init__(
        self,
        record: ServerRecord,
        env: Dict[str, str],
        on_tools_changed: Optional[ToolsChangedCallback] = None,
        on_closed: Optional[ClosedCallback] = None,
    ):
        self.record = record
        self._env = env
        self._on_tools_changed = on_tools_changed
        self._on_closed = on_closed
        self._session: Optional[ClientSession] = None
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()
        self._closing = False
        self._task: Optional[asyncio.Task] = None

    async def start(self, timeout: Optional[float] = None) -> None:
        """Start the session task and wait until the handshake completes."""
        self._task = asyncio.create_task(self._run(), name=f"mcp-session-{self.record.name}")
        ready = asyncio.create_task(self._ready.wait())
        try:
            done, _ = await asyncio.wait(
                {self._task, ready},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            ready.cancel()
            await self.close()
            raise

        if ready in done:
            return

        ready.cancel()
        if self._task in done:
            error = self._task.exception()
            raise TransportError(
                f"Failed to start server '{self.record.name}': {error}",
                details={"server": self.record.name},
            )

        await self.close()
        raise TransportError(
            f"Timed out starting server '{self.record.name}' after {timeout}s",
            details={"server": self.record.name},
        )

    async def _run(self) -> None:
        error: Optional[str] = None
        try:
            async with AsyncExitStack() as stack:
                if self.record.transport_type == TransportType.STREAMABLE_HTTP:
                    read, write, _ = await stack.enter_async_context(
                        streamablehttp_client(self.record.url, headers=self.record.headers or None)
                    )
                else:
                    params = StdioServerParameters(
                        command=self.record.command,
                        args=self.record.args,
                        env=self._env,
                    )
                    read, write = await stack.enter_async_context(stdio_client(params))

                session = await stack.enter_async_context(
                    ClientSession(read, write, message_handler=self._handle_message)
                )
                await session.initialize()
                self._session = session
                self._ready.set()
                logger.debug(f"MCP session ready: {self.record.name}")
                await self._stop.wait()
        except Exception as e:
            error = str(e)
            if not self._ready.is_set():
                raise
            logger.warning(f"MCP session for '{self.record.name}' ended: {e}")
        finally:
            self._session = None
            if self._ready.is_set() and not self._closing and self._on_closed:
                self._on_closed(error)

    async def _handle_message(self, message: Any) -> None:
        if isinstance(message, Exception):
            logger.warning(f"Transport error from '{self.record.name}': {message}")
            return
        if isinstance(message, types.ServerNotification) and isinstance(
            message.root, types.ToolListChangedNotification
        ):
            logger.debug(f"Tool list changed: {self.record.name}")
            if self._on_tools_changed:
                self._on_tools_changed()

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise TransportError(
                f"Session for server '{self.record.name}' is not open",
                details={"server": self.record.name},
            )
        return self._session

    async def list_tools(self) -> List[ToolInfo]:
        result = await self._require_session().list_tools()
        return [
            ToolInfo(name=tool.name, description=tool.description, input_schema=tool.inputSchema or {})
            for tool in result.tools
        ]

    async def call_tool(
        self,
        method: str,
        args: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        read_timeout = timedelta(seconds=timeout) if timeout else None
        result = await self._require_session().call_tool(
            method, args, read_timeout_seconds=read_timeout
        )
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)

    async def close(self) -> None:
        self._closing = True
        self._stop.set()
        if self._task is None:
            return
        if not self._ready.is_set():
            # Still in the handshake, nothing will observe _stop.
            self._task.cancel()
        await asyncio.wait({self._task})
        if not self._task.cancelled() and self._task.exception() is not None:
            logger.debug(f"MCP session for '{self.record.name}' closed with error: {self._task.exception()}")


class McpTransportFactory(TransportFactory):
    """Opens ``McpSession`` instances."""

    def __init__(self, connect_timeout: float = 30.0):
        self.connect_timeout = connect_timeout

    async def open(
        self,
        record: ServerRecord,
        env: Dict[str, str],
        on_tools_changed: Optional[ToolsChangedCallback] = None,
        on_closed: Optional[ClosedCallback] = None,
    ) -> TransportSession:
        session = McpSession(record, env, on_tools_changed, on_closed)
        await session.start(timeout=record.startup_timeout or self.connect_timeout)
        return session
