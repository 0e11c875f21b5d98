"""
Backend connection state machine.

One ``BackendConnection`` exists per non-copy server identity. It owns
the live transport session, the environment fingerprint loaded into it,
the cached tool list and the count of in-flight calls.
"""

import asyncio
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from mcp_gateway.core.exceptions import BackendUnavailableError, TransportError
from mcp_gateway.core.models import ServerRecord, ServerStatus, ToolInfo
from mcp_gateway.core.transport import TransportFactory, TransportSession
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    """Connection lifecycle state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"

    def to_status(self) -> ServerStatus:
        return ServerStatus(self.value)


_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {ConnectionState.CONNECTED, ConnectionState.ERROR},
    ConnectionState.CONNECTED: {ConnectionState.DISCONNECTED, ConnectionState.ERROR},
    ConnectionState.ERROR: {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED},
}

ToolsListener = Callable[[str, List[ToolInfo]], Awaitable[None]]


class BackendConnection:
    """Live session with one backend plus its state machine."""

    def __init__(
        self,
        name: str,
        factory: TransportFactory,
        on_tools_changed: Optional[ToolsListener] = None,
        log_buffer_size: int = 100,
    ):
        self.name = name
        self.factory = factory
        self.state = ConnectionState.DISCONNECTED
        self.session: Optional[TransportSession] = None
        self.fingerprint: Optional[str] = None
        self.tools: List[ToolInfo] = []
        self.last_error: Optional[str] = None
        self.retries_exhausted = False
        self.retry_task: Optional[asyncio.Task] = None
        self.logs: Deque[str] = deque(maxlen=log_buffer_size)
        self._on_tools_changed = on_tools_changed
        self._inflight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def retrying(self) -> bool:
        """Whether a background reconnect is in progress."""
        return self.retry_task is not None and not self.retry_task.done()

    @property
    def inflight(self) -> int:
        return self._inflight

    def _transition(self, new_state: ConnectionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid connection transition for '{self.name}': "
                f"{self.state.value} -> {new_state.value}"
            )
        logger.debug(f"{self.name}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def _log(self, message: str) -> None:
        self.logs.append(message)

    async def connect(self, record: ServerRecord, env: Dict[str, str], fingerprint: str) -> List[ToolInfo]:
        """
        Open a session and load its tool list.

        Must be called from ``disconnected`` or ``error``. On failure the
        connection ends in ``error`` and the exception propagates.
        """
        self._transition(ConnectionState.CONNECTING)
        await self._drop_session()
        session: Optional[TransportSession] = None
        try:
            session = await self.factory.open(
                record,
                env,
                on_tools_changed=self._tools_changed,
                on_closed=self._session_closed,
            )
            tools = await session.list_tools()
        except Exception as e:
            self.last_error = str(e)
            self._log(f"connect failed: {e}")
            self._transition(ConnectionState.ERROR)
            if session is not None:
                await session.close()
            raise

        self.session = session
        self.fingerprint = fingerprint
        self.tools = tools
        self.last_error = None
        self.retries_exhausted = False
        self._transition(ConnectionState.CONNECTED)
        self._log(f"connected ({len(tools)} tools)")
        logger.info(f"Connected to server '{self.name}' ({len(tools)} tools)", extra={"server": self.name})
        return tools

    async def close(self) -> None:
        """Wait for in-flight calls to drain, then close the session."""
        if self._inflight:
            logger.debug(f"Waiting for {self._inflight} in-flight call(s) on '{self.name}'")
            await self._idle.wait()
        await self._drop_session()
        if self.state in (ConnectionState.CONNECTED, ConnectionState.ERROR):
            self._transition(ConnectionState.DISCONNECTED)

    async def _drop_session(self) -> None:
        session, self.session = self.session, None
        self.fingerprint = None
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        if session is not None:
            await session.close()

    def acquire_lease(self) -> None:
        """Register an in-flight call; ``close()`` waits for it."""
        self._inflight += 1
        self._idle.clear()

    def release_lease(self) -> None:
        self._inflight -= 1
        if self._inflight <= 0:
            self._inflight = 0
            self._idle.set()

    def mark_error(self, message: str) -> None:
        """Record a transport failure observed during a call."""
        self.last_error = message
        self._log(f"error: {message}")
        if self.state == ConnectionState.CONNECTED:
            self._transition(ConnectionState.ERROR)

    async def invoke(
        self,
        method: str,
        args: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Dispatch one tool call.

        Raises:
            BackendUnavailableError: The connection is not connected
            TransportError: The call failed; the connection moves to ``error``
        """
        if self.state != ConnectionState.CONNECTED or self.session is None:
            raise BackendUnavailableError(
                f"Server '{self.name}' is not connected",
                details={"server": self.name, "state": self.state.value},
            )
        try:
            return await self.session.call_tool(method, args, timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.mark_error(str(e))
            logger.error(f"Call {self.name}.{method} failed: {e}", extra={"server": self.name})
            raise TransportError(
                f"Call to '{method}' on server '{self.name}' failed: {e}",
                details={"server": self.name, "method": method, "cause": str(e)},
            ) from e

    def list_methods(self) -> List[ToolInfo]:
        """Tool list loaded by the last connect or change notification."""
        return list(self.tools)

    def _tools_changed(self) -> None:
        if self.session is None:
            return
        self._refresh_task = asyncio.create_task(self._refresh_tools())

    async def _refresh_tools(self) -> None:
        session = self.session
        if session is None:
            return
        try:
            tools = await session.list_tools()
        except Exception as e:
            logger.warning(f"Failed to refresh tools for '{self.name}': {e}")
            return
        self.tools = tools
        self._log(f"tool list changed ({len(tools)} tools)")
        if self._on_tools_changed:
            await self._on_tools_changed(self.name, tools)

    def _session_closed(self, error: Optional[str]) -> None:
        self.session = None
        self.fingerprint = None
        if error:
            self.last_error = error
            self._log(f"session ended: {error}")
        else:
            self._log("session ended")
        if self.state == ConnectionState.CONNECTED:
            self._transition(ConnectionState.DISCONNECTED)
        logger.info(f"Server '{self.name}' disconnected", extra={"server": self.name})
