"""
Version comparison and registry lookups.
"""

from functools import cmp_to_key
from typing import Optional
from urllib.parse import quote

import httpx

from mcp_gateway.core.models import Runtime
from mcp_gateway.core.retry import RetryExhausted, RetryPolicy
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)

UNKNOWN_VERSION = "unknown"


def _segment(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        return 0
    return number if number >= 0 else 0


def compare_versions(a: str, b: str) -> int:
    """
    Compare dotted versions segment by segment.

    Missing or non-numeric segments count as 0.

    Returns:
        -1, 0 or 1
    """
    left = [_segment(part) for part in a.split(".")]
    right = [_segment(part) for part in b.split(".")]
    for i in range(max(len(left), len(right))):
        x = left[i] if i < len(left) else 0
        y = right[i] if i < len(right) else 0
        if x != y:
            return 1 if x > y else -1
    return 0


class VersionOracle:
    """Looks up the latest published version of a package."""

    def __init__(
        self,
        npm_registry: str = "https://registry.npmjs.org",
        pypi_index: str = "https://pypi.org",
        timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.npm_registry = npm_registry.rstrip("/")
        self.pypi_index = pypi_index.rstrip("/")
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=2)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _npm_latest(self, client: httpx.AsyncClient, name: str) -> str:
        response = await client.get(f"{self.npm_registry}/{quote(name, safe='@')}/latest")
        response.raise_for_status()
        version = response.json().get("version")
        if not version:
            raise ValueError(f"No version in npm registry response for {name}")
        return version

    async def _pypi_latest(self, client: httpx.AsyncClient, name: str) -> str:
        response = await client.get(f"{self.pypi_index}/pypi/{name}/json")
        response.raise_for_status()
        releases = list(response.json().get("releases", {}).keys())
        if not releases:
            raise ValueError(f"No releases listed on PyPI for {name}")
        return max(releases, key=cmp_to_key(compare_versions))

    async def latest_version(self, name: str, runtime: Runtime) -> str:
        """
        Latest published version of ``name``.

        Raises:
            RetryExhausted: Every lookup attempt failed
        """
        async with self._client() as client:
            if runtime == Runtime.PYTHON:
                lookup = lambda: self._pypi_latest(client, name)  # noqa: E731
            else:
                lookup = lambda: self._npm_latest(client, name)  # noqa: E731
            return await self.retry_policy.run(lookup)

    async def latest_or_unknown(self, name: str, runtime: Runtime) -> str:
        """Like ``latest_version`` but returns ``"unknown"`` on failure."""
        try:
            return await self.latest_version(name, runtime)
        except RetryExhausted as e:
            logger.warning(f"Version lookup failed for {name}: {e.last_error}")
            return UNKNOWN_VERSION
