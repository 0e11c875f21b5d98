"""
Test version comparison and registry lookups.
"""

import httpx
import pytest

from mcp_gateway.core.models import Runtime
from mcp_gateway.core.retry import RetryExhausted, RetryPolicy
from mcp_gateway.core.versions import UNKNOWN_VERSION, VersionOracle, compare_versions
from tests.conftest import registry_handler


class TestCompareVersions:
    """Test segment-wise version comparison."""

    @pytest.mark.parametrize("a,b,expected", [
        ("1.2.3", "1.2.3.4", -1),
        ("10.2.3", "2.10.3", 1),
        ("1.0", "1.0.0", 0),
        ("1.2.3", "1.2.3", 0),
        ("2.0.0", "1.9.9", 1),
        ("0.0.1", "0.1", -1),
    ])
    def test_known_orderings(self, a, b, expected):
        assert compare_versions(a, b) == expected

    def test_non_numeric_segments_count_as_zero(self):
        assert compare_versions("1.x.0", "1.0.0") == 0
        assert compare_versions("1.0.0-beta", "1.0.0") == 0
        assert compare_versions("latest", "0") == 0

    @pytest.mark.parametrize("a,b", [
        ("1.2.3", "1.2.4"),
        ("10.0", "9.99.99"),
        ("1", "1.0.0.1"),
        ("3.1.4", "3.1.4"),
    ])
    def test_antisymmetry(self, a, b):
        assert compare_versions(a, b) == -compare_versions(b, a)


class TestVersionOracle:
    """Test registry lookups with a mocked HTTP transport."""

    def _oracle(self, handler, attempts: int = 1) -> VersionOracle:
        return VersionOracle(
            retry_policy=RetryPolicy(max_attempts=attempts, base_delay=0.0),
            transport=httpx.MockTransport(handler),
        )

    @pytest.mark.asyncio
    async def test_npm_latest(self):
        oracle = self._oracle(registry_handler({"demo-pkg": "1.2.0"}))
        assert await oracle.latest_version("demo-pkg", Runtime.NODE) == "1.2.0"

    @pytest.mark.asyncio
    async def test_pypi_picks_highest_release(self):
        oracle = self._oracle(registry_handler({"demo-py": "0.10.0"}))
        assert await oracle.latest_version("demo-py", Runtime.PYTHON) == "0.10.0"

    @pytest.mark.asyncio
    async def test_missing_package_raises_after_retries(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(404)

        oracle = self._oracle(handler, attempts=2)
        with pytest.raises(RetryExhausted):
            await oracle.latest_version("nope", Runtime.NODE)
        assert len(requests) == 2

    @pytest.mark.asyncio
    async def test_unreachable_registry_is_unknown(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        oracle = self._oracle(handler)
        assert await oracle.latest_or_unknown("demo-pkg", Runtime.NODE) == UNKNOWN_VERSION

    @pytest.mark.asyncio
    async def test_scoped_npm_name(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={"version": "2.0.0"})

        oracle = self._oracle(handler)
        assert await oracle.latest_version("@scope/server", Runtime.NODE) == "2.0.0"
        assert seen[0].endswith("/latest")
        assert "@scope" in seen[0]
