"""
Unit tests for authenticated upstream clients.
"""

import io
import pytest
import httpx

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_proxy.app.adapters.upstream_client import AuthenticatedHttpClient, ClientRegistry
from service_proxy.app.auth.credentials import create_auth_payload
from service_proxy.app.auth.token_manager import TokenManager
from service_proxy.app.caching.kv_cache import KeyValueCache
from service_proxy.app.config import TenantConfig, UpstreamConfig
from shared.errors import (
    UpstreamConfigurationError,
    UpstreamConnectionError,
    UpstreamResponseError,
    UpstreamTimeoutError,
)
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig
from shared.test_helpers import MockTokenIssuer, MockUpstream


SECRET = "$jwt@moph#"
FAST_RETRY = RetryConfig(max_attempts=4, base_delay=0.0, max_delay=0.0, jitter=False)


class TestAuthenticatedHttpClient:
    """Test cases for AuthenticatedHttpClient."""

    @pytest.fixture
    def issuer(self):
        return MockTokenIssuer()

    @pytest.fixture
    def cache(self):
        return KeyValueCache(None)

    @pytest.fixture
    def tokens(self, cache, issuer):
        tenants = {"mophic": TenantConfig(name="mophic", auth_url="https://auth.test", secret=SECRET)}
        return TokenManager(cache, tenants, http_client=issuer.client())

    @pytest.fixture
    def upstream(self):
        return MockUpstream()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("proxy")

    def _client(self, tokens, upstream, metrics=None, name="mophic", refresh_statuses=(401,)):
        config = UpstreamConfig(
            name=name,
            base_url="https://ic.test",
            tenant="mophic",
            refresh_statuses=refresh_statuses,
        )
        return AuthenticatedHttpClient(
            config,
            tokens,
            timeout_ms=1500,
            retry_config=FAST_RETRY,
            transport=upstream.transport(),
            metrics=metrics,
        )

    async def _login(self, cache):
        payload = create_auth_payload("ic.user", "pa55word", SECRET, "")
        await cache.set("mophic-auth-payload", payload.to_json())

    @pytest.mark.asyncio
    async def test_bearer_token_is_attached(self, tokens, cache, issuer, upstream):
        await self._login(cache)
        client = self._client(tokens, upstream)

        response = await client.get("/api/ImmunizationTarget?cid=1")

        assert response.status_code == 200
        assert upstream.authorization == [f"Bearer {issuer.issued[0]}"]
        assert str(upstream.requests[0].url) == "https://ic.test/api/ImmunizationTarget?cid=1"
        assert upstream.requests[0].headers["Accept"] == "application/json"

    @pytest.mark.asyncio
    async def test_missing_token_never_contacts_upstream(self, tokens, upstream):
        client = self._client(tokens, upstream)

        with pytest.raises(UpstreamConfigurationError) as exc_info:
            await client.get("/api/ImmunizationTarget")

        assert exc_info.value.status_code == 401
        assert exc_info.value.message.endswith(
            "Cannot create token, please check the username and password configuration."
        )
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_unauthorized_triggers_one_refresh_and_replay(self, tokens, cache, issuer, upstream, metrics):
        await self._login(cache)
        upstream.responses = [httpx.Response(401, text="expired")]
        client = self._client(tokens, upstream, metrics=metrics)

        response = await client.get("/api/ImmunizationTarget")

        assert response.status_code == 200
        assert len(upstream.requests) == 2
        assert len(issuer.calls) == 2
        assert upstream.authorization[1] == f"Bearer {issuer.issued[1]}"
        assert metrics.registry.get_sample_value("token_refresh_total", {"endpoint": "mophic"}) == 1

    @pytest.mark.asyncio
    async def test_second_unauthorized_is_surfaced(self, tokens, cache, upstream):
        await self._login(cache)
        upstream.responses = [httpx.Response(401, text="expired"), httpx.Response(401, text="still expired")]
        client = self._client(tokens, upstream)

        with pytest.raises(UpstreamResponseError) as exc_info:
            await client.get("/api/ImmunizationTarget")

        assert exc_info.value.status_code == 401
        assert exc_info.value.body == "still expired"
        assert len(upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_failed_refresh_returns_original_response(self, tokens, cache, issuer, upstream):
        await self._login(cache)
        client = self._client(tokens, upstream)
        await client.get("/warm")

        issuer.status_code = 500
        upstream.responses = [httpx.Response(401, text="expired")]

        with pytest.raises(UpstreamResponseError) as exc_info:
            await client.get("/api/ImmunizationTarget")

        assert exc_info.value.upstream_status == 401
        assert len(upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_not_implemented_only_refreshes_where_configured(self, tokens, cache, upstream):
        await self._login(cache)
        ic = self._client(tokens, upstream)
        upstream.responses = [httpx.Response(501)]

        with pytest.raises(UpstreamResponseError):
            await ic.get("/api/x")
        assert len(upstream.requests) == 1

        phr = self._client(tokens, upstream, name="phr", refresh_statuses=(401, 501))
        upstream.responses = [httpx.Response(501)]

        response = await phr.get("/api/x")

        assert response.status_code == 200
        assert len(upstream.requests) == 3

    @pytest.mark.asyncio
    async def test_multipart_body_is_replayed_intact(self, tokens, cache, upstream):
        await self._login(cache)
        upstream.responses = [httpx.Response(401)]
        client = self._client(tokens, upstream)

        files = [
            ("hospital_code", (None, b"11111")),
            ("file", ("report.csv", io.BytesIO(b"a,b\n1,2\n"), "text/csv")),
        ]
        await client.post("/api/upload", files=files)

        assert len(upstream.bodies) == 2
        assert upstream.bodies[0] == upstream.bodies[1]
        assert b"a,b\n1,2\n" in upstream.bodies[1]

    @pytest.mark.asyncio
    async def test_connect_errors_are_retried_for_any_method(self, tokens, cache, upstream):
        await self._login(cache)
        upstream.responses = [httpx.ConnectError("connection refused"), httpx.ConnectError("connection refused")]
        client = self._client(tokens, upstream)

        response = await client.post("/api/x", json={"a": 1})

        assert response.status_code == 200
        assert len(upstream.requests) == 3

    @pytest.mark.asyncio
    async def test_read_errors_not_retried_for_post(self, tokens, cache, upstream):
        await self._login(cache)
        upstream.responses = [httpx.ReadError("connection reset")]
        client = self._client(tokens, upstream)

        with pytest.raises(UpstreamConnectionError) as exc_info:
            await client.post("/api/x", json={"a": 1})

        assert exc_info.value.attempts == 1
        assert exc_info.value.status_code == 502
        assert len(upstream.requests) == 1

    @pytest.mark.asyncio
    async def test_read_errors_retried_for_get(self, tokens, cache, upstream):
        await self._login(cache)
        upstream.responses = [httpx.ReadError("connection reset")]
        client = self._client(tokens, upstream)

        response = await client.get("/api/x")

        assert response.status_code == 200
        assert len(upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_connection_error(self, tokens, cache, upstream):
        await self._login(cache)
        upstream.responses = [httpx.ConnectError("connection refused") for _ in range(4)]
        client = self._client(tokens, upstream)

        with pytest.raises(UpstreamConnectionError) as exc_info:
            await client.get("/api/x")

        assert exc_info.value.attempts == 4
        assert len(upstream.requests) == 4

    @pytest.mark.asyncio
    async def test_timeout_is_reported_with_limit(self, tokens, cache, upstream, metrics):
        await self._login(cache)
        upstream.responses = [httpx.ReadTimeout("timed out")]
        client = self._client(tokens, upstream, metrics=metrics)

        with pytest.raises(UpstreamTimeoutError) as exc_info:
            await client.get("/api/x")

        assert exc_info.value.timeout_ms == 1500
        assert exc_info.value.url == "https://ic.test/api/x"
        assert len(upstream.requests) == 1
        assert metrics.registry.get_sample_value(
            "upstream_requests_total", {"endpoint": "mophic", "outcome": "timeout"}
        ) == 1


class TestClientRegistry:
    """Test cases for ClientRegistry."""

    @pytest.fixture
    def tokens(self):
        tenants = {
            "mophic": TenantConfig(name="mophic", auth_url="https://auth.test", secret=SECRET),
            "fdh": TenantConfig(name="fdh", auth_url="https://fdh-auth.test", secret=SECRET),
        }
        return TokenManager(KeyValueCache(None), tenants, http_client=MockTokenIssuer().client())

    @pytest.fixture
    def upstreams(self):
        return {
            "mophic": UpstreamConfig(name="mophic", base_url="https://ic.test", tenant="mophic"),
            "claim": UpstreamConfig(name="claim", base_url="https://claim.test", tenant="fdh"),
        }

    def test_selects_named_client(self, upstreams, tokens):
        registry = ClientRegistry(upstreams, tokens, primary="mophic")

        assert registry.get("claim").tenant == "fdh"
        assert "claim" in registry
        assert registry.names() == ["mophic", "claim"]

    def test_unknown_or_missing_selector_uses_primary(self, upstreams, tokens):
        registry = ClientRegistry(upstreams, tokens, primary="mophic")

        assert registry.get("no-such-api").name == "mophic"
        assert registry.get(None).name == "mophic"
        assert registry.get("").name == "mophic"

    def test_unknown_tenant_rejected(self, tokens):
        upstreams = {"x": UpstreamConfig(name="x", base_url="https://x.test", tenant="nobody")}

        with pytest.raises(ValueError):
            ClientRegistry(upstreams, tokens)

    def test_empty_registry_rejected(self, tokens):
        with pytest.raises(ValueError):
            ClientRegistry({}, tokens)
