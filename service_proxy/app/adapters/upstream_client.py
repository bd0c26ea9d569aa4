"""
Authenticated HTTP clients for upstream health-record APIs.

Each client wraps one upstream and composes its transport call with two
hooks: a pre-send hook that attaches the tenant's bearer token, and a
post-receive hook that forces a token refresh and replays the request once
when the upstream rejects the token.
"""

import functools
from typing import Any, Dict, Iterable, Optional, TYPE_CHECKING

import httpx

from shared.errors import (
    UpstreamConfigurationError,
    UpstreamConnectionError,
    UpstreamResponseError,
    UpstreamTimeoutError,
)
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_async
from ..auth.token_manager import TokenManager
from ..config import UpstreamConfig

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_HEADERS = {
    "Accept": "application/json",
    "Accept-Encoding": "gzip, deflate",
}

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})

# The request never reached the upstream, so any method may be resent.
CONNECT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)
# The connection broke mid-exchange; only safe for idempotent methods.
EXCHANGE_ERRORS = (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)


def _is_retryable(method: str, error: Exception) -> bool:
    if isinstance(error, CONNECT_ERRORS):
        return True
    return method.upper() in IDEMPOTENT_METHODS


class AuthenticatedHttpClient:
    """HTTP client bound to one upstream and the tenant whose token it uses."""

    def __init__(
        self,
        upstream: UpstreamConfig,
        tokens: TokenManager,
        *,
        timeout_ms: int = 15000,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.upstream = upstream
        self.name = upstream.name
        self.tenant = upstream.tenant
        self.tokens = tokens
        self.timeout_ms = timeout_ms
        self.metrics = metrics
        self.retry_config = retry_config or RetryConfig(
            max_attempts=4,
            base_delay=0.1,
            max_delay=5.0,
            exponential_base=2.0,
            jitter=True
        )
        self.logger = get_logger(f"proxy.upstream.{upstream.name}")
        self._client = httpx.AsyncClient(
            base_url=upstream.base_url,
            timeout=timeout_ms / 1000,
            follow_redirects=False,
            headers=DEFAULT_HEADERS,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request upstream and return the successful response.

        Raises ``UpstreamConfigurationError`` when no token is available,
        ``UpstreamTimeoutError`` on client-side timeouts,
        ``UpstreamConnectionError`` once network retries are exhausted and
        ``UpstreamResponseError`` for non-success statuses.
        """
        request = self._client.build_request(method, url, **kwargs)

        response = await self._send_with_token(request)
        if response.status_code in self.upstream.refresh_statuses:
            response = await self._refresh_and_replay(request, response)

        self._record(f"{response.status_code // 100}xx")
        if response.is_error:
            raise UpstreamResponseError(
                self.name,
                str(request.url),
                response.status_code,
                response.text,
                dict(response.headers),
            )
        return response

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def _send_with_token(self, request: httpx.Request) -> httpx.Response:
        token = await self.tokens.get_token(self.tenant)
        if not token:
            self._record("no_token")
            raise UpstreamConfigurationError(self.name, self.tenant)

        request.headers["Authorization"] = f"Bearer {token}"
        return await self._transport_send(request)

    async def _refresh_and_replay(self, request: httpx.Request, response: httpx.Response) -> httpx.Response:
        """Force a new token and replay ``request`` exactly once."""
        self.logger.warning(
            "Upstream rejected token, forcing refresh",
            status_code=response.status_code,
            url=str(request.url),
        )
        if self.metrics:
            self.metrics.increment_counter("token_refresh_total", endpoint=self.name)

        token = await self.tokens.get_token(self.tenant, force=True)
        if not token:
            self.logger.warning("Token refresh failed, replay cancelled", tenant=self.tenant)
            return response

        request.headers["Authorization"] = f"Bearer {token}"
        self.logger.info("Replaying request with refreshed token", url=str(request.url))
        return await self._transport_send(request)

    async def _transport_send(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        try:
            return await retry_async(
                lambda: self._client.send(request),
                exceptions=CONNECT_ERRORS + EXCHANGE_ERRORS,
                config=self.retry_config,
                should_retry=functools.partial(_is_retryable, request.method),
                name=f"upstream.{self.name}",
            )
        except RetryError as exc:
            if isinstance(exc.last_exception, httpx.TimeoutException):
                self._record("timeout")
                raise UpstreamTimeoutError(self.name, url, self.timeout_ms, exc.last_exception) from exc.last_exception
            self._record("unreachable")
            raise UpstreamConnectionError(self.name, url, exc.last_exception, exc.attempts) from exc.last_exception
        except httpx.TimeoutException as exc:
            self._record("timeout")
            raise UpstreamTimeoutError(self.name, url, self.timeout_ms, exc) from exc
        except httpx.HTTPError as exc:
            self._record("unreachable")
            raise UpstreamConnectionError(self.name, url, exc, 1) from exc

    def _record(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("upstream_requests_total", endpoint=self.name, outcome=outcome)


class ClientRegistry:
    """Authenticated clients keyed by endpoint selector."""

    def __init__(
        self,
        upstreams: Dict[str, UpstreamConfig],
        tokens: TokenManager,
        *,
        primary: Optional[str] = None,
        timeout_ms: int = 15000,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        if not upstreams:
            raise ValueError("at least one upstream must be configured")

        self.logger = get_logger("proxy.clients")
        self.primary = primary if primary in upstreams else next(iter(upstreams))
        self._clients: Dict[str, AuthenticatedHttpClient] = {}
        for name, upstream in upstreams.items():
            if upstream.tenant not in tokens.tenants:
                raise ValueError(f"upstream {name} references unknown tenant {upstream.tenant}")
            self._clients[name] = AuthenticatedHttpClient(
                upstream,
                tokens,
                timeout_ms=timeout_ms,
                retry_config=retry_config,
                transport=transport,
                metrics=metrics,
            )

    def __contains__(self, endpoint: str) -> bool:
        return endpoint in self._clients

    def names(self) -> Iterable[str]:
        return list(self._clients)

    def get(self, endpoint: Optional[str] = None) -> AuthenticatedHttpClient:
        """Client for ``endpoint``; missing or unknown selectors use the primary."""
        if endpoint and endpoint in self._clients:
            return self._clients[endpoint]
        if endpoint:
            self.logger.warning("Unknown endpoint selector, using primary", endpoint=endpoint, primary=self.primary)
        return self._clients[self.primary]

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
