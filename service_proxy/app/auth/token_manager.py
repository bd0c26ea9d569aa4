"""
Bearer token lifecycle for upstream tenants.

Tokens are cached until shortly before their own ``exp`` claim. The
credential payload that produced the last token is cached without expiry
so that expired or rejected tokens can be re-issued silently.
"""

import asyncio
import functools
import json
from typing import Any, Dict, Iterable, Optional, TYPE_CHECKING

import httpx
import jwt

from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception
from .credentials import TenantCredentialPayload, create_auth_payload, payload_key
from ..caching.kv_cache import KeyValueCache
from ..config import TenantConfig

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


EXPIRY_MARGIN_SECONDS = 60
TOKEN_PATH = "/token"
TOKEN_ACTION = "get_moph_access_token"

ISSUANCE_ERRORS = (httpx.HTTPError, RetryError, jwt.PyJWTError, ValueError, KeyError, TypeError)


class TokenManager:
    """Fetches, caches, and force-refreshes bearer tokens per tenant."""

    def __init__(
        self,
        cache: KeyValueCache,
        tenants: Dict[str, TenantConfig],
        *,
        hospital_code: str = "",
        token_key_suffix: str = "-auth-token",
        payload_key_suffix: str = "-auth-payload",
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.cache = cache
        self.tenants = tenants
        self.hospital_code = hospital_code
        self.token_key_suffix = token_key_suffix
        self.payload_key_suffix = payload_key_suffix
        self.metrics = metrics
        self.logger = get_logger("proxy.token_manager")

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=False,
            headers={"Accept": "application/json"},
        )
        self._inflight: Dict[str, "asyncio.Future[Optional[str]]"] = {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def token_key(self, tenant: str) -> str:
        return f"{tenant}{self.token_key_suffix}"

    def payload_key(self, tenant: str) -> str:
        return payload_key(tenant, self.payload_key_suffix)

    async def get_token(
        self,
        tenant: str,
        *,
        force: bool = False,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> Optional[str]:
        """Return a usable token for ``tenant`` or ``None``.

        ``None`` covers every failure: unknown tenant, never logged in,
        rejected credentials, unreachable issuer, undecodable token.
        """
        config = self.tenants.get(tenant)
        if config is None:
            self.logger.error("Unknown tenant requested", tenant=tenant)
            return None

        token_key = self.token_key(tenant)
        if force:
            await self.cache.delete(token_key)
        else:
            token = await self.cache.get(token_key)
            if token:
                return token

        return await self._issue_once(config, username, password)

    async def prefetch(self, tenants: Optional[Iterable[str]] = None) -> Dict[str, bool]:
        """Force-refresh tokens from stored payloads, e.g. at startup."""
        results: Dict[str, bool] = {}
        for tenant in tenants or list(self.tenants):
            token = await self.get_token(tenant, force=True)
            results[tenant] = token is not None
            if token is None:
                self.logger.warning("Unable to prefetch token", tenant=tenant)
            else:
                self.logger.info("Prefetched token", tenant=tenant)
        return results

    async def _issue_once(
        self,
        tenant: TenantConfig,
        username: Optional[str],
        password: Optional[str],
    ) -> Optional[str]:
        """Run at most one issuance per tenant; concurrent callers share it."""
        explicit = bool(username and password)
        pending = self._inflight.get(tenant.name)
        if pending is not None:
            if not explicit:
                self.logger.debug("Joining in-flight token issuance", tenant=tenant.name)
                return await asyncio.shield(pending)
            # New credentials must not be answered with a token for the old ones.
            await asyncio.wait({pending})

        task = asyncio.ensure_future(self._issue(tenant, username, password))
        self._inflight[tenant.name] = task
        task.add_done_callback(functools.partial(self._forget, tenant.name))
        return await asyncio.shield(task)

    def _forget(self, tenant: str, task: "asyncio.Future[Optional[str]]") -> None:
        if self._inflight.get(tenant) is task:
            del self._inflight[tenant]

    async def _issue(
        self,
        tenant: TenantConfig,
        username: Optional[str],
        password: Optional[str],
    ) -> Optional[str]:
        try:
            payload = await self._resolve_payload(tenant, username, password)
            if payload is None:
                self.logger.info("No stored credentials, tenant is not logged in", tenant=tenant.name)
                return None

            token = await self._request_token(tenant, payload)
            expires_at = self._token_expiry(token)
        except ISSUANCE_ERRORS as exc:
            self.logger.error(
                "Token issuance failed",
                tenant=tenant.name,
                error_type=exc.__class__.__name__,
                error=str(exc),
            )
            self._record_issuance(tenant.name, "error")
            return None

        self.logger.info("New token issued", tenant=tenant.name, expires_at=expires_at)
        await self.cache.set_with_expiry(self.token_key(tenant.name), token, expires_at - EXPIRY_MARGIN_SECONDS)
        await self.cache.set(self.payload_key(tenant.name), payload.to_json())
        self._record_issuance(tenant.name, "success")
        return token

    async def _resolve_payload(
        self,
        tenant: TenantConfig,
        username: Optional[str],
        password: Optional[str],
    ) -> Optional[TenantCredentialPayload]:
        if username and password:
            if not tenant.secret:
                raise ValueError(f"tenant {tenant.name} has no auth secret configured")
            return create_auth_payload(username, password, tenant.secret, self.hospital_code)

        stored = await self.cache.get(self.payload_key(tenant.name))
        if not stored:
            return None
        return TenantCredentialPayload.from_json(stored)

    @retry_on_exception((httpx.ConnectError, httpx.ConnectTimeout), config=RetryConfig(max_attempts=3, base_delay=0.2, max_delay=2.0))
    async def _request_token(self, tenant: TenantConfig, payload: TenantCredentialPayload) -> str:
        response = await self._client.post(
            tenant.auth_url.rstrip("/") + TOKEN_PATH,
            params={"Action": TOKEN_ACTION},
            content=payload.to_json(),
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()
        return self._extract_token(response.text)

    @staticmethod
    def _extract_token(body: str) -> str:
        token: Any = body.strip()
        if token.startswith('"'):
            token = json.loads(token)
        if not isinstance(token, str) or not token.strip():
            raise ValueError("empty token received")
        return token.strip()

    @staticmethod
    def _token_expiry(token: str) -> int:
        claims = jwt.decode(token, options={"verify_signature": False})
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)):
            raise ValueError("token payload missing exp claim")
        return int(exp)

    def _record_issuance(self, tenant: str, status: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("token_issuance_total", tenant=tenant, status=status)

