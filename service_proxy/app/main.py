"""
Health API proxy service.

Forwards ``/api/*`` requests to the upstream selected by the
``x-api-endpoint`` header (or ``endpoint`` query parameter), attaching the
bearer token of the tenant that upstream belongs to.
"""

from typing import Any, Dict, Optional

import httpx
from fastapi import Request, Response

from shared.base_service import BaseService
from shared.errors import AuthenticationError, ValidationError
from shared.retry import RetryConfig
from .adapters.upstream_client import ClientRegistry
from .auth.token_manager import TokenManager
from .caching.kv_cache import KeyValueCache
from .config import PRIMARY_ENDPOINT, ProxyConfig, get_proxy_config
from .domain.proxy_dispatcher import ProxyDispatcher


PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS", "TRACE"]


class ProxyService(BaseService):
    """Authenticating reverse proxy for the MOPH health APIs."""

    def __init__(
        self,
        config: Optional[ProxyConfig] = None,
        *,
        cache: Optional[KeyValueCache] = None,
        token_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        super().__init__(config or get_proxy_config())

        self.cache = cache or KeyValueCache(
            self.config.redis_host,
            self.config.redis_port,
            self.config.redis_password,
            metrics=self.metrics,
        )
        self.tokens = TokenManager(
            self.cache,
            self.config.tenant_registry(),
            hospital_code=self.config.moph_hcode,
            token_key_suffix=self.config.token_key,
            payload_key_suffix=self.config.auth_payload_key,
            timeout=self.config.http_timeout_ms / 1000,
            http_client=token_client,
            metrics=self.metrics,
        )
        self.clients = ClientRegistry(
            self.config.upstream_registry(),
            self.tokens,
            primary=PRIMARY_ENDPOINT,
            timeout_ms=self.config.http_timeout_ms,
            retry_config=retry_config,
            transport=transport,
            metrics=self.metrics,
        )
        self.dispatcher = ProxyDispatcher(self.clients)

        @self.app.on_event("startup")
        async def _startup():
            backend = await self.cache.connect()
            self.logger.info("Cache ready", backend=backend.value)
            if self.config.prefetch_tokens:
                await self.tokens.prefetch()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.clients.aclose()
            await self.tokens.aclose()
            await self.cache.close()

        self._setup_proxy_routes()

        self.app.state.proxy_service = self

    async def _check_dependencies(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.health(),
            "upstreams": self.clients.names(),
        }

    def _setup_proxy_routes(self):
        """Set up credential and forwarding routes."""

        @self.app.post("/api/auth/change-password", status_code=204)
        async def change_password(request: Request, app: Optional[str] = None):
            """Re-issue a tenant token with new credentials."""
            body = await self._read_credentials(request)
            # Credentials are hashed exactly as received.
            username = str(body.get("username") or "")
            password = str(body.get("password") or "")
            tenant_name = str(app or body.get("app") or PRIMARY_ENDPOINT).strip()

            if not username:
                raise ValidationError("username is required")
            if not password:
                raise ValidationError("password is required")

            token = await self.tokens.get_token(
                tenant_name,
                force=True,
                username=username,
                password=password,
            )
            if not token:
                raise AuthenticationError("Invalid username or password", {"tenant": tenant_name})

            self.logger.info("Credentials changed", tenant=tenant_name, username=username)
            return Response(status_code=204)

        @self.app.api_route("/api/{path:path}", methods=PROXY_METHODS)
        async def proxy(request: Request, path: str):
            """Forward to the selected upstream."""
            return await self.dispatcher.dispatch(request, path)

    async def _read_credentials(self, request: Request) -> Dict[str, Any]:
        content_type = request.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                body = await request.json()
            except ValueError as exc:
                raise ValidationError("Request body is not valid JSON", {"detail": str(exc)}) from exc
            return body if isinstance(body, dict) else {}
        if "form" in content_type:
            form = await request.form()
            return {key: value for key, value in form.items() if isinstance(value, str)}
        return {}


def create_app(config: Optional[ProxyConfig] = None, **kwargs: Any):
    """Create FastAPI application."""
    service = ProxyService(config, **kwargs)
    return service.app


def main():
    """Run the proxy with configuration from the environment."""
    service = ProxyService()
    service.run()


if __name__ == "__main__":
    main()
