"""
Proxy configuration: cache connection, tenants, and upstream targets.
"""

from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from shared.config import BaseConfig


PRIMARY_ENDPOINT = "mophic"


class TenantConfig(BaseModel):
    """An independently authenticated upstream application."""

    name: str
    auth_url: str
    secret: str


class UpstreamConfig(BaseModel):
    """A forwardable upstream API bound to the tenant whose token it uses."""

    name: str
    base_url: str
    tenant: str
    refresh_statuses: Tuple[int, ...] = (401,)


class ProxyConfig(BaseConfig):
    """Environment-driven configuration for the proxy service.

    Field names double as (case-insensitive) environment variable names,
    e.g. ``REDIS_HOST`` or ``MOPH_IC_AUTH_SECRET``.
    """

    service_name: str = "proxy"
    host: str = "0.0.0.0"
    port: int = Field(default=3000, validation_alias="APP_PORT")

    # Cache backend; an empty host selects the in-process store.
    redis_host: Optional[str] = None
    redis_port: int = 6379
    redis_password: Optional[str] = None

    # Upstream resource APIs
    moph_ic_api: str = "https://cvp1.moph.go.th"
    epidem_api: str = "https://epidemcenter.moph.go.th/epidem"
    moph_phr_api: str = "https://phr1.moph.go.th"
    moph_claim_api: str = "https://claim-nhso.moph.go.th"
    fdh_api: str = "https://fdh.moph.go.th"

    # Token issuers
    moph_ic_auth: str = "https://cvp1.moph.go.th"
    moph_ic_auth_secret: str = "$jwt@moph#"
    fdh_auth: str = "https://fdh.moph.go.th"
    fdh_auth_secret: str = "$jwt@moph#"
    moph_hcode: str = ""

    http_timeout_ms: int = 15000
    token_key: str = "-auth-token"
    auth_payload_key: str = "-auth-payload"
    prefetch_tokens: bool = True

    # Optional JSON overrides replacing the built-in registries
    tenants: Optional[List[TenantConfig]] = None
    upstreams: Optional[List[UpstreamConfig]] = None

    def tenant_registry(self) -> Dict[str, TenantConfig]:
        """Tenants keyed by name."""
        tenants = self.tenants or [
            TenantConfig(name="mophic", auth_url=self.moph_ic_auth, secret=self.moph_ic_auth_secret),
            TenantConfig(name="fdh", auth_url=self.fdh_auth, secret=self.fdh_auth_secret),
        ]
        return {tenant.name: tenant for tenant in tenants}

    def upstream_registry(self) -> Dict[str, UpstreamConfig]:
        """Upstreams keyed by endpoint selector; the first entry is the primary."""
        upstreams = self.upstreams or [
            UpstreamConfig(name=PRIMARY_ENDPOINT, base_url=self.moph_ic_api, tenant="mophic"),
            UpstreamConfig(name="epidem", base_url=self.epidem_api, tenant="mophic"),
            UpstreamConfig(name="phr", base_url=self.moph_phr_api, tenant="mophic", refresh_statuses=(401, 501)),
            UpstreamConfig(name="claim", base_url=self.moph_claim_api, tenant="fdh"),
            UpstreamConfig(name="fdh", base_url=self.fdh_api, tenant="fdh"),
        ]
        return {upstream.name: upstream for upstream in upstreams if upstream.base_url.strip()}


def get_proxy_config(**overrides) -> ProxyConfig:
    """Load proxy configuration from the environment (and ``.env``)."""
    return ProxyConfig(**overrides)
