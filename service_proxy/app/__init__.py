"""
Health API proxy service package.

The proxy fronts several upstream health-record APIs, enforcing:
- Bearer token injection per tenant, with silent refresh
- Content-type aware request translation (JSON, multipart)
- Retries for transient network failures

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.config: Tenant and upstream configuration.
- app.caching: Key-value cache with Redis fallback.
- app.auth: Credential payloads and the token manager.
- app.adapters: Authenticated HTTP clients per upstream.
- app.domain: Request dispatch to upstreams.
"""
