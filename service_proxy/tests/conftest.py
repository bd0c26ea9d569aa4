"""
Shared fixtures for proxy service tests.
"""

import pytest
from fastapi.testclient import TestClient

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_proxy.app.auth.credentials import create_auth_payload
from service_proxy.app.caching.kv_cache import KeyValueCache
from service_proxy.app.config import ProxyConfig
from service_proxy.app.main import ProxyService
from shared.retry import RetryConfig
from shared.test_helpers import MockTokenIssuer, MockUpstream, SampleDataFactory


SECRET = "$jwt@moph#"


@pytest.fixture
def proxy_config():
    return ProxyConfig(
        env="test",
        redis_host=None,
        moph_ic_api="https://ic.test",
        epidem_api="https://epidem.test/epidem",
        moph_phr_api="https://phr.test",
        moph_claim_api="https://claim.test",
        fdh_api="https://fdh.test",
        moph_ic_auth="https://ic-auth.test",
        moph_ic_auth_secret=SECRET,
        fdh_auth="https://fdh-auth.test",
        fdh_auth_secret=SECRET,
        moph_hcode="11111",
        http_timeout_ms=15000,
        prefetch_tokens=False,
    )


@pytest.fixture
def issuer():
    return MockTokenIssuer()


@pytest.fixture
def upstream():
    return MockUpstream()


@pytest.fixture
def cache():
    return KeyValueCache(None)


@pytest.fixture
def service(proxy_config, cache, issuer, upstream):
    return ProxyService(
        proxy_config,
        cache=cache,
        token_client=issuer.client(),
        transport=upstream.transport(),
        retry_config=RetryConfig(max_attempts=2, base_delay=0.0, max_delay=0.0, jitter=False),
    )


@pytest.fixture
def client(service):
    with TestClient(service.app) as test_client:
        yield test_client


@pytest.fixture
def logged_in(cache):
    """Store credential payloads so both tenants can obtain tokens."""
    for account in SampleDataFactory.create_accounts():
        payload = create_auth_payload(account.username, account.password, SECRET, "11111")
        cache.local.set(f"{account.tenant}-auth-payload", payload.to_json())
    return cache
