"""
Unit tests for the proxy service application.
"""

import json
import pytest
from fastapi.testclient import TestClient

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_proxy.app.auth.credentials import create_auth_payload
from service_proxy.app.caching.kv_cache import KeyValueCache
from service_proxy.app.main import ProxyService, create_app


SECRET = "$jwt@moph#"


class TestProxyService:
    """Test cases for ProxyService."""

    def test_health_endpoint(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "proxy"
        assert data["status"] == "ok"
        assert data["dependencies"]["cache"]["backend"] == "local"
        assert data["dependencies"]["upstreams"] == ["mophic", "epidem", "phr", "claim", "fdh"]

    def test_metrics_endpoint(self, client):
        client.get("/health")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert "cache_backend_local" in response.text

    def test_request_id_is_echoed(self, client):
        response = client.get("/health", headers={"x-request-id": "req-123"})

        assert response.headers["x-request-id"] == "req-123"

    def test_create_app(self, proxy_config):
        app = create_app(proxy_config, cache=KeyValueCache(None))

        assert app.state.proxy_service.clients.primary == "mophic"

    def test_empty_upstream_url_is_skipped(self, proxy_config):
        proxy_config.epidem_api = ""
        service = ProxyService(proxy_config, cache=KeyValueCache(None))

        assert "epidem" not in service.clients
        assert service.clients.get("epidem").name == "mophic"

    def test_startup_prefetches_tokens(self, proxy_config, cache, issuer, upstream):
        proxy_config.prefetch_tokens = True
        payload = create_auth_payload("ic.user", "pa55word", SECRET, "11111")
        cache.local.set("mophic-auth-payload", payload.to_json())
        service = ProxyService(
            proxy_config,
            cache=cache,
            token_client=issuer.client(),
            transport=upstream.transport(),
        )

        with TestClient(service.app) as client:
            assert len(issuer.calls) == 1
            assert issuer.calls[0].url.host == "ic-auth.test"

            response = client.get("/api/x")

        assert response.status_code == 200
        assert len(issuer.calls) == 1


class TestChangePassword:
    """Test cases for the change-password endpoint."""

    def test_requires_username(self, client, issuer):
        response = client.post("/api/auth/change-password", json={"password": "secret"})

        assert response.status_code == 400
        assert response.json()["message"] == "username is required"
        assert issuer.calls == []

    def test_requires_password(self, client, issuer):
        response = client.post("/api/auth/change-password", json={"username": "ic.user"})

        assert response.status_code == 400
        assert response.json()["message"] == "password is required"
        assert issuer.calls == []

    def test_success_stores_new_payload(self, client, issuer, cache):
        response = client.post(
            "/api/auth/change-password",
            json={"username": "ic.user", "password": "new-password"},
        )

        assert response.status_code == 204
        assert len(issuer.calls) == 1
        expected = create_auth_payload("ic.user", "new-password", SECRET, "11111").to_json()
        assert json.loads(issuer.calls[0].content) == json.loads(expected)
        assert cache.local.get("mophic-auth-payload") == expected
        assert cache.local.get("mophic-auth-token") == issuer.issued[0]

    def test_app_query_selects_tenant(self, client, issuer, cache):
        response = client.post(
            "/api/auth/change-password?app=fdh",
            json={"username": "fdh.user", "password": "fdh-password"},
        )

        assert response.status_code == 204
        assert issuer.calls[0].url.host == "fdh-auth.test"
        assert cache.local.get("fdh-auth-payload") is not None
        assert cache.local.get("mophic-auth-payload") is None

    def test_form_body_accepted(self, client, issuer):
        response = client.post(
            "/api/auth/change-password",
            data={"username": "ic.user", "password": "new-password"},
        )

        assert response.status_code == 204
        assert len(issuer.calls) == 1

    def test_rejected_credentials(self, client, issuer, cache):
        issuer.status_code = 401

        response = client.post(
            "/api/auth/change-password",
            json={"username": "ic.user", "password": "wrong"},
        )

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid username or password"
        assert cache.local.get("mophic-auth-payload") is None

    def test_new_credentials_used_for_forwarding(self, client, issuer, upstream):
        client.post(
            "/api/auth/change-password",
            json={"username": "ic.user", "password": "new-password"},
        )

        response = client.get("/api/ImmunizationTarget")

        assert response.status_code == 200
        assert len(issuer.calls) == 1
        assert upstream.authorization == [f"Bearer {issuer.issued[0]}"]

    def test_password_whitespace_is_preserved(self, client, issuer, cache):
        response = client.post(
            "/api/auth/change-password",
            json={"username": "ic.user", "password": " pw "},
        )

        assert response.status_code == 204
        expected = create_auth_payload("ic.user", " pw ", SECRET, "11111").to_json()
        assert json.loads(issuer.calls[0].content) == json.loads(expected)
        assert cache.local.get("mophic-auth-payload") == expected

    def test_unchanged_credentials_still_reissue(self, client, issuer):
        credentials = {"username": "ic.user", "password": "same-password"}

        client.post("/api/auth/change-password", json=credentials)
        response = client.post("/api/auth/change-password", json=credentials)

        assert response.status_code == 204
        assert len(issuer.calls) == 2
