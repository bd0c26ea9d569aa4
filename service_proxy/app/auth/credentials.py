"""
Tenant credential payloads submitted to upstream token issuers.
"""

import hashlib
import hmac
import json
from dataclasses import asdict, dataclass
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..caching.kv_cache import KeyValueCache


def hash_password(password: str, secret: str) -> str:
    """HMAC-SHA256 of the password keyed by the tenant secret, hex encoded."""
    return hmac.new(secret.encode("utf-8"), password.encode("utf-8"), hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class TenantCredentialPayload:
    """Body of a token request; field names follow the upstream wire format."""

    user: str
    password_hash: str
    hospital_code: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "TenantCredentialPayload":
        data = json.loads(raw)
        return cls(
            user=data["user"],
            password_hash=data["password_hash"],
            hospital_code=data.get("hospital_code", ""),
        )


def create_auth_payload(username: str, password: str, secret: str, hospital_code: str) -> TenantCredentialPayload:
    return TenantCredentialPayload(
        user=username,
        password_hash=hash_password(password, secret),
        hospital_code=hospital_code,
    )


def payload_key(tenant: str, suffix: str) -> str:
    return f"{tenant}{suffix}"


async def is_current_auth_payload(
    cache: "KeyValueCache",
    tenant: str,
    username: str,
    password: str,
    *,
    secret: str,
    hospital_code: str,
    key_suffix: str = "-auth-payload",
) -> bool:
    """Whether the stored payload for ``tenant`` matches these credentials."""
    stored: Optional[str] = await cache.get(payload_key(tenant, key_suffix))
    if not stored:
        return False
    return stored == create_auth_payload(username, password, secret, hospital_code).to_json()
