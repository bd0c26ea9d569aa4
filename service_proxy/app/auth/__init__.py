"""
Upstream authentication helpers for the proxy service.
"""

from .credentials import TenantCredentialPayload, create_auth_payload, hash_password, is_current_auth_payload
from .token_manager import TokenManager

__all__ = [
    "TenantCredentialPayload",
    "TokenManager",
    "create_auth_payload",
    "hash_password",
    "is_current_auth_payload",
]
