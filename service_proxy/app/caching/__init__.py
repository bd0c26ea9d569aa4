"""
Proxy caching package.

Provides the key-value cache used for bearer tokens and replayable auth
payloads. Redis backs it when available; otherwise an in-process store
with the same expiry semantics takes over.
"""

from .kv_cache import CacheBackend, CacheEntry, KeyValueCache, LocalStore

__all__ = [
    "CacheBackend",
    "CacheEntry",
    "KeyValueCache",
    "LocalStore",
]
