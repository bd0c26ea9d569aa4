"""
Domain utilities for the proxy service.

Includes request dispatch and translation helpers that do not belong to
adapters or transport-specific layers.
"""

from .proxy_dispatcher import ProxyDispatcher, build_upstream_url

__all__ = [
    "ProxyDispatcher",
    "build_upstream_url",
]
