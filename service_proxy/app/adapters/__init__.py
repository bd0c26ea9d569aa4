"""
Adapters package for the proxy service.

Contains the HTTP client wrappers for upstream health-record APIs. These
adapters encapsulate:

- Base URLs and the tenant whose token each upstream accepts
- Retry policies for transient network failures
- Token refresh on authorization failures, with a single replay

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .upstream_client import AuthenticatedHttpClient, ClientRegistry

__all__ = [
    "AuthenticatedHttpClient",
    "ClientRegistry",
]
