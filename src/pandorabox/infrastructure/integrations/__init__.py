"""External integration client implementations."""

from pandorabox.infrastructure.integrations.auth_backend import HttpAuthBackend
from pandorabox.infrastructure.integrations.proxy_client import AuthenticatedProxyClient

__all__ = [
    "AuthenticatedProxyClient",
    "HttpAuthBackend",
]
