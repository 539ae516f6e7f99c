"""GitHub REST client, response cache and credential-aware gateway."""

from __future__ import annotations

from .cache import CacheEntry, ResponseCache, cache_key
from .client import UpstreamClient, classify_response
from .config import CredentialLockMode, GatewayConfig, GitHubConfig
from .errors import (
    CredentialInvalid,
    GatewayError,
    GitHubConfigError,
    GitHubResponseShapeError,
    NoAvailableCredentials,
    NotFound,
    RateLimitExceeded,
    TakedownUnavailable,
    UpstreamError,
)
from .gateway import Gateway
from .observability import ErrorCategory, categorize_error

__all__ = [
    "CacheEntry",
    "CredentialInvalid",
    "CredentialLockMode",
    "ErrorCategory",
    "Gateway",
    "GatewayConfig",
    "GatewayError",
    "GitHubConfig",
    "GitHubConfigError",
    "GitHubResponseShapeError",
    "NoAvailableCredentials",
    "NotFound",
    "RateLimitExceeded",
    "ResponseCache",
    "TakedownUnavailable",
    "UpstreamClient",
    "UpstreamError",
    "cache_key",
    "categorize_error",
    "classify_response",
]
