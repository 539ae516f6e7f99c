"""Configuration for the upstream client and the credential gateway.

Usage
-----
Build both configurations from the environment:

>>> github = GitHubConfig.from_env()
>>> gateway = GatewayConfig.from_env()
>>> gateway.cache_ttl
datetime.timedelta(days=1)

"""

from __future__ import annotations

import dataclasses as dc
import datetime as dt
import enum

from ghharvest.common.env import env_positive_float, env_positive_int, env_str

from .errors import GitHubConfigError

DEFAULT_API_URL = "https://api.github.com"
_DEFAULT_TIMEOUT_S = 30.0
_DEFAULT_USER_AGENT = "ghharvest/0.1"
_DEFAULT_CACHE_VERSION = "v1"
_DEFAULT_MAX_RETRIES = 3


class CredentialLockMode(enum.StrEnum):
    """How use of a single credential is serialised."""

    PROCESS = "process"
    ROW = "row"


@dc.dataclass(frozen=True, slots=True)
class GitHubConfig:
    """Transport settings for :class:`~ghharvest.github.client.UpstreamClient`.

    Attributes
    ----------
    api_url
        Base URL of the REST API. Paths are resolved relative to it.
    timeout_s
        Per-request timeout applied by the httpx transport.
    user_agent
        ``User-Agent`` header GitHub requires on every request.

    """

    api_url: str = DEFAULT_API_URL
    timeout_s: float = _DEFAULT_TIMEOUT_S
    user_agent: str = _DEFAULT_USER_AGENT

    @classmethod
    def from_env(cls) -> GitHubConfig:
        """Create configuration from ``GHHARVEST_*`` environment variables.

        Reads ``GHHARVEST_GITHUB_API_URL``, ``GHHARVEST_HTTP_TIMEOUT_S`` and
        ``GHHARVEST_USER_AGENT``; unset values keep their defaults.

        Raises
        ------
        GitHubConfigError
            If the API URL is not an http(s) URL.
        ValueError
            If the timeout is not a positive number.

        """
        api_url = env_str("GHHARVEST_GITHUB_API_URL", DEFAULT_API_URL).rstrip("/")
        if not api_url.startswith(("http://", "https://")):
            raise GitHubConfigError.invalid_url(api_url)
        return cls(
            api_url=api_url,
            timeout_s=env_positive_float(
                "GHHARVEST_HTTP_TIMEOUT_S", _DEFAULT_TIMEOUT_S
            ),
            user_agent=env_str("GHHARVEST_USER_AGENT", _DEFAULT_USER_AGENT),
        )


@dc.dataclass(frozen=True, slots=True)
class GatewayConfig:
    """Caching and credential rotation knobs for the gateway.

    Attributes
    ----------
    cache_ttl
        How long a successful response is served from the cache.
    cache_version
        Version segment of every cache key; bumping it orphans old entries.
    max_credential_retries
        Retries with a fresh credential after a 401 before giving up.
    lock_mode
        ``process`` serialises credentials with in-memory locks; ``row`` holds
        a database row lock so several worker processes can share a pool.

    """

    cache_ttl: dt.timedelta = dt.timedelta(hours=24)
    cache_version: str = _DEFAULT_CACHE_VERSION
    max_credential_retries: int = _DEFAULT_MAX_RETRIES
    lock_mode: CredentialLockMode = CredentialLockMode.PROCESS

    @classmethod
    def from_env(cls) -> GatewayConfig:
        """Create configuration from ``GHHARVEST_*`` environment variables.

        Reads ``GHHARVEST_CACHE_TTL_HOURS``, ``GHHARVEST_CACHE_VERSION``,
        ``GHHARVEST_MAX_CREDENTIAL_RETRIES`` and ``GHHARVEST_CREDENTIAL_LOCK``.
        """
        raw_mode = env_str("GHHARVEST_CREDENTIAL_LOCK", CredentialLockMode.PROCESS)
        try:
            lock_mode = CredentialLockMode(raw_mode.lower())
        except ValueError as exc:
            raise GitHubConfigError.invalid_lock_mode(raw_mode) from exc

        ttl_hours = env_positive_int("GHHARVEST_CACHE_TTL_HOURS", 24)
        return cls(
            cache_ttl=dt.timedelta(hours=ttl_hours),
            cache_version=env_str(
                "GHHARVEST_CACHE_VERSION", _DEFAULT_CACHE_VERSION
            ),
            max_credential_retries=env_positive_int(
                "GHHARVEST_MAX_CREDENTIAL_RETRIES", _DEFAULT_MAX_RETRIES
            ),
            lock_mode=lock_mode,
        )
