"""Process-level configuration shared by the runtime, CLI and workers.

Usage
-----
>>> import os
>>> os.environ["GHHARVEST_DATABASE_URL"] = "sqlite+aiosqlite:///harvest.db"
>>> RuntimeConfig.from_env().database_url
'sqlite+aiosqlite:///harvest.db'

"""

from __future__ import annotations

import dataclasses as dc
import os

from ghharvest.github.config import GatewayConfig, GitHubConfig
from ghharvest.ingestion.config import PipelineConfig


@dc.dataclass(frozen=True, slots=True)
class RuntimeConfig:
    """Database and proxy settings read from ``GHHARVEST_*`` variables.

    Attributes
    ----------
    database_url
        SQLAlchemy async URL; ``None`` starts the HTTP runtime health-only.
    proxy_api_key
        Shared secret callers present in ``X-Proxy-API-Key``. The proxy and
        trigger routes are not mounted without it.

    """

    database_url: str | None = None
    proxy_api_key: str | None = None

    @classmethod
    def from_env(cls) -> RuntimeConfig:
        """Read ``GHHARVEST_DATABASE_URL`` and ``GHHARVEST_PROXY_API_KEY``."""
        database_url = os.environ.get("GHHARVEST_DATABASE_URL", "").strip()
        api_key = os.environ.get("GHHARVEST_PROXY_API_KEY", "").strip()
        return cls(database_url=database_url or None, proxy_api_key=api_key or None)


@dc.dataclass(frozen=True, slots=True)
class ServiceSettings:
    """Configuration for every service built by :mod:`ghharvest.factory`."""

    github: GitHubConfig = dc.field(default_factory=GitHubConfig)
    gateway: GatewayConfig = dc.field(default_factory=GatewayConfig)
    pipeline: PipelineConfig = dc.field(default_factory=PipelineConfig)

    @classmethod
    def from_env(cls) -> ServiceSettings:
        """Read every service configuration from the environment."""
        return cls(
            github=GitHubConfig.from_env(),
            gateway=GatewayConfig.from_env(),
            pipeline=PipelineConfig.from_env(),
        )
