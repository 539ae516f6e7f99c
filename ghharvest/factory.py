"""Wiring of the gateway, pipeline and trigger services.

The runtime, the CLI and the Dramatiq actors all build the same object graph
from a session factory; this module is the one place that knows how.

Usage
-----
>>> async with open_services(session_factory, database_url) as services:
...     await services.pipeline.run(["octocat"])

"""

from __future__ import annotations

import contextlib
import dataclasses as dc
import typing as typ

from ghharvest.config import ServiceSettings
from ghharvest.credentials.broker import CredentialBroker
from ghharvest.github.cache import ResponseCache
from ghharvest.github.client import UpstreamClient
from ghharvest.github.gateway import Gateway
from ghharvest.ingestion.commits import CommitScraper
from ghharvest.ingestion.pipeline import IngestionPipeline
from ghharvest.ingestion.triggers import TrackingService
from ghharvest.jobs.scheduler import JobScheduler

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    import httpx
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

__all__ = ["Services", "build_services", "open_services"]


@dc.dataclass(frozen=True, slots=True)
class Services:
    """Every long-lived collaborator, sharing one HTTP client."""

    client: UpstreamClient
    broker: CredentialBroker
    cache: ResponseCache
    gateway: Gateway
    scheduler: JobScheduler
    pipeline: IngestionPipeline
    scraper: CommitScraper
    tracking: TrackingService


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    database_url: str,
    *,
    settings: ServiceSettings | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> Services:
    """Build the service graph; the caller owns ``services.client``.

    Parameters
    ----------
    session_factory
        Factory for sessions on the ghharvest database.
    database_url
        URL of the same database, forwarded to background jobs.
    settings
        Service configuration; read from the environment when omitted.
    http_client
        Optional pre-built httpx client shared by every request.

    """
    resolved = settings or ServiceSettings.from_env()
    client = UpstreamClient(resolved.github, http_client=http_client)
    broker = CredentialBroker(session_factory, client, config=resolved.gateway)
    cache = ResponseCache(
        session_factory,
        ttl=resolved.gateway.cache_ttl,
        version=resolved.gateway.cache_version,
    )
    gateway = Gateway(broker, client, cache)
    scheduler = JobScheduler(session_factory, database_url)
    return Services(
        client=client,
        broker=broker,
        cache=cache,
        gateway=gateway,
        scheduler=scheduler,
        pipeline=IngestionPipeline(
            session_factory, gateway, scheduler, config=resolved.pipeline
        ),
        scraper=CommitScraper(session_factory, gateway),
        tracking=TrackingService(session_factory, scheduler),
    )


@contextlib.asynccontextmanager
async def open_services(
    session_factory: async_sessionmaker[AsyncSession],
    database_url: str,
    *,
    settings: ServiceSettings | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> cabc.AsyncIterator[Services]:
    """Yield :func:`build_services` and close its HTTP client on exit.

    A client passed in as ``http_client`` is left open.
    """
    services = build_services(
        session_factory, database_url, settings=settings, http_client=http_client
    )
    try:
        yield services
    finally:
        await services.client.aclose()
