"""Dramatiq actors for pipeline runs and commit scrapes.

Two queues separate interactive work from the routine commit backlog:

``interactive`` (priority 0)
    :func:`ingest_accounts_job`, enqueued when an operator adds usernames.
``commits`` (priority 10)
    :func:`scrape_commits_job`, one message per repository, retried
    independently.

Usage
-----
>>> ingest_accounts_job.send("postgresql+asyncpg://...", ["octocat"])
>>> scrape_commits_job.send("postgresql+asyncpg://...", 42, job_id)

"""

from __future__ import annotations

import asyncio
import dataclasses as dc
import threading
import typing as typ

import dramatiq
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ghharvest.common.env import env_positive_int
from ghharvest.jobs import ledger
from ghharvest.jobs._broker import ensure_broker_configured

type SessionFactory = async_sessionmaker[AsyncSession]

INTERACTIVE_QUEUE = "interactive"
COMMITS_QUEUE = "commits"
INTERACTIVE_PRIORITY = 0
ROUTINE_PRIORITY = 10

COMMIT_JOB_MAX_RETRIES = env_positive_int("GHHARVEST_COMMIT_JOB_MAX_RETRIES", 3)

# Module-level caches for reusing expensive resources across actor invocations
_ENGINE_CACHE: dict[str, AsyncEngine] = {}
_SESSION_FACTORY_CACHE: dict[str, SessionFactory] = {}
_CACHE_LOCK = threading.Lock()

ensure_broker_configured()


def _get_or_create_engine(database_url: str) -> tuple[AsyncEngine, SessionFactory]:
    """Return the cached engine and session factory for *database_url*.

    Thread-safe: uses a lock to prevent race conditions in Dramatiq workers.
    """
    with _CACHE_LOCK:
        if database_url not in _ENGINE_CACHE:
            engine = create_async_engine(database_url)
            _ENGINE_CACHE[database_url] = engine
            _SESSION_FACTORY_CACHE[database_url] = async_sessionmaker(
                engine, expire_on_commit=False
            )
        return _ENGINE_CACHE[database_url], _SESSION_FACTORY_CACHE[database_url]


def _run_actor_async[T](
    database_url: str,
    async_fn: typ.Callable[[SessionFactory], typ.Awaitable[T]],
) -> T:
    """Run ``async_fn`` on a fresh event loop with the cached session factory.

    Pooled connections belong to the loop that opened them, so the pool is
    disposed before the loop closes; the engine itself stays cached.
    """
    ensure_broker_configured()
    engine, session_factory = _get_or_create_engine(database_url)

    async def run() -> T:
        try:
            return await async_fn(session_factory)
        finally:
            await engine.dispose()

    return asyncio.run(run())


@dramatiq.actor(
    queue_name=INTERACTIVE_QUEUE,
    priority=INTERACTIVE_PRIORITY,
    max_retries=1,
)
def ingest_accounts_job(database_url: str, usernames: list[str]) -> dict[str, typ.Any]:
    """Run the ingestion pipeline for ``usernames``.

    Returns
    -------
    dict[str, Any]
        Stage summary: stored logins, failures and the commit batch id.

    """

    async def execute(session_factory: SessionFactory) -> dict[str, typ.Any]:
        from ghharvest.factory import open_services

        async with open_services(session_factory, database_url) as services:
            result = await services.pipeline.run(usernames)
        return {
            "accounts": sorted(result.accounts.succeeded),
            "failed": sorted(result.accounts.failed),
            "organizations": len(result.organizations.organization_ids),
            "repositories": len(result.repositories.repository_ids),
            "batch_id": result.commits.batch_id,
        }

    return _run_actor_async(database_url, execute)


@dramatiq.actor(
    queue_name=COMMITS_QUEUE,
    priority=ROUTINE_PRIORITY,
    max_retries=COMMIT_JOB_MAX_RETRIES,
    throws=ledger.PERMANENT_ERRORS,
)
def scrape_commits_job(
    database_url: str,
    repository_id: int,
    job_id: str | None = None,
) -> dict[str, typ.Any]:
    """Scrape one repository's commits and record the attempt on its job row.

    A failed attempt is recorded and re-raised so Dramatiq retries it. A
    missing or taken-down repository fails the job without a retry.
    """

    async def execute(session_factory: SessionFactory) -> dict[str, typ.Any]:
        from ghharvest.factory import open_services

        if job_id is not None:
            await ledger.mark_job_running(session_factory, job_id)
        try:
            async with open_services(session_factory, database_url) as services:
                result = await services.scraper.scrape(repository_id, job_id)
        except Exception as exc:
            if job_id is not None:
                await ledger.mark_job_failed(
                    session_factory,
                    job_id,
                    exc,
                    max_retries=COMMIT_JOB_MAX_RETRIES,
                )
            raise
        if job_id is not None:
            await ledger.mark_job_succeeded(session_factory, job_id)
        return dc.asdict(result)

    return _run_actor_async(database_url, execute)
