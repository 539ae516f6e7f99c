"""Enqueue pipeline work onto the Dramatiq queues.

Usage
-----
>>> scheduler = JobScheduler(session_factory, database_url)
>>> batch_id = await scheduler.enqueue_commit_batch([1, 2, 3])
>>> (await scheduler.batch_status(batch_id)).is_complete
False

"""

from __future__ import annotations

import logging
import typing as typ

import dramatiq

from ghharvest.jobs import ledger
from ghharvest.jobs.actors import ingest_accounts_job, scrape_commits_job

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class JobScheduler:
    """Create batches and send actor messages for them.

    Parameters
    ----------
    session_factory
        Factory for sessions on the database holding the batch tables.
    database_url
        URL workers connect to; sent with every message.

    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        database_url: str,
    ) -> None:
        """Store the batch store and the URL forwarded to workers."""
        self._session_factory = session_factory
        self._database_url = database_url

    async def enqueue_commit_batch(
        self,
        repository_ids: cabc.Sequence[int],
        *,
        reason: str = "pipeline",
    ) -> str:
        """Create a batch and enqueue one commit job per repository.

        Messages are sent as one Dramatiq group without waiting for them to
        run; completion is observed through :meth:`batch_status`.
        """
        batch_id, planned = await ledger.create_batch(
            self._session_factory, repository_ids, reason=reason
        )
        messages = [
            scrape_commits_job.message(
                self._database_url, job.repository_id, job.job_id
            )
            for job in planned
        ]
        if messages:
            dramatiq.group(messages).run()
        logger.info(
            "Enqueued batch %s with %d commit jobs (%s)",
            batch_id,
            len(messages),
            reason,
        )
        return batch_id

    async def enqueue_ingestion(self, usernames: cabc.Sequence[str]) -> str:
        """Enqueue an interactive pipeline run and return its message id."""
        message = ingest_accounts_job.send(self._database_url, list(usernames))
        logger.info(
            "Enqueued ingestion message %s for %d usernames",
            message.message_id,
            len(usernames),
        )
        return message.message_id

    async def batch_status(self, batch_id: str) -> ledger.BatchStatus:
        """Return per-status counts and completion for ``batch_id``."""
        return await ledger.batch_status(self._session_factory, batch_id)
