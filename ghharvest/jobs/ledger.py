"""Batch and job bookkeeping for commit scrapes.

Each batch is a ``scrape_batches`` row with one ``scrape_jobs`` row per
repository. Workers record every attempt on the job row, which turns batch
completion into a query: a batch is complete once none of its jobs can run
again.
"""

from __future__ import annotations

import dataclasses as dc
import logging
import typing as typ
import uuid

from sqlalchemy import func, select

from ghharvest.common.time import utcnow
from ghharvest.github.errors import NotFound, TakedownUnavailable
from ghharvest.storage.models import (
    TERMINAL_JOB_STATUSES,
    JobStatus,
    ScrapeBatch,
    ScrapeJob,
)

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    type SessionFactory = async_sessionmaker[AsyncSession]

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 2000

# Failures no retry can fix; the actor declares these as ``throws``.
PERMANENT_ERRORS: tuple[type[Exception], ...] = (NotFound, TakedownUnavailable)


class BatchNotFoundError(LookupError):
    """Raised when a batch id does not exist."""

    def __init__(self, batch_id: str) -> None:
        """Record the unknown batch id."""
        self.batch_id = batch_id
        super().__init__(f"Scrape batch {batch_id} does not exist")


@dc.dataclass(frozen=True, slots=True)
class BatchStatus:
    """Per-status job counts for one batch."""

    batch_id: str
    reason: str
    total: int
    counts: dict[str, int]

    def count(self, status: JobStatus) -> int:
        """Return the number of jobs currently in ``status``."""
        return self.counts.get(status.value, 0)

    @property
    def is_complete(self) -> bool:
        """Return True once every job has succeeded or failed for good."""
        finished = sum(self.count(status) for status in TERMINAL_JOB_STATUSES)
        return finished >= self.total

    def to_dict(self) -> dict[str, typ.Any]:
        """Return a JSON-serialisable summary."""
        return {
            "batch_id": self.batch_id,
            "reason": self.reason,
            "total": self.total,
            "counts": {status.value: self.count(status) for status in JobStatus},
            "is_complete": self.is_complete,
        }


@dc.dataclass(frozen=True, slots=True)
class PlannedJob:
    """A job row created for one repository, ready to be enqueued."""

    job_id: str
    repository_id: int


async def create_batch(
    session_factory: SessionFactory,
    repository_ids: cabc.Sequence[int],
    *,
    reason: str,
) -> tuple[str, list[PlannedJob]]:
    """Insert a batch with one queued job per repository."""
    batch_id = str(uuid.uuid4())
    planned = [
        PlannedJob(job_id=str(uuid.uuid4()), repository_id=repository_id)
        for repository_id in repository_ids
    ]
    async with session_factory() as session:
        session.add(
            ScrapeBatch(id=batch_id, reason=reason, total_jobs=len(planned))
        )
        session.add_all(
            ScrapeJob(
                id=job.job_id,
                batch_id=batch_id,
                repository_id=job.repository_id,
                status=JobStatus.QUEUED.value,
            )
            for job in planned
        )
        await session.commit()
    return batch_id, planned


async def mark_job_running(
    session_factory: SessionFactory,
    job_id: str,
    *,
    now: dt.datetime | None = None,
) -> None:
    """Record the start of an attempt."""
    async with session_factory() as session:
        job = await session.get(ScrapeJob, job_id)
        if job is None:
            logger.warning("Scrape job %s not found; attempt not recorded", job_id)
            return
        job.status = JobStatus.RUNNING.value
        job.attempts += 1
        job.started_at = now or utcnow()
        await session.commit()


async def mark_job_succeeded(
    session_factory: SessionFactory,
    job_id: str,
    *,
    now: dt.datetime | None = None,
) -> None:
    """Record a successful attempt."""
    async with session_factory() as session:
        job = await session.get(ScrapeJob, job_id)
        if job is None:
            return
        job.status = JobStatus.SUCCEEDED.value
        job.last_error = None
        job.finished_at = now or utcnow()
        await session.commit()


async def mark_job_failed(
    session_factory: SessionFactory,
    job_id: str,
    error: BaseException,
    *,
    max_retries: int,
    now: dt.datetime | None = None,
) -> JobStatus:
    """Record a failed attempt and return the job's resulting status.

    The job goes back to ``queued`` while the queue will still retry it and
    becomes ``failed`` once ``max_retries`` retries have been used, or at
    once for a permanent upstream failure such as a 404 or 451.
    """
    async with session_factory() as session:
        job = await session.get(ScrapeJob, job_id)
        if job is None:
            return JobStatus.FAILED
        exhausted = job.attempts > max_retries or isinstance(
            error, PERMANENT_ERRORS
        )
        status = JobStatus.FAILED if exhausted else JobStatus.QUEUED
        job.status = status.value
        job.last_error = f"{type(error).__name__}: {error}"[:_MAX_ERROR_LENGTH]
        if exhausted:
            job.finished_at = now or utcnow()
        await session.commit()
    return status


async def batch_status(session_factory: SessionFactory, batch_id: str) -> BatchStatus:
    """Return per-status counts for ``batch_id``.

    Raises
    ------
    BatchNotFoundError
        If the batch does not exist.

    """
    async with session_factory() as session:
        batch = await session.get(ScrapeBatch, batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        result = await session.execute(
            select(ScrapeJob.status, func.count())
            .where(ScrapeJob.batch_id == batch_id)
            .group_by(ScrapeJob.status)
        )
        counts = {status: int(total) for status, total in result.all()}
    return BatchStatus(
        batch_id=batch_id,
        reason=batch.reason,
        total=batch.total_jobs,
        counts=counts,
    )


async def latest_batches(
    session_factory: SessionFactory, limit: int = 10
) -> list[BatchStatus]:
    """Return the status of the most recently created batches."""
    async with session_factory() as session:
        batch_ids = list(
            await session.scalars(
                select(ScrapeBatch.id)
                .order_by(ScrapeBatch.created_at.desc())
                .limit(limit)
            )
        )
    return [await batch_status(session_factory, batch_id) for batch_id in batch_ids]
