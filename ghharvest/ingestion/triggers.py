"""Operator-facing entry points that start pipeline work.

``TrackingService`` backs both the HTTP trigger surface and the CLI. It
records which usernames are tracked and hands the actual work to the job
queue, so callers return as soon as the work is enqueued.
"""

from __future__ import annotations

import dataclasses as dc
import logging
import typing as typ

from sqlalchemy import or_, select, update

from ghharvest.common.time import utcnow
from ghharvest.storage.models import (
    Account,
    Repository,
    TrackedAccount,
    account_organizations,
)

from .errors import AccountNotFoundError

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class TriggerScheduler(typ.Protocol):
    """Job queue operations the trigger surface needs."""

    async def enqueue_ingestion(self, usernames: cabc.Sequence[str]) -> str:
        """Enqueue a high-priority pipeline run and return its message id."""
        ...

    async def enqueue_commit_batch(
        self, repository_ids: cabc.Sequence[int], *, reason: str = "pipeline"
    ) -> str:
        """Enqueue commit jobs under one batch and return the batch id."""
        ...


@dc.dataclass(frozen=True, slots=True)
class IngestionRequest:
    """Outcome of :meth:`TrackingService.enqueue_ingestion`."""

    usernames: tuple[str, ...]
    created: int
    message_id: str | None


@dc.dataclass(frozen=True, slots=True)
class RescrapeRequest:
    """Outcome of :meth:`TrackingService.trigger_rescrape`."""

    account_id: int | None
    repository_ids: tuple[int, ...]
    batch_id: str | None


def merge_tags(existing: cabc.Iterable[str], added: cabc.Iterable[str]) -> list[str]:
    """Return the sorted set union of two tag collections.

    Examples
    --------
    >>> merge_tags(["ml", "rust"], ["rust", "go"])
    ['go', 'ml', 'rust']

    """
    return sorted({*existing, *(tag.strip() for tag in added if tag.strip())})


class TrackingService:
    """Record tracked accounts and enqueue ingestion or rescrapes."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scheduler: TriggerScheduler,
        *,
        clock: cabc.Callable[[], dt.datetime] = utcnow,
    ) -> None:
        """Store collaborators."""
        self._session_factory = session_factory
        self._scheduler = scheduler
        self._clock = clock

    async def enqueue_ingestion(
        self,
        usernames: cabc.Iterable[str],
        tags: cabc.Iterable[str] = (),
    ) -> IngestionRequest:
        """Track ``usernames`` with ``tags`` and enqueue stage 1 for them.

        Tags on already-tracked usernames are merged, never replaced.
        """
        logins = tuple(
            dict.fromkeys(name.strip() for name in usernames if name.strip())
        )
        tag_list = list(tags)
        if not logins:
            return IngestionRequest(usernames=(), created=0, message_id=None)

        now = self._clock()
        async with self._session_factory() as session:
            existing = {
                row.username: row
                for row in await session.scalars(
                    select(TrackedAccount).where(TrackedAccount.username.in_(logins))
                )
            }
            created = 0
            for login in logins:
                tracked = existing.get(login)
                if tracked is None:
                    session.add(
                        TrackedAccount(
                            username=login,
                            tags=merge_tags((), tag_list),
                            last_requested_at=now,
                        )
                    )
                    created += 1
                    continue
                tracked.tags = merge_tags(tracked.tags or (), tag_list)
                tracked.last_requested_at = now
            await session.commit()

        message_id = await self._scheduler.enqueue_ingestion(list(logins))
        logger.info(
            "Enqueued ingestion for %d usernames (%d newly tracked)",
            len(logins),
            created,
        )
        return IngestionRequest(
            usernames=logins, created=created, message_id=message_id
        )

    async def trigger_rescrape(self, account_id: int | None = None) -> RescrapeRequest:
        """Enqueue commit scrapes for one account's repositories or for all.

        Repositories owned by the account directly or by any organization it
        belongs to are included. Rescrapes ignore the rescrape interval.

        Raises
        ------
        AccountNotFoundError
            If ``account_id`` does not exist.

        """
        now = self._clock()
        async with self._session_factory() as session:
            if account_id is None:
                repository_ids = list(
                    await session.scalars(select(Repository.id).order_by(Repository.id))
                )
                await session.execute(
                    update(TrackedAccount).values(last_requested_at=now)
                )
            else:
                account = await session.get(Account, account_id)
                if account is None:
                    raise AccountNotFoundError(account_id)
                repository_ids = await self._account_repositories(session, account_id)
                await session.execute(
                    update(TrackedAccount)
                    .where(TrackedAccount.github_id == account.github_id)
                    .values(last_requested_at=now)
                )
            await session.commit()

        batch_id = None
        if repository_ids:
            batch_id = await self._scheduler.enqueue_commit_batch(
                repository_ids, reason="rescrape"
            )
        logger.info(
            "Rescrape requested for %s: %d repositories (batch %s)",
            "all accounts" if account_id is None else f"account {account_id}",
            len(repository_ids),
            batch_id,
        )
        return RescrapeRequest(
            account_id=account_id,
            repository_ids=tuple(repository_ids),
            batch_id=batch_id,
        )

    async def _account_repositories(
        self, session: AsyncSession, account_id: int
    ) -> list[int]:
        organization_ids = select(account_organizations.c.organization_id).where(
            account_organizations.c.account_id == account_id
        )
        result = await session.scalars(
            select(Repository.id)
            .where(
                or_(
                    Repository.owner_account_id == account_id,
                    Repository.owner_organization_id.in_(organization_ids),
                )
            )
            .order_by(Repository.id)
        )
        return list(result)
