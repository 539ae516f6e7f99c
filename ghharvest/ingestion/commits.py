"""Commit scraping for a single repository.

This is the body of each stage-4 background job. One run fetches every commit
of a repository, stores the GitHub accounts that authored them, inserts the
commits that are not yet known and links them to the repository. The
repository's ``commits_scraped_at`` is stamped in the same transaction, so a
run either lands completely or leaves the repository due for another attempt.
"""

from __future__ import annotations

import dataclasses as dc
import logging
import typing as typ

from sqlalchemy import update

from ghharvest.common.time import parse_github_datetime, utcnow
from ghharvest.github.payloads import CommitPayload, convert_payload
from ghharvest.storage.models import (
    Account,
    Commit,
    Organization,
    Repository,
    commit_repositories,
)
from ghharvest.storage.upserts import (
    dedupe_rows,
    insert_ignore_rows,
    resolve_ids,
    upsert_rows,
)

from .errors import RepositoryMissingError, RepositoryOwnerMissingError
from .observability import PipelineEventLogger

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from ghharvest.github.gateway import Gateway

logger = logging.getLogger(__name__)


@dc.dataclass(frozen=True, slots=True)
class CommitScrapeResult:
    """Counts from one successful commit scrape."""

    repository_id: int
    commits_seen: int
    commits_stored: int
    authors: int
    skipped_unattributed: int


def collect_authors(commits: cabc.Iterable[CommitPayload]) -> dict[int, str]:
    """Return the distinct GitHub authors, keyed by external id.

    Commits whose author GitHub could not resolve to an account carry no id
    or login and contribute nothing.
    """
    authors: dict[int, str] = {}
    for commit in commits:
        author = commit.author
        if author is not None and author.is_resolved:
            authors[typ.cast("int", author.id)] = typ.cast("str", author.login)
    return authors


class CommitScraper:
    """Fetch and store the commits of one repository."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: Gateway,
        *,
        event_logger: PipelineEventLogger | None = None,
        clock: cabc.Callable[[], dt.datetime] = utcnow,
    ) -> None:
        """Store collaborators."""
        self._session_factory = session_factory
        self._gateway = gateway
        self._events = event_logger or PipelineEventLogger()
        self._clock = clock

    async def _listing_path(self, repository_id: int) -> str:
        async with self._session_factory() as session:
            repository = await session.get(Repository, repository_id)
            if repository is None:
                raise RepositoryMissingError(repository_id)
            owner: Account | Organization | None
            if repository.owner_account_id is not None:
                owner = await session.get(Account, repository.owner_account_id)
            else:
                owner = await session.get(
                    Organization, repository.owner_organization_id
                )
            if owner is None:
                raise RepositoryOwnerMissingError(repository_id)
            return f"repos/{owner.login}/{repository.name}/commits"

    async def scrape(
        self, repository_id: int, job_id: str | None = None
    ) -> CommitScrapeResult:
        """Scrape every commit of ``repository_id``.

        Parameters
        ----------
        repository_id
            Internal id of the repository.
        job_id
            Scrape job this run belongs to, used for log correlation.

        Raises
        ------
        RepositoryMissingError
            If the repository does not exist.
        GatewayError
            If fetching commits fails; nothing is written in that case.

        """
        started = self._clock()
        self._events.log_job_started(repository_id, job_id)
        try:
            result = await self._scrape(repository_id)
        except Exception as exc:
            self._events.log_job_failed(repository_id, job_id, exc)
            raise
        self._events.log_job_completed(
            repository_id,
            job_id,
            commits=result.commits_stored,
            duration=self._clock() - started,
        )
        return result

    async def _scrape(self, repository_id: int) -> CommitScrapeResult:
        path = await self._listing_path(repository_id)
        items = await self._gateway.fetch_paginated(path)
        commits = [convert_payload(item, CommitPayload, field=path) for item in items]
        authors = collect_authors(commits)

        async with self._session_factory() as session:
            stored, skipped = await self._store(
                session, repository_id, commits, authors
            )
            await session.execute(
                update(Repository)
                .where(Repository.id == repository_id)
                .values(commits_scraped_at=self._clock())
            )
            await session.commit()

        return CommitScrapeResult(
            repository_id=repository_id,
            commits_seen=len(commits),
            commits_stored=stored,
            authors=len(authors),
            skipped_unattributed=skipped,
        )

    async def _store(
        self,
        session: AsyncSession,
        repository_id: int,
        commits: list[CommitPayload],
        authors: dict[int, str],
    ) -> tuple[int, int]:
        """Write authors, commits and links; return (stored, skipped)."""
        # Only the login is refreshed so profile data from stage 1 survives.
        await upsert_rows(
            session,
            Account,
            [
                {"github_id": github_id, "login": login}
                for github_id, login in authors.items()
            ],
            key="github_id",
            update_columns=["login"],
        )
        account_ids = await resolve_ids(session, Account, authors)

        rows: list[dict[str, typ.Any]] = []
        skipped = 0
        for commit in commits:
            author_id = commit.author.id if commit.author is not None else None
            if author_id is None or author_id not in account_ids:
                skipped += 1
                continue
            rows.append(
                {
                    "sha": commit.sha,
                    "author_account_id": account_ids[author_id],
                    "message": commit.commit.message if commit.commit else None,
                    "committed_at": parse_github_datetime(commit.committed_at),
                }
            )
        rows = dedupe_rows(rows, "sha")

        await upsert_rows(session, Commit, rows, key="sha", update_columns=[])
        await insert_ignore_rows(
            session,
            commit_repositories,
            [
                {"commit_sha": row["sha"], "repository_id": repository_id}
                for row in rows
            ],
        )
        if skipped:
            logger.debug(
                "Skipped %d commits without a GitHub author in repository %d",
                skipped,
                repository_id,
            )
        return len(rows), skipped
