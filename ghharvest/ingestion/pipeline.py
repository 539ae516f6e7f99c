"""Four-stage ingestion of GitHub accounts, organizations and repositories.

Stages run in a fixed order and each completes before the next starts:

1. accounts: ``GET users/{login}`` per requested username;
2. organizations: ``GET users/{login}/orgs`` per account;
3. repositories: ``GET users/{login}/repos`` and ``GET orgs/{login}/repos``;
4. commits: select stale repositories and enqueue one background job each.

Stages 1 to 3 call GitHub in batches through a bounded worker pool. A single
failing item (a 404, a transient error, a malformed payload) is logged and
excluded; it never aborts the stage. All writes are idempotent upserts keyed
by GitHub's ids, so rerunning a pipeline over the same input converges on the
same rows.
"""

from __future__ import annotations

import asyncio
import dataclasses as dc
import logging
import typing as typ

from sqlalchemy import func, select, update

from ghharvest.common.time import utcnow
from ghharvest.github.payloads import (
    OrganizationPayload,
    RepositoryPayload,
    UserPayload,
    convert_payload,
)
from ghharvest.storage.models import (
    Account,
    Organization,
    Repository,
    TrackedAccount,
    account_organizations,
)
from ghharvest.storage.upserts import insert_ignore_rows, resolve_ids, upsert_rows

from .config import PipelineConfig
from .observability import PipelineEventLogger

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from ghharvest.github.gateway import Gateway

    type SessionFactory = async_sessionmaker[AsyncSession]

logger = logging.getLogger(__name__)

_LOOKUP_CHUNK = 500


class CommitBatchScheduler(typ.Protocol):
    """Queue that accepts one commit job per repository under a batch."""

    async def enqueue_commit_batch(
        self, repository_ids: cabc.Sequence[int], *, reason: str = "pipeline"
    ) -> str:
        """Enqueue the jobs and return the batch id."""
        ...


@dc.dataclass(frozen=True, slots=True)
class AccountStageResult:
    """Outcome of stage 1.

    Attributes
    ----------
    succeeded
        Requested usernames whose profiles were stored.
    account_ids
        GitHub login mapped to the internal account id, for later stages.
    failed
        Requested usernames whose fetch failed.
    skipped
        Requested usernames that resolved to organizations.

    """

    succeeded: frozenset[str]
    account_ids: dict[str, int]
    failed: frozenset[str] = frozenset()
    skipped: frozenset[str] = frozenset()


@dc.dataclass(frozen=True, slots=True)
class OrganizationStageResult:
    """Outcome of stage 2."""

    organization_ids: dict[str, int]
    memberships: int = 0
    failed: frozenset[str] = frozenset()


@dc.dataclass(frozen=True, slots=True)
class RepositoryStageResult:
    """Outcome of stage 3."""

    repository_ids: tuple[int, ...]
    forks_skipped: int = 0
    failed: frozenset[str] = frozenset()


@dc.dataclass(frozen=True, slots=True)
class CommitScheduleResult:
    """Outcome of stage 4; ``batch_id`` is None when nothing was due."""

    batch_id: str | None
    repository_ids: tuple[int, ...] = ()


@dc.dataclass(frozen=True, slots=True)
class PipelineResult:
    """Summary of a full pipeline run."""

    accounts: AccountStageResult
    organizations: OrganizationStageResult
    repositories: RepositoryStageResult
    commits: CommitScheduleResult


@dc.dataclass(slots=True)
class _BoundedOutcome[I, R]:
    succeeded: list[tuple[I, R]] = dc.field(default_factory=list)
    failed: list[I] = dc.field(default_factory=list)


@dc.dataclass(frozen=True, slots=True)
class _Owner:
    kind: typ.Literal["account", "organization"]
    login: str
    internal_id: int

    @property
    def listing_path(self) -> str:
        prefix = "users" if self.kind == "account" else "orgs"
        return f"{prefix}/{self.login}/repos"

    def __str__(self) -> str:
        return f"{self.kind}:{self.login}"


def needs_commit_scrape(
    commits_scraped_at: dt.datetime | None,
    pushed_at: dt.datetime | None,
    *,
    now: dt.datetime,
    interval: dt.timedelta,
    skip_unpushed: bool = False,
) -> bool:
    """Return True when a repository's commits are due to be fetched.

    Never-scraped repositories are always due. Otherwise the last scrape must
    be older than ``interval``; with ``skip_unpushed`` the repository must
    also have been pushed to since that scrape.

    Examples
    --------
    >>> import datetime as dt
    >>> now = dt.datetime(2024, 1, 2, tzinfo=dt.UTC)
    >>> needs_commit_scrape(None, None, now=now, interval=dt.timedelta(hours=24))
    True
    >>> needs_commit_scrape(
    ...     now - dt.timedelta(hours=2), None, now=now, interval=dt.timedelta(hours=24)
    ... )
    False

    """
    if commits_scraped_at is None:
        return True
    if commits_scraped_at >= now - interval:
        return False
    if skip_unpushed and pushed_at is not None:
        return pushed_at > commits_scraped_at
    return True


def _unique_logins(usernames: cabc.Iterable[str]) -> list[str]:
    cleaned = (name.strip() for name in usernames)
    return list(dict.fromkeys(name for name in cleaned if name))


class IngestionPipeline:
    """Crawl accounts, their organizations and repositories into storage.

    Parameters
    ----------
    session_factory
        Factory for sessions on the entity database.
    gateway
        Cache-first GitHub gateway every request goes through.
    scheduler
        Queue receiving the stage-4 commit jobs.
    config
        Batching, concurrency and rescrape policy.
    event_logger
        Structured event sink; defaults to :class:`PipelineEventLogger`.
    clock
        Source of the current time; tests pin it.

    """

    def __init__(  # noqa: PLR0913
        self,
        session_factory: SessionFactory,
        gateway: Gateway,
        scheduler: CommitBatchScheduler,
        *,
        config: PipelineConfig | None = None,
        event_logger: PipelineEventLogger | None = None,
        clock: cabc.Callable[[], dt.datetime] = utcnow,
    ) -> None:
        """Store collaborators."""
        self._session_factory = session_factory
        self._gateway = gateway
        self._scheduler = scheduler
        self._config = config or PipelineConfig()
        self._events = event_logger or PipelineEventLogger()
        self._clock = clock

    async def run(self, usernames: cabc.Iterable[str]) -> PipelineResult:
        """Run all four stages for ``usernames``.

        Stage 4 only considers repositories touched by stage 3 of this run and
        returns as soon as their jobs are enqueued.
        """
        accounts = await self.upsert_accounts(usernames)
        organizations = await self.upsert_organizations(accounts.account_ids)
        repositories = await self.upsert_repositories(
            accounts.account_ids, organizations.organization_ids
        )
        commits = await self.schedule_commit_scrapes(repositories.repository_ids)
        return PipelineResult(
            accounts=accounts,
            organizations=organizations,
            repositories=repositories,
            commits=commits,
        )

    async def _run_bounded[I, R](
        self,
        stage: str,
        items: cabc.Sequence[I],
        fn: cabc.Callable[[I], cabc.Awaitable[R]],
    ) -> _BoundedOutcome[I, R]:
        """Apply ``fn`` to ``items`` batch by batch with bounded concurrency."""
        semaphore = asyncio.Semaphore(self._config.workers)

        async def bounded(item: I) -> R:
            async with semaphore:
                return await fn(item)

        outcome: _BoundedOutcome[I, R] = _BoundedOutcome()
        size = self._config.batch_size
        for start in range(0, len(items), size):
            batch = items[start : start + size]
            gathered = await asyncio.gather(
                *(bounded(item) for item in batch), return_exceptions=True
            )
            for item, result in zip(batch, gathered, strict=True):
                if isinstance(result, Exception):
                    self._events.log_item_failed(stage, item, result)
                    outcome.failed.append(item)
                elif isinstance(result, BaseException):
                    # Re-raise system-level exceptions (e.g., KeyboardInterrupt)
                    raise result
                else:
                    outcome.succeeded.append((item, result))
        return outcome

    async def _fetch_listing[P](
        self, path: str, payload_type: type[P]
    ) -> list[P]:
        items = await self._gateway.fetch_paginated(path)
        return [convert_payload(item, payload_type, field=path) for item in items]

    async def _fetch_user(self, login: str) -> UserPayload:
        body = await self._gateway.fetch(f"users/{login}")
        return convert_payload(body, UserPayload, field=f"users/{login}")

    async def upsert_accounts(
        self, usernames: cabc.Iterable[str]
    ) -> AccountStageResult:
        """Stage 1: fetch and store the profiles of ``usernames``.

        Duplicate usernames are fetched once. Logins that resolve to an
        organization are skipped, and the tracked-account row for every
        stored login is linked to its GitHub id.
        """
        logins = _unique_logins(usernames)
        started = self._clock()
        self._events.log_stage_started("accounts", len(logins))

        outcome = await self._run_bounded("accounts", logins, self._fetch_user)

        profiles: dict[str, UserPayload] = {}
        skipped: set[str] = set()
        for login, payload in outcome.succeeded:
            if payload.is_organization:
                self._events.log_item_skipped("accounts", login, "organization")
                skipped.add(login)
                continue
            profiles[login] = payload

        account_ids: dict[str, int] = {}
        if profiles:
            now = self._clock()
            rows = [
                {**payload.to_row(), "last_scraped_at": now}
                for payload in profiles.values()
            ]
            async with self._session_factory() as session:
                await upsert_rows(session, Account, rows, key="github_id")
                ids = await resolve_ids(
                    session, Account, (p.id for p in profiles.values())
                )
                await self._link_tracked_accounts(session, profiles)
                await session.commit()
            account_ids = {
                payload.login: ids[payload.id]
                for payload in profiles.values()
                if payload.id in ids
            }

        self._events.log_stage_completed(
            "accounts",
            succeeded=len(profiles),
            failed=len(outcome.failed),
            duration=self._clock() - started,
        )
        return AccountStageResult(
            succeeded=frozenset(profiles),
            account_ids=account_ids,
            failed=frozenset(outcome.failed),
            skipped=frozenset(skipped),
        )

    async def _link_tracked_accounts(
        self, session: AsyncSession, profiles: cabc.Mapping[str, UserPayload]
    ) -> None:
        """Point tracked usernames at the GitHub id they resolved to."""
        for login, payload in profiles.items():
            username = func.lower(TrackedAccount.username)
            # A renamed account may still be linked under its previous name.
            await session.execute(
                update(TrackedAccount)
                .where(
                    TrackedAccount.github_id == payload.id,
                    username != login.lower(),
                )
                .values(github_id=None)
            )
            await session.execute(
                update(TrackedAccount)
                .where(username == login.lower())
                .values(github_id=payload.id)
            )

    async def upsert_organizations(
        self, accounts: cabc.Mapping[str, int]
    ) -> OrganizationStageResult:
        """Stage 2: store the organizations each account belongs to.

        Organizations are written first so that membership pairs can be
        inserted against their internal ids; existing pairs are left alone.
        """
        logins = list(accounts)
        started = self._clock()
        self._events.log_stage_started("organizations", len(logins))

        outcome = await self._run_bounded(
            "organizations",
            logins,
            lambda login: self._fetch_listing(
                f"users/{login}/orgs", OrganizationPayload
            ),
        )

        organizations: dict[int, OrganizationPayload] = {}
        pairs: list[tuple[int, int]] = []
        for login, payloads in outcome.succeeded:
            for org in payloads:
                organizations[org.id] = org
                pairs.append((accounts[login], org.id))

        organization_ids: dict[str, int] = {}
        memberships = 0
        if organizations:
            now = self._clock()
            rows = [
                {**org.to_row(), "last_scraped_at": now}
                for org in organizations.values()
            ]
            async with self._session_factory() as session:
                await upsert_rows(session, Organization, rows, key="github_id")
                ids = await resolve_ids(session, Organization, organizations)
                membership_rows = [
                    {"account_id": account_id, "organization_id": ids[github_id]}
                    for account_id, github_id in pairs
                    if github_id in ids
                ]
                memberships = await insert_ignore_rows(
                    session, account_organizations, membership_rows
                )
                await session.commit()
            organization_ids = {
                org.login: ids[org.id]
                for org in organizations.values()
                if org.id in ids
            }

        self._events.log_stage_completed(
            "organizations",
            succeeded=len(outcome.succeeded),
            failed=len(outcome.failed),
            duration=self._clock() - started,
        )
        return OrganizationStageResult(
            organization_ids=organization_ids,
            memberships=memberships,
            failed=frozenset(outcome.failed),
        )

    async def upsert_repositories(
        self,
        accounts: cabc.Mapping[str, int],
        organizations: cabc.Mapping[str, int],
    ) -> RepositoryStageResult:
        """Stage 3: store the non-fork repositories owned by each owner."""
        owners = [
            _Owner("account", login, account_id)
            for login, account_id in accounts.items()
        ] + [
            _Owner("organization", login, organization_id)
            for login, organization_id in organizations.items()
        ]
        started = self._clock()
        self._events.log_stage_started("repositories", len(owners))

        outcome = await self._run_bounded(
            "repositories",
            owners,
            lambda owner: self._fetch_listing(owner.listing_path, RepositoryPayload),
        )

        rows: dict[int, dict[str, typ.Any]] = {}
        forks = 0
        for owner, payloads in outcome.succeeded:
            for repo in payloads:
                if repo.fork:
                    forks += 1
                    continue
                if owner.kind == "account":
                    rows[repo.id] = repo.to_row(owner_account_id=owner.internal_id)
                else:
                    rows[repo.id] = repo.to_row(
                        owner_organization_id=owner.internal_id
                    )

        repository_ids: tuple[int, ...] = ()
        if rows:
            async with self._session_factory() as session:
                await upsert_rows(
                    session, Repository, list(rows.values()), key="github_id"
                )
                ids = await resolve_ids(session, Repository, rows)
                await session.commit()
            repository_ids = tuple(ids[github_id] for github_id in rows)

        self._events.log_stage_completed(
            "repositories",
            succeeded=len(outcome.succeeded),
            failed=len(outcome.failed),
            duration=self._clock() - started,
        )
        return RepositoryStageResult(
            repository_ids=repository_ids,
            forks_skipped=forks,
            failed=frozenset(str(owner) for owner in outcome.failed),
        )

    async def schedule_commit_scrapes(
        self,
        repository_ids: cabc.Iterable[int],
        *,
        force: bool = False,
        reason: str = "pipeline",
    ) -> CommitScheduleResult:
        """Stage 4: enqueue one commit job per repository that is due.

        Parameters
        ----------
        repository_ids
            Candidate internal repository ids.
        force
            Enqueue every candidate regardless of when it was last scraped.
        reason
            Label recorded on the batch.

        """
        candidates = list(dict.fromkeys(repository_ids))
        self._events.log_stage_started("commits", len(candidates))
        if not candidates:
            return CommitScheduleResult(batch_id=None)

        due = candidates if force else await self._due_repositories(candidates)
        if not due:
            logger.info("No repositories due for a commit scrape")
            return CommitScheduleResult(batch_id=None)

        batch_id = await self._scheduler.enqueue_commit_batch(due, reason=reason)
        self._events.log_batch_enqueued(batch_id, len(due), reason)
        return CommitScheduleResult(batch_id=batch_id, repository_ids=tuple(due))

    async def _due_repositories(self, candidates: list[int]) -> list[int]:
        now = self._clock()
        due: list[int] = []
        async with self._session_factory() as session:
            for start in range(0, len(candidates), _LOOKUP_CHUNK):
                chunk = candidates[start : start + _LOOKUP_CHUNK]
                result = await session.execute(
                    select(
                        Repository.id,
                        Repository.commits_scraped_at,
                        Repository.pushed_at,
                    ).where(Repository.id.in_(chunk))
                )
                due.extend(
                    repository_id
                    for repository_id, scraped_at, pushed_at in result.all()
                    if needs_commit_scrape(
                        scraped_at,
                        pushed_at,
                        now=now,
                        interval=self._config.rescrape_interval,
                        skip_unpushed=self._config.skip_unpushed,
                    )
                )
        order = {repository_id: index for index, repository_id in enumerate(candidates)}
        return sorted(due, key=order.__getitem__)
