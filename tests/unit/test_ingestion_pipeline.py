"""Unit tests for the four-stage ingestion pipeline."""

from __future__ import annotations

import datetime as dt
import typing as typ

import pytest
from sqlalchemy import func, select

from ghharvest.ingestion import IngestionPipeline, PipelineConfig, needs_commit_scrape
from ghharvest.storage import (
    Account,
    Organization,
    Repository,
    TrackedAccount,
    account_organizations,
)
from tests.helpers.storage import (
    NOW,
    add_account,
    add_organization,
    add_credential,
    add_repository,
)

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from ghharvest.github import Gateway
    from tests.helpers.fake_github import FakeGitHub

_DAY = dt.timedelta(hours=24)


class RecordingScheduler:
    """Commit batch scheduler that records instead of enqueueing."""

    def __init__(self) -> None:
        """Start with no batches."""
        self.batches: list[tuple[list[int], str]] = []

    async def enqueue_commit_batch(
        self, repository_ids: cabc.Sequence[int], *, reason: str = "pipeline"
    ) -> str:
        """Record the batch and return a predictable id."""
        self.batches.append((list(repository_ids), reason))
        return f"batch-{len(self.batches)}"


def _user(github_id: int, login: str, **extra: object) -> dict[str, object]:
    return {"id": github_id, "login": login, "type": "User", **extra}


def _repo(github_id: int, name: str, **extra: object) -> dict[str, object]:
    return {"id": github_id, "name": name, "full_name": name, **extra}


@pytest.fixture
def scheduler() -> RecordingScheduler:
    """Return a recording scheduler."""
    return RecordingScheduler()


@pytest.fixture
def pipeline(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: Gateway,
    scheduler: RecordingScheduler,
) -> IngestionPipeline:
    """Return a pipeline on the pinned clock with a small worker pool."""
    return IngestionPipeline(
        session_factory,
        gateway,
        scheduler,
        config=PipelineConfig(batch_size=2, workers=2, rescrape_interval=_DAY),
        clock=lambda: NOW,
    )


@pytest.mark.parametrize(
    ("scraped_ago", "expected"),
    [(None, True), (dt.timedelta(hours=2), False), (dt.timedelta(hours=25), True)],
)
def test_needs_commit_scrape_interval(
    scraped_ago: dt.timedelta | None, *, expected: bool
) -> None:
    """Never-scraped and stale repositories are due; recent ones are not."""
    scraped_at = None if scraped_ago is None else NOW - scraped_ago

    assert needs_commit_scrape(scraped_at, None, now=NOW, interval=_DAY) is expected


def test_skip_unpushed_requires_a_push_since_last_scrape() -> None:
    """With the flag set, a stale scrape is only due after a newer push."""
    scraped_at = NOW - dt.timedelta(hours=30)
    older_push = scraped_at - dt.timedelta(hours=1)
    newer_push = scraped_at + dt.timedelta(hours=1)

    def due(pushed_at: dt.datetime) -> bool:
        return needs_commit_scrape(
            scraped_at, pushed_at, now=NOW, interval=_DAY, skip_unpushed=True
        )

    assert due(older_push) is False
    assert due(newer_push) is True


class TestUpsertAccounts:
    """Stage 1."""

    @pytest.mark.asyncio
    async def test_failed_usernames_are_excluded(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        pipeline: IngestionPipeline,
        fake: FakeGitHub,
    ) -> None:
        """Duplicates are fetched once and a 404 drops only that username."""
        await add_credential(session_factory, "pool")
        fake.json("users/b", _user(2, "b", name="Bea"))

        result = await pipeline.upsert_accounts(["a", "a", "b"])

        assert result.succeeded == frozenset({"b"})
        assert result.failed == frozenset({"a"})
        assert len(fake.api_calls("users/a")) == 1
        async with session_factory() as session:
            accounts = list(await session.scalars(select(Account)))
        assert [(row.login, row.name) for row in accounts] == [("b", "Bea")]
        assert accounts[0].last_scraped_at == NOW
        assert result.account_ids == {"b": accounts[0].id}

    @pytest.mark.asyncio
    async def test_organization_logins_are_skipped(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        pipeline: IngestionPipeline,
        fake: FakeGitHub,
    ) -> None:
        """A username that is an organization is not stored as an account."""
        await add_credential(session_factory, "pool")
        fake.json("users/acme", {"id": 9, "login": "acme", "type": "Organization"})

        result = await pipeline.upsert_accounts(["acme"])

        assert result.skipped == frozenset({"acme"})
        assert result.account_ids == {}

    @pytest.mark.asyncio
    async def test_existing_account_is_updated_in_place(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        pipeline: IngestionPipeline,
        fake: FakeGitHub,
    ) -> None:
        """A stored account keeps its internal id and gets the new profile."""
        await add_credential(session_factory, "pool")
        existing_id = await add_account(session_factory, "b", 2)
        fake.json("users/b", _user(2, "b", followers=5))

        result = await pipeline.upsert_accounts(["b"])

        assert result.account_ids == {"b": existing_id}
        async with session_factory() as session:
            accounts = list(await session.scalars(select(Account)))
        assert [(row.id, row.followers) for row in accounts] == [(existing_id, 5)]

    @pytest.mark.asyncio
    async def test_tracked_username_is_linked_to_github_id(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        pipeline: IngestionPipeline,
        fake: FakeGitHub,
    ) -> None:
        """Tracking rows learn the GitHub id their username resolved to."""
        await add_credential(session_factory, "pool")
        async with session_factory() as session, session.begin():
            session.add(TrackedAccount(username="Bea", tags=["ml"]))
        fake.json("users/Bea", _user(2, "bea"))

        await pipeline.upsert_accounts(["Bea"])

        async with session_factory() as session:
            tracked = await session.scalar(select(TrackedAccount))
        assert tracked is not None
        assert tracked.github_id == 2


class TestUpsertOrganizations:
    """Stage 2."""

    @pytest.mark.asyncio
    async def test_memberships_are_linked_once(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        pipeline: IngestionPipeline,
        fake: FakeGitHub,
    ) -> None:
        """Organizations are upserted and rerunning adds no duplicate pairs."""
        await add_credential(session_factory, "pool")
        account_id = await add_account(session_factory, "b", 2)
        fake.listing(
            "users/b/orgs",
            [{"id": 100, "login": "acme"}, {"id": 101, "login": "initech"}],
        )

        first = await pipeline.upsert_organizations({"b": account_id})
        second = await pipeline.upsert_organizations({"b": account_id})

        assert set(first.organization_ids) == {"acme", "initech"}
        assert second.organization_ids == first.organization_ids
        async with session_factory() as session:
            pairs = await session.scalar(
                select(func.count()).select_from(account_organizations)
            )
            organizations = await session.scalar(
                select(func.count()).select_from(Organization)
            )
        assert pairs == 2
        assert organizations == 2

    @pytest.mark.asyncio
    async def test_failed_listing_is_excluded(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        pipeline: IngestionPipeline,
        fake: FakeGitHub,
    ) -> None:
        """One account's failing listing does not stop the others."""
        await add_credential(session_factory, "pool")
        ok = await add_account(session_factory, "ok", 2)
        broken = await add_account(session_factory, "broken", 3)
        fake.listing("users/ok/orgs", [{"id": 100, "login": "acme"}])
        fake.error("users/broken/orgs", 500, "boom")

        result = await pipeline.upsert_organizations({"ok": ok, "broken": broken})

        assert result.failed == frozenset({"broken"})
        assert set(result.organization_ids) == {"acme"}


class TestUpsertRepositories:
    """Stage 3."""

    @pytest.mark.asyncio
    async def test_forks_are_skipped_and_owners_recorded(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        pipeline: IngestionPipeline,
        fake: FakeGitHub,
    ) -> None:
        """Each stored repository has exactly one owner; forks are dropped."""
        await add_credential(session_factory, "pool")
        account_id = await add_account(session_factory, "b", 2)
        fake.listing(
            "users/b/repos",
            [
                _repo(10, "mine", pushed_at="2024-05-01T00:00:00Z"),
                _repo(11, "forked", fork=True),
            ],
        )
        fake.listing("orgs/acme/repos", [_repo(20, "shared")])
        organization_id = await add_organization(session_factory, "acme", 100)

        result = await pipeline.upsert_repositories(
            {"b": account_id}, {"acme": organization_id}
        )

        assert result.forks_skipped == 1
        async with session_factory() as session:
            repositories = {
                row.name: row for row in await session.scalars(select(Repository))
            }
        assert set(repositories) == {"mine", "shared"}
        assert repositories["mine"].owner_account_id == account_id
        assert repositories["mine"].owner_organization_id is None
        assert repositories["mine"].pushed_at == dt.datetime(2024, 5, 1, tzinfo=dt.UTC)
        assert repositories["shared"].owner_organization_id == organization_id
        assert repositories["shared"].owner_account_id is None
        assert sorted(result.repository_ids) == sorted(
            row.id for row in repositories.values()
        )


class TestScheduleCommitScrapes:
    """Stage 4."""

    @pytest.mark.asyncio
    async def test_only_due_repositories_are_enqueued(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        pipeline: IngestionPipeline,
        scheduler: RecordingScheduler,
    ) -> None:
        """With a 24h interval, NULL and 25h-old scrapes are due, 2h is not."""
        owner = await add_account(session_factory, "b", 2)
        never = await add_repository(
            session_factory, "never", 1, owner_account_id=owner
        )
        recent = await add_repository(
            session_factory,
            "recent",
            2,
            owner_account_id=owner,
            commits_scraped_at=NOW - dt.timedelta(hours=2),
        )
        stale = await add_repository(
            session_factory,
            "stale",
            3,
            owner_account_id=owner,
            commits_scraped_at=NOW - dt.timedelta(hours=25),
        )

        result = await pipeline.schedule_commit_scrapes([never, recent, stale])

        assert sorted(result.repository_ids) == [never, stale]
        assert result.batch_id == "batch-1"
        assert [(sorted(ids), reason) for ids, reason in scheduler.batches] == [
            ([never, stale], "pipeline")
        ]

    @pytest.mark.asyncio
    async def test_force_ignores_the_interval(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        pipeline: IngestionPipeline,
        scheduler: RecordingScheduler,
    ) -> None:
        """Forced scheduling enqueues recently scraped repositories too."""
        owner = await add_account(session_factory, "b", 2)
        recent = await add_repository(
            session_factory,
            "recent",
            2,
            owner_account_id=owner,
            commits_scraped_at=NOW - dt.timedelta(hours=2),
        )

        result = await pipeline.schedule_commit_scrapes(
            [recent], force=True, reason="rescrape"
        )

        assert result.repository_ids == (recent,)
        assert scheduler.batches == [([recent], "rescrape")]

    @pytest.mark.asyncio
    async def test_nothing_due_enqueues_nothing(
        self,
        pipeline: IngestionPipeline,
        scheduler: RecordingScheduler,
    ) -> None:
        """No candidates means no batch."""
        result = await pipeline.schedule_commit_scrapes([])

        assert result.batch_id is None
        assert scheduler.batches == []


@pytest.mark.asyncio
async def test_run_chains_all_stages(
    session_factory: async_sessionmaker[AsyncSession],
    pipeline: IngestionPipeline,
    scheduler: RecordingScheduler,
    fake: FakeGitHub,
) -> None:
    """A full run stores every entity and enqueues the new repositories."""
    await add_credential(session_factory, "pool")
    fake.json("users/b", _user(2, "b"))
    fake.listing("users/b/orgs", [{"id": 100, "login": "acme"}])
    fake.listing("users/b/repos", [_repo(10, "mine")])
    fake.listing("orgs/acme/repos", [_repo(20, "shared")])

    result = await pipeline.run(["b"])

    assert result.accounts.succeeded == frozenset({"b"})
    assert set(result.organizations.organization_ids) == {"acme"}
    assert len(result.repositories.repository_ids) == 2
    assert result.commits.batch_id == "batch-1"
    assert sorted(scheduler.batches[0][0]) == sorted(
        result.repositories.repository_ids
    )
