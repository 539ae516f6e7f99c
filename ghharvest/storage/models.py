"""Persistence models for credentials, crawled GitHub entities and jobs.

Models keep to portable SQLAlchemy types so the same code works with SQLite
in tests and PostgreSQL in production. Entities crawled from GitHub are keyed
by their external ``github_id`` and written through the bulk helpers in
:mod:`ghharvest.storage.upserts`.
"""

from __future__ import annotations

import datetime as dt  # noqa: TC003
import enum
import typing as typ
import uuid

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ghharvest.common.ratelimits import RateLimitState, Scope
from ghharvest.common.time import utcnow
from ghharvest.storage.base import Base, UTCDateTime


class Credential(Base):
    """A donated GitHub token and its last known per-scope budgets."""

    __tablename__ = "credentials"
    __table_args__ = (
        Index("ix_credentials_core", "core_remaining", "core_reset_at"),
        Index("ix_credentials_search", "search_remaining", "search_reset_at"),
        Index("ix_credentials_graphql", "graphql_remaining", "graphql_reset_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    github_id: Mapped[int] = mapped_column(BigInteger, unique=True)
    username: Mapped[str] = mapped_column(String(255), unique=True)
    token: Mapped[str] = mapped_column(String(255))
    core_remaining: Mapped[int | None] = mapped_column(Integer, default=None)
    core_reset_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    search_remaining: Mapped[int | None] = mapped_column(Integer, default=None)
    search_reset_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    graphql_remaining: Mapped[int | None] = mapped_column(Integer, default=None)
    graphql_reset_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    last_used_at: Mapped[dt.datetime | None] = mapped_column(
        UTCDateTime(), index=True
    )
    revoked_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow
    )

    @property
    def is_revoked(self) -> bool:
        """Return True once the credential has been revoked."""
        return self.revoked_at is not None

    def rate_limit(self, scope: Scope) -> RateLimitState:
        """Return the stored budget for ``scope``."""
        return RateLimitState(
            remaining=getattr(self, f"{scope.value}_remaining"),
            reset_at=getattr(self, f"{scope.value}_reset_at"),
        )

    def apply_rate_limit(self, scope: Scope, state: RateLimitState) -> None:
        """Overwrite the stored budget for ``scope``."""
        setattr(self, f"{scope.value}_remaining", state.remaining)
        setattr(self, f"{scope.value}_reset_at", state.reset_at)

    def has_capacity(self, scope: Scope, now: dt.datetime) -> bool:
        """Return True when active and the ``scope`` budget is usable."""
        return not self.is_revoked and self.rate_limit(scope).has_capacity(now)


class TrackedAccount(Base):
    """A GitHub login an operator asked the pipeline to crawl."""

    __tablename__ = "tracked_accounts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), unique=True)
    github_id: Mapped[int | None] = mapped_column(
        BigInteger, unique=True, default=None
    )
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)
    last_requested_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow
    )


account_organizations = Table(
    "account_organizations",
    Base.metadata,
    Column(
        "account_id",
        ForeignKey("accounts.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "organization_id",
        ForeignKey("organizations.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)

commit_repositories = Table(
    "commit_repositories",
    Base.metadata,
    Column(
        "commit_sha",
        ForeignKey("commits.sha", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "repository_id",
        ForeignKey("repositories.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class Account(Base):
    """GitHub user profile keyed by its external id."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    github_id: Mapped[int] = mapped_column(BigInteger, unique=True)
    login: Mapped[str] = mapped_column(String(255), index=True)
    name: Mapped[str | None] = mapped_column(String(255), default=None)
    email: Mapped[str | None] = mapped_column(String(320), default=None)
    bio: Mapped[str | None] = mapped_column(Text(), default=None)
    location: Mapped[str | None] = mapped_column(String(255), default=None)
    company: Mapped[str | None] = mapped_column(String(255), default=None)
    blog: Mapped[str | None] = mapped_column(String(512), default=None)
    twitter_username: Mapped[str | None] = mapped_column(String(255), default=None)
    avatar_url: Mapped[str | None] = mapped_column(String(512), default=None)
    public_repos: Mapped[int | None] = mapped_column(Integer, default=None)
    public_gists: Mapped[int | None] = mapped_column(Integer, default=None)
    followers: Mapped[int | None] = mapped_column(Integer, default=None)
    following: Mapped[int | None] = mapped_column(Integer, default=None)
    github_created_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    github_updated_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    last_scraped_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow
    )

    organizations: Mapped[list[Organization]] = relationship(
        secondary=account_organizations, back_populates="members"
    )
    repositories: Mapped[list[Repository]] = relationship(
        back_populates="owner_account"
    )


class Organization(Base):
    """GitHub organization keyed by its external id."""

    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    github_id: Mapped[int] = mapped_column(BigInteger, unique=True)
    login: Mapped[str] = mapped_column(String(255), index=True)
    description: Mapped[str | None] = mapped_column(Text(), default=None)
    avatar_url: Mapped[str | None] = mapped_column(String(512), default=None)
    last_scraped_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow
    )

    members: Mapped[list[Account]] = relationship(
        secondary=account_organizations, back_populates="organizations"
    )
    repositories: Mapped[list[Repository]] = relationship(
        back_populates="owner_organization"
    )


class Repository(Base):
    """Non-fork repository owned by exactly one account or organization."""

    __tablename__ = "repositories"
    __table_args__ = (
        CheckConstraint(
            "(owner_account_id IS NULL) <> (owner_organization_id IS NULL)",
            name="ck_repositories_single_owner",
        ),
        Index("ix_repositories_commits_scraped_at", "commits_scraped_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    github_id: Mapped[int] = mapped_column(BigInteger, unique=True)
    name: Mapped[str] = mapped_column(String(255))
    full_name: Mapped[str | None] = mapped_column(String(512), default=None)
    owner_account_id: Mapped[int | None] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), default=None
    )
    owner_organization_id: Mapped[int | None] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), default=None
    )
    description: Mapped[str | None] = mapped_column(Text(), default=None)
    homepage: Mapped[str | None] = mapped_column(String(512), default=None)
    language: Mapped[str | None] = mapped_column(String(128), default=None)
    topics: Mapped[list[str]] = mapped_column(JSON, default=list)
    default_branch: Mapped[str | None] = mapped_column(String(255), default=None)
    stargazers_count: Mapped[int] = mapped_column(Integer, default=0)
    forks_count: Mapped[int] = mapped_column(Integer, default=0)
    watchers_count: Mapped[int] = mapped_column(Integer, default=0)
    open_issues_count: Mapped[int] = mapped_column(Integer, default=0)
    size: Mapped[int] = mapped_column(Integer, default=0)
    archived: Mapped[bool] = mapped_column(Boolean, default=False)
    disabled: Mapped[bool] = mapped_column(Boolean, default=False)
    github_created_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    github_updated_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    pushed_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    commits_scraped_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow
    )

    owner_account: Mapped[Account | None] = relationship(
        back_populates="repositories"
    )
    owner_organization: Mapped[Organization | None] = relationship(
        back_populates="repositories"
    )
    commits: Mapped[list[Commit]] = relationship(
        secondary=commit_repositories, back_populates="repositories"
    )


class Commit(Base):
    """Git commit, globally unique by sha and linked to every repo carrying it."""

    __tablename__ = "commits"
    __table_args__ = (
        Index("ix_commits_author_time", "author_account_id", "committed_at"),
    )

    sha: Mapped[str] = mapped_column(String(64), primary_key=True)
    author_account_id: Mapped[int | None] = mapped_column(
        ForeignKey("accounts.id", ondelete="SET NULL"), default=None
    )
    message: Mapped[str | None] = mapped_column(Text(), default=None)
    committed_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)

    repositories: Mapped[list[Repository]] = relationship(
        secondary=commit_repositories, back_populates="commits"
    )


class JobStatus(enum.StrEnum):
    """Lifecycle of a scheduled commit scrape."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_JOB_STATUSES: typ.Final = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED})


class ScrapeBatch(Base):
    """Group of commit scrape jobs enqueued together."""

    __tablename__ = "scrape_batches"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    reason: Mapped[str] = mapped_column(String(64), default="pipeline")
    total_jobs: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)

    jobs: Mapped[list[ScrapeJob]] = relationship(
        back_populates="batch", cascade="all, delete-orphan"
    )


class ScrapeJob(Base):
    """One repository's commit scrape, tracked across retries."""

    __tablename__ = "scrape_jobs"
    __table_args__ = (Index("ix_scrape_jobs_batch_status", "batch_id", "status"),)

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    batch_id: Mapped[str] = mapped_column(
        ForeignKey("scrape_batches.id", ondelete="CASCADE")
    )
    repository_id: Mapped[int] = mapped_column(
        ForeignKey("repositories.id", ondelete="CASCADE")
    )
    status: Mapped[str] = mapped_column(String(16), default=JobStatus.QUEUED.value)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text(), default=None)
    enqueued_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)
    started_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())
    finished_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime())

    batch: Mapped[ScrapeBatch] = relationship(back_populates="jobs")


class CachedResponse(Base):
    """Successful upstream response stored under a content-addressed key."""

    __tablename__ = "cached_responses"
    __table_args__ = (Index("ix_cached_responses_expires_at", "expires_at"),)

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    version: Mapped[str] = mapped_column(String(32), index=True)
    scope: Mapped[str] = mapped_column(String(16))
    path: Mapped[str] = mapped_column(Text())
    body: Mapped[typ.Any] = mapped_column(JSON)
    stored_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow)
    expires_at: Mapped[dt.datetime] = mapped_column(UTCDateTime())
