"""Relational storage for credentials, crawled entities and scrape jobs."""

from __future__ import annotations

from .base import Base, UTCDateTime, init_storage
from .errors import TimezoneAwareRequiredError, UnsupportedDialectError
from .models import (
    TERMINAL_JOB_STATUSES,
    Account,
    CachedResponse,
    Commit,
    Credential,
    JobStatus,
    Organization,
    Repository,
    ScrapeBatch,
    ScrapeJob,
    TrackedAccount,
    account_organizations,
    commit_repositories,
)
from .upserts import dedupe_rows, insert_ignore_rows, resolve_ids, upsert_rows

__all__ = [
    "TERMINAL_JOB_STATUSES",
    "Account",
    "Base",
    "CachedResponse",
    "Commit",
    "Credential",
    "JobStatus",
    "Organization",
    "Repository",
    "ScrapeBatch",
    "ScrapeJob",
    "TimezoneAwareRequiredError",
    "TrackedAccount",
    "UTCDateTime",
    "UnsupportedDialectError",
    "account_organizations",
    "commit_repositories",
    "dedupe_rows",
    "init_storage",
    "insert_ignore_rows",
    "resolve_ids",
    "upsert_rows",
]
