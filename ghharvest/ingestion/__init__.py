"""Ingestion pipeline, commit scraping and the trigger surface.

Public API
----------
IngestionPipeline
    Runs stages 1 to 3 in-process and enqueues stage 4.
CommitScraper
    Body of each commit job.
TrackingService
    Records tracked accounts and enqueues ingestion or rescrapes.
PipelineConfig
    Batching, concurrency and rescrape policy.
"""

from __future__ import annotations

from .commits import CommitScraper, CommitScrapeResult, collect_authors
from .config import PipelineConfig
from .errors import (
    AccountNotFoundError,
    RepositoryMissingError,
    RepositoryOwnerMissingError,
)
from .observability import PipelineEventLogger, PipelineEventType
from .pipeline import (
    AccountStageResult,
    CommitBatchScheduler,
    CommitScheduleResult,
    IngestionPipeline,
    OrganizationStageResult,
    PipelineResult,
    RepositoryStageResult,
    needs_commit_scrape,
)
from .triggers import (
    IngestionRequest,
    RescrapeRequest,
    TrackingService,
    TriggerScheduler,
    merge_tags,
)

__all__ = [
    "AccountNotFoundError",
    "AccountStageResult",
    "CommitBatchScheduler",
    "CommitScheduleResult",
    "CommitScrapeResult",
    "CommitScraper",
    "IngestionPipeline",
    "IngestionRequest",
    "OrganizationStageResult",
    "PipelineConfig",
    "PipelineEventLogger",
    "PipelineEventType",
    "PipelineResult",
    "RepositoryMissingError",
    "RepositoryOwnerMissingError",
    "RepositoryStageResult",
    "RescrapeRequest",
    "TrackingService",
    "TriggerScheduler",
    "collect_authors",
    "merge_tags",
    "needs_commit_scrape",
]
