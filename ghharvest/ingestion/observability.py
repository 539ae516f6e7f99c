"""Structured log events for pipeline stages and commit jobs.

Events are emitted through stdlib logging as ``[event] key=value`` records so
log aggregators can parse them without a schema.
"""

from __future__ import annotations

import enum
import logging
import typing as typ

from ghharvest.github.observability import categorize_error

if typ.TYPE_CHECKING:
    import datetime as dt

logger = logging.getLogger(__name__)


class PipelineEventType(enum.StrEnum):
    """Structured log event types for pipeline observability."""

    STAGE_STARTED = "pipeline.stage.started"
    STAGE_COMPLETED = "pipeline.stage.completed"
    ITEM_FAILED = "pipeline.item.failed"
    ITEM_SKIPPED = "pipeline.item.skipped"
    BATCH_ENQUEUED = "pipeline.batch.enqueued"
    JOB_STARTED = "pipeline.job.started"
    JOB_COMPLETED = "pipeline.job.completed"
    JOB_FAILED = "pipeline.job.failed"


class PipelineEventLogger:
    """Emit structured pipeline events via Python logging.

    Events are emitted at INFO level for progress, WARNING for per-item
    failures that the stage absorbs, and ERROR for failed commit jobs.
    """

    def log_stage_started(self, stage: str, items: int) -> None:
        """Log the start of a stage over ``items`` inputs."""
        logger.info(
            "[%s] stage=%s items=%d", PipelineEventType.STAGE_STARTED, stage, items
        )

    def log_stage_completed(
        self,
        stage: str,
        *,
        succeeded: int,
        failed: int,
        duration: dt.timedelta,
    ) -> None:
        """Log stage completion with success and failure counts."""
        logger.info(
            "[%s] stage=%s succeeded=%d failed=%d duration_seconds=%.3f",
            PipelineEventType.STAGE_COMPLETED,
            stage,
            succeeded,
            failed,
            duration.total_seconds(),
        )

    def log_item_failed(self, stage: str, item: object, error: BaseException) -> None:
        """Log one excluded item together with its error category."""
        logger.warning(
            "[%s] stage=%s item=%s error_type=%s error_category=%s error_message=%s",
            PipelineEventType.ITEM_FAILED,
            stage,
            item,
            type(error).__name__,
            categorize_error(error),
            str(error),
        )

    def log_item_skipped(self, stage: str, item: object, reason: str) -> None:
        """Log an item deliberately left out of a stage."""
        logger.info(
            "[%s] stage=%s item=%s reason=%s",
            PipelineEventType.ITEM_SKIPPED,
            stage,
            item,
            reason,
        )

    def log_batch_enqueued(self, batch_id: str, jobs: int, reason: str) -> None:
        """Log a commit batch handed to the job queue."""
        logger.info(
            "[%s] batch_id=%s jobs=%d reason=%s",
            PipelineEventType.BATCH_ENQUEUED,
            batch_id,
            jobs,
            reason,
        )

    def log_job_started(self, repository_id: int, job_id: str | None) -> None:
        """Log the start of a commit job attempt."""
        logger.info(
            "[%s] repository_id=%d job_id=%s",
            PipelineEventType.JOB_STARTED,
            repository_id,
            job_id,
        )

    def log_job_completed(
        self,
        repository_id: int,
        job_id: str | None,
        *,
        commits: int,
        duration: dt.timedelta,
    ) -> None:
        """Log a commit job that stamped its repository."""
        logger.info(
            "[%s] repository_id=%d job_id=%s commits=%d duration_seconds=%.3f",
            PipelineEventType.JOB_COMPLETED,
            repository_id,
            job_id,
            commits,
            duration.total_seconds(),
        )

    def log_job_failed(
        self,
        repository_id: int,
        job_id: str | None,
        error: BaseException,
    ) -> None:
        """Log a failed commit job attempt with error categorisation."""
        logger.error(
            "[%s] repository_id=%d job_id=%s error_type=%s error_category=%s "
            "error_message=%s",
            PipelineEventType.JOB_FAILED,
            repository_id,
            job_id,
            type(error).__name__,
            categorize_error(error),
            str(error),
            exc_info=error,
        )
