"""Unit tests for error categorisation and pipeline events."""

from __future__ import annotations

import datetime as dt
import logging

import httpx
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from ghharvest.common.ratelimits import Scope
from ghharvest.github import (
    CredentialInvalid,
    ErrorCategory,
    GitHubResponseShapeError,
    NoAvailableCredentials,
    NotFound,
    RateLimitExceeded,
    TakedownUnavailable,
    UpstreamError,
    categorize_error,
)
from ghharvest.ingestion import PipelineEventLogger, PipelineEventType

_LOGGER = "ghharvest.ingestion.observability"


@pytest.mark.parametrize(
    ("exc", "category"),
    [
        (NotFound.for_path("users/x"), ErrorCategory.NOT_FOUND),
        (RateLimitExceeded.for_path("users/x"), ErrorCategory.RATE_LIMITED),
        (TakedownUnavailable.for_path("repos/x/y"), ErrorCategory.TAKEDOWN),
        (NoAvailableCredentials(Scope.SEARCH), ErrorCategory.CREDENTIALS_EXHAUSTED),
        (GitHubResponseShapeError.missing("items"), ErrorCategory.SCHEMA_DRIFT),
        (UpstreamError.http_error(503, "users/x"), ErrorCategory.TRANSIENT),
        (UpstreamError.graphql_errors([{"message": "x"}]), ErrorCategory.TRANSIENT),
        (CredentialInvalid.for_path("users/x"), ErrorCategory.CLIENT_ERROR),
        (httpx.ConnectTimeout("slow"), ErrorCategory.TRANSIENT),
        (
            OperationalError("SELECT 1", {}, Exception("down")),
            ErrorCategory.DATABASE_CONNECTIVITY,
        ),
        (
            IntegrityError("INSERT", {}, Exception("dup")),
            ErrorCategory.DATA_INTEGRITY,
        ),
        (ValueError("other"), ErrorCategory.UNKNOWN),
    ],
)
def test_categorize_error(exc: BaseException, category: ErrorCategory) -> None:
    """Each failure lands in the category alerts are routed on."""
    assert categorize_error(exc) == category


def test_item_failure_is_a_warning_with_category(
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Absorbed per-item failures log the stage, item and category."""
    events = PipelineEventLogger()

    with caplog.at_level(logging.INFO, logger=_LOGGER):
        events.log_item_failed("accounts", "ghost", NotFound.for_path("users/ghost"))

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    message = record.getMessage()
    assert message.startswith(f"[{PipelineEventType.ITEM_FAILED}]")
    assert "stage=accounts item=ghost" in message
    assert "error_category=not_found" in message


def test_stage_completion_reports_duration(caplog: pytest.LogCaptureFixture) -> None:
    """Completion records counts and seconds."""
    events = PipelineEventLogger()

    with caplog.at_level(logging.INFO, logger=_LOGGER):
        events.log_stage_completed(
            "repositories",
            succeeded=3,
            failed=1,
            duration=dt.timedelta(milliseconds=1500),
        )

    assert caplog.records[-1].getMessage() == (
        "[pipeline.stage.completed] stage=repositories succeeded=3 failed=1 "
        "duration_seconds=1.500"
    )


def test_job_failure_is_an_error_with_traceback(
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Failed commit jobs carry the exception for the log handler."""
    events = PipelineEventLogger()
    error = UpstreamError.http_error(500, "repos/a/b/commits")

    with caplog.at_level(logging.INFO, logger=_LOGGER):
        events.log_job_failed(42, "job-1", error)

    record = caplog.records[-1]
    assert record.levelno == logging.ERROR
    assert record.exc_info is not None
    assert "repository_id=42 job_id=job-1" in record.getMessage()
    assert "error_category=transient" in record.getMessage()
