"""Configuration for the ingestion pipeline and its commit jobs.

Usage
-----
>>> config = PipelineConfig()
>>> config.batch_size, config.workers
(100, 16)

Or load from environment variables:

>>> import os
>>> os.environ["GHHARVEST_WORKERS"] = "4"
>>> PipelineConfig.from_env().workers
4

"""

from __future__ import annotations

import dataclasses as dc
import datetime as dt

from ghharvest.common.env import env_bool, env_positive_int

_DEFAULT_BATCH_SIZE = 100
_DEFAULT_WORKERS = 16
_DEFAULT_RESCRAPE_HOURS = 24
_DEFAULT_COMMIT_JOB_MAX_RETRIES = 3


@dc.dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Batching, concurrency and rescrape policy for the pipeline.

    Attributes
    ----------
    batch_size
        Items handed to the worker pool at once in stages 1 to 3.
    workers
        Concurrent upstream calls allowed within a batch.
    rescrape_interval
        Minimum age of ``commits_scraped_at`` before a repository's commits
        are fetched again.
    skip_unpushed
        Also skip repositories with no push since their last commit scrape.
    commit_job_max_retries
        Retries Dramatiq grants a failed commit job.

    """

    batch_size: int = _DEFAULT_BATCH_SIZE
    workers: int = _DEFAULT_WORKERS
    rescrape_interval: dt.timedelta = dt.timedelta(hours=_DEFAULT_RESCRAPE_HOURS)
    skip_unpushed: bool = False
    commit_job_max_retries: int = _DEFAULT_COMMIT_JOB_MAX_RETRIES

    @classmethod
    def from_env(cls) -> PipelineConfig:
        """Create configuration from environment variables.

        Reads ``GHHARVEST_BATCH_SIZE``, ``GHHARVEST_WORKERS``,
        ``GHHARVEST_RESCRAPE_INTERVAL_HOURS``, ``GHHARVEST_SKIP_UNPUSHED`` and
        ``GHHARVEST_COMMIT_JOB_MAX_RETRIES``.

        Raises
        ------
        ValueError
            If any value is malformed or not positive.

        """
        return cls(
            batch_size=env_positive_int("GHHARVEST_BATCH_SIZE", _DEFAULT_BATCH_SIZE),
            workers=env_positive_int("GHHARVEST_WORKERS", _DEFAULT_WORKERS),
            rescrape_interval=dt.timedelta(
                hours=env_positive_int(
                    "GHHARVEST_RESCRAPE_INTERVAL_HOURS", _DEFAULT_RESCRAPE_HOURS
                )
            ),
            skip_unpushed=env_bool("GHHARVEST_SKIP_UNPUSHED", default=False),
            commit_job_max_retries=env_positive_int(
                "GHHARVEST_COMMIT_JOB_MAX_RETRIES", _DEFAULT_COMMIT_JOB_MAX_RETRIES
            ),
        )
