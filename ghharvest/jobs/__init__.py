"""Background jobs: Dramatiq actors, the scheduler and batch bookkeeping."""

from __future__ import annotations

from .ledger import BatchNotFoundError, BatchStatus, PlannedJob, batch_status
from .scheduler import JobScheduler

__all__ = [
    "BatchNotFoundError",
    "BatchStatus",
    "JobScheduler",
    "PlannedJob",
    "batch_status",
]
