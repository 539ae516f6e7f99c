"""Trigger endpoints for ingestion, rescrapes and batch status."""

from .resources import BatchResource, RescrapeResource, TrackedAccountsResource

__all__ = ["BatchResource", "RescrapeResource", "TrackedAccountsResource"]
