"""Trigger resources: track usernames, request rescrapes, read batch status.

Every trigger returns ``202 Accepted`` as soon as the work is enqueued; the
pipeline itself runs in the Dramatiq workers.

Usage
-----
    app.add_route("/tracked-accounts", TrackedAccountsResource(tracking))
    app.add_route("/rescrapes", RescrapeResource(tracking))
    app.add_route("/batches/{batch_id}", BatchResource(scheduler))

"""

from __future__ import annotations

import typing as typ

import falcon
import msgspec

from ghharvest.api.errors import InvalidInputError

if typ.TYPE_CHECKING:
    from falcon.asgi import Request, Response

    from ghharvest.ingestion.triggers import TrackingService
    from ghharvest.jobs.ledger import BatchStatus

__all__ = [
    "BatchResource",
    "BatchStatusSource",
    "RescrapeBody",
    "RescrapeResource",
    "TrackRequestBody",
    "TrackedAccountsResource",
]


class TrackRequestBody(msgspec.Struct, kw_only=True, forbid_unknown_fields=True):
    """Body of ``POST /tracked-accounts``."""

    usernames: list[str]
    tags: list[str] = msgspec.field(default_factory=list)


class RescrapeBody(msgspec.Struct, kw_only=True, forbid_unknown_fields=True):
    """Body of ``POST /rescrapes``; an absent ``account_id`` means everyone."""

    account_id: int | None = None


class BatchStatusSource(typ.Protocol):
    """Read access to batch progress."""

    async def batch_status(self, batch_id: str) -> BatchStatus:
        """Return per-status counts for ``batch_id``."""
        ...


async def _read_body[T](req: Request, body_type: type[T], *, required: bool) -> T:
    """Decode the JSON body into ``body_type``.

    Raises
    ------
    InvalidInputError
        If the body is missing when required, is not JSON, or does not match
        ``body_type``.

    """
    try:
        media = await req.get_media(default_when_empty=None)
    except falcon.MediaMalformedError as exc:
        raise InvalidInputError("request body is not valid JSON") from exc
    if media is None:
        if required:
            raise InvalidInputError("request body is required")
        media = {}
    try:
        return msgspec.convert(media, body_type)
    except msgspec.ValidationError as exc:
        raise InvalidInputError(str(exc)) from exc


class TrackedAccountsResource:
    """Handle ``POST /tracked-accounts``."""

    requires_api_key = True

    def __init__(self, tracking: TrackingService) -> None:
        """Store the tracking service."""
        self._tracking = tracking

    async def on_post(self, req: Request, resp: Response) -> None:
        """Track the given usernames and enqueue a pipeline run for them.

        Raises
        ------
        InvalidInputError
            If the body is invalid or names no usernames.

        """
        body = await _read_body(req, TrackRequestBody, required=True)
        if not any(name.strip() for name in body.usernames):
            raise InvalidInputError(
                "at least one username is required", field="usernames"
            )
        outcome = await self._tracking.enqueue_ingestion(body.usernames, body.tags)
        resp.media = {
            "usernames": list(outcome.usernames),
            "created": outcome.created,
            "message_id": outcome.message_id,
        }
        resp.status = falcon.HTTP_202


class RescrapeResource:
    """Handle ``POST /rescrapes``."""

    requires_api_key = True

    def __init__(self, tracking: TrackingService) -> None:
        """Store the tracking service."""
        self._tracking = tracking

    async def on_post(self, req: Request, resp: Response) -> None:
        """Enqueue commit rescrapes for one account or for all of them.

        Raises
        ------
        AccountNotFoundError
            If ``account_id`` names no stored account; mapped to 404.

        """
        body = await _read_body(req, RescrapeBody, required=False)
        outcome = await self._tracking.trigger_rescrape(body.account_id)
        resp.media = {
            "account_id": outcome.account_id,
            "repositories": len(outcome.repository_ids),
            "batch_id": outcome.batch_id,
        }
        resp.status = falcon.HTTP_202


class BatchResource:
    """Handle ``GET /batches/{batch_id}``."""

    requires_api_key = True

    def __init__(self, batches: BatchStatusSource) -> None:
        """Store the batch status source."""
        self._batches = batches

    async def on_get(self, _req: Request, resp: Response, batch_id: str) -> None:
        """Return per-status job counts for a commit scrape batch."""
        status = await self._batches.batch_status(batch_id)
        resp.media = status.to_dict()
        resp.status = falcon.HTTP_200
