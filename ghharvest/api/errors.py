"""Domain exceptions and Falcon error handlers for the API layer.

Every error response shares one shape, ``{"error": message, "status": code}``,
with the HTTP status equal to ``status``. Upstream failures mirror the status
GitHub returned; anything the gateway cannot attribute to GitHub is a 500.

Usage
-----
Register the handlers on the Falcon app::

    register_error_handlers(app)

"""

from __future__ import annotations

import typing as typ
from http import HTTPStatus

from ghharvest.github.errors import GatewayError, UpstreamError
from ghharvest.ingestion.errors import AccountNotFoundError
from ghharvest.jobs.ledger import BatchNotFoundError
from ghharvest.logging import get_logger, log_exception, log_warning

if typ.TYPE_CHECKING:
    import falcon.asgi
    from falcon.asgi import Request, Response

__all__ = [
    "InvalidApiKeyError",
    "InvalidInputError",
    "register_error_handlers",
    "render_error",
]

logger = get_logger(__name__)


class InvalidApiKeyError(Exception):
    """Raised when ``X-Proxy-API-Key`` is missing or wrong."""

    def __init__(self) -> None:
        """Use a fixed message that reveals nothing about the key."""
        super().__init__("Invalid or missing API key")


class InvalidInputError(Exception):
    """Raised for client validation errors that should map to HTTP 400.

    Attributes
    ----------
    reason
        Human-readable description of the validation failure.
    field
        Optional name of the input field that failed validation.

    """

    def __init__(self, reason: str, *, field: str | None = None) -> None:
        """Initialize with a validation reason and optional field name."""
        self.reason = reason
        self.field = field
        message = f"{field}: {reason}" if field is not None else reason
        super().__init__(message)


def render_error(resp: Response, status: int, message: str) -> None:
    """Write the shared error body and status onto ``resp``."""
    resp.status = status
    resp.media = {"error": message, "status": status}


async def handle_invalid_api_key(
    _req: Request,
    resp: Response,
    ex: InvalidApiKeyError,
    _params: dict[str, typ.Any],
) -> None:
    """Map ``InvalidApiKeyError`` to HTTP 401."""
    render_error(resp, HTTPStatus.UNAUTHORIZED, str(ex))


async def handle_invalid_input(
    _req: Request,
    resp: Response,
    ex: InvalidInputError,
    _params: dict[str, typ.Any],
) -> None:
    """Map ``InvalidInputError`` to HTTP 400."""
    render_error(resp, HTTPStatus.BAD_REQUEST, str(ex))


async def handle_not_found(
    _req: Request,
    resp: Response,
    ex: AccountNotFoundError | BatchNotFoundError,
    _params: dict[str, typ.Any],
) -> None:
    """Map missing accounts and batches to HTTP 404."""
    render_error(resp, HTTPStatus.NOT_FOUND, str(ex))


async def handle_upstream_error(
    req: Request,
    resp: Response,
    ex: UpstreamError,
    _params: dict[str, typ.Any],
) -> None:
    """Mirror the status GitHub returned."""
    log_warning(logger, "Upstream error for %s: %s", req.path, ex)
    render_error(resp, ex.status_code, str(ex))


async def handle_unexpected_error(
    req: Request,
    resp: Response,
    ex: Exception,
    _params: dict[str, typ.Any],
) -> None:
    """Render any other failure, such as a transport error, as HTTP 500."""
    log_exception(logger, f"Unhandled error for {req.path}", ex)
    message = str(ex) or type(ex).__name__
    render_error(resp, HTTPStatus.INTERNAL_SERVER_ERROR, message)


async def handle_gateway_error(
    req: Request,
    resp: Response,
    ex: GatewayError,
    _params: dict[str, typ.Any],
) -> None:
    """Map unclassified gateway failures, such as an empty pool, to HTTP 500."""
    log_exception(logger, f"Gateway failure for {req.path}", ex)
    render_error(resp, HTTPStatus.INTERNAL_SERVER_ERROR, str(ex))


def register_error_handlers(app: falcon.asgi.App) -> None:
    """Install every handler; Falcon picks the most specific by class."""
    app.add_error_handler(Exception, handle_unexpected_error)
    app.add_error_handler(InvalidApiKeyError, handle_invalid_api_key)
    app.add_error_handler(InvalidInputError, handle_invalid_input)
    app.add_error_handler(AccountNotFoundError, handle_not_found)
    app.add_error_handler(BatchNotFoundError, handle_not_found)
    app.add_error_handler(GatewayError, handle_gateway_error)
    app.add_error_handler(UpstreamError, handle_upstream_error)
