"""API key authentication middleware for Falcon ASGI applications.

Resources opt in by setting ``requires_api_key = True``; the middleware then
compares the ``X-Proxy-API-Key`` header with the configured key in constant
time before the responder runs.

Usage
-----
Register the middleware when creating the Falcon app::

    app = falcon.asgi.App(middleware=[ApiKeyMiddleware(api_key)])

"""

from __future__ import annotations

import hmac
import typing as typ

from ghharvest.api.errors import InvalidApiKeyError

if typ.TYPE_CHECKING:
    from falcon.asgi import Request, Response

__all__ = ["API_KEY_HEADER", "ApiKeyMiddleware", "api_key_matches"]

API_KEY_HEADER = "X-Proxy-API-Key"


def api_key_matches(presented: str | None, expected: str) -> bool:
    """Return True when ``presented`` equals ``expected``, in constant time."""
    if presented is None:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


class ApiKeyMiddleware:
    """Reject requests to protected resources that lack the shared key.

    Parameters
    ----------
    api_key
        The shared secret, from ``GHHARVEST_PROXY_API_KEY``.

    """

    def __init__(self, api_key: str) -> None:
        """Store the expected key."""
        self._api_key = api_key

    async def process_resource(
        self,
        req: Request,
        _resp: Response,
        resource: object,
        _params: dict[str, typ.Any],
    ) -> None:
        """Raise ``InvalidApiKeyError`` for an unauthenticated protected call."""
        if not getattr(resource, "requires_api_key", False):
            return
        if not api_key_matches(req.get_header(API_KEY_HEADER), self._api_key):
            raise InvalidApiKeyError
