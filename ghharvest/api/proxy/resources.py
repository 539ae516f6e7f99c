"""Pass-through of GitHub REST reads via the gateway.

``GET /gh/{path}`` forwards the path and query string to
:meth:`ghharvest.github.gateway.Gateway.fetch`, so callers share the
credential pool and the response cache with the pipeline.

Usage
-----
    app.add_route("/gh/{path:path}", ProxyResource(gateway))

"""

from __future__ import annotations

import typing as typ
from http import HTTPStatus

from ghharvest.api.errors import InvalidInputError

if typ.TYPE_CHECKING:
    from falcon.asgi import Request, Response

__all__ = ["ProxyGateway", "ProxyResource"]


class ProxyGateway(typ.Protocol):
    """The read operation the proxy needs from the gateway."""

    async def fetch(
        self,
        path: str,
        params: typ.Mapping[str, typ.Any] | None = None,
    ) -> typ.Any:  # noqa: ANN401
        """Return the JSON body for ``GET path``."""
        ...


class ProxyResource:
    """Return GitHub's JSON body for the requested path, unmodified."""

    requires_api_key = True

    def __init__(self, gateway: ProxyGateway) -> None:
        """Store the gateway used for every request."""
        self._gateway = gateway

    async def on_get(self, req: Request, resp: Response, path: str) -> None:
        """Handle GET /gh/{path}.

        Raises
        ------
        InvalidInputError
            If the path is empty.
        UpstreamError
            Propagated with GitHub's status; the error handler mirrors it.

        """
        upstream_path = path.strip("/")
        if not upstream_path:
            raise InvalidInputError("GitHub API path must not be empty", field="path")
        params = dict(req.params) or None
        resp.media = await self._gateway.fetch(upstream_path, params)
        resp.status = HTTPStatus.OK
