"""Liveness and readiness probes.

Both probes are stateless and registered whether or not the database-backed
routes are mounted.

Usage
-----
    app.add_route("/health", HealthResource())
    app.add_route("/ready", ReadyResource())

"""

from __future__ import annotations

import typing as typ
from http import HTTPStatus

if typ.TYPE_CHECKING:
    from falcon.asgi import Request, Response

__all__ = ["HealthResource", "ReadyResource"]


class HealthResource:
    """Liveness probe answering ``{"status": "ok"}``."""

    async def on_get(self, _req: Request, resp: Response) -> None:
        """Handle GET /health."""
        resp.media = {"status": "ok"}
        resp.status = HTTPStatus.OK


class ReadyResource:
    """Readiness probe answering ``{"status": "ready"}``.

    Parameters
    ----------
    mode
        ``"full"`` when the proxy and trigger routes are mounted,
        ``"health-only"`` otherwise. Echoed so operators can tell a
        misconfigured deployment apart from a healthy one.

    """

    def __init__(self, mode: str = "health-only") -> None:
        """Store the runtime mode reported by the probe."""
        self._mode = mode

    async def on_get(self, _req: Request, resp: Response) -> None:
        """Handle GET /ready."""
        resp.media = {"status": "ready", "mode": self._mode}
        resp.status = HTTPStatus.OK
