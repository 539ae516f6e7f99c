"""Application factory for the ghharvest Falcon ASGI application.

``create_app()`` always registers the health probes. The GitHub proxy and
the trigger endpoints are mounted only when their collaborators and the
shared API key are supplied, so a runtime without a database or a key still
starts and answers probes.

Usage
-----
Create a health-only app::

    app = create_app()

Create a full app::

    deps = AppDependencies(
        gateway=services.gateway,
        tracking=services.tracking,
        batches=services.scheduler,
        api_key="s3cret",
    )
    app = create_app(deps)

"""

from __future__ import annotations

import dataclasses as dc
import typing as typ

import falcon.asgi

from ghharvest.api.errors import register_error_handlers
from ghharvest.api.health.resources import HealthResource, ReadyResource
from ghharvest.logging import get_logger, log_warning

if typ.TYPE_CHECKING:
    from ghharvest.api.proxy.resources import ProxyGateway
    from ghharvest.api.tracking.resources import BatchStatusSource
    from ghharvest.ingestion.triggers import TrackingService

__all__ = ["AppDependencies", "create_app"]

logger = get_logger(__name__)


@dc.dataclass(frozen=True, slots=True)
class AppDependencies:
    """Collaborators for the authenticated routes.

    Attributes
    ----------
    gateway
        Serves ``GET /gh/{path}``.
    tracking
        Serves ``POST /tracked-accounts`` and ``POST /rescrapes``.
    batches
        Serves ``GET /batches/{batch_id}``.
    api_key
        Shared secret expected in ``X-Proxy-API-Key``. Without it no
        authenticated route is mounted.

    """

    gateway: ProxyGateway | None = None
    tracking: TrackingService | None = None
    batches: BatchStatusSource | None = None
    api_key: str | None = None


def create_app(dependencies: AppDependencies | None = None) -> falcon.asgi.App:
    """Create and configure the Falcon ASGI application.

    Parameters
    ----------
    dependencies
        Optional collaborators. When ``None`` or lacking an API key, only
        ``/health`` and ``/ready`` are available.

    Returns
    -------
    falcon.asgi.App
        Configured Falcon ASGI application.

    """
    deps = dependencies or AppDependencies()
    api_key = deps.api_key
    middleware: list[object] = []
    if api_key:
        from ghharvest.api.middleware import ApiKeyMiddleware

        middleware.append(ApiKeyMiddleware(api_key))
    elif deps.gateway is not None or deps.tracking is not None:
        log_warning(
            logger, "No proxy API key configured; authenticated routes disabled"
        )

    app = falcon.asgi.App(middleware=middleware)  # type: ignore[no-matching-overload]  # Falcon stubs

    mounted = bool(api_key) and deps.gateway is not None
    app.add_route("/health", HealthResource())
    app.add_route("/ready", ReadyResource("full" if mounted else "health-only"))

    if api_key:
        _add_domain_routes(app, deps)

    register_error_handlers(app)
    return app


def _add_domain_routes(app: falcon.asgi.App, deps: AppDependencies) -> None:
    if deps.gateway is not None:
        from ghharvest.api.proxy.resources import ProxyResource

        app.add_route("/gh/{path:path}", ProxyResource(deps.gateway))

    if deps.tracking is not None:
        from ghharvest.api.tracking.resources import (
            RescrapeResource,
            TrackedAccountsResource,
        )

        app.add_route("/tracked-accounts", TrackedAccountsResource(deps.tracking))
        app.add_route("/rescrapes", RescrapeResource(deps.tracking))

    if deps.batches is not None:
        from ghharvest.api.tracking.resources import BatchResource

        app.add_route("/batches/{batch_id}", BatchResource(deps.batches))
