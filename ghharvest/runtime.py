"""ghharvest runtime entrypoint for container deployments.

``ghharvest.runtime:create_app`` is the Granian factory. It delegates to
:func:`ghharvest.api.app.create_app` and, when ``GHHARVEST_DATABASE_URL`` is
set, builds the gateway and trigger services so the proxy routes are
mounted. Without a database URL the app starts in health-only mode.

Configuration is driven by environment variables:

- ``GHHARVEST_HOST``: Bind address (default ``0.0.0.0``)
- ``GHHARVEST_PORT``: Listen port (default ``8080``)
- ``GHHARVEST_LOG_LEVEL``: Log level (default ``INFO``)
- ``GHHARVEST_DATABASE_URL``: Database connection URL (optional)
- ``GHHARVEST_PROXY_API_KEY``: Shared key for the proxy and triggers

Run the service directly with ``python -m ghharvest.runtime``.
"""

from __future__ import annotations

import os
import typing as typ

from ghharvest.config import RuntimeConfig
from ghharvest.logging import (
    configure_logging,
    get_logger,
    log_error,
    log_info,
    log_warning,
)

if typ.TYPE_CHECKING:
    import falcon.asgi
    from sqlalchemy.ext.asyncio import AsyncEngine

    from ghharvest.factory import Services

__all__ = ["ServiceLifespan", "create_app", "main"]

logger = get_logger(__name__)

_MIN_PORT = 1
_MAX_PORT = 65535


def _parse_port(port_str: str) -> int:
    """Parse and validate a port number string.

    Raises
    ------
    SystemExit
        If port_str is not a valid integer in range 1-65535.

    """
    try:
        port = int(port_str)
        if not (_MIN_PORT <= port <= _MAX_PORT):
            msg = f"port {port} outside valid range {_MIN_PORT}-{_MAX_PORT}"
            raise ValueError(msg)  # noqa: TRY301 - unify conversion and range errors
    except ValueError as exc:
        log_error(
            logger,
            "Invalid GHHARVEST_PORT value: %r (must be %d-%d): %s",
            port_str,
            _MIN_PORT,
            _MAX_PORT,
            exc,
        )
        raise SystemExit(1) from exc
    return port


class ServiceLifespan:
    """Falcon lifespan middleware releasing the HTTP client and the engine."""

    def __init__(self, services: Services, engine: AsyncEngine) -> None:
        """Store the resources closed on shutdown."""
        self._services = services
        self._engine = engine

    async def process_shutdown(
        self, _scope: dict[str, typ.Any], _event: dict[str, typ.Any]
    ) -> None:
        """Close the upstream client and dispose of pooled connections."""
        await self._services.client.aclose()
        await self._engine.dispose()


def create_app() -> falcon.asgi.App:
    """Create and configure the Falcon ASGI application.

    Returns
    -------
    falcon.asgi.App
        The full app when a database URL is configured, otherwise the
        health-only app.

    """
    from ghharvest.api.app import create_app as _create_api_app

    runtime = RuntimeConfig.from_env()
    if runtime.database_url is None:
        return _create_api_app()

    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

    from ghharvest.api.app import AppDependencies
    from ghharvest.factory import build_services

    engine = create_async_engine(runtime.database_url)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    services = build_services(session_factory, runtime.database_url)

    app = _create_api_app(
        AppDependencies(
            gateway=services.gateway,
            tracking=services.tracking,
            batches=services.scheduler,
            api_key=runtime.proxy_api_key,
        )
    )
    app.add_middleware(ServiceLifespan(services, engine))
    return app


def main() -> None:
    """Start the ghharvest runtime server using Granian.

    Reads ``GHHARVEST_HOST``, ``GHHARVEST_PORT`` and ``GHHARVEST_LOG_LEVEL``
    from the environment and starts the ASGI server.
    """
    from granian import Granian
    from granian.constants import Interfaces

    host = os.environ.get("GHHARVEST_HOST", "0.0.0.0")  # noqa: S104 - bind all interfaces for container
    port = _parse_port(os.environ.get("GHHARVEST_PORT", "8080"))
    log_level_str = os.environ.get("GHHARVEST_LOG_LEVEL", "INFO")

    normalized_level, invalid_level = configure_logging(log_level_str)
    if invalid_level:
        log_warning(
            logger,
            "Invalid GHHARVEST_LOG_LEVEL %r, falling back to %s",
            log_level_str,
            normalized_level,
        )

    log_info(
        logger,
        "Starting ghharvest runtime on %s:%d (log_level=%s)",
        host,
        port,
        normalized_level,
    )

    server = Granian(
        "ghharvest.runtime:create_app",
        address=host,
        port=port,
        interface=Interfaces.ASGI,
        factory=True,
    )
    server.serve()


if __name__ == "__main__":
    main()
