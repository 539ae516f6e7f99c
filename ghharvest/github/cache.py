"""Database-backed cache of successful upstream responses.

Keys are content-addressed: ``github_api/<version>/<scope>/<sha256>`` where
the digest covers the request path and its query parameters in sorted order,
so the same logical request always maps to the same row regardless of how
the caller ordered its parameters.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import hashlib
import logging
import typing as typ
from urllib.parse import urlencode

from sqlalchemy import delete

from ghharvest.common.time import utcnow
from ghharvest.storage.models import CachedResponse
from ghharvest.storage.upserts import upsert_rows

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from ghharvest.common.ratelimits import Scope

logger = logging.getLogger(__name__)

CACHE_NAMESPACE = "github_api"


def canonical_request(path: str, params: typ.Mapping[str, typ.Any] | None) -> str:
    """Return ``path`` plus its query string with parameters sorted by name.

    Examples
    --------
    >>> canonical_request("/users/foo/repos", {"per_page": 100, "page": 2})
    'users/foo/repos?page=2&per_page=100'

    """
    normalised = path.lstrip("/")
    if not params:
        return normalised
    query = urlencode(sorted((str(k), str(v)) for k, v in params.items()))
    return f"{normalised}?{query}"


def cache_key(
    scope: Scope,
    path: str,
    params: typ.Mapping[str, typ.Any] | None = None,
    *,
    version: str = "v1",
) -> str:
    """Return the cache key for a request."""
    digest = hashlib.sha256(
        canonical_request(path, params).encode("utf-8")
    ).hexdigest()
    return f"{CACHE_NAMESPACE}/{version}/{scope.value}/{digest}"


@dataclasses.dataclass(frozen=True, slots=True)
class CacheEntry:
    """A cached body; ``body`` may legitimately be ``None`` or empty."""

    body: typ.Any
    expires_at: dt.datetime


class ResponseCache:
    """Store and look up upstream bodies for a fixed time-to-live."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl: dt.timedelta = dt.timedelta(hours=24),
        version: str = "v1",
        clock: cabc.Callable[[], dt.datetime] = utcnow,
    ) -> None:
        """Configure the backing store, lifetime and key version."""
        self._session_factory = session_factory
        self._ttl = ttl
        self._version = version
        self._clock = clock

    @property
    def version(self) -> str:
        """Return the version segment used in keys."""
        return self._version

    def key_for(
        self, scope: Scope, path: str, params: typ.Mapping[str, typ.Any] | None
    ) -> str:
        """Return the key this cache uses for a request."""
        return cache_key(scope, path, params, version=self._version)

    async def get(self, key: str) -> CacheEntry | None:
        """Return the unexpired entry stored under ``key``, if any."""
        async with self._session_factory() as session:
            row = await session.get(CachedResponse, key)
        if row is None or row.expires_at <= self._clock():
            return None
        return CacheEntry(body=row.body, expires_at=row.expires_at)

    async def put(
        self,
        key: str,
        *,
        scope: Scope,
        path: str,
        body: typ.Any,  # noqa: ANN401
    ) -> None:
        """Store ``body`` under ``key`` until the TTL elapses."""
        now = self._clock()
        row = {
            "key": key,
            "version": self._version,
            "scope": scope.value,
            "path": path,
            "body": body,
            "stored_at": now,
            "expires_at": now + self._ttl,
        }
        async with self._session_factory() as session:
            await upsert_rows(session, CachedResponse, [row], key="key")
            await session.commit()

    async def purge_expired(self) -> int:
        """Delete expired entries and return how many were removed."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(CachedResponse).where(
                    CachedResponse.expires_at <= self._clock()
                )
            )
            await session.commit()
        removed = int(getattr(result, "rowcount", 0) or 0)
        logger.info("Purged %d expired cached responses", removed)
        return removed
