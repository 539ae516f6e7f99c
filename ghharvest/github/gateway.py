"""Cache-first access to the GitHub REST API through the credential pool.

The gateway is the only entry point the pipeline and the proxy use. A request
is first looked up in :class:`~ghharvest.github.cache.ResponseCache`; only a
miss spends budget, via :meth:`CredentialBroker.with_credential`, and only a
successful body is written back.
"""

from __future__ import annotations

import logging
import typing as typ

from ghharvest.common.ratelimits import Scope, scope_for_path

from .errors import GitHubResponseShapeError, UpstreamError

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from ghharvest.credentials.broker import CredentialBroker
    from ghharvest.storage.models import Credential

    from .cache import ResponseCache
    from .client import UpstreamClient

logger = logging.getLogger(__name__)

PER_PAGE = 100


def _page_items(page: object, path: str) -> list[typ.Any]:
    """Return the entries of one listing page.

    Search endpoints wrap results as ``{"items": [...]}``; every other listing
    is a bare JSON array.
    """
    if isinstance(page, list):
        return page
    if isinstance(page, dict) and isinstance(page.get("items"), list):
        return page["items"]
    raise GitHubResponseShapeError.unexpected(path, type(page).__name__)


class Gateway:
    """Serve GitHub requests from cache or through a brokered credential.

    Parameters
    ----------
    broker
        Pool the credential for each cache miss is drawn from.
    client
        Upstream client performing the HTTP call.
    cache
        Response cache consulted before any budget is spent.
    per_page
        Page size requested from listing endpoints; a shorter page ends the
        walk.

    """

    def __init__(
        self,
        broker: CredentialBroker,
        client: UpstreamClient,
        cache: ResponseCache,
        *,
        per_page: int = PER_PAGE,
    ) -> None:
        """Store collaborators."""
        self._broker = broker
        self._client = client
        self._cache = cache
        self._per_page = per_page

    @staticmethod
    def scope_for_path(path: str) -> Scope:
        """Return the rate-limit scope a request path is billed against."""
        return scope_for_path(path)

    async def fetch(
        self,
        path: str,
        params: typ.Mapping[str, typ.Any] | None = None,
    ) -> typ.Any:  # noqa: ANN401
        """Return the JSON body for ``GET path``.

        Raises
        ------
        NoAvailableCredentials
            On a cache miss when no credential has budget in the scope.
        UpstreamError
            Or one of its subclasses when GitHub answers with an error.

        """
        scope = scope_for_path(path)
        key = self._cache.key_for(scope, path, params)
        cached = await self._cache.get(key)
        if cached is not None:
            logger.debug("Cache hit for %s (%s)", path, scope.value)
            return cached.body

        async def call(credential: Credential) -> typ.Any:  # noqa: ANN401
            return await self._client.get(path, params, token=credential.token)

        body = await self._broker.with_credential(scope, call)
        await self._cache.put(key, scope=scope, path=path, body=body)
        return body

    async def iter_pages(
        self,
        path: str,
        params: typ.Mapping[str, typ.Any] | None = None,
    ) -> cabc.AsyncIterator[list[typ.Any]]:
        """Yield each page of a listing, stopping after the first short page."""
        page_number = 1
        while True:
            page_params = {
                **(params or {}),
                "page": page_number,
                "per_page": self._per_page,
            }
            items = _page_items(await self.fetch(path, page_params), path)
            yield items
            if len(items) < self._per_page:
                return
            page_number += 1

    async def fetch_paginated(
        self,
        path: str,
        params: typ.Mapping[str, typ.Any] | None = None,
    ) -> list[typ.Any]:
        """Return every entry of a listing, concatenated in page order."""
        results: list[typ.Any] = []
        async for items in self.iter_pages(path, params):
            results.extend(items)
        return results

    async def graphql(
        self,
        query: str,
        variables: typ.Mapping[str, typ.Any] | None = None,
    ) -> dict[str, typ.Any]:
        """Execute a GraphQL query under the ``graphql`` scope, uncached."""

        async def call(credential: Credential) -> typ.Any:  # noqa: ANN401
            return await self._client.post(
                "graphql",
                {"query": query, "variables": dict(variables or {})},
                token=credential.token,
            )

        payload = await self._broker.with_credential(Scope.GRAPHQL, call)
        if not isinstance(payload, dict):
            raise GitHubResponseShapeError.missing("response")
        if payload.get("errors"):
            raise UpstreamError.graphql_errors(payload["errors"])
        data = payload.get("data")
        if not isinstance(data, dict):
            raise GitHubResponseShapeError.missing("data")
        return data
