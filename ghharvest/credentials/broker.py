"""Credential selection, serialisation and revocation.

The broker owns the pool of donated GitHub tokens. Every upstream call goes
through :meth:`CredentialBroker.with_credential`, which picks the credential
with the most remaining budget in the call's scope, holds it exclusively for
the duration of the call and writes back the budget GitHub reports afterwards.

Usage
-----
>>> broker = CredentialBroker(session_factory, client)
>>> body = await broker.with_credential(
...     Scope.CORE,
...     lambda credential: client.get("users/octocat", token=credential.token),
... )

"""

from __future__ import annotations

import logging
import typing as typ

import httpx
from sqlalchemy import or_, select

from ghharvest.common.ratelimits import Scope
from ghharvest.common.time import utcnow
from ghharvest.github.config import GatewayConfig
from ghharvest.github.errors import (
    CredentialInvalid,
    GatewayError,
    NoAvailableCredentials,
    UpstreamError,
)
from ghharvest.storage.models import Credential
from ghharvest.storage.upserts import upsert_rows

from .locks import CredentialLock, build_credential_lock

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from ghharvest.github.client import UpstreamClient

    type SessionFactory = async_sessionmaker[AsyncSession]
    type Clock = cabc.Callable[[], dt.datetime]

logger = logging.getLogger(__name__)

# Attempts to find a credential that still has budget after a competing
# caller drained the first pick while this one waited on its lock.
_MAX_RESELECTIONS = 5


def _scope_columns(scope: Scope) -> tuple[typ.Any, typ.Any]:
    return (
        getattr(Credential, f"{scope.value}_remaining"),
        getattr(Credential, f"{scope.value}_reset_at"),
    )


class CredentialBroker:
    """Rate-limit-aware access to the shared credential pool.

    Parameters
    ----------
    session_factory
        Factory for sessions on the database holding ``credentials``.
    client
        Upstream client used for ``GET /rate_limit`` refreshes.
    config
        Retry ceiling and lock strategy. Defaults to :class:`GatewayConfig`.
    lock
        Explicit lock strategy, overriding ``config.lock_mode``.
    clock
        Source of the current time; tests pin it.

    """

    def __init__(  # noqa: PLR0913
        self,
        session_factory: SessionFactory,
        client: UpstreamClient,
        *,
        config: GatewayConfig | None = None,
        lock: CredentialLock | None = None,
        clock: Clock = utcnow,
    ) -> None:
        """Store collaborators and build the configured lock strategy."""
        self._session_factory = session_factory
        self._client = client
        self._config = config or GatewayConfig()
        self._lock = lock or build_credential_lock(self._config.lock_mode)
        self._clock = clock

    async def select_credential(self, scope: Scope) -> Credential | None:
        """Return the best usable credential for ``scope``, or None.

        A credential qualifies when it is not revoked and either has budget
        left in ``scope`` or its reset time has passed. Candidates are ordered
        by remaining budget (unknown last), then least recently used (never
        used first).
        """
        remaining, reset_at = _scope_columns(scope)
        now = self._clock()
        stmt = (
            select(Credential)
            .where(
                Credential.revoked_at.is_(None),
                or_(remaining > 0, reset_at < now),
            )
            .order_by(
                remaining.desc().nulls_last(),
                Credential.last_used_at.asc().nulls_first(),
                Credential.id.asc(),
            )
            .limit(1)
        )
        async with self._session_factory() as session:
            return await session.scalar(stmt)

    async def with_credential[T](
        self,
        scope: Scope,
        fn: cabc.Callable[[Credential], cabc.Awaitable[T]],
    ) -> T:
        """Run ``fn`` with an exclusively held credential for ``scope``.

        A credential GitHub rejects with 401 is revoked and the call retried
        with a newly selected one, up to ``max_credential_retries`` times.

        Raises
        ------
        NoAvailableCredentials
            If no credential has budget in ``scope``.
        UpstreamError
            With status 401 once the retry ceiling is exceeded, or whatever
            ``fn`` raised for other upstream failures.

        """
        rejected = 0
        while True:
            try:
                return await self._run_once(scope, fn)
            except _RejectedCredentialError as exc:
                await self.revoke(exc.credential_id)
                rejected += 1
                logger.warning(
                    "Revoked credential id=%s after 401 (attempt %d of %d)",
                    exc.credential_id,
                    rejected,
                    self._config.max_credential_retries + 1,
                )
                if rejected > self._config.max_credential_retries:
                    raise UpstreamError.retries_exhausted(rejected) from exc.cause

    async def _run_once[T](
        self,
        scope: Scope,
        fn: cabc.Callable[[Credential], cabc.Awaitable[T]],
    ) -> T:
        for _ in range(_MAX_RESELECTIONS):
            candidate = await self.select_credential(scope)
            if candidate is None:
                raise NoAvailableCredentials(scope)

            async with (
                self._session_factory() as session,
                self._lock.hold(session, candidate.id) as credential,
            ):
                now = self._clock()
                if credential is None or not credential.has_capacity(scope, now):
                    logger.debug(
                        "Credential id=%s drained while waiting; reselecting",
                        candidate.id,
                    )
                    await session.rollback()
                    continue

                credential.last_used_at = now
                await self._checkpoint(session, credential)
                return await self._call_and_refresh(session, credential, scope, fn)

        raise NoAvailableCredentials(scope)

    async def _call_and_refresh[T](
        self,
        session: AsyncSession,
        credential: Credential,
        scope: Scope,
        fn: cabc.Callable[[Credential], cabc.Awaitable[T]],
    ) -> T:
        credential_id = credential.id
        try:
            result = await fn(credential)
        except CredentialInvalid as exc:
            await session.rollback()
            raise _RejectedCredentialError(credential_id, exc) from exc
        except Exception:
            await self._refresh_limits(credential, scope)
            await session.commit()
            raise
        await self._refresh_limits(credential, scope)
        await session.commit()
        return result

    async def _checkpoint(self, session: AsyncSession, credential: Credential) -> None:
        # Committing would release a row lock before the call runs.
        if self._lock.holds_transaction:
            await session.flush()
            return
        await session.commit()
        await session.refresh(credential)

    async def _refresh_limits(self, credential: Credential, scope: Scope) -> None:
        """Overwrite all scopes with GitHub's figures, or spend one locally."""
        try:
            states = await self._client.rate_limit(token=credential.token)
        except (httpx.HTTPError, GatewayError) as exc:
            logger.warning(
                "Rate limit refresh failed for credential id=%s: %s; "
                "decrementing %s locally",
                credential.id,
                exc,
                scope.value,
            )
            credential.apply_rate_limit(scope, credential.rate_limit(scope).spend())
            return
        for refreshed_scope, state in states.items():
            credential.apply_rate_limit(refreshed_scope, state)

    async def revoke(self, credential_id: int) -> None:
        """Mark a credential revoked so it is never selected again."""
        async with self._session_factory() as session:
            credential = await session.get(Credential, credential_id)
            if credential is None or credential.revoked_at is not None:
                return
            credential.revoked_at = self._clock()
            await session.commit()

    async def register(self, github_id: int, username: str, token: str) -> Credential:
        """Add or re-activate a donated credential.

        The token's budgets are read from GitHub before anything is stored,
        so a token GitHub rejects is never written.

        Raises
        ------
        CredentialInvalid
            If GitHub rejects the token.

        """
        states = await self._client.rate_limit(token=token)
        row: dict[str, typ.Any] = {
            "github_id": github_id,
            "username": username,
            "token": token,
            "revoked_at": None,
        }
        for scope in Scope:
            state = states.get(scope)
            row[f"{scope.value}_remaining"] = state.remaining if state else None
            row[f"{scope.value}_reset_at"] = state.reset_at if state else None

        async with self._session_factory() as session:
            await upsert_rows(session, Credential, [row], key="github_id")
            await session.commit()
            credential = (
                await session.scalars(
                    select(Credential).where(Credential.github_id == github_id)
                )
            ).one()
        logger.info("Registered credential for %s (github_id=%s)", username, github_id)
        return credential


class _RejectedCredentialError(Exception):
    """Internal signal that GitHub rejected the credential in use."""

    def __init__(self, credential_id: int, cause: CredentialInvalid) -> None:
        self.credential_id = credential_id
        self.cause = cause
        super().__init__(f"credential {credential_id} rejected")
