"""Unit tests for credential selection, rotation and revocation."""

from __future__ import annotations

import asyncio
import datetime as dt
import threading
import typing as typ
from unittest import mock

import pytest

from ghharvest.common.ratelimits import Scope
from ghharvest.config import ServiceSettings
from ghharvest.credentials import (
    CredentialBroker,
    InProcessCredentialLock,
    RowCredentialLock,
)
from ghharvest.factory import build_services
from ghharvest.github.client import UpstreamClient
from ghharvest.github.config import GatewayConfig
from ghharvest.github.errors import (
    CredentialInvalid,
    NoAvailableCredentials,
    UpstreamError,
)
from tests.helpers.fake_github import FakeGitHub
from tests.helpers.storage import NOW, add_credential, get_credential

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from ghharvest.storage import Credential

_HOUR = dt.timedelta(hours=1)


def _broker(
    session_factory: async_sessionmaker[AsyncSession],
    client: UpstreamClient,
    *,
    max_retries: int = 3,
) -> CredentialBroker:
    return CredentialBroker(
        session_factory,
        client,
        config=GatewayConfig(max_credential_retries=max_retries),
        clock=lambda: NOW,
    )


def _get(client: UpstreamClient, path: str) -> typ.Callable[[Credential], typ.Any]:
    async def call(credential: Credential) -> typ.Any:  # noqa: ANN401
        return await client.get(path, token=credential.token)

    return call


class TestSelectCredential:
    """Selection rules over the pool."""

    @pytest.mark.asyncio
    async def test_revoked_credentials_are_never_selected(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
    ) -> None:
        """A revoked credential loses to any usable one, however large its budget."""
        await add_credential(
            session_factory, "revoked", core_remaining=5000, revoked_at=NOW
        )
        usable = await add_credential(session_factory, "usable", core_remaining=10)

        selected = await _broker(session_factory, client).select_credential(Scope.CORE)

        assert selected is not None
        assert selected.id == usable

    @pytest.mark.asyncio
    async def test_highest_remaining_budget_wins(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
    ) -> None:
        """Candidates are ordered by remaining budget in the scope."""
        await add_credential(session_factory, "low", core_remaining=100)
        high = await add_credential(session_factory, "high", core_remaining=4000)
        await add_credential(session_factory, "mid", core_remaining=2000)

        selected = await _broker(session_factory, client).select_credential(Scope.CORE)

        assert selected is not None
        assert selected.id == high

    @pytest.mark.asyncio
    async def test_ties_prefer_least_recently_used(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
    ) -> None:
        """Equal budgets fall back to last use, never-used first."""
        await add_credential(session_factory, "recent", last_used_at=NOW - _HOUR)
        never = await add_credential(session_factory, "never")

        selected = await _broker(session_factory, client).select_credential(Scope.CORE)

        assert selected is not None
        assert selected.id == never

    @pytest.mark.asyncio
    async def test_exhausted_credential_with_passed_reset_is_selectable(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
    ) -> None:
        """A zero budget whose reset time has passed counts as available."""
        stale = await add_credential(
            session_factory, "stale", core_remaining=0, core_reset_at=NOW - _HOUR
        )

        selected = await _broker(session_factory, client).select_credential(Scope.CORE)

        assert selected is not None
        assert selected.id == stale

    @pytest.mark.asyncio
    async def test_exhausted_credential_before_reset_is_skipped(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
    ) -> None:
        """A zero budget that has not reset yet is not a candidate."""
        await add_credential(
            session_factory, "drained", core_remaining=0, core_reset_at=NOW + _HOUR
        )

        broker = _broker(session_factory, client)

        assert await broker.select_credential(Scope.CORE) is None

    @pytest.mark.asyncio
    async def test_scopes_are_independent(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
    ) -> None:
        """A core budget says nothing about the search bucket."""
        await add_credential(session_factory, "core-only", core_remaining=5000)

        broker = _broker(session_factory, client)

        assert await broker.select_credential(Scope.CORE) is not None
        assert await broker.select_credential(Scope.SEARCH) is None


class TestWithCredential:
    """Exclusive use, refresh and revocation around one call."""

    @pytest.mark.asyncio
    async def test_refreshes_budgets_after_the_call(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
        fake: FakeGitHub,
    ) -> None:
        """GitHub's reported budgets overwrite the stored prediction."""
        credential_id = await add_credential(
            session_factory, "alice", core_remaining=50
        )
        fake.json("users/octocat", {"id": 1, "login": "octocat"})
        fake.rate_limits["tok-alice"] = 1234

        body = await _broker(session_factory, client).with_credential(
            Scope.CORE, _get(client, "users/octocat")
        )

        stored = await get_credential(session_factory, credential_id)
        assert body == {"id": 1, "login": "octocat"}
        assert stored.core_remaining == 1234
        assert stored.search_remaining == 30
        assert stored.last_used_at == NOW
        assert fake.rate_limit_calls == ["tok-alice"]

    @pytest.mark.asyncio
    async def test_failed_refresh_decrements_locally(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
        fake: FakeGitHub,
    ) -> None:
        """Without an authoritative read one unit of budget is spent."""
        credential_id = await add_credential(
            session_factory, "alice", core_remaining=10
        )
        fake.json("users/octocat", {"id": 1, "login": "octocat"})
        fake.rate_limit_fails = True

        await _broker(session_factory, client).with_credential(
            Scope.CORE, _get(client, "users/octocat")
        )

        stored = await get_credential(session_factory, credential_id)
        assert stored.core_remaining == 9

    @pytest.mark.asyncio
    async def test_upstream_failure_still_refreshes(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
        fake: FakeGitHub,
    ) -> None:
        """Non-401 failures propagate after the budget is written back."""
        credential_id = await add_credential(
            session_factory, "alice", core_remaining=10
        )
        fake.error("users/broken", 500, "boom")
        fake.rate_limits["tok-alice"] = 8

        with pytest.raises(UpstreamError) as excinfo:
            await _broker(session_factory, client).with_credential(
                Scope.CORE, _get(client, "users/broken")
            )

        stored = await get_credential(session_factory, credential_id)
        assert excinfo.value.status_code == 500
        assert stored.core_remaining == 8
        assert stored.revoked_at is None

    @pytest.mark.asyncio
    async def test_cancellation_skips_the_refresh(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
        fake: FakeGitHub,
    ) -> None:
        """A cancelled call propagates at once and releases the credential."""
        credential_id = await add_credential(
            session_factory, "alice", core_remaining=10
        )
        broker = _broker(session_factory, client)

        async def cancelled(_credential: Credential) -> None:
            raise asyncio.CancelledError

        with pytest.raises(asyncio.CancelledError):
            await broker.with_credential(Scope.CORE, cancelled)

        assert fake.rate_limit_calls == []
        stored = await get_credential(session_factory, credential_id)
        assert stored.core_remaining == 10
        reused = await broker.with_credential(
            Scope.CORE, lambda credential: asyncio.sleep(0, result=credential.id)
        )
        assert reused == credential_id

    @pytest.mark.asyncio
    async def test_unauthorized_credential_is_revoked_and_call_retried(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
        fake: FakeGitHub,
    ) -> None:
        """A 401 revokes the credential and the next best one serves the call."""
        bad = await add_credential(session_factory, "bad", core_remaining=5000)
        good = await add_credential(session_factory, "good", core_remaining=100)
        fake.rejected_tokens.add("tok-bad")
        fake.json("users/octocat", {"id": 1, "login": "octocat"})
        broker = _broker(session_factory, client)

        body = await broker.with_credential(Scope.CORE, _get(client, "users/octocat"))

        assert body == {"id": 1, "login": "octocat"}
        assert (await get_credential(session_factory, bad)).revoked_at == NOW
        assert [call.token for call in fake.api_calls()] == ["tok-bad", "tok-good"]
        selected = await broker.select_credential(Scope.CORE)
        assert selected is not None
        assert selected.id == good

    @pytest.mark.asyncio
    async def test_retry_ceiling_raises_unauthorized_upstream_error(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
        fake: FakeGitHub,
    ) -> None:
        """After max retries the caller sees a 401 and stops revoking."""
        for index in range(5):
            await add_credential(
                session_factory, f"user{index}", core_remaining=100 + index
            )
            fake.rejected_tokens.add(f"tok-user{index}")
        fake.json("users/octocat", {"id": 1})
        broker = _broker(session_factory, client, max_retries=2)

        with pytest.raises(UpstreamError) as excinfo:
            await broker.with_credential(Scope.CORE, _get(client, "users/octocat"))

        assert excinfo.value.status_code == 401
        assert not isinstance(excinfo.value, CredentialInvalid)
        assert len(fake.api_calls()) == 3
        assert await broker.select_credential(Scope.CORE) is not None

    @pytest.mark.asyncio
    async def test_pool_exhausted_by_revocations_raises_no_credentials(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
        fake: FakeGitHub,
    ) -> None:
        """Once every credential is revoked there is nothing left to try."""
        await add_credential(session_factory, "only")
        fake.rejected_tokens.add("tok-only")

        with pytest.raises(NoAvailableCredentials) as excinfo:
            await _broker(session_factory, client).with_credential(
                Scope.CORE, _get(client, "users/octocat")
            )

        assert excinfo.value.scope is Scope.CORE

    @pytest.mark.asyncio
    async def test_empty_pool_fails_immediately(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
        fake: FakeGitHub,
    ) -> None:
        """No credentials means no upstream call at all."""
        with pytest.raises(NoAvailableCredentials):
            await _broker(session_factory, client).with_credential(
                Scope.CORE, _get(client, "users/octocat")
            )

        assert fake.api_calls() == []

    @pytest.mark.asyncio
    async def test_one_credential_serves_one_call_at_a_time(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
    ) -> None:
        """Concurrent callers queue on the credential's lock."""
        await add_credential(session_factory, "solo")
        broker = _broker(session_factory, client)
        active = 0
        peak = 0

        async def call(_credential: Credential) -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        await asyncio.gather(
            *(broker.with_credential(Scope.CORE, call) for _ in range(3))
        )

        assert peak == 1

    @pytest.mark.asyncio
    async def test_row_lock_strategy_runs_the_call(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
        fake: FakeGitHub,
    ) -> None:
        """The row lock holds the transaction and still stamps last use."""
        credential_id = await add_credential(session_factory, "alice")
        fake.json("users/octocat", {"id": 1})
        broker = CredentialBroker(
            session_factory, client, lock=RowCredentialLock(), clock=lambda: NOW
        )

        await broker.with_credential(Scope.CORE, _get(client, "users/octocat"))

        stored = await get_credential(session_factory, credential_id)
        assert stored.last_used_at == NOW
        assert stored.core_remaining == 4999


class TestRegister:
    """Adding donated tokens."""

    @pytest.mark.asyncio
    async def test_register_seeds_budgets(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
        fake: FakeGitHub,
    ) -> None:
        """A new token is stored with the budgets GitHub reports for it."""
        fake.rate_limits["tok-new"] = 4321
        broker = _broker(session_factory, client)

        credential = await broker.register(77, "donor", "tok-new")

        assert credential.core_remaining == 4321
        assert credential.graphql_remaining == 5000
        selected = await broker.select_credential(Scope.CORE)
        assert selected is not None
        assert selected.id == credential.id

    @pytest.mark.asyncio
    async def test_register_reactivates_revoked_credential(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
    ) -> None:
        """Registering the same account again clears the revocation."""
        broker = _broker(session_factory, client)
        first = await broker.register(77, "donor", "tok-old")
        await broker.revoke(first.id)

        second = await broker.register(77, "donor", "tok-fresh")

        assert second.id == first.id
        assert second.revoked_at is None
        assert second.token == "tok-fresh"

    @pytest.mark.asyncio
    async def test_rejected_token_is_not_stored(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: UpstreamClient,
        fake: FakeGitHub,
    ) -> None:
        """A token GitHub refuses never reaches the pool."""
        fake.rejected_tokens.add("tok-bad")
        broker = _broker(session_factory, client)

        with pytest.raises(CredentialInvalid):
            await broker.register(78, "bad", "tok-bad")

        assert await broker.select_credential(Scope.CORE) is None


class _HolderTracker:
    """Count how many callers hold a credential at once."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self.active = 0
        self.peak = 0
        self.credential_ids: list[int] = []

    async def use(self, credential: Credential) -> int:
        with self._guard:
            self.active += 1
            self.peak = max(self.peak, self.active)
            self.credential_ids.append(credential.id)
        try:
            await asyncio.sleep(0.05)
        finally:
            with self._guard:
                self.active -= 1
        return credential.id


class TestCredentialExclusion:
    """Per-credential exclusion across independently built brokers."""

    @pytest.mark.asyncio
    async def test_brokers_from_separate_service_graphs_take_turns(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        database_url: str,
        fake: FakeGitHub,
    ) -> None:
        """Two commit jobs' brokers never hold the only credential together."""
        only = await add_credential(session_factory, "only", core_remaining=5000)
        settings = ServiceSettings(github=fake.config())
        http_client = fake.client()
        first = build_services(
            session_factory, database_url, settings=settings, http_client=http_client
        )
        second = build_services(
            session_factory, database_url, settings=settings, http_client=http_client
        )
        tracker = _HolderTracker()

        try:
            results = await asyncio.gather(
                first.broker.with_credential(Scope.CORE, tracker.use),
                second.broker.with_credential(Scope.CORE, tracker.use),
            )
        finally:
            await http_client.aclose()

        assert results == [only, only]
        assert tracker.peak == 1, "the credential was held by two calls at once"

    def test_process_lock_spans_threads_and_event_loops(self) -> None:
        """Each Dramatiq thread runs its own loop; the lock still excludes."""
        tracker = _HolderTracker()
        credential = mock.MagicMock(id=4242)
        session = mock.MagicMock()
        session.scalar = mock.AsyncMock(return_value=credential)

        async def hold_once() -> None:
            async with InProcessCredentialLock().hold(session, 4242) as held:
                await tracker.use(held)

        threads = [
            threading.Thread(target=asyncio.run, args=(hold_once(),))
            for _ in range(3)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert tracker.credential_ids == [4242, 4242, 4242]
        assert tracker.peak == 1
