"""Behavioural coverage for credential rotation and caching in the gateway."""

from __future__ import annotations

import asyncio
import dataclasses as dc
import typing as typ

import pytest
from pytest_bdd import given, parsers, scenario, then, when
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from ghharvest.credentials import CredentialBroker
from ghharvest.github import Gateway, ResponseCache, UpstreamClient
from ghharvest.storage import Credential, init_storage
from tests.helpers.fake_github import FakeGitHub
from tests.helpers.storage import NOW, add_credential

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncSession

    type SessionFactory = async_sessionmaker[AsyncSession]


@dc.dataclass(slots=True)
class RotationContext:
    """Shared mutable scenario state."""

    database_url: str
    fake: FakeGitHub = dc.field(default_factory=FakeGitHub)
    response: typ.Any = None


@scenario(
    "../credential_rotation.feature",
    "A rejected token is revoked and the request succeeds on another",
)
def test_rejected_token_is_rotated() -> None:
    """Wrap the pytest-bdd scenario for 401 rotation."""


@scenario(
    "../credential_rotation.feature",
    "The credential with the most budget is used first",
)
def test_highest_budget_is_preferred() -> None:
    """Wrap the pytest-bdd scenario for selection order."""


@scenario("../credential_rotation.feature", "Cached responses need no credential")
def test_cache_hit_needs_no_credential() -> None:
    """Wrap the pytest-bdd scenario for cache hits."""


@pytest.fixture
def rotation_context(tmp_path: Path) -> RotationContext:
    """Create the scenario database and an empty fake GitHub."""
    return RotationContext(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'rotation.db'}"
    )


def _run[T](
    context: RotationContext, work: cabc.Callable[[SessionFactory], cabc.Awaitable[T]]
) -> T:
    """Run ``work`` on a fresh loop against the scenario database."""

    async def run() -> T:
        engine = create_async_engine(context.database_url, poolclass=NullPool)
        try:
            await init_storage(engine)
            return await work(async_sessionmaker(engine, expire_on_commit=False))
        finally:
            await engine.dispose()

    return asyncio.run(run())


def _fetch(context: RotationContext, path: str) -> typ.Any:  # noqa: ANN401
    async def work(session_factory: SessionFactory) -> typ.Any:  # noqa: ANN401
        async with context.fake.client() as http_client:
            client = UpstreamClient(context.fake.config(), http_client=http_client)
            broker = CredentialBroker(session_factory, client, clock=lambda: NOW)
            cache = ResponseCache(session_factory, clock=lambda: NOW)
            return await Gateway(broker, client, cache).fetch(path)

    return _run(context, work)


def _credential(context: RotationContext, username: str) -> Credential:
    async def work(session_factory: SessionFactory) -> Credential:
        async with session_factory() as session:
            credential = await session.scalar(
                select(Credential).where(Credential.username == username)
            )
        assert credential is not None, f"no credential for {username}"
        return credential

    return _run(context, work)


@given(parsers.parse('a credential pool with tokens for "{first}" and "{second}"'))
def given_pool(rotation_context: RotationContext, first: str, second: str) -> None:
    """Register two credentials with equal budgets."""

    async def work(session_factory: SessionFactory) -> None:
        await add_credential(session_factory, first)
        await add_credential(session_factory, second)

    _run(rotation_context, work)
    rotation_context.fake.json("users/octocat", {"id": 1, "login": "octocat"})


@given(
    parsers.parse(
        'a credential pool where "{low}" has {low_left:d} and "{high}" has '
        "{high_left:d} core requests left"
    )
)
def given_uneven_pool(
    rotation_context: RotationContext,
    low: str,
    low_left: int,
    high: str,
    high_left: int,
) -> None:
    """Register two credentials with different core budgets."""

    async def work(session_factory: SessionFactory) -> None:
        await add_credential(session_factory, low, core_remaining=low_left)
        await add_credential(session_factory, high, core_remaining=high_left)

    _run(rotation_context, work)
    rotation_context.fake.json("users/octocat", {"id": 1, "login": "octocat"})


@given(parsers.parse('GitHub rejects the token of "{username}"'))
def given_rejected(rotation_context: RotationContext, username: str) -> None:
    """Make the fake answer 401 for one credential's token."""
    rotation_context.fake.rejected_tokens.add(f"tok-{username}")


@given(parsers.parse('"{path}" was already fetched through the gateway'))
def given_cached(rotation_context: RotationContext, path: str) -> None:
    """Warm the response cache."""
    _fetch(rotation_context, path)


@when("every credential is revoked")
def when_all_revoked(rotation_context: RotationContext) -> None:
    """Revoke the whole pool."""

    async def work(session_factory: SessionFactory) -> None:
        async with session_factory() as session, session.begin():
            await session.execute(update(Credential).values(revoked_at=NOW))

    _run(rotation_context, work)


@when(parsers.parse('I fetch "{path}" through the gateway'))
def when_fetch(rotation_context: RotationContext, path: str) -> None:
    """Fetch a path through a freshly wired gateway."""
    rotation_context.response = _fetch(rotation_context, path)


@then(parsers.parse('the response login is "{login}"'))
def then_login(rotation_context: RotationContext, login: str) -> None:
    """Assert the decoded body came back."""
    assert rotation_context.response == {"id": 1, "login": login}, (
        f"unexpected response {rotation_context.response!r}"
    )


@then(parsers.parse('the credential of "{username}" is revoked'))
def then_revoked(rotation_context: RotationContext, username: str) -> None:
    """Assert the rejected credential left the pool."""
    credential = _credential(rotation_context, username)
    assert credential.revoked_at is not None, f"{username} should be revoked"


@then(parsers.parse('the credential of "{username}" is still active'))
def then_active(rotation_context: RotationContext, username: str) -> None:
    """Assert the working credential stayed in the pool."""
    credential = _credential(rotation_context, username)
    assert credential.revoked_at is None, f"{username} should be active"


@then(parsers.parse('GitHub saw the token of "{username}"'))
def then_token_used(rotation_context: RotationContext, username: str) -> None:
    """Assert which credential made the API call."""
    tokens = [call.token for call in rotation_context.fake.api_calls("users/octocat")]
    assert tokens == [f"tok-{username}"], f"unexpected tokens {tokens}"


@then(parsers.parse('GitHub received {count:d} request for "{path}"'))
def then_call_count(rotation_context: RotationContext, count: int, path: str) -> None:
    """Assert how often the upstream path was requested."""
    calls = rotation_context.fake.api_calls(path)
    assert len(calls) == count, f"expected {count} calls, got {len(calls)}"
