"""Shared fixtures for unit and feature tests."""

from __future__ import annotations

import typing as typ

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ghharvest.credentials import CredentialBroker
from ghharvest.github import Gateway, ResponseCache, UpstreamClient
from ghharvest.storage import init_storage
from tests.helpers.fake_github import FakeGitHub
from tests.helpers.storage import NOW

if typ.TYPE_CHECKING:
    from pathlib import Path

    from dramatiq.brokers.stub import StubBroker


async def _setup_sqlite(tmp_path: Path) -> AsyncEngine:
    """Create a SQLite engine with every ghharvest table."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ghharvest_test.db'}"
    )
    try:
        await init_storage(engine)
    except Exception:
        await engine.dispose()
        raise
    return engine


@pytest_asyncio.fixture
async def session_factory(
    tmp_path: Path,
) -> typ.AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Yield a fresh async session factory backed by sqlite."""
    engine = await _setup_sqlite(tmp_path)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Return the URL of the sqlite file backing ``session_factory``."""
    return f"sqlite+aiosqlite:///{tmp_path / 'ghharvest_test.db'}"


@pytest.fixture
def stub_broker() -> typ.Iterator[StubBroker]:
    """Return the Dramatiq stub broker with empty queues."""
    import dramatiq

    from ghharvest.jobs import actors  # noqa: F401 - declares the actors

    broker = typ.cast("StubBroker", dramatiq.get_broker())
    broker.flush_all()
    yield broker
    broker.flush_all()


@pytest.fixture
def fake() -> FakeGitHub:
    """Return an empty fake GitHub."""
    return FakeGitHub()


@pytest_asyncio.fixture
async def client(fake: FakeGitHub) -> typ.AsyncIterator[UpstreamClient]:
    """Yield an upstream client talking to the fake."""
    http_client = fake.client()
    yield UpstreamClient(fake.config(), http_client=http_client)
    await http_client.aclose()


@pytest.fixture
def gateway(
    session_factory: async_sessionmaker[AsyncSession],
    client: UpstreamClient,
) -> Gateway:
    """Return a gateway whose broker and cache run on the pinned clock."""
    broker = CredentialBroker(session_factory, client, clock=lambda: NOW)
    cache = ResponseCache(session_factory, clock=lambda: NOW)
    return Gateway(broker, client, cache)
