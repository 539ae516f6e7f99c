"""Operator command line for ghharvest.

Subcommands
-----------
``init-db``
    Create every table on the configured database.
``track USERNAME... [--tag TAG]``
    Record tracked usernames and enqueue an ingestion run.
``run [USERNAME...]``
    Run stages 1 to 4 in this process; with no usernames, for every tracked
    username. Commit jobs are still enqueued for the workers.
``rescrape [--account-id N]``
    Enqueue commit rescrapes for one account or for every repository.
``status [BATCH_ID]``
    Show one batch, or the most recent batches.
``register-credential --github-id N --username LOGIN``
    Add a donated token, read from ``--token`` or ``$GITHUB_TOKEN``.
``purge-cache``
    Delete expired cached responses.

Every subcommand reads the database from ``--database-url`` or
``GHHARVEST_DATABASE_URL``.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import typing as typ

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from ghharvest.config import RuntimeConfig
from ghharvest.factory import open_services
from ghharvest.github.errors import GatewayError
from ghharvest.ingestion.errors import AccountNotFoundError
from ghharvest.jobs import ledger
from ghharvest.logging import (
    configure_logging,
    get_logger,
    log_error,
    log_info,
    log_warning,
)
from ghharvest.storage import TrackedAccount, init_storage

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from sqlalchemy.ext.asyncio import AsyncSession

    type SessionFactory = async_sessionmaker[AsyncSession]
    type Command = cabc.Callable[
        [argparse.Namespace, SessionFactory, str], cabc.Awaitable[int]
    ]

__all__ = ["build_parser", "main"]

logger = get_logger(__name__)

_EXIT_USAGE = 2


async def _init_db(
    _args: argparse.Namespace, session_factory: SessionFactory, _url: str
) -> int:
    bind = session_factory.kw["bind"]
    await init_storage(bind)
    print("database schema is up to date")
    return 0


async def _track(
    args: argparse.Namespace, session_factory: SessionFactory, database_url: str
) -> int:
    async with open_services(session_factory, database_url) as services:
        outcome = await services.tracking.enqueue_ingestion(args.usernames, args.tags)
    print(
        f"tracking {len(outcome.usernames)} usernames "
        f"({outcome.created} new), message {outcome.message_id}"
    )
    return 0


async def _tracked_usernames(session_factory: SessionFactory) -> list[str]:
    async with session_factory() as session:
        return list(
            await session.scalars(
                select(TrackedAccount.username).order_by(TrackedAccount.username)
            )
        )


async def _run(
    args: argparse.Namespace, session_factory: SessionFactory, database_url: str
) -> int:
    usernames = args.usernames or await _tracked_usernames(session_factory)
    if not usernames:
        log_warning(logger, "No usernames given and none are tracked")
        return 0
    async with open_services(session_factory, database_url) as services:
        result = await services.pipeline.run(usernames)
    print(
        f"accounts {len(result.accounts.succeeded)} stored, "
        f"{len(result.accounts.failed)} failed; "
        f"organizations {len(result.organizations.organization_ids)}; "
        f"repositories {len(result.repositories.repository_ids)}; "
        f"commit batch {result.commits.batch_id or 'none'}"
    )
    return 0


async def _rescrape(
    args: argparse.Namespace, session_factory: SessionFactory, database_url: str
) -> int:
    async with open_services(session_factory, database_url) as services:
        try:
            outcome = await services.tracking.trigger_rescrape(args.account_id)
        except AccountNotFoundError as exc:
            log_error(logger, "%s", exc)
            return 1
    print(
        f"rescraping {len(outcome.repository_ids)} repositories, "
        f"batch {outcome.batch_id or 'none'}"
    )
    return 0


def _print_status(status: ledger.BatchStatus) -> None:
    counts = ", ".join(
        f"{name}={count}" for name, count in status.to_dict()["counts"].items()
    )
    state = "complete" if status.is_complete else "in progress"
    print(
        f"{status.batch_id} [{status.reason}] {status.total} jobs: {counts} ({state})"
    )


async def _status(
    args: argparse.Namespace, session_factory: SessionFactory, _url: str
) -> int:
    if args.batch_id is None:
        statuses = await ledger.latest_batches(session_factory, args.limit)
        if not statuses:
            print("no batches")
        for status in statuses:
            _print_status(status)
        return 0
    try:
        status = await ledger.batch_status(session_factory, args.batch_id)
    except ledger.BatchNotFoundError as exc:
        log_error(logger, "%s", exc)
        return 1
    _print_status(status)
    return 0


async def _register_credential(
    args: argparse.Namespace, session_factory: SessionFactory, database_url: str
) -> int:
    token = args.token or os.environ.get("GITHUB_TOKEN", "").strip()
    if not token:
        log_error(logger, "No token given; pass --token or set GITHUB_TOKEN")
        return _EXIT_USAGE
    async with open_services(session_factory, database_url) as services:
        try:
            credential = await services.broker.register(
                args.github_id, args.username, token
            )
        except GatewayError as exc:
            log_error(
                logger, "GitHub rejected the token for %s: %s", args.username, exc
            )
            return 1
    print(
        f"registered credential {credential.id} for {credential.username} "
        f"(core remaining: {credential.core_remaining})"
    )
    return 0


async def _purge_cache(
    _args: argparse.Namespace, session_factory: SessionFactory, database_url: str
) -> int:
    async with open_services(session_factory, database_url) as services:
        removed = await services.cache.purge_expired()
    print(f"removed {removed} expired cache entries")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for every subcommand."""
    parser = argparse.ArgumentParser(prog="ghharvest", description=__doc__)
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy async URL (default: $GHHARVEST_DATABASE_URL)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("GHHARVEST_LOG_LEVEL", "INFO"),
        help="Log level (default: $GHHARVEST_LOG_LEVEL or INFO)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    init_db = commands.add_parser("init-db", help="Create database tables")
    init_db.set_defaults(handler=_init_db)

    track = commands.add_parser("track", help="Track usernames and enqueue ingestion")
    track.add_argument("usernames", nargs="+", help="GitHub logins to track")
    track.add_argument(
        "--tag",
        dest="tags",
        action="append",
        default=[],
        help="Tag to attach; may be repeated",
    )
    track.set_defaults(handler=_track)

    run = commands.add_parser("run", help="Run the pipeline in this process")
    run.add_argument(
        "usernames", nargs="*", help="GitHub logins (default: every tracked login)"
    )
    run.set_defaults(handler=_run)

    rescrape = commands.add_parser("rescrape", help="Enqueue commit rescrapes")
    rescrape.add_argument(
        "--account-id",
        type=int,
        default=None,
        help="Internal account id (default: every repository)",
    )
    rescrape.set_defaults(handler=_rescrape)

    status = commands.add_parser("status", help="Show commit batch progress")
    status.add_argument("batch_id", nargs="?", default=None, help="Batch id")
    status.add_argument(
        "--limit", type=int, default=10, help="Recent batches to list (default: 10)"
    )
    status.set_defaults(handler=_status)

    register = commands.add_parser(
        "register-credential", help="Add a donated GitHub token to the pool"
    )
    register.add_argument("--github-id", type=int, required=True)
    register.add_argument("--username", required=True)
    register.add_argument(
        "--token", default=None, help="Token (default: $GITHUB_TOKEN)"
    )
    register.set_defaults(handler=_register_credential)

    purge = commands.add_parser("purge-cache", help="Delete expired cache entries")
    purge.set_defaults(handler=_purge_cache)
    return parser


async def _dispatch(args: argparse.Namespace, database_url: str) -> int:
    engine = create_async_engine(database_url)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    handler: Command = args.handler
    try:
        return await handler(args, session_factory, database_url)
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    """Run a ghharvest subcommand.

    Parameters
    ----------
    argv : list[str] | None, optional
        Command-line arguments. ``None`` defaults to ``sys.argv``.

    Returns
    -------
    int
        Exit code: 0 on success, 1 on a reported failure, 2 on usage errors.

    """
    args = build_parser().parse_args(argv)
    normalized_level, invalid_level = configure_logging(args.log_level, force=True)
    if invalid_level:
        log_warning(
            logger,
            "Invalid log level %r, falling back to %s",
            args.log_level,
            normalized_level,
        )

    database_url = args.database_url or RuntimeConfig.from_env().database_url
    if database_url is None:
        log_error(logger, "No database configured; set GHHARVEST_DATABASE_URL")
        return _EXIT_USAGE

    log_info(logger, "Running %s", args.command)
    return asyncio.run(_dispatch(args, database_url))


if __name__ == "__main__":
    raise SystemExit(main())
