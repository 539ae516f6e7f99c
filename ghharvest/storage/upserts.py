"""Bulk write helpers keyed on unique columns.

Every helper issues ``INSERT ... ON CONFLICT`` statements built from the
dialect-specific insert constructs, so reruns over the same input converge on
the same rows instead of raising integrity errors. Rows are written in chunks
to stay below SQLite's bound parameter ceiling.
"""

from __future__ import annotations

import collections.abc as cabc
import typing as typ

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite

from ghharvest.common.time import utcnow
from ghharvest.storage.errors import UnsupportedDialectError

if typ.TYPE_CHECKING:
    from sqlalchemy import Table
    from sqlalchemy.ext.asyncio import AsyncSession

    from ghharvest.storage.base import Base

    type Row = dict[str, typ.Any]
    type Target = type[Base] | Table

_MAX_BOUND_PARAMETERS = 900
_LOOKUP_CHUNK = 500


def _insert_for(session: AsyncSession, target: Target) -> typ.Any:  # noqa: ANN401
    bind = session.bind
    dialect = bind.dialect.name if bind is not None else "unknown"
    if dialect == "postgresql":
        return postgresql.insert(target)
    if dialect == "sqlite":
        return sqlite.insert(target)
    raise UnsupportedDialectError(dialect)


def _table_of(target: Target) -> Table:
    return typ.cast("Table", getattr(target, "__table__", target))


def _chunks(rows: list[Row]) -> cabc.Iterator[list[Row]]:
    width = max(len(rows[0]), 1)
    size = max(_MAX_BOUND_PARAMETERS // width, 1)
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


def dedupe_rows(rows: cabc.Iterable[Row], key: str) -> list[Row]:
    """Collapse rows sharing ``key``, keeping the last occurrence.

    A single ``INSERT ... ON CONFLICT DO UPDATE`` may not touch the same row
    twice, so duplicates must be removed before the statement is built.

    Examples
    --------
    >>> dedupe_rows([{"id": 1, "v": "a"}, {"id": 1, "v": "b"}], "id")
    [{'id': 1, 'v': 'b'}]

    """
    unique: dict[typ.Any, Row] = {}
    for row in rows:
        unique[row[key]] = row
    return list(unique.values())


async def upsert_rows(
    session: AsyncSession,
    target: Target,
    rows: cabc.Sequence[Row],
    *,
    key: str,
    update_columns: cabc.Sequence[str] | None = None,
) -> int:
    """Insert ``rows`` or update the existing row sharing ``key``.

    Parameters
    ----------
    session
        Session whose bind decides the SQL dialect.
    target
        Mapped class or table to write.
    rows
        Column mappings; every row must carry the same keys.
    key
        Unique column identifying the row, such as ``github_id``.
    update_columns
        Columns overwritten on conflict. Defaults to every supplied column
        except ``key``. Columns absent from the list are left untouched,
        which keeps richer data written by another stage intact.

    Returns
    -------
    int
        Number of distinct rows written.

    """
    unique = dedupe_rows(rows, key)
    if not unique:
        return 0

    columns = (
        list(update_columns)
        if update_columns is not None
        else [name for name in unique[0] if name != key]
    )
    table = _table_of(target)
    touch_updated_at = "updated_at" in table.c and "updated_at" not in columns

    for chunk in _chunks(unique):
        stmt = _insert_for(session, target).values(chunk)
        updates: dict[str, typ.Any] = {name: stmt.excluded[name] for name in columns}
        if touch_updated_at:
            updates["updated_at"] = utcnow()
        if updates:
            stmt = stmt.on_conflict_do_update(index_elements=[key], set_=updates)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=[key])
        await session.execute(stmt)
    return len(unique)


async def insert_ignore_rows(
    session: AsyncSession,
    target: Target,
    rows: cabc.Sequence[Row],
) -> int:
    """Insert ``rows``, silently skipping any that violate a unique key.

    Returns the number of rows submitted after in-memory deduplication.
    """
    seen: set[tuple[typ.Any, ...]] = set()
    unique: list[Row] = []
    for row in rows:
        fingerprint = tuple(sorted(row.items()))
        if fingerprint in seen:
            continue
        seen.add(fingerprint)
        unique.append(row)
    if not unique:
        return 0

    for chunk in _chunks(unique):
        stmt = _insert_for(session, target).values(chunk).on_conflict_do_nothing()
        await session.execute(stmt)
    return len(unique)


async def resolve_ids(
    session: AsyncSession,
    model: type[Base],
    values: cabc.Iterable[typ.Any],
    *,
    key: str = "github_id",
) -> dict[typ.Any, int]:
    """Map external key values to internal primary keys.

    Values with no stored row are absent from the result.
    """
    wanted = list(dict.fromkeys(values))
    if not wanted:
        return {}

    key_column = getattr(model, key)
    id_column = model.id  # type: ignore[attr-defined]
    resolved: dict[typ.Any, int] = {}
    for start in range(0, len(wanted), _LOOKUP_CHUNK):
        batch = wanted[start : start + _LOOKUP_CHUNK]
        result = await session.execute(
            select(key_column, id_column).where(key_column.in_(batch))
        )
        resolved.update({external: internal for external, internal in result.all()})
    return resolved
