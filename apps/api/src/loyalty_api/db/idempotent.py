"""Insert-or-ignore primitive used for every dedup point.

Callers attempt an atomic insert keyed by a unique constraint and, when the row
already exists, read back the winner instead of failing.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from sqlalchemy import inspect
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


async def insert_or_ignore(
    session: AsyncSession,
    model: Any,
    values: Mapping[str, Any],
    *,
    conflict_columns: Sequence[str],
) -> bool:
    """Insert ``values`` unless the unique key collides. Returns True when a row was written.

    ``values`` is keyed by mapped attribute name; columns declared under a different
    SQL name (``metadata_json`` maps to ``metadata``) are translated here.
    """

    dialect_name = session.get_bind().dialect.name
    insert = _DIALECT_INSERTS.get(dialect_name)
    if insert is None:
        raise NotImplementedError(f"insert_or_ignore is not supported on {dialect_name}")

    columns = inspect(model).columns
    row = {columns[key].name: value for key, value in values.items()}
    stmt = insert(model.__table__).values(**row).on_conflict_do_nothing(index_elements=list(conflict_columns))
    result = await session.execute(stmt)
    return bool(result.rowcount)
