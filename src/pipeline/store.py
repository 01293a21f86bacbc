"""
PokeLedger — Storage Adapter

Thin table-level operations over an async SQLAlchemy session factory, used by
the set matcher, the layered writer and the sync orchestrator:

- select:  equality / greater-than filters, ordering, limit, distinct
- insert:  plain multi-row insert
- upsert:  ON CONFLICT DO UPDATE (optionally column-scoped) or DO NOTHING
- update:  filtered update
- rpc:     call a stored database function by name

Every call runs in its own session and commits before returning. Inserts and
upserts use the dialect's own insert construct (PostgreSQL in production,
SQLite in tests) so the conflict clauses are native on both.
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Protocol, Sequence

import structlog
from sqlalchemy import Table, select as sa_select, text, update as sa_update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.models import Base

logger = structlog.get_logger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class Store(Protocol):
    """The operations the pipeline needs from persistence."""

    async def select(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        *,
        columns: Sequence[str] | None = None,
        greater_than: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        distinct: bool = False,
    ) -> list[dict[str, Any]]: ...

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> int: ...

    async def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        on_conflict: Sequence[str],
        *,
        ignore_duplicates: bool = False,
        update_columns: Sequence[str] | None = None,
    ) -> int: ...

    async def update(
        self, table: str, values: Mapping[str, Any], filters: Mapping[str, Any]
    ) -> int: ...

    async def rpc(self, name: str, params: Mapping[str, Any] | None = None) -> Any: ...


def _uniform_rows(rows: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Give every row the same keys; a multi-VALUES insert requires it."""
    keys: list[str] = []
    for row in rows:
        for key in row:
            if key not in keys:
                keys.append(key)
    return [{key: row.get(key) for key in keys} for row in rows]


class SqlStore:
    """
    Store backed by an async_sessionmaker.

    Usage:
        store = SqlStore(session_factory)
        rows = await store.select("provider_set_map", {"provider": "JUSTTCG"})
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dialect: str | None = None,
    ):
        self._session_factory = session_factory
        self._dialect = dialect

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    @staticmethod
    def _table(name: str) -> Table:
        try:
            return Base.metadata.tables[name]
        except KeyError:
            raise ValueError(f"Unknown table: {name}") from None

    def _dialect_name(self, session: AsyncSession) -> str:
        if self._dialect:
            return self._dialect
        return session.bind.dialect.name

    def _insert_construct(self, session: AsyncSession, table: Table):
        if self._dialect_name(session) == "postgresql":
            return postgresql.insert(table)
        return sqlite.insert(table)

    @staticmethod
    def _where(table: Table, filters: Mapping[str, Any] | None):
        clauses = []
        for column, value in (filters or {}).items():
            col = table.c[column]
            if value is None:
                clauses.append(col.is_(None))
            elif isinstance(value, (list, tuple, set, frozenset)):
                clauses.append(col.in_(list(value)))
            else:
                clauses.append(col == value)
        return clauses

    # -----------------------------------------------------------------------
    # Operations
    # -----------------------------------------------------------------------

    async def select(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        *,
        columns: Sequence[str] | None = None,
        greater_than: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        distinct: bool = False,
    ) -> list[dict[str, Any]]:
        """
        Select rows as plain dicts.

        Filter values of None match NULL; list values match with IN.
        """
        t = self._table(table)
        stmt = sa_select(*(t.c[c] for c in columns)) if columns else sa_select(t)
        for clause in self._where(t, filters):
            stmt = stmt.where(clause)
        for column, value in (greater_than or {}).items():
            stmt = stmt.where(t.c[column] > value)
        if distinct:
            stmt = stmt.distinct()
        if order_by:
            col = t.c[order_by]
            stmt = stmt.order_by(col.desc() if descending else col.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [dict(row._mapping) for row in result]

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> int:
        if not rows:
            return 0
        t = self._table(table)
        async with self._session_factory() as session:
            stmt = self._insert_construct(session, t).values(_uniform_rows(rows))
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount if result.rowcount is not None and result.rowcount >= 0 else len(rows)

    async def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        on_conflict: Sequence[str],
        *,
        ignore_duplicates: bool = False,
        update_columns: Sequence[str] | None = None,
    ) -> int:
        """
        Insert rows, resolving conflicts on the `on_conflict` columns.

        Args:
            ignore_duplicates: Keep the stored row on conflict (DO NOTHING).
            update_columns: Columns overwritten on conflict. Defaults to every
                supplied column outside the conflict key. Columns not listed
                keep their stored values.

        Returns:
            Rows inserted when ignoring duplicates, else rows submitted.
        """
        if not rows:
            return 0
        t = self._table(table)
        uniform = _uniform_rows(rows)
        conflict = list(on_conflict)

        async with self._session_factory() as session:
            stmt = self._insert_construct(session, t).values(uniform)
            if ignore_duplicates:
                stmt = stmt.on_conflict_do_nothing(index_elements=conflict)
            else:
                targets = list(update_columns) if update_columns is not None else list(uniform[0])
                targets = [c for c in targets if c in uniform[0] and c not in conflict]
                if targets:
                    stmt = stmt.on_conflict_do_update(
                        index_elements=conflict,
                        set_={c: stmt.excluded[c] for c in targets},
                    )
                else:
                    stmt = stmt.on_conflict_do_nothing(index_elements=conflict)
            result = await session.execute(stmt)
            await session.commit()

        if ignore_duplicates:
            return result.rowcount if result.rowcount is not None and result.rowcount >= 0 else 0
        return len(uniform)

    async def update(
        self, table: str, values: Mapping[str, Any], filters: Mapping[str, Any]
    ) -> int:
        if not filters:
            raise ValueError("update requires at least one filter")
        t = self._table(table)
        stmt = sa_update(t).values(dict(values))
        for clause in self._where(t, filters):
            stmt = stmt.where(clause)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def rpc(self, name: str, params: Mapping[str, Any] | None = None) -> Any:
        """
        Call a database function: SELECT name(:arg, ...).

        Raises whatever the driver raises when the function does not exist.
        """
        if not _IDENTIFIER.match(name):
            raise ValueError(f"Invalid function name: {name!r}")
        params = dict(params or {})
        for key in params:
            if not _IDENTIFIER.match(key):
                raise ValueError(f"Invalid parameter name: {key!r}")
        args = ", ".join(f"{key} => :{key}" for key in params)
        async with self._session_factory() as session:
            result = await session.execute(text(f"SELECT {name}({args})"), params)
            value = result.scalar()
            await session.commit()
        logger.debug("store_rpc_complete", function=name)
        return value
