import asyncpg
import contextlib

from bento_lib.db.pg_async import PgAsyncDatabase
from fastapi import Depends
from functools import lru_cache
from pathlib import Path
from typing import Annotated, AsyncIterator

from .config import ConfigDependency
from .models import (
    WHOLE_DATABASE,
    TableScope,
    TableModel,
    PermissionRowModel,
    StoredPermissionRowModel,
    RowFilter,
)
from .row_store import BaseRowStore

__all__ = [
    "Database",
    "row_filter_sql",
    "get_db",
    "DatabaseDependency",
]


SCHEMA_PATH = Path(__file__).parent / "schema.sql"

PERMISSION_COLUMNS = ("id", "group_id", "perm_type", "db_id", "table_id", "schema_name", "perm_value")
PERMISSION_COLUMNS_SQL = ", ".join(f'"{c}"' for c in PERMISSION_COLUMNS)
PERMISSION_COLUMNS_SQL_P = ", ".join(f'p."{c}"' for c in PERMISSION_COLUMNS)


def permission_row_db_serialize(r: PermissionRowModel) -> tuple[int, str, int, int | None, str | None, str]:
    return r.group_id, r.perm_type, r.db_id, r.table_id, r.schema_name, r.perm_value


def permission_row_db_deserialize(r: asyncpg.Record | None) -> StoredPermissionRowModel | None:
    if r is None:
        return None
    return StoredPermissionRowModel(
        id=r["id"],
        group_id=r["group_id"],
        perm_type=r["perm_type"],
        db_id=r["db_id"],
        scope=(
            WHOLE_DATABASE
            if r["table_id"] is None
            else TableScope(table_id=r["table_id"], schema_name=r["schema_name"])
        ),
        perm_value=r["perm_value"],
    )


def table_db_deserialize(r: asyncpg.Record | None) -> TableModel | None:
    return None if r is None else TableModel(id=r["id"], db_id=r["db_id"], schema_name=r["schema"])


def row_filter_sql(row_filter: RowFilter, prefix: str = "", first_param: int = 1) -> tuple[str, list]:
    """
    Translates a row filter into a parameterized WHERE clause body (without the WHERE keyword).
    :param row_filter: The filter to translate.
    :param prefix: Table alias prefix for column names, e.g. "p."
    :param first_param: Index of the first positional parameter, for when other parameters precede the clause.
    :return: The clause and its parameter values, in order.
    """

    clauses: list[str] = []
    params: list = []

    def _p(value) -> str:
        params.append(value)
        return f"${first_param + len(params) - 1}"

    f = row_filter

    if f.group_ids is not None:
        clauses.append(f"{prefix}group_id = ANY({_p(sorted(f.group_ids))}::int[])")
    if f.perm_type is not None:
        clauses.append(f"{prefix}perm_type = {_p(f.perm_type)}")
    if f.db_id is not None:
        clauses.append(f"{prefix}db_id = {_p(f.db_id)}")
    if f.exclude_db_ids:
        clauses.append(f"{prefix}db_id <> ALL({_p(sorted(f.exclude_db_ids))}::int[])")

    if f.scope == "database":
        clauses.append(f"{prefix}table_id IS NULL")
    elif f.scope == "table":
        clauses.append(f"{prefix}table_id IS NOT NULL")

    if f.table_ids is not None:
        clauses.append(f"{prefix}table_id = ANY({_p(sorted(f.table_ids))}::int[])")
    if f.exclude_table_ids:
        clauses.append(
            f"({prefix}table_id IS NOT NULL AND {prefix}table_id <> ALL({_p(sorted(f.exclude_table_ids))}::int[]))"
        )

    if f.match_schema_name:
        if f.schema_name is None:
            clauses.append(f"{prefix}schema_name IS NULL")
        else:
            clauses.append(f"{prefix}schema_name = {_p(f.schema_name)}")

    if f.perm_value is not None:
        clauses.append(f"{prefix}perm_value = {_p(f.perm_value)}")

    return (" AND ".join(clauses) or "TRUE"), params


class Database(PgAsyncDatabase, BaseRowStore):
    def __init__(self, db_uri: str):
        super().__init__(db_uri, SCHEMA_PATH)

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        conn: asyncpg.Connection
        async with self.connect() as conn:
            async with conn.transaction():
                yield conn

    async def get_rows(
        self, row_filter: RowFilter, existing_conn: asyncpg.Connection | None = None
    ) -> tuple[StoredPermissionRowModel, ...]:
        where, params = row_filter_sql(row_filter)
        conn: asyncpg.Connection
        async with self.connect(existing_conn) as conn:
            res = await conn.fetch(
                f"SELECT {PERMISSION_COLUMNS_SQL} FROM data_permissions WHERE {where} ORDER BY id", *params
            )
            return tuple(permission_row_db_deserialize(r) for r in res)

    async def get_rows_for_user(
        self,
        user_id: int,
        perm_type: str | None = None,
        db_id: int | None = None,
        existing_conn: asyncpg.Connection | None = None,
    ) -> tuple[StoredPermissionRowModel, ...]:
        # $1 is the user ID; filter parameters follow it
        where, params = row_filter_sql(RowFilter(perm_type=perm_type, db_id=db_id), prefix="p.", first_param=2)
        conn: asyncpg.Connection
        async with self.connect(existing_conn) as conn:
            res = await conn.fetch(
                f"""
                SELECT {PERMISSION_COLUMNS_SQL_P}
                FROM permissions_group_membership pgm
                JOIN permissions_group pg ON pg."id" = pgm."group_id"
                JOIN data_permissions p ON p."group_id" = pg."id"
                WHERE pgm."user_id" = $1 AND {where}
                ORDER BY p."id"
                """,
                user_id,
                *params,
            )
            return tuple(permission_row_db_deserialize(r) for r in res)

    async def delete_rows(self, row_filter: RowFilter, existing_conn: asyncpg.Connection | None = None) -> None:
        where, params = row_filter_sql(row_filter)
        conn: asyncpg.Connection
        async with self.connect(existing_conn) as conn:
            await conn.execute(f"DELETE FROM data_permissions WHERE {where}", *params)

    async def _insert_rows(
        self, rows: tuple[PermissionRowModel, ...], existing_conn: asyncpg.Connection | None = None
    ) -> None:
        conn: asyncpg.Connection
        async with self.connect(existing_conn) as conn:
            await conn.executemany(
                'INSERT INTO data_permissions ("group_id", "perm_type", "db_id", "table_id", "schema_name", '
                '"perm_value") VALUES ($1, $2, $3, $4, $5, $6)',
                [permission_row_db_serialize(r) for r in rows],
            )

    async def row_exists(self, row_filter: RowFilter, existing_conn: asyncpg.Connection | None = None) -> bool:
        where, params = row_filter_sql(row_filter)
        conn: asyncpg.Connection
        async with self.connect(existing_conn) as conn:
            return await conn.fetchval(f"SELECT EXISTS (SELECT 1 FROM data_permissions WHERE {where})", *params)

    async def get_table(self, table_id: int, existing_conn: asyncpg.Connection | None = None) -> TableModel | None:
        conn: asyncpg.Connection
        async with self.connect(existing_conn) as conn:
            row = await conn.fetchrow('SELECT "id", "db_id", "schema" FROM metabase_table WHERE "id" = $1', table_id)
            return table_db_deserialize(row)

    async def get_tables(self, db_id: int, existing_conn: asyncpg.Connection | None = None) -> tuple[TableModel, ...]:
        conn: asyncpg.Connection
        async with self.connect(existing_conn) as conn:
            res = await conn.fetch(
                'SELECT "id", "db_id", "schema" FROM metabase_table WHERE "db_id" = $1 ORDER BY "id"', db_id
            )
            return tuple(table_db_deserialize(r) for r in res)

    async def get_database_ids(self, existing_conn: asyncpg.Connection | None = None) -> tuple[int, ...]:
        conn: asyncpg.Connection
        async with self.connect(existing_conn) as conn:
            return tuple(r["id"] for r in await conn.fetch('SELECT "id" FROM metabase_database ORDER BY "id"'))

    async def is_superuser(self, user_id: int) -> bool:
        conn: asyncpg.Connection
        async with self.connect() as conn:
            # A missing user is treated as a regular user, and so resolves to whatever their (absent) groups give them
            return bool(await conn.fetchval('SELECT "is_superuser" FROM core_user WHERE "id" = $1', user_id))


@lru_cache()
def get_db(config: ConfigDependency) -> Database:  # pragma: no cover
    return Database(config.database_uri)


DatabaseDependency = Annotated[Database, Depends(get_db)]
