import asyncpg
import contextlib
import pytest
import pytest_asyncio

from typing import AsyncIterator, Iterable

import os

os.environ["BENTO_DEBUG"] = "true"

from data_permissions.config import get_config
from data_permissions.db import Database
from data_permissions.logger import get_logger
from data_permissions.models import PermissionRowModel, RowFilter, StoredPermissionRowModel, TableModel
from data_permissions.policy_engine.mutation import PermissionMutator
from data_permissions.policy_engine.resolution import PermissionResolver
from data_permissions.row_store import BaseRowStore

from . import shared_data as sd


class MemoryRowStore(BaseRowStore):
    """
    In-memory row store with the same semantics as the Postgres one, including the unique key on
    (group_id, perm_type, db_id, table_id) and all-or-nothing transactions.
    """

    def __init__(
        self,
        tables: Iterable[TableModel],
        database_ids: Iterable[int],
        memberships: dict[int, frozenset[int]],
        superusers: frozenset[int],
    ):
        self.rows: dict[int, StoredPermissionRowModel] = {}
        self.tables: dict[int, TableModel] = {t.id: t for t in tables}
        self.database_ids: tuple[int, ...] = tuple(sorted(database_ids))
        self.memberships = memberships
        self.superusers = superusers

        self.user_row_queries: int = 0
        self.superuser_queries: int = 0
        self._next_id: int = 1

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator["MemoryRowStore"]:
        snapshot = dict(self.rows)
        try:
            yield self
        except Exception:
            self.rows = snapshot
            raise

    async def get_rows(self, row_filter: RowFilter, existing_conn=None) -> tuple[StoredPermissionRowModel, ...]:
        return tuple(r for r in self.rows.values() if row_filter.matches(r))

    async def get_rows_for_user(
        self, user_id: int, perm_type: str | None = None, db_id: int | None = None, existing_conn=None
    ) -> tuple[StoredPermissionRowModel, ...]:
        self.user_row_queries += 1
        return await self.get_rows(
            RowFilter(group_ids=self.memberships.get(user_id, frozenset()), perm_type=perm_type, db_id=db_id)
        )

    async def delete_rows(self, row_filter: RowFilter, existing_conn=None) -> None:
        self.rows = {k: r for k, r in self.rows.items() if not row_filter.matches(r)}

    async def _insert_rows(self, rows: tuple[PermissionRowModel, ...], existing_conn=None) -> None:
        keys = {(r.group_id, r.perm_type, r.db_id, r.table_id) for r in self.rows.values()}
        for r in rows:
            if (key := (r.group_id, r.perm_type, r.db_id, r.table_id)) in keys:
                raise ValueError(f"duplicate key value violates unique constraint: {key}")
            keys.add(key)
            self.rows[self._next_id] = StoredPermissionRowModel(id=self._next_id, **r.model_dump())
            self._next_id += 1

    async def row_exists(self, row_filter: RowFilter, existing_conn=None) -> bool:
        return any(row_filter.matches(r) for r in self.rows.values())

    async def get_table(self, table_id: int, existing_conn=None) -> TableModel | None:
        return self.tables.get(table_id)

    async def get_tables(self, db_id: int, existing_conn=None) -> tuple[TableModel, ...]:
        return tuple(t for t in self.tables.values() if t.db_id == db_id)

    async def get_database_ids(self, existing_conn=None) -> tuple[int, ...]:
        return self.database_ids

    async def is_superuser(self, user_id: int) -> bool:
        self.superuser_queries += 1
        return user_id in self.superusers

    # Test helpers

    def keys(self, group_id: int, perm_type: str, db_id: int) -> dict[int | None, str]:
        """
        Table ID (None for the database-wide row) -> value, for one (group, type, database).
        """
        return {
            r.table_id: r.perm_value
            for r in self.rows.values()
            if (r.group_id, r.perm_type, r.db_id) == (group_id, perm_type, db_id)
        }

    def representation_is_exclusive(self) -> bool:
        """
        Whether no (group, type, database) has both a database-wide row and table rows.
        """
        seen: dict[tuple[int, str, int], set[bool]] = {}
        for r in self.rows.values():
            seen.setdefault((r.group_id, r.perm_type, r.db_id), set()).add(r.is_database_wide)
        return all(len(kinds) == 1 for kinds in seen.values())


@pytest.fixture
def store() -> MemoryRowStore:
    return MemoryRowStore(sd.TABLES, sd.DATABASE_IDS, sd.MEMBERSHIPS, sd.SUPERUSERS)


@pytest.fixture
def logger():
    return get_logger(get_config())


@pytest.fixture
def resolver(store: MemoryRowStore, logger) -> PermissionResolver:
    return PermissionResolver(store, logger)


@pytest.fixture
def mutator(store: MemoryRowStore, logger) -> PermissionMutator:
    return PermissionMutator(store, logger)


async def _seed_metadata(db: Database) -> None:
    conn: asyncpg.Connection
    async with db.connect() as conn:
        await conn.executemany(
            'INSERT INTO core_user ("id", "is_superuser") VALUES ($1, $2)',
            [(u, u in sd.SUPERUSERS) for u in (sd.USER_ADMIN, sd.USER_ANNA, sd.USER_BOB, sd.USER_CARL, sd.USER_DANA)],
        )
        await conn.executemany(
            'INSERT INTO permissions_group ("id", "name") VALUES ($1, $2)',
            [(g, f"group-{g}") for g in (sd.GROUP_ANALYSTS, sd.GROUP_MARKETING, sd.GROUP_CONTRACTORS)],
        )
        await conn.executemany(
            'INSERT INTO permissions_group_membership ("user_id", "group_id") VALUES ($1, $2)',
            [(u, g) for u, gs in sd.MEMBERSHIPS.items() for g in sorted(gs)],
        )
        await conn.executemany(
            'INSERT INTO metabase_database ("id", "name") VALUES ($1, $2)',
            [(d, f"database-{d}") for d in sd.DATABASE_IDS],
        )
        await conn.executemany(
            'INSERT INTO metabase_table ("id", "db_id", "schema", "name") VALUES ($1, $2, $3, $4)',
            [(t.id, t.db_id, t.schema_name, f"table-{t.id}") for t in sd.TABLES],
        )


@pytest_asyncio.fixture
async def db() -> AsyncIterator[Database]:
    db_instance = Database(get_config().database_uri)
    try:
        await db_instance.initialize(pool_size=1)  # Small pool size for testing
    except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
        pytest.skip(f"Postgres is not available: {e}")

    try:
        await _seed_metadata(db_instance)
        yield db_instance
    finally:
        conn: asyncpg.Connection
        async with db_instance.connect() as conn:
            for table in (
                "data_permissions",
                "metabase_table",
                "metabase_database",
                "permissions_group_membership",
                "permissions_group",
                "core_user",
            ):
                await conn.execute(f"DROP TABLE IF EXISTS {table}")
        await db_instance.close()
