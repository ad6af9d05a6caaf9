from fastapi import Depends
from structlog.stdlib import BoundLogger
from typing import Annotated, Any, Iterable, Mapping

from ..db import DatabaseDependency
from ..logger import LoggerDependency
from ..models import PermissionRowModel, RowFilter, TableModel
from ..row_store import BaseRowStore
from .exceptions import CrossDatabaseMutation, DataPermissionsError, IllegalBlockAssignment, UnknownTable
from .permissions import (
    P_DATA_ACCESS,
    P_DOWNLOAD_RESULTS,
    P_NATIVE_QUERY_EDITING,
    V_BLOCK,
    Granularity,
    assert_value_matches_perm_type,
    get_permission_type,
    least_permissive_value,
    most_restrictive_non_block_value,
    require_granularity,
)

__all__ = [
    "PermissionMutator",
    "get_mutator",
    "MutatorDependency",
]


# Types forced to their least permissive value whenever data access to a database is blocked for a group
BLOCK_CASCADE_PERM_TYPES: tuple[str, ...] = (P_NATIVE_QUERY_EDITING, P_DOWNLOAD_RESULTS)


class PermissionMutator:
    """
    Write API for data permissions. For a given group, permission type and database, either a single database-wide row
    or any number of table rows exist, never both; every change below maintains this inside a single transaction.
    """

    def __init__(self, store: BaseRowStore, logger: BoundLogger):
        self._store: BaseRowStore = store
        self._logger: BoundLogger = logger

    async def _rejected(self, err: DataPermissionsError, **kwargs) -> DataPermissionsError:
        await self._logger.awarning("rejected permission change", error=str(err), **kwargs)
        return err

    async def _set_database_permission(self, conn: Any, group_id: int, db_id: int, perm_type: str, value: str) -> None:
        await self._store.replace_rows(
            RowFilter(group_ids=frozenset({group_id}), perm_type=perm_type, db_id=db_id),
            (PermissionRowModel(group_id=group_id, perm_type=perm_type, db_id=db_id, perm_value=value),),
            existing_conn=conn,
        )

        if perm_type == P_DATA_ACCESS and value == V_BLOCK:
            # Block must not leave adjacent privileges open for the same group and database
            for pt in BLOCK_CASCADE_PERM_TYPES:
                await self._set_database_permission(conn, group_id, db_id, pt, least_permissive_value(pt))

    async def set_database_permission(self, group_id: int, db_id: int, perm_type: str, value: str) -> None:
        """
        Sets a permission to a value for a whole database, replacing any database-wide or table rows the group had for
        the permission type on the database. Block data access can only be set here, and also forces native query
        editing and result downloads to their least permissive values.
        """
        try:
            if value == V_BLOCK and perm_type != P_DATA_ACCESS:
                raise IllegalBlockAssignment(f"Block is a data access value and cannot be set for {perm_type}")
            assert_value_matches_perm_type(perm_type, value)
        except DataPermissionsError as e:
            raise await self._rejected(e, group_id=group_id, db_id=db_id, perm_type=perm_type)

        async with self._store.transaction() as conn:
            await self._set_database_permission(conn, group_id, db_id, perm_type, value)

        await self._logger.ainfo(
            "set database permission", group_id=group_id, db_id=db_id, perm_type=perm_type, value=value
        )

    async def _get_table(self, table: int | TableModel, conn: Any) -> TableModel:
        # Table metadata always comes from the store; a passed-in model must agree with it
        table_id = table.id if isinstance(table, TableModel) else table
        if (t := await self._store.get_table(table_id, existing_conn=conn)) is None:
            raise UnknownTable(f"Table {table_id} does not exist")
        if isinstance(table, TableModel) and table != t:
            raise UnknownTable(
                f"Table {table_id} does not exist in database {table.db_id} with schema {table.schema_name}"
            )
        return t

    def _check_table_values(self, perm_type: str, values: Iterable[str]) -> None:
        require_granularity(perm_type, Granularity.TABLE)
        values = tuple(values)
        if V_BLOCK in values:
            raise IllegalBlockAssignment("Block permissions must be set at the database-level only")
        for v in values:
            assert_value_matches_perm_type(perm_type, v)

    async def set_table_permissions(
        self, group_id: int, perm_type: str, table_perms: Mapping[int | TableModel, str]
    ) -> None:
        """
        Sets table permissions to the specified values for a group. All tables must belong to the same database.

        If the permission is currently set at the database level and any requested value differs from it, the
        database-wide row is replaced by one row per table in the database (the other tables keep the old value). If,
        instead, the change leaves every table with a row sharing one value, all table rows are collapsed into a single
        database-wide row.
        :param group_id: The group to set permissions for.
        :param perm_type: A table-level permission type.
        :param table_perms: Map of table (ID or table metadata) to the permission value to set for it.
        """

        values = frozenset(table_perms.values())
        try:
            self._check_table_values(perm_type, values)
        except DataPermissionsError as e:
            raise await self._rejected(e, group_id=group_id, perm_type=perm_type)

        if not table_perms:
            return

        async with self._store.transaction() as conn:
            tables: dict[TableModel, str] = {await self._get_table(t, conn): v for t, v in table_perms.items()}

            if len(db_ids := {t.db_id for t in tables}) != 1:
                raise await self._rejected(
                    CrossDatabaseMutation("All tables must belong to the same database"),
                    group_id=group_id,
                    perm_type=perm_type,
                    db_ids=sorted(db_ids),
                )

            db_id: int = next(iter(db_ids))
            table_ids = frozenset(t.id for t in tables)
            group_ids = frozenset({group_id})
            new_rows = tuple(
                PermissionRowModel(group_id=group_id, perm_type=perm_type, db_id=db_id, scope=t.scope(), perm_value=v)
                for t, v in tables.items()
            )
            log = self._logger.bind(group_id=group_id, perm_type=perm_type, db_id=db_id, table_ids=sorted(table_ids))

            existing_db_rows = await self._store.get_rows(
                RowFilter(group_ids=group_ids, perm_type=perm_type, db_id=db_id, scope="database"), existing_conn=conn
            )

            if existing_db_rows:
                existing_value = existing_db_rows[0].perm_value
                if values == {existing_value}:
                    await log.adebug("table permissions already covered by database permission", value=existing_value)
                    return

                # Expand the database-wide row into rows for every other table in the database. Block cannot exist on
                # individual tables, so a blocked database's other tables get the most restrictive non-block value.
                other_value = (
                    most_restrictive_non_block_value(perm_type) if existing_value == V_BLOCK else existing_value
                )
                other_rows = tuple(
                    PermissionRowModel(
                        group_id=group_id, perm_type=perm_type, db_id=db_id, scope=t.scope(), perm_value=other_value
                    )
                    for t in await self._store.get_tables(db_id, existing_conn=conn)
                    if t.id not in table_ids
                )
                await self._store.replace_rows(
                    RowFilter(group_ids=group_ids, perm_type=perm_type, db_id=db_id, scope="database"),
                    (*other_rows, *new_rows),
                    existing_conn=conn,
                )
                await log.ainfo("expanded database permission to table permissions", previous_value=existing_value)
                return

            # Only tables which already have a row are considered when checking whether the result is uniform.
            existing_other_values = frozenset(
                r.perm_value
                for r in await self._store.get_rows(
                    RowFilter(group_ids=group_ids, perm_type=perm_type, db_id=db_id, exclude_table_ids=table_ids),
                    existing_conn=conn,
                )
            )

            if len(existing_other_values) == 1 and values == existing_other_values:
                # Every table would share one value after this change, so store a single database-wide row instead
                value = next(iter(values))
                await self._set_database_permission(conn, group_id, db_id, perm_type, value)
                await log.ainfo("collapsed table permissions to database permission", value=value)
                return

            await self._store.replace_rows(
                RowFilter(group_ids=group_ids, perm_type=perm_type, db_id=db_id, table_ids=table_ids),
                new_rows,
                existing_conn=conn,
            )
            await log.ainfo("set table permissions", values=sorted(values))

    async def set_table_permission(self, group_id: int, table: int | TableModel, perm_type: str, value: str) -> None:
        """
        Sets the permission for a single table to the specified value for a group.
        """
        await self.set_table_permissions(group_id, perm_type, {table: value})

    async def _schema_permission_value(
        self, conn: Any, db_id: int, group_id: int, schema_name: str | None, perm_type: str
    ) -> str | None:
        # The value shared by every table in the schema for the group, or None if there is no single such value
        present = [
            v
            for v in get_permission_type(perm_type).values
            if await self._store.row_exists(
                RowFilter(
                    group_ids=frozenset({group_id}),
                    perm_type=perm_type,
                    db_id=db_id,
                    match_schema_name=True,
                    schema_name=schema_name,
                    perm_value=v,
                ),
                existing_conn=conn,
            )
        ]
        return present[0] if len(present) == 1 else None

    async def set_new_table_permissions(
        self, group_ids: Iterable[int], table: int | TableModel, perm_type: str, value: str
    ) -> None:
        """
        Sets permissions for a newly-discovered table for each of the provided groups. Groups with a database-wide row
        for the permission type already cover the new table and are skipped. Otherwise, if every table in the schema
        shares one value for a group, the new table gets that value; else it gets the provided value.
        """

        group_ids = tuple(dict.fromkeys(group_ids))
        try:
            self._check_table_values(perm_type, (value,))
        except DataPermissionsError as e:
            raise await self._rejected(e, group_ids=list(group_ids), perm_type=perm_type)

        if not group_ids:
            return

        async with self._store.transaction() as conn:
            t = await self._get_table(table, conn)

            db_level_group_ids = {
                r.group_id
                for r in await self._store.get_rows(
                    RowFilter(group_ids=frozenset(group_ids), perm_type=perm_type, db_id=t.db_id, scope="database"),
                    existing_conn=conn,
                )
            }

            new_rows = []
            for group_id in group_ids:
                if group_id in db_level_group_ids:
                    continue
                schema_value = await self._schema_permission_value(conn, t.db_id, group_id, t.schema_name, perm_type)
                new_rows.append(
                    PermissionRowModel(
                        group_id=group_id,
                        perm_type=perm_type,
                        db_id=t.db_id,
                        scope=t.scope(),
                        perm_value=schema_value or value,
                    )
                )

            await self._store.insert_rows(new_rows, existing_conn=conn)

        await self._logger.ainfo(
            "set new table permissions",
            table_id=t.id,
            db_id=t.db_id,
            perm_type=perm_type,
            group_ids=[r.group_id for r in new_rows],
            skipped_group_ids=sorted(db_level_group_ids),
        )


def get_mutator(db: DatabaseDependency, logger: LoggerDependency) -> PermissionMutator:
    return PermissionMutator(db, logger)


MutatorDependency = Annotated[PermissionMutator, Depends(get_mutator)]
