from fastapi import Depends
from structlog.stdlib import BoundLogger
from typing import Annotated, Iterable

from ..db import DatabaseDependency
from ..logger import LoggerDependency
from ..models import StoredPermissionRowModel, RowFilter
from ..row_store import BaseRowStore
from ..types import UserPermissionsSummary
from .coalesce import coalesce, most_restrictive_per_group
from .context import additional_table_permission, current_permissions_cache, current_user
from .permissions import (
    PERMISSION_TYPES,
    P_DATA_ACCESS,
    P_DOWNLOAD_RESULTS,
    V_BLOCK,
    Granularity,
    at_least_as_permissive,
    get_permission_type,
    least_permissive_value,
    most_permissive_value,
    require_granularity,
)

__all__ = [
    "PermissionResolver",
    "get_resolver",
    "ResolverDependency",
]


def _values(rows: Iterable[StoredPermissionRowModel]) -> frozenset[str]:
    return frozenset(r.perm_value for r in rows)


def _group_values(rows: Iterable[StoredPermissionRowModel]) -> Iterable[tuple[int, str]]:
    return ((r.group_id, r.perm_value) for r in rows)


class PermissionResolver:
    """
    Read API for data permissions. Every resolution returns a single value from the permission type's lattice; when a
    user has nothing at all for a type, the least permissive value is returned. Superusers always get the most
    permissive value without any rows being read.
    """

    def __init__(self, store: BaseRowStore, logger: BoundLogger):
        self._store: BaseRowStore = store
        self._logger: BoundLogger = logger

    async def is_superuser(self, user_id: int) -> bool:
        if (caller := current_user()) is not None and caller.user_id == user_id:
            return caller.is_superuser
        return await self._store.is_superuser(user_id)

    async def _get_permissions(self, user_id: int, perm_type: str, db_id: int) -> tuple[StoredPermissionRowModel, ...]:
        # The request cache is only ever used for the authenticated caller, and only if it was built for them; checks
        # on behalf of any other user always go to the row store.
        caller = current_user()
        cache = current_permissions_cache()
        if caller is not None and caller.user_id == user_id and cache is not None and cache.user_id == user_id:
            return await cache.get(perm_type, db_id)
        return await self._store.get_rows_for_user(user_id, perm_type=perm_type, db_id=db_id)

    async def _resolved(self, fn: str, user_id: int, perm_type: str, db_id: int, value: str | None, **kwargs) -> str:
        res = value if value is not None else least_permissive_value(perm_type)
        await self._logger.adebug(
            "resolved permission",
            resolution=fn,
            user_id=user_id,
            perm_type=perm_type,
            db_id=db_id,
            value=res,
            fallback=value is None,
            **kwargs,
        )
        return res

    # Database-level ---------------------------------------------------------------------------------------------------

    async def database_permission_for_user(self, user_id: int, perm_type: str, db_id: int) -> str:
        """
        Returns the effective value of a database-level permission type for a user on a database, coalescing the
        values held by each of the user's groups.
        """
        require_granularity(perm_type, Granularity.DATABASE)
        if await self.is_superuser(user_id):
            return most_permissive_value(perm_type)
        values = _values(await self._get_permissions(user_id, perm_type, db_id))
        return await self._resolved("database", user_id, perm_type, db_id, coalesce(perm_type, values))

    async def user_has_permission_for_database(self, user_id: int, perm_type: str, perm_value: str, db_id: int) -> bool:
        return at_least_as_permissive(
            perm_type, await self.database_permission_for_user(user_id, perm_type, db_id), perm_value
        )

    # Table-level ------------------------------------------------------------------------------------------------------

    async def table_permission_for_group(self, group_id: int, perm_type: str, db_id: int, table_id: int) -> str:
        """
        Returns the effective value of a table-level permission type for a single group on a table. A database-wide row
        for the group applies to every table in the database. Temporary additional table permissions are included.
        """
        require_granularity(perm_type, Granularity.TABLE)
        rows = await self._store.get_rows(RowFilter(group_ids=frozenset({group_id}), perm_type=perm_type, db_id=db_id))
        values = {r.perm_value for r in rows if r.table_id in (table_id, None)}
        value = coalesce(perm_type, (*values, additional_table_permission(db_id, table_id, perm_type)))
        return value if value is not None else least_permissive_value(perm_type)

    async def table_permission_for_user(self, user_id: int, perm_type: str, db_id: int, table_id: int) -> str:
        """
        Returns the effective value of a table-level permission type for a user on a table. Rows for exactly this table
        and database-wide rows both apply; temporary additional table permissions are included.
        """
        require_granularity(perm_type, Granularity.TABLE)
        if await self.is_superuser(user_id):
            return most_permissive_value(perm_type)
        rows = await self._get_permissions(user_id, perm_type, db_id)
        values = {r.perm_value for r in rows if r.table_id in (table_id, None)}
        value = coalesce(perm_type, (*values, additional_table_permission(db_id, table_id, perm_type)))
        return await self._resolved("table", user_id, perm_type, db_id, value, table_id=table_id)

    async def user_has_permission_for_table(
        self, user_id: int, perm_type: str, perm_value: str, db_id: int, table_id: int
    ) -> bool:
        return at_least_as_permissive(
            perm_type, await self.table_permission_for_user(user_id, perm_type, db_id, table_id), perm_value
        )

    # Schema-level -----------------------------------------------------------------------------------------------------

    async def _schema_rows(
        self, user_id: int, perm_type: str, db_id: int, schema_name: str | None
    ) -> tuple[StoredPermissionRowModel, ...]:
        return tuple(
            r
            for r in await self._get_permissions(user_id, perm_type, db_id)
            if r.is_database_wide or r.schema_name == schema_name
        )

    async def schema_permission_for_user(
        self, user_id: int, perm_type: str, db_id: int, schema_name: str | None
    ) -> str:
        """
        Returns the *least* restrictive table-level value the user has for any table in the schema, i.e. whether the
        user has at least this much access to *some* table in it.
        """
        require_granularity(perm_type, Granularity.TABLE)
        if await self.is_superuser(user_id):
            return most_permissive_value(perm_type)
        values = _values(await self._schema_rows(user_id, perm_type, db_id, schema_name))
        value = coalesce(perm_type, values)
        return await self._resolved("schema", user_id, perm_type, db_id, value, schema=schema_name)

    async def user_has_permission_for_schema(
        self, user_id: int, perm_type: str, perm_value: str, db_id: int, schema_name: str | None
    ) -> bool:
        return at_least_as_permissive(
            perm_type, await self.schema_permission_for_user(user_id, perm_type, db_id, schema_name), perm_value
        )

    async def full_schema_permission_for_user(
        self, user_id: int, perm_type: str, db_id: int, schema_name: str | None
    ) -> str:
        """
        Returns the value the user has for *every* table in the schema. For each group, the most restrictive
        table-level value within the schema is taken; then normal coalescing picks the least restrictive group.
        """
        require_granularity(perm_type, Granularity.TABLE)
        if await self.is_superuser(user_id):
            return most_permissive_value(perm_type)
        rows = await self._schema_rows(user_id, perm_type, db_id, schema_name)
        value = coalesce(perm_type, most_restrictive_per_group(perm_type, _group_values(rows)))
        return await self._resolved("full_schema", user_id, perm_type, db_id, value, schema=schema_name)

    # Whole-database views of table-level permissions ------------------------------------------------------------------

    async def full_db_permission_for_user(self, user_id: int, perm_type: str, db_id: int) -> str:
        """
        Returns the value the user has for *every* table in the database, computed like full_schema_permission_for_user
        over all of the database's rows.
        """
        require_granularity(perm_type, Granularity.TABLE)
        if await self.is_superuser(user_id):
            return most_permissive_value(perm_type)
        rows = await self._get_permissions(user_id, perm_type, db_id)
        value = coalesce(perm_type, most_restrictive_per_group(perm_type, _group_values(rows)))
        return await self._resolved("full_db", user_id, perm_type, db_id, value)

    async def most_permissive_database_permission_for_user(self, user_id: int, perm_type: str, db_id: int) -> str:
        """
        What is the *most permissive* value the user has on any single table within this database?
        """
        require_granularity(perm_type, Granularity.TABLE)
        if await self.is_superuser(user_id):
            return most_permissive_value(perm_type)
        values = _values(await self._get_permissions(user_id, perm_type, db_id))
        return await self._resolved("most_permissive_db", user_id, perm_type, db_id, coalesce(perm_type, values))

    async def native_download_permission_for_user(self, user_id: int, db_id: int) -> str:
        """
        Native queries can touch any table, so for each group the native download permission for a database is the
        lowest download level of any table in it; the best group then wins.
        """
        if await self.is_superuser(user_id):
            return most_permissive_value(P_DOWNLOAD_RESULTS)
        rows = await self._get_permissions(user_id, P_DOWNLOAD_RESULTS, db_id)
        value = coalesce(P_DOWNLOAD_RESULTS, most_restrictive_per_group(P_DOWNLOAD_RESULTS, _group_values(rows)))
        return await self._resolved("native_download", user_id, P_DOWNLOAD_RESULTS, db_id, value)

    async def user_has_block_perms_for_database(self, user_id: int, db_id: int) -> bool:
        """
        Block is only ever set at the database level, so whether it applies is decided from all data-access rows for
        the database rather than from a table-level resolution.
        """
        if await self.is_superuser(user_id):
            return False
        values = _values(await self._get_permissions(user_id, P_DATA_ACCESS, db_id))
        return coalesce(P_DATA_ACCESS, values) == V_BLOCK

    async def user_has_any_perms_of_type(self, user_id: int, perm_type: str) -> bool:
        """
        Whether the user holds the most permissive value for the permission type, in any group, on at least one
        database or table.
        """
        get_permission_type(perm_type)
        if await self.is_superuser(user_id):
            return True
        value = most_permissive_value(perm_type)
        return any(r.perm_value == value for r in await self._store.get_rows_for_user(user_id, perm_type=perm_type))

    # Summary ----------------------------------------------------------------------------------------------------------

    async def permissions_for_user(
        self, user_id: int, db_id: int | None = None, perm_type: str | None = None
    ) -> UserPermissionsSummary:
        """
        Returns a summary of the permissions for a single user, optionally filtered by database and/or permission type.
        Values from multiple groups are coalesced into a single value for each database, type and (if set) table; a
        table map whose tables all share one value is collapsed into that value.

        This is intended for logging and debugging, to see what a user's real permissions are at a glance. Enforcement
        must go through the *_permission_for_user methods.
        """

        if perm_type is not None:
            get_permission_type(perm_type)

        perm_types = (perm_type,) if perm_type is not None else PERMISSION_TYPES

        if await self.is_superuser(user_id):
            db_ids = (db_id,) if db_id is not None else await self._store.get_database_ids()
            return {d: {pt: most_permissive_value(pt) for pt in perm_types} for d in db_ids}

        rows = await self._store.get_rows_for_user(user_id, perm_type=perm_type, db_id=db_id)

        # Values by (db, type) for database-wide rows and (db, type, table) for table rows
        path_values: dict[tuple, list[str]] = {}
        for r in rows:
            path = (r.db_id, r.perm_type) if r.is_database_wide else (r.db_id, r.perm_type, r.table_id)
            path_values.setdefault(path, []).append(r.perm_value)

        summary: UserPermissionsSummary = {}
        for path, values in path_values.items():
            # Database-wide values also apply to every table path of the same database and type
            value = coalesce(path[1], (*values, *path_values.get(path[:2], ())))
            db_perms = summary.setdefault(path[0], {})
            current = db_perms.get(path[1])
            if len(path) == 3:
                db_perms[path[1]] = {**(current if isinstance(current, dict) else {}), path[2]: value}
            elif not isinstance(current, dict):
                db_perms[path[1]] = value

        for db_perms in summary.values():
            for pt, v in db_perms.items():
                if isinstance(v, dict) and len(set(v.values())) == 1:
                    db_perms[pt] = next(iter(v.values()))

        return summary


def get_resolver(db: DatabaseDependency, logger: LoggerDependency) -> PermissionResolver:
    return PermissionResolver(db, logger)


ResolverDependency = Annotated[PermissionResolver, Depends(get_resolver)]
