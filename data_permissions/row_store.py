from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Any, Iterable

from .models import PermissionRowModel, RowFilter, StoredPermissionRowModel, TableModel
from .policy_engine.permissions import Granularity, assert_value_matches_perm_type, get_permission_type
from .policy_engine.exceptions import WrongGranularity

__all__ = [
    "BaseRowStore",
    "assert_valid_row",
]


def assert_valid_row(row: PermissionRowModel) -> None:
    """
    Checks a row against the permission catalog before it is persisted. Raises InvalidPermissionType,
    InvalidPermissionValue or WrongGranularity.
    """
    definition = get_permission_type(row.perm_type)
    assert_value_matches_perm_type(row.perm_type, row.perm_value)
    if definition.granularity == Granularity.DATABASE and not row.is_database_wide:
        raise WrongGranularity(f"Permission type {row.perm_type} cannot be set on a table")


class BaseRowStore(ABC):
    """
    The only component touching durable permission state. Every method accepts an optional existing connection (as
    yielded by transaction()) so that multi-step changes compose inside one atomic transaction.
    """

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[Any]:  # pragma: no cover
        """
        Async context manager yielding a connection handle; everything done with the handle commits or rolls back as
        one unit.
        """
        pass

    @abstractmethod
    async def get_rows(
        self, row_filter: RowFilter, existing_conn: Any = None
    ) -> tuple[StoredPermissionRowModel, ...]:  # pragma: no cover
        pass

    @abstractmethod
    async def get_rows_for_user(
        self,
        user_id: int,
        perm_type: str | None = None,
        db_id: int | None = None,
        existing_conn: Any = None,
    ) -> tuple[StoredPermissionRowModel, ...]:  # pragma: no cover
        """
        Rows held by any group the user is a member of, optionally narrowed to one permission type and/or database.
        """
        pass

    @abstractmethod
    async def delete_rows(self, row_filter: RowFilter, existing_conn: Any = None) -> None:  # pragma: no cover
        pass

    @abstractmethod
    async def _insert_rows(
        self, rows: tuple[PermissionRowModel, ...], existing_conn: Any = None
    ) -> None:  # pragma: no cover
        pass

    @abstractmethod
    async def row_exists(self, row_filter: RowFilter, existing_conn: Any = None) -> bool:  # pragma: no cover
        pass

    @abstractmethod
    async def get_table(self, table_id: int, existing_conn: Any = None) -> TableModel | None:  # pragma: no cover
        pass

    @abstractmethod
    async def get_tables(self, db_id: int, existing_conn: Any = None) -> tuple[TableModel, ...]:  # pragma: no cover
        pass

    @abstractmethod
    async def get_database_ids(self, existing_conn: Any = None) -> tuple[int, ...]:  # pragma: no cover
        pass

    @abstractmethod
    async def is_superuser(self, user_id: int) -> bool:  # pragma: no cover
        pass

    async def insert_rows(self, rows: Iterable[PermissionRowModel], existing_conn: Any = None) -> None:
        rows = tuple(rows)
        for r in rows:  # Validate everything before anything is written
            assert_valid_row(r)
        if rows:
            await self._insert_rows(rows, existing_conn)

    async def replace_rows(
        self,
        row_filter: RowFilter,
        rows: Iterable[PermissionRowModel],
        existing_conn: Any = None,
    ) -> None:
        rows = tuple(rows)
        for r in rows:  # Validate everything before anything is deleted
            assert_valid_row(r)

        if existing_conn is not None:
            await self._replace_rows(row_filter, rows, existing_conn)
            return

        async with self.transaction() as conn:
            await self._replace_rows(row_filter, rows, conn)

    async def _replace_rows(self, row_filter: RowFilter, rows: tuple[PermissionRowModel, ...], conn: Any) -> None:
        await self.delete_rows(row_filter, conn)
        if rows:
            await self._insert_rows(rows, conn)
