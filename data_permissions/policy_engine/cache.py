import asyncio

from ..models import StoredPermissionRowModel
from ..row_store import BaseRowStore

__all__ = [
    "UserPermissionsCache",
]


class UserPermissionsCache:
    """
    Memoized view of every permission row held by any of one user's groups, keyed by (permission type, database ID).
    Rows are fetched with a single query on first use, then served from memory for the rest of the request scope.
    """

    def __init__(self, store: BaseRowStore, user_id: int):
        self._store: BaseRowStore = store
        self._user_id: int = user_id

        self._rows: dict[tuple[str, int], tuple[StoredPermissionRowModel, ...]] | None = None
        self._load_lock = asyncio.Lock()

    @property
    def user_id(self) -> int:
        return self._user_id

    @property
    def loaded(self) -> bool:
        return self._rows is not None

    async def _load(self) -> dict[tuple[str, int], tuple[StoredPermissionRowModel, ...]]:
        async with self._load_lock:
            if self._rows is None:
                grouped: dict[tuple[str, int], list[StoredPermissionRowModel]] = {}
                for r in await self._store.get_rows_for_user(self._user_id):
                    grouped.setdefault((r.perm_type, r.db_id), []).append(r)
                self._rows = {k: tuple(v) for k, v in grouped.items()}
            return self._rows

    async def get(self, perm_type: str, db_id: int) -> tuple[StoredPermissionRowModel, ...]:
        rows = self._rows if self._rows is not None else await self._load()
        return rows.get((perm_type, db_id), ())
