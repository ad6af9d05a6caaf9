from ..config import get_config
from ..models import RowFilter
from ..row_store import BaseRowStore
from ..types import PermissionsGraph
from .permissions import get_permission_type

__all__ = [
    "data_permissions_graph",
]


async def data_permissions_graph(
    store: BaseRowStore,
    group_id: int | None = None,
    db_id: int | None = None,
    perm_type: str | None = None,
    audit: bool = False,
) -> PermissionsGraph:
    """
    Returns a tree representation of all data permission rows, optionally filtered by group, database and/or permission
    type. Each group's rows are placed independently at group -> db -> type -> value (database-wide rows) or
    group -> db -> type -> schema -> table -> value (table rows); nothing is coalesced across groups.

    This powers the permissions editor and must NOT be used for permission enforcement.
    :param store: Row store to read permission rows from.
    :param group_id: Only include rows for this group.
    :param db_id: Only include rows for this database.
    :param perm_type: Only include rows of this permission type.
    :param audit: Whether to include rows for the internal audit database.
    :return: The nested permissions graph.
    """

    if perm_type is not None:
        get_permission_type(perm_type)

    rows = await store.get_rows(
        RowFilter(
            group_ids=frozenset({group_id}) if group_id is not None else None,
            perm_type=perm_type,
            db_id=db_id,
            exclude_db_ids=frozenset() if audit else frozenset({get_config().audit_db_id}),
        )
    )

    graph: PermissionsGraph = {}
    for r in rows:
        db_perms = graph.setdefault(r.group_id, {}).setdefault(r.db_id, {})
        if r.is_database_wide:
            db_perms[r.perm_type] = r.perm_value
        else:
            schemas = db_perms.get(r.perm_type)
            if not isinstance(schemas, dict):
                db_perms[r.perm_type] = schemas = {}
            schemas.setdefault(r.schema_name or "", {})[r.table_id] = r.perm_value

    return graph
