from data_permissions.models import PermissionRowModel, TableModel


def db_row(group_id: int, perm_type: str, db_id: int, value: str) -> PermissionRowModel:
    return PermissionRowModel(group_id=group_id, perm_type=perm_type, db_id=db_id, perm_value=value)


def table_row(group_id: int, perm_type: str, table: TableModel, value: str) -> PermissionRowModel:
    return PermissionRowModel(
        group_id=group_id, perm_type=perm_type, db_id=table.db_id, scope=table.scope(), perm_value=value
    )
