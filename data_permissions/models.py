from pydantic import BaseModel, ConfigDict, Field
from typing import Annotated, Literal

__all__ = [
    # Scope:
    "WholeDatabaseScope",
    "TableScope",
    "Scope",
    "WHOLE_DATABASE",
    # Tables:
    "TableModel",
    # Rows:
    "PermissionRowModel",
    "StoredPermissionRowModel",
    "RowFilter",
]


class BaseImmutableModel(BaseModel):
    # Immutable hashable record
    model_config = ConfigDict(frozen=True)


class WholeDatabaseScope(BaseImmutableModel):
    kind: Literal["database"] = "database"


class TableScope(BaseImmutableModel):
    kind: Literal["table"] = "table"
    table_id: int
    # Must match the real schema of the table; tables in schema-less databases have None
    schema_name: str | None = None


Scope = Annotated[WholeDatabaseScope | TableScope, Field(discriminator="kind")]

WHOLE_DATABASE = WholeDatabaseScope()


class TableModel(BaseImmutableModel):
    id: int
    db_id: int
    schema_name: str | None = None

    def scope(self) -> TableScope:
        return TableScope(table_id=self.id, schema_name=self.schema_name)


class PermissionRowModel(BaseImmutableModel):
    group_id: int
    perm_type: str
    db_id: int
    scope: Scope = WHOLE_DATABASE
    perm_value: str

    @property
    def is_database_wide(self) -> bool:
        return isinstance(self.scope, WholeDatabaseScope)

    @property
    def table_id(self) -> int | None:
        return self.scope.table_id if isinstance(self.scope, TableScope) else None

    @property
    def schema_name(self) -> str | None:
        return self.scope.schema_name if isinstance(self.scope, TableScope) else None


class StoredPermissionRowModel(PermissionRowModel):
    id: int


class RowFilter(BaseImmutableModel):
    """
    A predicate over permission rows. Unset (None) fields do not constrain the match; all set fields must match.
    """

    group_ids: frozenset[int] | None = None
    perm_type: str | None = None
    db_id: int | None = None
    exclude_db_ids: frozenset[int] = frozenset()

    # "database" matches only database-wide rows, "table" only table rows
    scope: Literal["any", "database", "table"] = "any"
    table_ids: frozenset[int] | None = None
    # Non-empty exclusions imply a table row, like SQL's NOT IN never matching NULL
    exclude_table_ids: frozenset[int] = frozenset()

    # schema_name is only compared when match_schema_name is set, so that a NULL schema can be matched explicitly
    match_schema_name: bool = False
    schema_name: str | None = None

    perm_value: str | None = None

    def matches(self, row: PermissionRowModel) -> bool:
        table_id = row.table_id
        return (
            (self.group_ids is None or row.group_id in self.group_ids)
            and (self.perm_type is None or row.perm_type == self.perm_type)
            and (self.db_id is None or row.db_id == self.db_id)
            and row.db_id not in self.exclude_db_ids
            and (self.scope != "database" or table_id is None)
            and (self.scope != "table" or table_id is not None)
            and (self.table_ids is None or table_id in self.table_ids)
            and (not self.exclude_table_ids or (table_id is not None and table_id not in self.exclude_table_ids))
            and (not self.match_schema_name or row.schema_name == self.schema_name)
            and (self.perm_value is None or row.perm_value == self.perm_value)
        )
