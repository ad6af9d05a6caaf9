__all__ = [
    "TableValues",
    "SchemaTableValues",
    "UserPermissionsSummary",
    "GroupGraph",
    "PermissionsGraph",
]


# Permission values by table ID
TableValues = dict[int, str]

# Table permission values by schema name, then table ID; tables without a schema are listed under ""
SchemaTableValues = dict[str, TableValues]

# Database ID -> permission type -> a single value, or a map of table values where tables differ
UserPermissionsSummary = dict[int, dict[str, str | TableValues]]

# Database ID -> permission type -> a database-wide value, or table values by schema
GroupGraph = dict[int, dict[str, str | SchemaTableValues]]

# Group ID -> that group's graph
PermissionsGraph = dict[int, GroupGraph]
