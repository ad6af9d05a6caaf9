from enum import Enum
from pydantic import BaseModel, ConfigDict

from .exceptions import InvalidPermissionType, InvalidPermissionValue, WrongGranularity

__all__ = [
    "Granularity",
    "PermissionTypeDefinition",
    # Permission types:
    "P_DATA_ACCESS",
    "P_DOWNLOAD_RESULTS",
    "P_MANAGE_TABLE_METADATA",
    "P_NATIVE_QUERY_EDITING",
    "P_MANAGE_DATABASE",
    # Permission values:
    "V_UNRESTRICTED",
    "V_NO_SELF_SERVICE",
    "V_BLOCK",
    "V_ONE_MILLION_ROWS",
    "V_TEN_THOUSAND_ROWS",
    "V_YES",
    "V_NO",
    # Catalog:
    "PERMISSIONS",
    "PERMISSION_TYPES",
    "get_permission_type",
    "require_granularity",
    "assert_value_matches_perm_type",
    "most_permissive_value",
    "least_permissive_value",
    "most_restrictive_non_block_value",
    "at_least_as_permissive",
]


class Granularity(str, Enum):
    DATABASE = "database"
    TABLE = "table"


class PermissionTypeDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    granularity: Granularity
    # IMPORTANT: ordered from *most* permissive to *least* permissive. Resolution falls back to the last value when a
    # user has no value at all for a permission type.
    values: tuple[str, ...]


P_DATA_ACCESS = "perms/data-access"
P_DOWNLOAD_RESULTS = "perms/download-results"
P_MANAGE_TABLE_METADATA = "perms/manage-table-metadata"
P_NATIVE_QUERY_EDITING = "perms/native-query-editing"
P_MANAGE_DATABASE = "perms/manage-database"

V_UNRESTRICTED = "unrestricted"
V_NO_SELF_SERVICE = "no-self-service"
V_BLOCK = "block"
V_ONE_MILLION_ROWS = "one-million-rows"
V_TEN_THOUSAND_ROWS = "ten-thousand-rows"
V_YES = "yes"
V_NO = "no"

PERMISSIONS: dict[str, PermissionTypeDefinition] = {
    p.name: p
    for p in (
        PermissionTypeDefinition(
            name=P_DATA_ACCESS,
            granularity=Granularity.TABLE,
            values=(V_UNRESTRICTED, V_NO_SELF_SERVICE, V_BLOCK),
        ),
        PermissionTypeDefinition(
            name=P_DOWNLOAD_RESULTS,
            granularity=Granularity.TABLE,
            values=(V_ONE_MILLION_ROWS, V_TEN_THOUSAND_ROWS, V_NO),
        ),
        PermissionTypeDefinition(name=P_MANAGE_TABLE_METADATA, granularity=Granularity.TABLE, values=(V_YES, V_NO)),
        PermissionTypeDefinition(name=P_NATIVE_QUERY_EDITING, granularity=Granularity.DATABASE, values=(V_YES, V_NO)),
        PermissionTypeDefinition(name=P_MANAGE_DATABASE, granularity=Granularity.DATABASE, values=(V_YES, V_NO)),
    )
}

PERMISSION_TYPES: tuple[str, ...] = tuple(PERMISSIONS.keys())


def get_permission_type(perm_type: str) -> PermissionTypeDefinition:
    if (definition := PERMISSIONS.get(perm_type)) is None:
        raise InvalidPermissionType(f"Invalid permission type: {perm_type}")
    return definition


def require_granularity(perm_type: str, granularity: Granularity) -> PermissionTypeDefinition:
    definition = get_permission_type(perm_type)
    if definition.granularity != granularity:
        raise WrongGranularity(
            f"Permission type {perm_type} is a {definition.granularity.value}-level permission, "
            f"not a {granularity.value}-level permission"
        )
    return definition


def assert_value_matches_perm_type(perm_type: str, perm_value: str) -> None:
    if perm_value not in get_permission_type(perm_type).values:
        raise InvalidPermissionValue(f"Permission type {perm_type} cannot be set to {perm_value}")


def most_permissive_value(perm_type: str) -> str:
    """
    The *most* permissive value for a given permission type. This is the value superusers always resolve to.
    """
    return get_permission_type(perm_type).values[0]


def least_permissive_value(perm_type: str) -> str:
    """
    The *least* permissive value for a given permission type. This is used as a fallback when a user does not have any
    value for the permission in the database.
    """
    return get_permission_type(perm_type).values[-1]


def most_restrictive_non_block_value(perm_type: str) -> str:
    # block cannot exist at table granularity, so table rows materialized from a blocked database get this instead
    return next(v for v in reversed(get_permission_type(perm_type).values) if v != V_BLOCK)


def at_least_as_permissive(perm_type: str, value_1: str, value_2: str) -> bool:
    """
    Returns whether value_1 is at least as permissive as value_2 for the given permission type. Lower indices in the
    lattice are more permissive.
    """
    assert_value_matches_perm_type(perm_type, value_1)
    assert_value_matches_perm_type(perm_type, value_2)
    values = get_permission_type(perm_type).values
    return values.index(value_1) <= values.index(value_2)
