__all__ = [
    "DataPermissionsError",
    "InvalidPermissionType",
    "InvalidPermissionValue",
    "WrongGranularity",
    "CrossDatabaseMutation",
    "IllegalBlockAssignment",
    "UnknownTable",
]


class DataPermissionsError(Exception):
    pass


class InvalidPermissionType(DataPermissionsError):
    pass


class InvalidPermissionValue(DataPermissionsError):
    pass


class WrongGranularity(DataPermissionsError):
    pass


class CrossDatabaseMutation(DataPermissionsError):
    pass


class IllegalBlockAssignment(DataPermissionsError):
    pass


class UnknownTable(DataPermissionsError):
    pass
