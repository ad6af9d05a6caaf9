__all__ = [
    "SERVICE_GROUP",
    "SERVICE_ARTIFACT",
    "SERVICE_NAME",
    "AUDIT_DB_ID",
]

SERVICE_GROUP = "analytics"
SERVICE_ARTIFACT = "data-permissions"
SERVICE_NAME = "Data Permissions Service"

# The internal audit database is never shown in the admin permissions graph unless explicitly requested.
AUDIT_DB_ID = 13371337
