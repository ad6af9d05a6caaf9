from bento_lib.config.pydantic import BentoFastAPIBaseConfig
from fastapi import Depends
from functools import lru_cache
from typing import Annotated

from .constants import SERVICE_GROUP, SERVICE_ARTIFACT, SERVICE_NAME, AUDIT_DB_ID

__all__ = [
    "Config",
    "get_config",
    "ConfigDependency",
]


class Config(BentoFastAPIBaseConfig):
    # the superclass has this as a required field - permissions are resolved in-process here, so it is unused
    bento_authz_service_url: str = ""

    service_id: str = f"{SERVICE_GROUP}:{SERVICE_ARTIFACT}"
    service_name: str = SERVICE_NAME

    database_uri: str = "postgres://localhost:5432"

    # Rows for this database are hidden from the admin permissions graph unless audit=True is passed
    audit_db_id: int = AUDIT_DB_ID


@lru_cache()
def get_config() -> Config:
    return Config()


ConfigDependency = Annotated[Config, Depends(get_config)]
