import contextlib

from contextvars import ContextVar
from pydantic import BaseModel, ConfigDict
from types import MappingProxyType
from typing import Iterator, Mapping

from ..row_store import BaseRowStore
from .cache import UserPermissionsCache
from .permissions import assert_value_matches_perm_type

__all__ = [
    "RequestUser",
    "current_user",
    "as_current_user",
    "current_permissions_cache",
    "with_relevant_permissions_for_user",
    "OverlayKey",
    "additional_table_permission",
    "with_additional_table_permission",
]


# All request-scoped state lives in context variables, so it is task-local under asyncio and never leaks between
# concurrent requests.


class RequestUser(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    is_superuser: bool = False


_current_user: ContextVar[RequestUser | None] = ContextVar("current_user", default=None)
_permissions_cache: ContextVar[UserPermissionsCache | None] = ContextVar("permissions_cache", default=None)

OverlayKey = tuple[int, int, str]  # (db ID, table ID, permission type)

_additional_table_permissions: ContextVar[Mapping[OverlayKey, str]] = ContextVar(
    "additional_table_permissions", default=MappingProxyType({})
)


def current_user() -> RequestUser | None:
    return _current_user.get()


@contextlib.contextmanager
def as_current_user(user_id: int, is_superuser: bool = False) -> Iterator[RequestUser]:
    """
    Marks a user as the authenticated caller for the enclosed extent. Set by the host's request handling.
    """
    token = _current_user.set(user := RequestUser(user_id=user_id, is_superuser=is_superuser))
    try:
        yield user
    finally:
        _current_user.reset(token)


def current_permissions_cache() -> UserPermissionsCache | None:
    return _permissions_cache.get()


@contextlib.contextmanager
def with_relevant_permissions_for_user(store: BaseRowStore, user_id: int) -> Iterator[UserPermissionsCache]:
    """
    Installs a lazily-loaded cache of every permission row relevant to the user for the enclosed extent. The cache is
    only consulted when resolving permissions for the current caller, and only if it was built for that same user.
    """
    token = _permissions_cache.set(cache := UserPermissionsCache(store, user_id))
    try:
        yield cache
    finally:
        _permissions_cache.reset(token)


def additional_table_permission(db_id: int, table_id: int, perm_type: str) -> str | None:
    return _additional_table_permissions.get().get((db_id, table_id, perm_type))


@contextlib.contextmanager
def with_additional_table_permission(perm_type: str, db_id: int, table_id: int, perm_value: str) -> Iterator[None]:
    """
    Runs the enclosed extent with an additional, non-persisted table-level permission - for example, so that a user
    can read a table to which they only have sandboxed access. Only table-level resolution sees the overlay. Nested
    overlays compose; an inner overlay only shadows the key it sets.
    """
    assert_value_matches_perm_type(perm_type, perm_value)
    token = _additional_table_permissions.set(
        MappingProxyType({**_additional_table_permissions.get(), (db_id, table_id, perm_type): perm_value})
    )
    try:
        yield
    finally:
        _additional_table_permissions.reset(token)
