import argparse
import asyncio
import json
import sys

from typing import Any, Callable, Coroutine

from . import __version__
from .config import Config, get_config
from .db import get_db
from .logger import get_logger
from .policy_engine.exceptions import DataPermissionsError
from .policy_engine.graph import data_permissions_graph
from .policy_engine.mutation import PermissionMutator
from .policy_engine.permissions import PERMISSIONS
from .policy_engine.resolution import PermissionResolver
from .row_store import BaseRowStore


def print_json(x: Any) -> None:
    print(json.dumps(x, sort_keys=True))


def list_permissions_subcmd():
    """
    Sub-command of the list command, for listing all permission types with their granularity and values, from most to
    least permissive.
    """
    for p in PERMISSIONS.values():
        print(f"{p.name}\t{p.granularity.value}\t{','.join(p.values)}")


async def list_cmd(_config: Config, _db: BaseRowStore, args) -> int:
    """
    Command function to list entities defined by the permissions service.
    """
    match entity := getattr(args, "entity", None):
        case "permissions":
            list_permissions_subcmd()
        case _:
            print(f"Cannot list entity type: {entity}", file=sys.stderr)
            return 1
    return 0


async def graph_cmd(_config: Config, db: BaseRowStore, args) -> int:
    """
    Command to print the raw data permissions graph (as shown in the admin permissions editor) as JSON.
    """
    print_json(
        await data_permissions_graph(
            db,
            group_id=getattr(args, "group", None),
            db_id=getattr(args, "db", None),
            perm_type=getattr(args, "type", None),
            audit=getattr(args, "audit", False),
        )
    )
    return 0


async def user_permissions_cmd(config: Config, db: BaseRowStore, args) -> int:
    """
    Command to print the coalesced permissions summary for a single user as JSON. Useful for debugging what a user can
    actually do across all of their groups.
    """
    resolver = PermissionResolver(db, get_logger(config))
    print_json(
        await resolver.permissions_for_user(
            args.user_id, db_id=getattr(args, "db", None), perm_type=getattr(args, "type", None)
        )
    )
    return 0


async def set_database_permission_cmd(config: Config, db: BaseRowStore, args) -> int:
    """
    Command to set a permission for a group on a whole database.
    """
    await PermissionMutator(db, get_logger(config)).set_database_permission(
        args.group_id, args.db_id, args.perm_type, args.value
    )
    print("Done.")
    return 0


async def set_table_permission_cmd(config: Config, db: BaseRowStore, args) -> int:
    """
    Command to set a permission for a group on a single table.
    """
    await PermissionMutator(db, get_logger(config)).set_table_permission(
        args.group_id, args.table_id, args.perm_type, args.value
    )
    print("Done.")
    return 0


async def new_table_permissions_cmd(config: Config, db: BaseRowStore, args) -> int:
    """
    Command to set up permissions for a newly-discovered table, for each of the specified groups.
    """
    await PermissionMutator(db, get_logger(config)).set_new_table_permissions(
        args.group_ids, args.table_id, args.perm_type, args.value
    )
    print("Done.")
    return 0


async def _run_or_report(
    fn: Callable[[Config, BaseRowStore, Any], Coroutine[Any, Any, int]], config: Config, db: BaseRowStore, args
) -> int:
    """
    Helper function to run a command, printing any permissions error to stderr with exit code 1 instead of a traceback.
    """
    try:
        return await fn(config, db, args)
    except DataPermissionsError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


async def main(args: list[str] | None, db: BaseRowStore | None = None) -> int:
    cfg = get_config()
    args = args if args is not None else sys.argv[1:]
    db = db or get_db(cfg)

    parser = argparse.ArgumentParser(description="CLI for the data permissions service.")

    parser.add_argument("--version", "-v", action="version", version=__version__)

    subparsers = parser.add_subparsers()

    # list -------------------------------------------------------------------------------------------------------------
    l_sub = subparsers.add_parser("list")
    l_sub.set_defaults(func=list_cmd)
    l_sub.add_argument("entity", type=str, choices=("permissions",), help="The type of entity to list.")
    # ------------------------------------------------------------------------------------------------------------------

    # graph / user-permissions -----------------------------------------------------------------------------------------
    g_sub = subparsers.add_parser("graph", help="Prints the data permissions graph for all (or one) group(s).")
    g_sub.set_defaults(func=graph_cmd)
    g_sub.add_argument("--group", type=int, help="Only include permissions for this group ID.")
    g_sub.add_argument("--db", type=int, help="Only include permissions for this database ID.")
    g_sub.add_argument("--type", type=str, help="Only include permissions of this type.")
    g_sub.add_argument("--audit", action="store_true", help="Include permissions for the audit database.")

    u_sub = subparsers.add_parser("user-permissions", help="Prints the effective permissions of a user.")
    u_sub.set_defaults(func=user_permissions_cmd)
    u_sub.add_argument("user_id", type=int, help="User ID")
    u_sub.add_argument("--db", type=int, help="Only include permissions for this database ID.")
    u_sub.add_argument("--type", type=str, help="Only include permissions of this type.")
    # ------------------------------------------------------------------------------------------------------------------

    # set --------------------------------------------------------------------------------------------------------------
    sd_sub = subparsers.add_parser("set-database-permission", help="Sets a group's permission on a whole database.")
    sd_sub.set_defaults(func=set_database_permission_cmd)
    sd_sub.add_argument("group_id", type=int, help="Group ID")
    sd_sub.add_argument("db_id", type=int, help="Database ID")
    sd_sub.add_argument("perm_type", type=str, help="Permission type (use `data_perms list permissions` to see them)")
    sd_sub.add_argument("value", type=str, help="Permission value")

    st_sub = subparsers.add_parser("set-table-permission", help="Sets a group's permission on a single table.")
    st_sub.set_defaults(func=set_table_permission_cmd)
    st_sub.add_argument("group_id", type=int, help="Group ID")
    st_sub.add_argument("table_id", type=int, help="Table ID")
    st_sub.add_argument("perm_type", type=str, help="Permission type (use `data_perms list permissions` to see them)")
    st_sub.add_argument("value", type=str, help="Permission value")

    nt_sub = subparsers.add_parser(
        "new-table-permissions",
        help="Sets permissions for a new table in each group, inheriting the schema's value where it is uniform.",
    )
    nt_sub.set_defaults(func=new_table_permissions_cmd)
    nt_sub.add_argument("table_id", type=int, help="Table ID")
    nt_sub.add_argument("perm_type", type=str, help="Permission type (use `data_perms list permissions` to see them)")
    nt_sub.add_argument("value", type=str, help="Default permission value, used where the schema is not uniform")
    nt_sub.add_argument("group_ids", type=int, nargs="+", help="Group IDs")
    # ------------------------------------------------------------------------------------------------------------------

    p_args = parser.parse_args(args)
    if not getattr(p_args, "func", None):
        p_args = parser.parse_args(
            (
                *args,
                "--help",
            )
        )

    return await _run_or_report(p_args.func, cfg, db, p_args)


def main_sync(args: list[str] | None = None):  # pragma: no cover
    return asyncio.run(main(args))


if __name__ == "__main__":  # pragma: no cover
    exit(main_sync(sys.argv[1:]))
