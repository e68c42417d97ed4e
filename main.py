#!/usr/bin/env python3
"""
Cosmos -- administration CLI for users, roles and the role registry.

Usage:
  python main.py create-user alice --role admin
  python main.py set-role alice user,moderator
  python main.py create-role moderator '{"violation": ["list", "update"], "moderation": ["view"]}'
  python main.py refresh-roles --clear-dynamic --bust-cache
  python main.py refresh-roles --full
  python main.py check <user_id> violation create

Configuration comes from the environment / .env exactly as for the API
(DATABASE_URL, REDIS_URL, SECRET_KEY or DEBUG=true, ...).
"""

import argparse
import asyncio
import getpass
import json
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from api.main import services_from_settings, shutdown_services
from auth.models import User
from auth.refresh import RefreshOptions
from auth.registry import InvalidStatementsError, RoleExistsError
from auth.tokens import hash_password
from core.config import get_settings


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cosmos",
        description="Manage Cosmos users, roles and the role registry.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("create-user", help="Create a local user account")
    p.add_argument("username")
    p.add_argument("--role", default="user", help="Comma-separated role string (default: user)")
    p.add_argument("--email", default=None)
    p.add_argument("--password", default=None, help="Prompted for when omitted")

    p = sub.add_parser("set-role", help="Replace a user's role string")
    p.add_argument("username")
    p.add_argument("role", help="Comma-separated role ids, each must be registered")

    p = sub.add_parser("create-role", help="Define a new dynamic role")
    p.add_argument("role_id")
    p.add_argument("statements", help='JSON object, e.g. {"violation": ["list"]}')

    p = sub.add_parser("refresh-roles", help="Reload the role registry under the refresh lock")
    p.add_argument("--clear-dynamic", action="store_true", help="Drop every non-static role first")
    p.add_argument("--bust-cache", action="store_true", help="Delete every cached role entry")
    p.add_argument("--no-cache", action="store_true", help="Skip reloading roles from the cache")
    p.add_argument("--no-db", action="store_true", help="Skip reloading roles from the database")
    p.add_argument("--reinitialize", action="store_true", help="Clear the one-shot initialized flag")
    p.add_argument("--full", action="store_true", help="Destructive full rebuild (overrides the flags above)")

    p = sub.add_parser("check", help="Check one permission for a user")
    p.add_argument("user_id")
    p.add_argument("domain")
    p.add_argument("action")

    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _create_user(services, args) -> int:
    password = args.password or getpass.getpass(f"Password for {args.username}: ")
    if not password:
        print("  [!] A password is required.")
        return 2
    try:
        user_id = services.user_store.create_user(
            User(
                username=args.username,
                role=args.role,
                email=args.email,
                hashed_password=hash_password(password),
            )
        )
    except IntegrityError:
        print(f"  [!] User '{args.username}' already exists.")
        return 1
    print(f"  Created user {args.username} ({user_id}) with role '{args.role}'.")
    return 0


async def _set_role(services, args) -> int:
    user = services.user_store.get_by_username(args.username)
    if user is None:
        print(f"  [!] No such user: {args.username}")
        return 1
    await services.registry.ensure_initialized()
    role_ids = [r.strip() for r in args.role.split(",") if r.strip()]
    unknown = [r for r in role_ids if r not in services.registry]
    if not role_ids or unknown:
        print(f"  [!] Unknown role(s): {', '.join(unknown) or '(empty)'}")
        return 1
    services.user_store.set_role(user.id, ",".join(role_ids))
    print(f"  {args.username} now has role '{','.join(role_ids)}'.")
    return 0


async def _create_role(services, args) -> int:
    try:
        statements = json.loads(args.statements)
    except ValueError:
        print("  [!] Statements must be a JSON object.")
        return 2
    await services.registry.ensure_initialized()
    try:
        normalized = await services.registry.define_role(args.role_id, statements)
    except InvalidStatementsError:
        print("  [!] Statements must map each resource to a non-empty list of actions.")
        return 2
    except RoleExistsError:
        print(f"  [!] Role '{args.role_id}' already exists.")
        return 1
    await services.refresher.bump_version()
    print(f"  Created role {args.role_id}: {json.dumps(normalized)}")
    return 0


async def _refresh_roles(services, args) -> int:
    if args.full:
        result = await services.refresher.force_full_rebuild()
    else:
        result = await services.refresher.refresh_roles(
            RefreshOptions(
                clear_dynamic=args.clear_dynamic,
                bust_cache=args.bust_cache,
                reload_cache=not args.no_cache,
                reload_db=not args.no_db,
                reinitialize=args.reinitialize,
            )
        )
    print(
        f"  Roles refreshed: removed={result.removed} cache={result.cache_loaded} "
        f"db={result.db_loaded} total={result.total}"
    )
    return 0


async def _check(services, args) -> int:
    allowed = await services.checker.check_permissions({args.domain: [args.action]}, user_id=args.user_id)
    print(f"  {args.user_id} {args.domain}:{args.action} -> {'allowed' if allowed else 'denied'}")
    return 0 if allowed else 1


_COMMANDS = {
    "create-user": _create_user,
    "set-role": _set_role,
    "create-role": _create_role,
    "refresh-roles": _refresh_roles,
    "check": _check,
}


async def _run(args) -> int:
    services = services_from_settings(get_settings())
    try:
        return await _COMMANDS[args.command](services, args)
    finally:
        await shutdown_services(services)


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
