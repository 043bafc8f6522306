#!/usr/bin/env python3
"""
gatekeeper -- Admin CLI for the authentication and access-control core.

Usage:
  python main.py seed --admin-email admin@example.com
  python main.py users --search jo --sort lastLogin:desc --filter status:Active
  python main.py roles --sort name
  python main.py login john@example.com
  python main.py authorize <TOKEN> Users Delete
  python main.py logout <TOKEN>
  python main.py purge

The CLI always uses a SQL backend (sessions must survive between invocations).
It reads DATABASE_URL and falls back to a gatekeeper.db SQLite file in the
working directory.

Environment variables:
  SECRET_KEY     Required unless DEBUG=true. Keys session token digests.
  DATABASE_URL   Any SQLAlchemy URL, e.g. postgresql://user:pw@host/db
  LOG_LEVEL      DEBUG, INFO (default), WARNING, ERROR
"""

import argparse
import getpass
import json
import logging
import sys
from typing import Optional

from auth.service import AuthService
from core.config import get_settings
from core.errors import GatekeeperError

_DEFAULT_CLI_DB = "sqlite:///gatekeeper.db"

logger = logging.getLogger("gatekeeper.cli")


def _read_password(given: Optional[str], confirm: bool = False) -> str:
    if given:
        return given
    password = getpass.getpass("  Password: ")
    if confirm and getpass.getpass("  Confirm password: ") != password:
        raise SystemExit("  [!] Passwords do not match.")
    return password


def _print_page(page, as_json: bool, columns: list[str]) -> None:
    if as_json:
        print(page.model_dump_json(indent=2))
        return
    rows = [row.model_dump(mode="json") for row in page.data]
    widths = {c: max([len(c)] + [len(str(r.get(c) or "")) for r in rows]) for c in columns}
    print("  " + "  ".join(c.ljust(widths[c]) for c in columns))
    print("  " + "  ".join("─" * widths[c] for c in columns))
    for r in rows:
        print("  " + "  ".join(str(r.get(c) or "").ljust(widths[c]) for c in columns))
    last = (page.total + page.page_size - 1) // page.page_size or 1
    print(f"\n  Page {page.page} of {last} ({page.total} total)")


def _add_list_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--page", type=int, default=1, help="Page number (default: 1)")
    parser.add_argument("--page-size", type=int, default=None, help="Rows per page")
    parser.add_argument("--search", default="", help="Case-insensitive substring match")
    parser.add_argument("--sort", default="", metavar="FIELD[:asc|desc]", help="Sort column and direction")
    parser.add_argument("--filter", default="", metavar="FIELD:VALUE", help="Exact match on one field")
    parser.add_argument("--json", action="store_true", help="Output structured JSON")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gatekeeper",
        description="Administer users, roles and sessions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--database-url", default=None, metavar="URL", help="SQLAlchemy database URL")
    sub = parser.add_subparsers(dest="command", required=True)

    seed = sub.add_parser("seed", help="Install the stock roles and an Admin user")
    seed.add_argument("--admin-email", required=True)
    seed.add_argument("--admin-name", default="Administrator")
    seed.add_argument("--admin-password", default=None, help="Prompted for when omitted")

    _add_list_options(sub.add_parser("users", help="List users"))
    _add_list_options(sub.add_parser("roles", help="List roles"))

    login = sub.add_parser("login", help="Log in and print a session token")
    login.add_argument("email")
    login.add_argument("--password", default=None, help="Prompted for when omitted")
    login.add_argument("--source", default="127.0.0.1", help="Source address recorded with the attempt")

    authorize = sub.add_parser("authorize", help="Check whether a token may act on a resource")
    authorize.add_argument("token")
    authorize.add_argument("resource", help="Users, Roles, Content or Settings")
    authorize.add_argument("action", help="Create, Read, Update or Delete")

    logout = sub.add_parser("logout", help="Revoke a session token")
    logout.add_argument("token")

    sub.add_parser("purge", help="Delete expired sessions and aged-out login attempts")
    return parser


def _run(service: AuthService, args: argparse.Namespace) -> int:
    if args.command == "seed":
        created = service.seed_default_roles()
        print(f"  {created} default role(s) installed.")
        password = _read_password(args.admin_password, confirm=True)
        user = service.create_user(
            {"name": args.admin_name, "email": args.admin_email, "role": "Admin", "password": password}
        )
        print(f"  Created admin {user.email} (id={user.id}).")
    elif args.command == "users":
        page = service.list_users(args.page, args.page_size, args.search, args.sort, args.filter)
        _print_page(page, args.json, ["id", "name", "email", "role", "status", "last_login"])
    elif args.command == "roles":
        page = service.list_roles(args.page, args.page_size, args.search, args.sort, args.filter)
        if args.json:
            _print_page(page, True, [])
        else:
            for role in page.data:
                grants = ", ".join(f"{p.resource.value}: {'/'.join(a.value for a in p.actions)}" for p in role.permissions)
                print(f"  {role.id:>3}  {role.name:<16} {role.color}  {grants or '(no permissions)'}")
            print(f"\n  {page.total} role(s)")
    elif args.command == "login":
        token = service.login(args.email, _read_password(args.password), args.source)
        print(token)
    elif args.command == "authorize":
        allowed = service.authorize(args.token, args.resource, args.action)
        print("allowed" if allowed else "denied")
        return 0 if allowed else 1
    elif args.command == "logout":
        service.logout(args.token)
        print("  Logged out.")
    elif args.command == "purge":
        print(json.dumps(service.purge_expired()))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    database_url = args.database_url or settings.database_url or _DEFAULT_CLI_DB
    service = AuthService.from_settings(settings.model_copy(update={"database_url": database_url}))
    try:
        return _run(service, args)
    except GatekeeperError as exc:
        logger.debug("Command %s failed: %s", args.command, exc.code)
        print(f"  [!] {exc.message}", file=sys.stderr)
        return 2
    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(main())
