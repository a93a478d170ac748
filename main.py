#!/usr/bin/env python3
"""
authcore -- maintenance commands for the authentication core.

Usage:
  python main.py purge
  python main.py purge --revoked-older-than 7
  python main.py create-admin --email admin@example.com --username admin
  python main.py deactivate 42

Environment variables (see core/config.py for the full list):
  JWT_SECRET     Signing secret, at least 32 characters. Required unless DEBUG=true.
  DATABASE_URL   SQLAlchemy URL of the user / refresh-token database.
  REDIS_URL      Redis URL for the blacklist and login counters (optional).

purge is meant for cron: it only deletes refresh-token rows that can no longer
authenticate anything, so it is safe to run against a live database.
"""

import argparse
import getpass
import logging
import sys
from datetime import timedelta
from typing import Optional

from auth.errors import AuthCoreError
from auth.session import SessionManager, create_session_manager
from core.config import get_settings

logger = logging.getLogger("authcore.cli")


def _cmd_purge(manager: SessionManager, args: argparse.Namespace) -> int:
    retention = timedelta(days=args.revoked_older_than) if args.revoked_older_than is not None else None
    expired, revoked, cache_entries = manager.purge_stale_sessions(retention)
    print(f"  Removed {expired} expired and {revoked} revoked refresh token(s).")
    if cache_entries:
        print(f"  Dropped {cache_entries} expired cache entr{'y' if cache_entries == 1 else 'ies'}.")
    return 0


def _cmd_create_admin(manager: SessionManager, args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Password: ")
    if not args.password and getpass.getpass("Repeat password: ") != password:
        print("  [!] Passwords do not match.")
        return 1
    user = manager.create_admin(args.email, args.username, password)
    print(f"  Created admin '{user.username}' (id {user.id}).")
    return 0


def _cmd_deactivate(manager: SessionManager, args: argparse.Namespace) -> int:
    manager.deactivate_user(args.user_id)
    print(f"  User {args.user_id} deactivated; refresh tokens revoked.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authcore",
        description="Maintenance commands for the authcore token service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py purge
  python main.py purge --revoked-older-than 7
  python main.py create-admin --email admin@example.com --username admin
  python main.py deactivate 42
        """,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log at DEBUG level",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    purge = sub.add_parser("purge", help="Delete expired and long-revoked refresh tokens")
    purge.add_argument(
        "--revoked-older-than",
        type=int,
        default=None,
        metavar="DAYS",
        help="Retention for revoked tokens in days (default: REVOKED_TOKEN_RETENTION_DAYS)",
    )
    purge.set_defaults(handler=_cmd_purge)

    admin = sub.add_parser("create-admin", help="Create an admin account")
    admin.add_argument("--email", required=True, help="Admin email address")
    admin.add_argument("--username", required=True, help="Admin username")
    admin.add_argument(
        "--password",
        default=None,
        help="Password (prompted for when omitted; avoid passing it on shared machines)",
    )
    admin.set_defaults(handler=_cmd_create_admin)

    deactivate = sub.add_parser("deactivate", help="Deactivate a user and revoke their refresh tokens")
    deactivate.add_argument("user_id", type=int, metavar="USER_ID", help="Numeric user id")
    deactivate.set_defaults(handler=_cmd_deactivate)

    return parser


def main(argv: Optional[list[str]] = None, manager: Optional[SessionManager] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if not getattr(args, "handler", None):
        parser.print_help()
        return 0

    owns_manager = manager is None
    try:
        if manager is None:
            manager = create_session_manager(get_settings())
        return args.handler(manager, args)
    except AuthCoreError as exc:
        logger.error("%s failed: %s", args.command, exc.message)
        print(f"  [!] {exc.message}")
        return 1
    except ValueError as exc:
        # pydantic-settings raises ValueError subclasses for bad configuration.
        print(f"  [!] Configuration error: {exc}")
        return 2
    finally:
        if owns_manager and manager is not None:
            manager.close()


if __name__ == "__main__":
    sys.exit(main())
