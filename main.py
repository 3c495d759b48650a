#!/usr/bin/env python3
"""
SessionWarden -- operator command line.

Usage:
  python main.py create-user --username alice --email alice@example.com
  python main.py create-user --username alice --email alice@example.com --password 'secret...'
  python main.py disable-user alice@example.com
  python main.py check-config
  python main.py serve --host 127.0.0.1 --port 8000

Configuration comes from the environment / .env file (see core/config.py).
SECRET_KEY must be set unless DEBUG=true.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.models import User
from auth.store import UserStore
from auth.tokens import MAX_PASSWORD_BYTES, hash_password
from cache.store import build_session_store
from core.config import get_settings
from core.errors import ConfigurationError, DirectoryError, IdentifierTaken, StoreUnavailable


def _create_user(args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Password: ")
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 1
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        print(f"  [!] Password must be at most {MAX_PASSWORD_BYTES} bytes.")
        return 1
    settings = get_settings()
    store = UserStore(settings.database_url)
    try:
        user_id = store.create_user(
            User(username=args.username, email=args.email, hashed_password=hash_password(password))
        )
    except IdentifierTaken:
        print(f"  [!] '{args.username}' or '{args.email}' is already registered.")
        return 1
    except ValueError as exc:
        print(f"  [!] {exc}")
        return 1
    finally:
        store.close()
    print(f"  Created user {args.username} (id={user_id}).")
    return 0


def _set_active(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = UserStore(settings.database_url)
    try:
        user = store.find_by_identifier(args.identifier)
        if user is None:
            print(f"  [!] No user matches '{args.identifier}'.")
            return 1
        store.set_active(user.id, args.active)
    finally:
        store.close()
    state = "enabled" if args.active else "disabled"
    print(f"  User {user.username} (id={user.id}) {state}.")
    if not args.active:
        _revoke_session(settings, str(user.id))
    return 0


def _revoke_session(settings, identity: str) -> None:
    sessions = build_session_store(settings)
    try:
        revoked = sessions.revoke(identity)
    except StoreUnavailable:
        print("  [!] Session store unavailable: an open session stays valid until its tokens expire.")
        return
    finally:
        sessions.close()
    if revoked:
        print("  Active session revoked.")


def _check_config(args: argparse.Namespace) -> int:
    settings = get_settings()
    print("SessionWarden configuration")
    print("─" * 40)
    print(f"  debug:             {settings.debug}")
    print(f"  access TTL:        {settings.access_token_ttl_seconds}s")
    print(f"  refresh TTL:       {settings.refresh_token_ttl_seconds}s")
    print(f"  refresh lookup:    {settings.refresh_lookup}")
    print(f"  degraded login:    {'allowed' if settings.allow_degraded_login else 'refused'}")

    users = UserStore(settings.database_url)
    try:
        print(f"  user directory:    {'ok' if users.ping() else 'ERROR'}")
    finally:
        users.close()

    store = build_session_store(settings)
    try:
        print(f"  session store:     {'ok' if store.ping() else 'unavailable (degraded mode)'}")
    finally:
        store.close()
    return 0


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="sessionwarden",
        description="Operator tooling for the SessionWarden authentication service.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Add a user to the directory")
    create.add_argument("--username", required=True)
    create.add_argument("--email", required=True)
    create.add_argument(
        "--password",
        default=None,
        help="Plaintext password. Prompted for when omitted (preferred: keeps it out of shell history).",
    )
    create.set_defaults(func=_create_user)

    for name, active in (("disable-user", False), ("enable-user", True)):
        toggle = sub.add_parser(name, help=f"{'Allow' if active else 'Block'} password login for a user")
        toggle.add_argument("identifier", help="Username or email")
        toggle.set_defaults(func=_set_active, active=active)

    check = sub.add_parser("check-config", help="Validate settings and check both backing stores")
    check.set_defaults(func=_check_config)

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(func=_serve)

    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except ConfigurationError as exc:
        print(f"  [!] Configuration error: {exc}")
        return 2
    except DirectoryError as exc:
        print(f"  [!] User directory error: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
