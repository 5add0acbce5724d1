#!/usr/bin/env python3
"""
Shared Thread auth -- operator command line.

Works directly against the auth database (DATABASE_URL), so it is the
recovery path when nobody can sign in to the staff pages.

Usage:
  python main.py create-user alice alice@example.org --admin
  python main.py set-role alice admin
  python main.py reset-password alice
  python main.py enroll-totp alice
  python main.py disable-totp alice
  python main.py revoke-sessions alice
  python main.py list-users
  python main.py sweep

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the auth database (default: sqlite:///sharedthread_auth.db)
  SECRET_KEY    Required unless DEBUG=true (see core/config.py)
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.credentials import MAX_PASSWORD_BYTES, hash_password, password_too_long
from auth.errors import AuthError
from auth.models import Role, User
from auth.service import AuthService
from auth.store import AuthStore
from auth.totp import generate_secret, provisioning_uri
from core.config import get_settings

_MIN_PASSWORD_LENGTH = 12


def _read_password(given: Optional[str]) -> Optional[str]:
    """Return the --password value, or prompt twice on the terminal."""
    if given:
        password = given
    else:
        password = getpass.getpass("  New password: ")
        if password != getpass.getpass("  Repeat password: "):
            print("  [!] Passwords do not match.")
            return None
    if len(password) < _MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {_MIN_PASSWORD_LENGTH} characters.")
        return None
    if password_too_long(password):
        print(f"  [!] Password must be at most {MAX_PASSWORD_BYTES} bytes.")
        return None
    return password


def _find_user(auth: AuthService, identifier: str) -> Optional[User]:
    user = auth.credentials.lookup(identifier)
    if user is None:
        print(f"  [!] No user matches '{identifier}'.")
    return user


def cmd_create_user(auth: AuthService, args: argparse.Namespace) -> int:
    password = _read_password(args.password)
    if password is None:
        return 1
    try:
        user = auth.create_local_user(
            args.username,
            args.email,
            password,
            role=Role.ADMIN if args.admin else Role.MEMBER,
            display_name=args.display_name or "",
            email_verified=True,
        )
    except IntegrityError:
        print("  [!] A user with that username or email already exists.")
        return 1
    print(f"  Created {user.role.value} '{user.username}' (id={user.id}).")
    return 0


def cmd_set_role(auth: AuthService, args: argparse.Namespace) -> int:
    user = _find_user(auth, args.identifier)
    if user is None:
        return 1
    role = Role.parse(args.role)
    if user.role == Role.ADMIN and role != Role.ADMIN and auth.store.count_active_admins() <= 1:
        print("  [!] Refusing to demote the last active admin.")
        return 1
    auth.store.update_user(user.id, role=role)
    print(f"  '{user.username}' is now {role.value}.")
    return 0


def cmd_reset_password(auth: AuthService, args: argparse.Namespace) -> int:
    user = _find_user(auth, args.identifier)
    if user is None:
        return 1
    password = _read_password(args.password)
    if password is None:
        return 1
    auth.store.update_user(user.id, hashed_password=hash_password(password))
    revoked = auth.sessions.revoke_all(user.id)
    print(f"  Password reset for '{user.username}'; {revoked} session(s) revoked.")
    return 0


def cmd_enroll_totp(auth: AuthService, args: argparse.Namespace) -> int:
    """Store a fresh TOTP secret immediately and print the otpauth URI.

    Unlike the API flow there is no confirmation step: the operator hands
    the URI (or QR code) to the account owner out of band.
    """
    user = _find_user(auth, args.identifier)
    if user is None:
        return 1
    secret = generate_secret()
    auth.store.update_user(user.id, totp_secret=secret)
    print(f"  Second factor enabled for '{user.username}'.")
    print(f"  Secret: {secret}")
    print(f"  URI:    {provisioning_uri(secret, user.email, auth.settings.totp_issuer)}")
    return 0


def cmd_disable_totp(auth: AuthService, args: argparse.Namespace) -> int:
    user = _find_user(auth, args.identifier)
    if user is None:
        return 1
    auth.store.update_user(user.id, totp_secret=None)
    print(f"  Second factor removed for '{user.username}'.")
    return 0


def cmd_revoke_sessions(auth: AuthService, args: argparse.Namespace) -> int:
    user = _find_user(auth, args.identifier)
    if user is None:
        return 1
    revoked = auth.sessions.revoke_all(user.id)
    print(f"  {revoked} session(s) revoked for '{user.username}'.")
    return 0


def cmd_list_users(auth: AuthService, args: argparse.Namespace) -> int:
    users = auth.store.list_users()
    if not users:
        print("  No users yet. Create the first admin with: python main.py create-user NAME EMAIL --admin")
        return 0
    for u in users:
        flags = [
            "active" if u.is_active else "inactive",
            "2fa" if u.second_factor_enabled else "no-2fa",
        ]
        if u.oauth_provider:
            flags.append(u.oauth_provider)
        role = u.role.value if u.role is not None else "?"
        print(f"  {u.id:>4}  {u.username:<24} {u.email:<32} {role:<7} {', '.join(flags)}")
    return 0


def cmd_sweep(auth: AuthService, args: argparse.Namespace) -> int:
    counts = auth.sweep()
    print("  Removed " + ", ".join(f"{n} {name}" for name, n in counts.items()) + ".")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sharedthread-auth",
        description="Operator commands for the Shared Thread auth database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user alice alice@example.org --admin
  python main.py reset-password alice@example.org
  python main.py enroll-totp alice
  DATABASE_URL=sqlite:///prod_auth.db python main.py sweep
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("create-user", help="Create a local password account")
    p.add_argument("username")
    p.add_argument("email")
    p.add_argument("--display-name", metavar="NAME", help="Shown in the UI (default: username)")
    p.add_argument("--admin", action="store_true", help="Create with the admin role")
    p.add_argument("--password", metavar="PASSWORD", help="Skip the interactive prompt (avoid in shared shells)")
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("set-role", help="Change a user's role")
    p.add_argument("identifier", metavar="USER", help="Username or email")
    p.add_argument("role", choices=[r.value for r in Role])
    p.set_defaults(func=cmd_set_role)

    p = sub.add_parser("reset-password", help="Set a new password and revoke every session")
    p.add_argument("identifier", metavar="USER", help="Username or email")
    p.add_argument("--password", metavar="PASSWORD", help="Skip the interactive prompt (avoid in shared shells)")
    p.set_defaults(func=cmd_reset_password)

    p = sub.add_parser("enroll-totp", help="Enable the second factor and print the otpauth URI")
    p.add_argument("identifier", metavar="USER", help="Username or email")
    p.set_defaults(func=cmd_enroll_totp)

    p = sub.add_parser("disable-totp", help="Remove the second factor (lost authenticator)")
    p.add_argument("identifier", metavar="USER", help="Username or email")
    p.set_defaults(func=cmd_disable_totp)

    p = sub.add_parser("revoke-sessions", help="Sign a user out everywhere")
    p.add_argument("identifier", metavar="USER", help="Username or email")
    p.set_defaults(func=cmd_revoke_sessions)

    p = sub.add_parser("list-users", help="List every account")
    p.set_defaults(func=cmd_list_users)

    p = sub.add_parser("sweep", help="Delete expired sessions, challenges and counters")
    p.set_defaults(func=cmd_sweep)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0

    settings = get_settings()
    store = AuthStore(settings.database_url)
    try:
        return args.func(AuthService.build(store, settings), args)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
