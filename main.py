#!/usr/bin/env python3
"""
learngate -- operator command line.

Usage:
  python main.py create-admin admin@example.com --name "Site Admin"
  python main.py create-admin admin@example.com --name "Site Admin" --generate-password
  python main.py unlock student@example.com
  python main.py cleanup

Reads the same environment / .env settings as the API (DATABASE_URL,
SECRET_KEY, DEBUG, ...), so it operates on the API's database.
"""

import argparse
import asyncio
import getpass
import logging
import sys

from auth.errors import Err
from auth.models import ClientContext
from auth.service import AuthService, build_auth_service
from core.config import get_settings

# Audit rows written by the CLI are attributed to this pseudo client.
_CLI_CLIENT = ClientContext(ip_address="127.0.0.1", user_agent="learngate-cli")


def _prompt_password() -> str:
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Confirm password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


async def _create_admin(service: AuthService, email: str, name: str, generate: bool) -> int:
    password = service.policy.generate() if generate else _prompt_password()
    result = await service.create_account(email, password, name, _CLI_CLIENT, role="admin")
    if isinstance(result, Err):
        print(f"  [!] {result.message}")
        for line in result.feedback:
            print(f"      - {line}")
        return 1
    user = result.value
    # Admins created here never received a link; the operator vouches for the address.
    service.credentials.set_email_verified(user.id, user.created_at)
    print(f"  Admin account created: {user.email} (id {user.id})")
    if generate:
        print(f"  Generated password: {password}")
        print("  Store it now; it is not shown again.")
    return 0


async def _unlock(service: AuthService, email: str) -> int:
    user = service.credentials.get_by_email(email.strip().lower())
    if user is None:
        print(f"  [!] No account for {email}.")
        return 1
    service.lockout.unlock(user.id)
    print(f"  Unlocked {user.email}.")
    return 0


async def _cleanup(service: AuthService) -> int:
    report = await service.run_maintenance()
    print(
        f"  Removed {report['sessions']} expired session(s) and "
        f"{report['audit_events']} audit event(s) past retention."
    )
    return 0


async def _run(args: argparse.Namespace) -> int:
    service = build_auth_service(get_settings())
    try:
        if args.command == "create-admin":
            return await _create_admin(service, args.email, args.name, args.generate_password)
        if args.command == "unlock":
            return await _unlock(service, args.email)
        return await _cleanup(service)
    finally:
        await service.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="learngate",
        description="learngate operator tools.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    create = subparsers.add_parser("create-admin", help="Create an administrator account.")
    create.add_argument("email", help="Email address of the new admin.")
    create.add_argument("--name", required=True, help="Display name.")
    create.add_argument(
        "--generate-password",
        action="store_true",
        help="Generate a policy-compliant password instead of prompting for one.",
    )

    unlock = subparsers.add_parser("unlock", help="Clear a failed-login lockout.")
    unlock.add_argument("email", help="Email address of the locked account.")

    subparsers.add_parser("cleanup", help="Remove expired sessions and audit events past retention.")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
