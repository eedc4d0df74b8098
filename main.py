#!/usr/bin/env python3
"""
Staffgate operator CLI -- bootstrap an administrator and manage staff codes.

Usage:
  python main.py create-admin
  python main.py generate-codes
  python main.py generate-codes Engineering --count 5
  python main.py show-codes
  python main.py show-codes Finance

Environment variables (see core/config.py):
  DATABASE_URL              Store to operate on (default: auth/staffgate.db)
  DEFAULT_ADMIN_USERNAME    Username for create-admin (default: admin)
  DEFAULT_ADMIN_EMAIL       Email for create-admin (default: admin@example.com)
  DEFAULT_ADMIN_PASSWORD    Required by create-admin
"""

import argparse
import sys
from collections import defaultdict

from auth.errors import IdentityError
from auth.models import Identity
from auth.staff_codes import DEFAULT_DEPARTMENTS, StaffCodeGate
from auth.store import IdentityStore
from core.config import get_settings


def create_admin(store: IdentityStore, settings) -> int:
    """Create the default administrator unless one with that email already exists."""
    email = settings.default_admin_email.strip().lower()
    if store.get_by_email(email) is not None:
        print(f"  Admin {email} already exists, nothing to do.")
        return 0
    if len(settings.default_admin_password) < 8:
        print("  [!] DEFAULT_ADMIN_PASSWORD must be set to at least 8 characters.")
        return 1

    admin = Identity(
        username=settings.default_admin_username,
        email=email,
        role="admin",
        hashed_password=store.hash_password(settings.default_admin_password),
        email_verified=True,
    )
    uid = store.create_identity(admin)
    print(f"  Created admin {settings.default_admin_username} <{email}> (id {uid}).")
    return 0


def generate_codes(store: IdentityStore, department: str | None, count: int) -> int:
    gate = StaffCodeGate(store)
    departments = [department] if department else list(DEFAULT_DEPARTMENTS)
    for dept in departments:
        codes = gate.generate(dept, count)
        print(f"\n  {dept} ({len(codes)}):")
        for code in codes:
            print(f"    {code}")
    print()
    return 0


def show_codes(store: IdentityStore, department: str | None) -> int:
    gate = StaffCodeGate(store)
    grouped: dict[str, list[str]] = defaultdict(list)
    for record in gate.list_available_codes(department):
        grouped[record.department].append(record.code)

    if not grouped:
        print("  No unused staff codes.")
        return 0
    for dept in sorted(grouped):
        print(f"\n  {dept} ({len(grouped[dept])} available):")
        for code in grouped[dept]:
            print(f"    {code}")
    print()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="staffgate",
        description="Operator tasks for the Staffgate identity service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  DEFAULT_ADMIN_PASSWORD=change-me-now python main.py create-admin
  python main.py generate-codes
  python main.py generate-codes "Human Resources" --count 10
  python main.py show-codes Engineering
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("create-admin", help="Create the default administrator from settings")

    gen = sub.add_parser("generate-codes", help="Mint staff codes for one or every default department")
    gen.add_argument("department", nargs="?", default=None, help="Department name (default: all defaults)")
    gen.add_argument(
        "--count",
        type=int,
        default=5,
        metavar="N",
        help="Codes per department, 1-100 (default: 5)",
    )

    show = sub.add_parser("show-codes", help="List unused staff codes grouped by department")
    show.add_argument("department", nargs="?", default=None, help="Only this department")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return

    settings = get_settings()
    store = IdentityStore(settings.database_url, bcrypt_rounds=settings.bcrypt_rounds)
    try:
        if args.command == "create-admin":
            status = create_admin(store, settings)
        elif args.command == "generate-codes":
            status = generate_codes(store, args.department, args.count)
        else:
            status = show_codes(store, args.department)
    except IdentityError as exc:
        print(f"  [!] {exc.message}")
        status = 1
    finally:
        store.close()
    sys.exit(status)


if __name__ == "__main__":
    main()
