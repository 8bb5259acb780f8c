"""
Create a RetailMaster user from the command line -- typically the first admin,
since every later account can be created through the API by that admin.

Run from project root:
  python -m scripts.create_admin USERNAME EMAIL [--role admin|staff|user]

The password is prompted for (twice) unless --password is given.
"""

import argparse
import getpass
import sys

from auth.errors import AuthError
from auth.models import Role, User
from auth.passwords import PasswordVerifier, check_password_strength
from auth.service import EMAIL_PATTERN, USERNAME_PATTERN
from auth.store import UserStore
from core.config import get_settings


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Create a RetailMaster user account.")
    parser.add_argument("username", help="3-20 letters, digits or underscores")
    parser.add_argument("email")
    parser.add_argument("--role", default=Role.ADMIN.value, choices=[r.value for r in Role])
    parser.add_argument("--password", help="Password (prompted for if omitted)")
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    args = parser.parse_args(argv)

    if not USERNAME_PATTERN.match(args.username):
        print("Username must be 3-20 letters, digits or underscores.", file=sys.stderr)
        return 1
    if not EMAIL_PATTERN.match(args.email):
        print("Invalid email address.", file=sys.stderr)
        return 1

    password = args.password
    if password is None:
        password = getpass.getpass("Password: ")
        if getpass.getpass("Repeat password: ") != password:
            print("Passwords do not match.", file=sys.stderr)
            return 1

    settings = get_settings()
    store = UserStore(args.database_url or settings.database_url)
    try:
        check_password_strength(password)
        verifier = PasswordVerifier(rounds=settings.bcrypt_rounds)
        user_id = store.create_user(
            User(
                username=args.username,
                email=args.email,
                password_hash=verifier.hash(password),
                role=Role(args.role),
            )
        )
    except AuthError as exc:
        print(exc.message, file=sys.stderr)
        return 1
    finally:
        store.close()

    print(f"Created user '{args.username}' (id {user_id}) with role '{args.role}'.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
