#!/usr/bin/env python3
"""
iProf Tutor API - server and admin-session tooling.
"""

import argparse
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep iprof imports lazy (inside functions) so the token helpers start
# without loading the web stack.
#


def issue_token(email: str) -> int:
    from iprof.auth.admin_token import issue_admin_token
    from iprof.auth.config import load_auth_config

    cfg = load_auth_config()
    if not cfg.is_admin_email(email):
        print(f"Refusing to issue a token: {email} is not in ADMIN_EMAILS", file=sys.stderr)
        return 1
    token = issue_admin_token(cfg, email)
    if not token:
        print("ADMIN_SESSION_SECRET is not set", file=sys.stderr)
        return 1
    print(token)
    return 0


def verify_token(token: str) -> int:
    from iprof.auth.admin_token import admin_email_from_token, verify_admin_token
    from iprof.auth.config import load_auth_config

    cfg = load_auth_config()
    if not verify_admin_token(cfg, token):
        print("invalid")
        return 1
    print(f"valid: {admin_email_from_token(cfg, token) or '(legacy token)'}")
    return 0


def hash_admin_password() -> int:
    import getpass

    from iprof.auth.local import hash_password

    if sys.stdin.isatty():
        password = getpass.getpass("Admin password: ")
    else:
        password = sys.stdin.readline().rstrip("\n")
    if not password:
        print("Empty password", file=sys.stderr)
        return 1
    print(hash_password(password))
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="iProf Tutor API server and admin-session tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the API server
  python main.py --serve --port 8080

  # Mint an admin session token (needs ADMIN_SESSION_SECRET and ADMIN_EMAILS)
  python main.py --issue-admin-token admin@example.com

  # Check a token from a browser cookie
  python main.py --verify-admin-token <token>

  # Produce a value for ADMIN_PASSWORD_HASH
  echo 's3cret' | python main.py --hash-admin-password
        """,
    )
    parser.add_argument("--serve", action="store_true", help="Run the HTTP API server")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")
    parser.add_argument("--issue-admin-token", metavar="EMAIL", help="Print a signed admin session token")
    parser.add_argument("--verify-admin-token", metavar="TOKEN", help="Check an admin session token")
    parser.add_argument(
        "--hash-admin-password",
        action="store_true",
        help="Read a password (prompt or stdin) and print its bcrypt hash",
    )

    args = parser.parse_args()

    if args.serve:
        from iprof.api.app import run

        run(host=args.host, port=args.port)
        return 0

    if args.issue_admin_token:
        return issue_token(args.issue_admin_token)

    if args.verify_admin_token:
        return verify_token(args.verify_admin_token)

    if args.hash_admin_password:
        return hash_admin_password()

    # No arguments provided
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
