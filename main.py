#!/usr/bin/env python3
"""
Global Trading Tycoon - authentication server.
Local accounts plus Google, Facebook and Twitter sign-in over one user table.
"""

import argparse
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

logger = logging.getLogger("tycoon")


def migrate() -> int:
    """Apply pending SQL migrations to the configured Postgres database."""
    from tycoon.storage.config import load_database_config
    from tycoon.storage.migrate import apply_migrations

    dsn = load_database_config().dsn
    if not dsn:
        print("Postgres not configured (set POSTGRES_DSN or POSTGRES_* env vars).", file=sys.stderr)
        return 2
    versions = apply_migrations(dsn=dsn)
    if versions:
        print(f"Applied {len(versions)} migration(s): {', '.join(versions)}")
    else:
        print("No pending migrations.")
    return 0


def main(argv=None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Run the Tycoon auth server or manage its database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve the auth API on localhost:5000
  python main.py --serve

  # Apply database migrations
  python main.py --migrate
        """,
    )
    parser.add_argument("--serve", action="store_true", help="Run the HTTP server")
    parser.add_argument("--migrate", action="store_true", help="Apply pending Postgres migrations and exit")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=5000, help="Server listen port (default: 5000)")

    args = parser.parse_args(argv)

    try:
        if args.migrate:
            return migrate()

        if args.serve:
            from tycoon.api.server import run

            run(host=args.host, port=args.port)
            return 0

        parser.print_help()
        return 1
    except Exception as e:
        logger.error("Command failed: %s", e)
        raise


if __name__ == "__main__":
    sys.exit(main())
