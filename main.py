#!/usr/bin/env python3
"""
Story archive - dated short stories with tags and favourites.
"""

import argparse
import logging
import os
import sys

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
)

#
# NOTE: Keep archive imports lazy (inside main) so `--migrate` does not import the web stack.
#


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Story archive service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Apply database migrations
  python main.py --migrate

  # Run the HTTP server
  python main.py --serve --port 3000
        """,
    )
    parser.add_argument("--serve", action="store_true", help="Run the HTTP server")
    parser.add_argument("--migrate", action="store_true", help="Apply pending database migrations and exit")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=3000, help="Server listen port (default: 3000)")

    args = parser.parse_args()

    if args.migrate:
        from archive.store.migrate import main as migrate_main

        code = migrate_main()
        if code or not args.serve:
            sys.exit(code)

    if args.serve:
        from archive.api.server import run

        run(host=args.host, port=args.port)
        return

    parser.print_help()


if __name__ == "__main__":
    main()
