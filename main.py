#!/usr/bin/env python3
"""
Context Broker - cross-context permission & retrieval service.
Lets isolated per-participant AI sessions in a shared room borrow each other's context
under explicit, audited permission.
"""

import argparse
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep contextbroker imports lazy (inside functions) so `--migrate` does not pull
# in the web stack.
#


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Cross-context permission & retrieval broker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the HTTP service (in-memory store, in-process transport)
  python main.py --serve

  # Run against Postgres + NATS
  STORE_BACKEND=postgres TRANSPORT_BACKEND=nats python main.py --serve --port 8080

  # Apply database migrations
  python main.py --migrate
        """,
    )
    parser.add_argument("--serve", action="store_true", help="Run the broker HTTP service")
    parser.add_argument("--migrate", action="store_true", help="Apply pending Postgres migrations and exit")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")

    args = parser.parse_args()

    try:
        if args.migrate:
            from contextbroker.store.migrate import main as migrate_main

            sys.exit(migrate_main([]))

        if args.serve:
            from contextbroker.api.server import run as run_server

            run_server(host=args.host, port=args.port)
            return

        parser.print_help()
        sys.exit(2)

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(1)


if __name__ == "__main__":
    main()
