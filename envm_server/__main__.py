"""
Entrypoint for the environment manager HTTP server.

Usage:
    python -m envm_server [--host HOST] [--port PORT]
    envm-server [OPTIONS]  (after pip install)

All other settings come from ENVM_* environment variables.
"""

import argparse
import logging
import sys

import uvicorn

from envm_common.config import Settings


def main(argv: list[str] | None = None) -> int:
    settings = Settings.from_env()

    parser = argparse.ArgumentParser(description="Environment Manager HTTP server")
    parser.add_argument(
        "--host", default=settings.host, help="Bind address (default: ENVM_HOST env or 0.0.0.0)"
    )
    parser.add_argument(
        "--port", type=int, default=settings.port, help="Bind port (default: ENVM_PORT env or 8080)"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    uvicorn.run(
        "envm_server.app:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
