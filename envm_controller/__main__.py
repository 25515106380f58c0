"""
Standalone entrypoint for running the environment manager controller.

Runs the reconciler and the backup scheduler without the HTTP server, e.g.
on a host where webhooks are not needed and changes arrive via the admin
CLI or a periodic reconcile.

Usage:
    python -m envm_controller [OPTIONS]
    envm-controller [OPTIONS]  (after pip install)

Environment Variables:
    ENVM_DATA_DIR: Config repository directory (default: ./data)
    ENVM_GIT_REMOTE: Remote URL for push/pull (default: none)
    ENVM_GIT_BRANCH: Branch to push and pull (default: main)
    ENVM_NETWORK: Docker network for managed containers (default: none)
    ENVM_WORKER_IMAGE: Backup worker image (default: alpine:latest)
    ENVM_WORKER_TIMEOUT: Seconds before a worker is killed (default: 3600)
    ENVM_RECONCILE_INTERVAL: Seconds between reconciliation passes (default: 0, disabled)
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from envm_common.config import Settings
from envm_controller.backup import BackupScheduler
from envm_controller.container_runtime import ContainerRuntime
from envm_controller.reconciler import Reconciler
from envm_persistence.git_repository import GitRepository
from envm_persistence.yaml_store import YAMLConfigStore

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="Environment Manager Controller - reconciles docker with the config repository",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  ENVM_DATA_DIR            Config repository directory (default: ./data)
  ENVM_GIT_REMOTE          Remote URL for push/pull (default: none)
  ENVM_GIT_BRANCH          Branch to push and pull (default: main)
  ENVM_NETWORK             Docker network for managed containers
  ENVM_WORKER_IMAGE        Backup worker image (default: alpine:latest)
  ENVM_WORKER_TIMEOUT      Seconds before a worker is killed (default: 3600)
  ENVM_RECONCILE_INTERVAL  Seconds between reconciliation passes (default: 0)

Note: Command-line arguments override environment variables.

Examples:
  # Reconcile once at startup, then run backup schedules only
  envm-controller

  # Also reconcile every 30 seconds
  envm-controller --interval 30

  # Use a custom data directory with debug logging
  envm-controller --data-dir /srv/envm --log-level DEBUG
        """,
    )

    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Config repository directory (default: ENVM_DATA_DIR env or ./data)",
    )

    parser.add_argument(
        "--network",
        type=str,
        default=None,
        help="Docker network for managed containers (default: ENVM_NETWORK env)",
    )

    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between reconciliation passes, 0 disables (default: ENVM_RECONCILE_INTERVAL env or 0)",
    )

    parser.add_argument(
        "--worker-image",
        type=str,
        default=None,
        help="Backup worker image (default: ENVM_WORKER_IMAGE env or alpine:latest)",
    )

    parser.add_argument(
        "--worker-timeout",
        type=float,
        default=None,
        help="Seconds before a backup worker is killed (default: ENVM_WORKER_TIMEOUT env or 3600)",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> Settings:
    """
    Merge environment settings with command-line overrides.

    Args:
        args: Parsed command-line arguments

    Returns:
        Effective settings
    """
    settings = Settings.from_env()

    if args.data_dir is not None:
        settings.data_dir = args.data_dir
    if args.network is not None:
        settings.network = args.network
    if args.worker_image is not None:
        settings.worker_image = args.worker_image

    if args.interval is not None:
        if args.interval < 0:
            logger.warning(
                f"Invalid interval={args.interval}, using {settings.reconcile_interval}"
            )
        else:
            settings.reconcile_interval = args.interval

    if args.worker_timeout is not None:
        if args.worker_timeout <= 0:
            logger.warning(
                f"Invalid worker timeout={args.worker_timeout}, using {settings.worker_timeout}"
            )
        else:
            settings.worker_timeout = args.worker_timeout

    return settings


async def run_controller(settings: Settings) -> None:
    """
    Initialize and run the reconciler and backup scheduler.

    Runs until interrupted by SIGINT or SIGTERM.
    """
    logger.info("Starting Environment Manager Controller")
    logger.info(f"  Data directory: {settings.data_dir}")
    logger.info(f"  Git remote: {settings.git_remote or '(none)'}")
    logger.info(f"  Network: {settings.network or '(default)'}")
    logger.info(f"  Reconcile interval: {settings.reconcile_interval or 'disabled'}")
    logger.info(f"  Worker image: {settings.worker_image}")

    git_repo = GitRepository(
        settings.data_dir, remote_url=settings.git_remote, branch=settings.git_branch
    )
    await asyncio.to_thread(git_repo.initialize)
    store = YAMLConfigStore(settings.data_dir)
    runtime = ContainerRuntime()

    reconciler = Reconciler(
        store,
        runtime=runtime,
        network=settings.network,
        reconcile_interval=settings.reconcile_interval,
    )
    scheduler = BackupScheduler(
        store,
        runtime=runtime,
        git_repo=git_repo,
        worker_image=settings.worker_image,
        worker_timeout=settings.worker_timeout,
    )

    # Set up signal handlers for graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler(sig: Any, _frame: Any) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {sig}, initiating graceful shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await reconciler.start()
        await scheduler.start()
        logger.info("Controller started successfully")

        await shutdown_event.wait()

    except Exception as e:
        logger.error(f"Controller error: {e}", exc_info=True)
        raise
    finally:
        logger.info("Stopping controller...")
        await scheduler.stop()
        await reconciler.stop()
        logger.info("Controller stopped cleanly")


def main() -> int:
    """
    Main entrypoint for the controller.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(run_controller(build_settings(args)))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
