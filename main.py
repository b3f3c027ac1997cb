"""
loadplane - control plane runner.

Starts the communications loop, the queue monitor loop and the test
scheduler loop against a local SQLite database, then waits for SIGINT or
SIGTERM. Exits non-zero if a loop dies.
"""

import argparse
import os
import signal
import sys
import time

from dotenv import load_dotenv

# Module-level settings in loadplane read the environment on import
load_dotenv()

from loadplane.control import ControlPlaneService  # noqa: E402
from loadplane.infra.logging_config import setup_logging  # noqa: E402


shutdown_requested = False


def signal_handler(signum, frame):
    """SIGINT / SIGTERM handler - stop after the current loop iterations."""
    global shutdown_requested
    signal_name = "SIGINT" if signum == signal.SIGINT else "SIGTERM"
    print(f"{signal_name} received, shutting down", file=sys.stderr)
    shutdown_requested = True


def parse_args():
    parser = argparse.ArgumentParser(
        description="Control plane for a distributed load-testing fleet",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with settings from .env / environment
  python main.py

  # Custom database and debug logging
  python main.py --db-path /var/lib/loadplane/control.db --log-level DEBUG

  # Watch two test queues
  python main.py --queue-names unittests,performance
        """
    )
    parser.add_argument(
        "--db-path",
        type=str,
        default=os.getenv("CONTROL_DB_PATH", "data/control_plane.db"),
        help="SQLite database path. Default: $CONTROL_DB_PATH or ./data/control_plane.db"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=os.getenv("LOG_LEVEL", "INFO").upper(),
        help="Log level (DEBUG, INFO, WARNING, ERROR). Default: $LOG_LEVEL or INFO"
    )
    parser.add_argument(
        "--log-dir",
        type=str,
        default=os.getenv("LOG_DIR", "logs"),
        help="Directory for daily log files. Default: $LOG_DIR or ./logs"
    )
    parser.add_argument(
        "--queue-names",
        type=str,
        default=None,
        help="Comma-separated test queues to monitor. Default: $TEST_QUEUE_NAMES"
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logger = setup_logging(args.log_level, log_dir=args.log_dir)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    queue_names = None
    if args.queue_names:
        queue_names = [name.strip() for name in args.queue_names.split(",") if name.strip()]

    service = ControlPlaneService.create(db_path=args.db_path, queue_names=queue_names)
    service.start()
    logger.info(f"Control plane running (database: {args.db_path})")

    exit_code = 0
    try:
        while not shutdown_requested:
            if not service.is_healthy():
                logger.critical(f"Background loop failed: {service.health.failure}")
                exit_code = 1
                break
            time.sleep(1)
    finally:
        service.stop()

    logger.info("Control plane exited")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
