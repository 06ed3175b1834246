"""
agentflow entry point.

This file handles startup concerns (arg-parsing, env setup, logging) and launches the API.
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from agentflow.api.app import run_api
from agentflow.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _init_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stdout,
    )
    # Request lines from the gateway's client are noise at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: list[str] | None = None) -> None:
    """
    Main entry point for the agentflow application.

    This function sets up the command-line interface, initializes logging, and starts the API.
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Run the agentflow orchestration API")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: %(default)s)")
    parser.add_argument(
        "--port",
        type=int,
        default=settings.API_PORT,
        help="Bind port (default from env: %(default)s)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        type=str.lower,
        default=settings.LOG_LEVEL,
        help="Logging level (default from env: %(default)s)",
    )
    args = parser.parse_args(argv)

    # Override log level setting with command-line argument
    settings.LOG_LEVEL = args.log_level

    _init_logging(settings.LOG_LEVEL)

    # Ensure the usage log directory exists and is writable
    log_dir = Path(settings.USAGE_LOG_PATH).parent
    log_dir.mkdir(parents=True, exist_ok=True)
    if not os.access(log_dir, os.W_OK):
        logger.error("Usage log directory is not writable: %s", log_dir)
        sys.exit(1)

    logger.info("Starting agentflow (model=%s)", settings.OPENAI_MODEL)

    run_api(host=args.host, port=args.port, reload=settings.DEBUG)


if __name__ == "__main__":
    main()
