"""Entry point for running the webhook dispatcher.

Usage:
    python -m webhook_dispatcher

Or via the console script:
    webhook-dispatcher

Exit codes: 0 after graceful shutdown, 1 on configuration error or crash.
"""

from __future__ import annotations

import asyncio
import sys

from webhook_dispatcher.config import load_settings
from webhook_dispatcher.exceptions import ConfigurationError
from webhook_dispatcher.logging import configure_logging, get_logger
from webhook_dispatcher.worker import run_worker


def main() -> int:
    """Load configuration and run the worker until shutdown."""
    try:
        settings = load_settings()
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        get_logger(__name__).error("Invalid configuration", **e.to_dict()["error"])
        return 1

    configure_logging(level=settings.log_level, log_format=settings.log_format)
    logger = get_logger(__name__)

    try:
        asyncio.run(run_worker(settings))
    except Exception:
        logger.exception("Webhook dispatcher crashed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
