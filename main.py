"""
Re-FAP Bot entry point.

Serves the HTTP API with uvicorn, or runs the offline console demo.

Usage:
    HTTP server:   python main.py
    Console mode:  python main.py console [--scenario filter]
"""

import logging
import sys

from refap.config import settings

logger = logging.getLogger(__name__)


def _run_server() -> None:
    """Start the HTTP API (the model and database are optional)."""
    import uvicorn

    logger.info("Starting %s on port %d", settings.business.bot_name, settings.port)
    uvicorn.run(
        "refap.api.main:app",
        host="0.0.0.0",
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


def _run_console_mode(argv: list[str]) -> None:
    """Start the offline console demo (no API keys required)."""
    from console_demo import main as console_main

    console_main(argv)


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "console":
        _run_console_mode(sys.argv[2:])
    else:
        _run_server()
