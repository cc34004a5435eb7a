#!/usr/bin/env python3
"""
Run the DonorMatch API under uvicorn.

HOST, PORT and LOG_LEVEL come from the environment. A single worker is
used because websocket subscriptions live in process memory.
"""

import logging
import os
import sys
from pathlib import Path

import uvicorn

from config import Config

logger = logging.getLogger("donormatch.start")


def check_environment():
    """Warn about settings that only make sense for local development."""
    if not os.getenv("SECRET_KEY"):
        logger.warning("SECRET_KEY is not set; issued tokens will not survive a restart")
    if Config.DATABASE_URL.startswith("sqlite"):
        logger.warning(f"Using SQLite database at {Config.DATABASE_URL}")
    if Config.DEFAULT_ADMIN_PASSWORD == "admin":
        logger.warning("DEFAULT_ADMIN_PASSWORD is the built-in default")


def main():
    logging.basicConfig(level=Config.LOG_LEVEL, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")

    app_dir = Path(__file__).parent
    os.chdir(app_dir)

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))

    check_environment()
    logger.info(f"Serving DonorMatch from {app_dir} on {host}:{port}")

    try:
        uvicorn.run(
            "main:app",
            host=host,
            port=port,
            workers=1,
            log_level=Config.LOG_LEVEL.lower(),
            proxy_headers=True,
            server_header=False,
            date_header=False,
            timeout_keep_alive=30,
        )
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    except Exception as e:
        logger.error(f"Server failed to start: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
