#!/usr/bin/env python3
"""
Money Market Custody Backend Entry Point

Starts the FastAPI server with the configured storage and ledger gateway.
"""

import sys

from money_market.api import run_server
from money_market.config import get_config
from money_market.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(
        level=config.log_level,
        log_format=config.log_format,
        log_file=config.log_file
    )
    logger.info(f"Starting Money Market API on {config.api_host}:{config.api_port}")

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down Money Market API")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
