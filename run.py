#!/usr/bin/env python3
"""
Bank Ledger Entry Point

Starts the FastAPI server on the configured host and port (BANK_API_HOST,
BANK_API_PORT; 0.0.0.0:3000 by default).
"""

import sys

from bank_ledger.api import run_server
from bank_ledger.config import get_config
from bank_ledger.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, config.log_format)
    logger.info(f"Starting Bank Ledger API on {config.api_host}:{config.api_port}")

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down Bank Ledger API")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
