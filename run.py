#!/usr/bin/env python3
"""
Approval Engine Entry Point

Starts the FastAPI server with the approval workflow engine.
"""

import sys

from approval_engine.api import run_server
from approval_engine.config import get_config
from approval_engine.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format)

    logger.info("Starting Approval Engine on %s:%d (storage: %s)",
                config.api_host, config.api_port, config.database_url)

    try:
        run_server(
            host=config.api_host,
            port=config.api_port,
            debug=False
        )
    except KeyboardInterrupt:
        logger.info("Shutting down Approval Engine")
    except Exception:
        logger.exception("Error starting server")
        sys.exit(1)
