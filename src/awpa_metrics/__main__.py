"""
Main entry point for the metrics service when run as a module.

This file allows the metrics service to be run with:
    python -m awpa_metrics

It imports the FastAPI app and runs it with uvicorn on the configured port
(``AWPA_SERVICE_PORT``, 8003 by default).
"""

import logging
import sys

import uvicorn

from .config import StorageConfig
from .metrics_service import app


def main() -> None:
    config = StorageConfig.from_env()

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger = logging.getLogger("awpa_metrics")
    logger.info(f"Starting AWPA Metrics Service on port {config.service_port}...")

    try:
        uvicorn.run(
            app,
            host=config.service_host,
            port=config.service_port,
            log_level=config.log_level.lower(),
            access_log=True,
        )
    except KeyboardInterrupt:
        logger.info("Metrics service stopped by user")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Error starting metrics service: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
