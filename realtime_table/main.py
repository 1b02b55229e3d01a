"""
main.py - Main entry point for the realtime table API server
"""
import logging

import uvicorn

from realtime_table.api.rest_api import create_api
from realtime_table.config import config_manager


def setup_logging(level: str = "INFO"):
    """Setup logging for the server"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main():
    """
    Start the realtime table API server.
    """
    config = config_manager.load_config('env')
    setup_logging(config.log_level)
    logger = logging.getLogger(__name__)

    api = create_api(config)
    logger.info("Starting realtime table API on %s:%s", config.api_host, config.api_port)
    logger.info("Backend: %s (%s), change feed: %s", config.backend_type, config.backend_uri, config.change_feed)

    uvicorn.run(api.get_app(), host=config.api_host, port=config.api_port)


if __name__ == "__main__":
    main()
