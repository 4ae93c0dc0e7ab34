#!/usr/bin/env python3
"""Main entry point for Orvex."""
import logging

# Configure logging
logging.basicConfig(level=logging.INFO, format='[%(asctime)s.%(msecs)03d] [%(levelname)s] %(name)s: %(message)s', datefmt='%Y-%m-%d %H:%M:%S')
logger = logging.getLogger("orvex")

from orvex import __version__
from orvex.config import SERVER_HOST, SERVER_PORT
from orvex.extensions import create_app
from orvex.services.audit import audit_logger


def main():
    app = create_app()
    audit_logger.log_system_start(__version__)
    logger.info(f"Orvex core listening on {SERVER_HOST}:{SERVER_PORT}")
    app.run(host=SERVER_HOST, port=SERVER_PORT, threaded=True)


if __name__ == '__main__':
    main()
