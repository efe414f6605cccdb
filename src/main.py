"""Main application entry point."""

import argparse
import logging

import uvicorn
from dotenv import load_dotenv

from src.api.webhook import create_app
from src.config import get_config
from src.services.logging import setup_server_logging

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


def main() -> None:
    """Run the API server with the job scheduler."""
    parser = argparse.ArgumentParser(description="Water billing engine server")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    parser.add_argument("--port", type=int, default=8000, help="Bind port")
    parser.add_argument("--no-scheduler", action="store_true", help="Serve HTTP only")
    args = parser.parse_args()

    config = get_config()
    setup_server_logging(config.log_file)
    if args.no_scheduler:
        config.scheduler_enabled = False

    app = create_app(config)
    logger.info("Starting Uvicorn server on %s:%d...", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port, log_level="info")


if __name__ == "__main__":
    main()
