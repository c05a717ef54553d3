"""
Command line entry point

    python -m mcp_gcal --addr :8080 --base-url https://gcal.example.com
"""

import argparse
import logging
import sys

from .config import Config, set_config
from .http_server import BrokerHTTPServer

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-gcal",
        description="OAuth broker and MCP endpoint for Google Calendar and Gmail",
    )
    parser.add_argument("--db", help="SQLite database path")
    parser.add_argument("--credentials-file", help="Google OAuth client secrets JSON")
    parser.add_argument("--addr", help="listen address, host:port (default :8080)")
    parser.add_argument("--base-url", help="public base URL of the broker")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    return parser


def load_config(args: argparse.Namespace) -> Config:
    """Environment configuration overridden by command line flags"""
    config = Config.from_env()
    if args.db:
        config.database.path = args.db
    if args.credentials_file:
        config.upstream.credentials_file = args.credentials_file
    if args.addr:
        config.server.addr = args.addr
    if args.base_url:
        config.server.base_url = args.base_url
    if args.log_level:
        config.monitoring.log_level = args.log_level.upper()
    config.validate()
    return config


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args)
    except ValueError as e:
        print(f"mcp-gcal: invalid configuration: {e}", file=sys.stderr)
        return 2

    setup_logging(config.monitoring.log_level)
    set_config(config)

    try:
        server = BrokerHTTPServer(config)
    except ValueError as e:
        logger.error(f"Failed to initialize broker: {e}")
        return 1

    logger.info(f"Starting mcp-gcal on {config.server.addr}, public URL {config.base_url}")
    server.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
