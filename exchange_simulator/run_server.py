import argparse
import asyncio
import logging

from exchange_simulator.config.logging_config import setup_logging
from exchange_simulator.websocket_server.factories.ConfigFactory import ConfigFactory
from exchange_simulator.websocket_server.factories.serverFactory import start_server_from_config


def parse_arguments():
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description="Start the exchange simulator server")
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file (JSON or YAML); defaults are used when omitted"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level"
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        help="Directory holding brokers.json, stocks.json and settings.json (overrides config)"
    )
    parser.add_argument(
        "--port",
        type=int,
        help="Port to listen on (overrides config)"
    )
    return parser.parse_args()


async def main():
    """Main entry point for the application."""
    args = parse_arguments()

    setup_logging(args.log_level)
    logging.info(f"Loading configuration from {args.config or 'defaults'}")

    try:
        config = ConfigFactory.load_config(args.config)
        if args.data_dir:
            config.storage.data_dir = args.data_dir
        if args.port is not None:
            config.server.uri.port = args.port

        logging.info("Starting server...")
        await start_server_from_config(config)
    except Exception as e:
        logging.error(f"Error starting server: {e}", exc_info=True)
        return 1

    return 0


def cli():
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        logging.info("Server stopped by user.")


if __name__ == "__main__":
    cli()
