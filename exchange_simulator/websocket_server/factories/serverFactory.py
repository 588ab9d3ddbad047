import asyncio
import logging
from typing import Optional

from exchange_simulator.models import AppConfig
from exchange_simulator.storage.JsonFileStorage import JsonFileStorage
from exchange_simulator.websocket_server.ConnectionManager import ConnectionManager
from exchange_simulator.websocket_server.MessageHandler import MessageHandler
from exchange_simulator.websocket_server.server import WebSocketServer
from exchange_simulator.websocket_server.trading_system import TradingSystem


logger = logging.getLogger(__name__)


def create_server_from_config(config: AppConfig) -> WebSocketServer:
    """
    Create and configure a WebSocketServer from configuration

    Args:
        config: AppConfig object with structured configuration

    Returns:
        Configured WebSocketServer instance (not started)
    """
    storage = JsonFileStorage(config.storage)
    trading_system = TradingSystem.from_storage(storage, config)

    connection_manager = ConnectionManager(max_in_flight_messages=config.server.max_in_flight_messages)
    message_handler = MessageHandler()

    server_config = config.server
    websocket_uri = f"ws://{server_config.uri.host}:{server_config.uri.port}"
    logger.info(f"WebSocket server will run on {websocket_uri}")

    return WebSocketServer(
        trading_system=trading_system,
        connection_manager=connection_manager,
        message_handler=message_handler,
        uri=websocket_uri,
        ping_interval=server_config.ping_interval,
        ping_timeout=server_config.ping_timeout,
    )


async def start_server_from_config(config: AppConfig, stop_event: Optional[asyncio.Event] = None):
    """
    Start a WebSocket server from configuration and serve until ``stop_event``
    is set (or forever when none is given).
    """
    server = create_server_from_config(config)
    await server.start()
    logger.info("Server listener started. Press Ctrl+C to stop.")
    try:
        if stop_event is None:
            await asyncio.Future()  # Keep the server running indefinitely
        else:
            await stop_event.wait()
    finally:
        await server.shutdown()
        logger.info("Server stopped.")
