import asyncio
import json
import logging
from typing import Any, Dict, Optional

import websockets
from websockets.asyncio.server import ServerConnection

from exchange_simulator.websocket_server.ConnectionManager import ConnectionManager
from exchange_simulator.websocket_server.MessageHandler import HandleResult, MessageHandler
from exchange_simulator.websocket_server.TradingStateBroadcaster import SNAPSHOT
from exchange_simulator.websocket_server.trading_system import TradingSystem

logger = logging.getLogger(__name__)

MAX_MESSAGE_BYTES = 64 * 1024
WELCOME = "welcome"


class WebSocketServer:
    def __init__(
        self,
        trading_system: TradingSystem,
        connection_manager: ConnectionManager,
        message_handler: MessageHandler,
        uri: str,
        ping_interval: Optional[float] = 20,
        ping_timeout: Optional[float] = 20,
    ):
        self.trading_system = trading_system
        self.connection_manager = connection_manager
        self.message_handler = message_handler
        self.uri = uri
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self._server = None

    def get_port(self) -> int:
        """Get the port the server is bound to"""
        if self._server and self._server.sockets:
            sock = list(self._server.sockets)[0]
            return sock.getsockname()[1]
        return 0

    async def start(self):
        """Start the trading system and the WebSocket server"""
        host, port = self.uri.replace("ws://", "").split(":")
        await self.trading_system.start()
        # Let OS pick a free port if 0 is given
        self._server = await websockets.serve(
            self.websocket_server,
            host,
            int(port),
            ping_interval=self.ping_interval,
            ping_timeout=self.ping_timeout,
            # oversize messages are rejected by us with a proper close code
            max_size=20 * 1024 * 1024,
        )
        await asyncio.sleep(0)  # yield control so the server starts
        logger.info(f"Server started on ws://{host}:{self.get_port()}")

    async def shutdown(self):
        """Shut down the server and clean up resources"""
        logger.info("Shutting down WebSocketServer")
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        await self.connection_manager.shutdown()
        await self.trading_system.shutdown()

    def _welcome_payload(self, client_id: str) -> Dict[str, Any]:
        clock = self.trading_system.clock
        return {
            "client_id": client_id,
            "stocks": [
                s.model_dump(mode="json", exclude={"history"})
                for s in self.trading_system.store.list_stocks()
            ],
            "settings": clock.settings.model_dump(mode="json", by_alias=True),
            "status": clock.status.value,
        }

    async def websocket_server(self, websocket: ServerConnection):
        client_id = await self.connection_manager.add_connection(websocket)

        async def forward(kind: str, payload: Dict[str, Any]):
            await self.connection_manager.send(websocket, kind, payload)

        try:
            # welcome and the current snapshot precede any reply or later broadcast
            await self.connection_manager.send(websocket, WELCOME, self._welcome_payload(client_id), priority=True)
            broadcaster = self.trading_system.broadcaster
            await broadcaster.subscribe(client_id, forward, send_latest=False)
            logger.debug(f"Client {client_id} subscribed, {broadcaster.subscriber_count} viewers connected")
            if broadcaster.latest is not None:
                await self.connection_manager.send(websocket, SNAPSHOT, broadcaster.latest.to_message(), priority=True)
            await self._process_client_message(websocket)
        finally:
            self.trading_system.broadcaster.unsubscribe(client_id)
            await self.connection_manager.remove_connection(websocket)

    async def _handle_protocol_error(self, websocket: ServerConnection, code: str, message: str) -> bool:
        """Report a protocol error. Returns False when the connection was closed."""
        error_count = self.connection_manager.increment_error_count(websocket)
        if error_count > self.connection_manager.MAX_ERROR_THRESHOLD:
            logger.warning(f"Closing connection due to excessive errors: {websocket.remote_address}")
            await websocket.close(code=1007, reason="Too many protocol errors")
            return False
        await self.connection_manager.send(websocket, "error", {"code": code, "message": message}, priority=True)
        return True

    async def _process_client_message(self, websocket: ServerConnection):
        try:
            logger.info(f"Waiting for messages from {websocket.remote_address}")
            while True:
                try:
                    message = await websocket.recv()
                except websockets.ConnectionClosedOK:
                    logger.info(f"WebSocket closed normally: {websocket.remote_address}")
                    break
                except websockets.ConnectionClosedError as e:
                    logger.warning(f"WebSocket closed with error: {e}")
                    break

                logger.debug(f"Received message: {message}")

                if len(message) > MAX_MESSAGE_BYTES:
                    logger.error(f"Message of {len(message)} bytes exceeds 64KB limit, closing")
                    await websocket.close(code=1009, reason="Message too big")
                    break

                try:
                    requests = json.loads(message)
                except (json.JSONDecodeError, UnicodeDecodeError) as e:
                    logger.error(f"Invalid message: {e} - {message[:100]}")
                    if not await self._handle_protocol_error(websocket, "INVALID_JSON", "Invalid JSON format received"):
                        break
                    continue

                if isinstance(requests, dict):
                    requests = [requests]
                if not isinstance(requests, list):
                    if not await self._handle_protocol_error(websocket, "INVALID_MESSAGE", "Requests must be JSON objects"):
                        break
                    continue

                keep_open = True
                for request in requests:
                    if not isinstance(request, dict):
                        keep_open = await self._handle_protocol_error(
                            websocket, "INVALID_MESSAGE", "Requests must be JSON objects"
                        )
                        if not keep_open:
                            break
                        continue
                    try:
                        result = await self.message_handler.handle_message(
                            request, self.trading_system, self.connection_manager
                        )
                    except Exception as e:
                        logger.exception(f"Error processing message: {e}")
                        keep_open = await self._handle_protocol_error(websocket, "INTERNAL_ERROR", str(e))
                    else:
                        keep_open = await self._reply(websocket, result)
                    if not keep_open:
                        break
                if not keep_open:
                    break
        except Exception:
            logger.exception("Unexpected error in message handler")

    async def _reply(self, websocket: ServerConnection, result: HandleResult) -> bool:
        if result.is_protocol_error:
            error_count = self.connection_manager.increment_error_count(websocket)
            if error_count > self.connection_manager.MAX_ERROR_THRESHOLD:
                logger.warning(f"Closing connection due to excessive errors: {websocket.remote_address}")
                await websocket.close(code=1007, reason="Too many protocol errors")
                return False
        logger.debug(f"message for client {result}")
        return await self.connection_manager.send(websocket, result.result_type, result.payload, priority=True)
