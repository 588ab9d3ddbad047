import asyncio
import json
import logging
import inspect
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Union
import uuid

import websockets
from websockets import ServerConnection

logger = logging.getLogger(__name__)


def json_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, (date, datetime)):
        return obj.isoformat()
    return str(obj)


class SocketQueues:
    # These queues should be asyncio.Queue instances
    main: asyncio.Queue
    prio: asyncio.Queue  # priority queue (sent before main)

    def __init__(self, max_main: int, max_prio: int):
        self.main = asyncio.Queue(maxsize=max_main)
        self.prio = asyncio.Queue(maxsize=max_prio)


class ConnectionManager:
    def __init__(
        self,
        max_in_flight_messages: int = 10,
        max_prio_messages: int = 5,
        max_error_threshold: int = 5,
        reply_timeout: float = 5.0,
    ):
        """
        Initialize the ConnectionManager.

        Args:
            max_in_flight_messages: Maximum broadcast messages queued per connection.
            max_prio_messages: Maximum direct replies queued per connection.
            max_error_threshold: Protocol errors tolerated before a connection is closed.
            reply_timeout: Seconds a reply may wait for room in a full priority queue.
        """
        self.connections: Set[ServerConnection] = set()
        self.connection_queues: Dict[ServerConnection, SocketQueues] = {}
        self.error_counts: Dict[ServerConnection, int] = {}
        # Stats track both current and cumulative metrics
        self.stats = {
            "active_connections": 0,
            "total_connections": 0,
            "messages_sent": 0,
            "messages_dropped": 0,
            "errors": 0,
        }
        self.sender_tasks: Dict[ServerConnection, asyncio.Task] = {}
        self.max_in_flight_messages = max_in_flight_messages
        self.max_prio_messages = max_prio_messages
        self.MAX_ERROR_THRESHOLD = max_error_threshold
        self.reply_timeout = reply_timeout
        self.client_ids: Dict[ServerConnection, str] = {}

    async def add_connection(self, websocket: ServerConnection) -> str:
        """Register a websocket, start its sender task and return its client id."""
        self.connections.add(websocket)
        self.connection_queues[websocket] = SocketQueues(self.max_in_flight_messages, self.max_prio_messages)
        self.error_counts[websocket] = 0
        client_id = str(uuid.uuid4())

        self.client_ids[websocket] = client_id
        self.stats["active_connections"] += 1
        self.stats["total_connections"] += 1

        self.sender_tasks[websocket] = asyncio.create_task(self._sender_task(websocket))

        logger.info(f"New connection from {getattr(websocket, 'remote_address', None)}, client_id: {client_id}")
        return client_id

    async def remove_connection(self, websocket: ServerConnection) -> None:
        if websocket not in self.connections:
            return
        self.connections.discard(websocket)
        self.connection_queues.pop(websocket, None)
        self.error_counts.pop(websocket, None)
        client_id = self.client_ids.pop(websocket, None)
        self.stats["active_connections"] = max(0, self.stats["active_connections"] - 1)

        task = self.sender_tasks.pop(websocket, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

        try:
            res = websocket.close()
            if inspect.isawaitable(res):
                await res
        except Exception as e:
            logger.debug(f"Error closing websocket {client_id}: {e}")

        logger.info(f"Connection from {getattr(websocket, 'remote_address', None)} closed, client_id: {client_id}")

    @staticmethod
    def build_message(type: str, payload: Optional[Union[Dict[str, Any], List[Any]]] = None) -> str:
        """
        Serialize a message envelope. Dict payloads are merged into the
        envelope, anything else goes under ``data``.
        """
        msg: Dict[str, Any] = {"type": type, "timestamp": datetime.now(timezone.utc).isoformat()}
        if isinstance(payload, dict):
            msg.update(payload)
        elif payload is not None:
            msg["data"] = payload
        return json.dumps(msg, default=json_default)

    async def send(
        self,
        websocket: ServerConnection,
        type: str,
        payload: Optional[Union[Dict[str, Any], List[Any]]] = None,
        priority: bool = False,
    ) -> bool:
        """
        Enqueue a message for a connection.

        Broadcasts never block: a connection whose main queue is full cannot
        keep up and is dropped; it will be brought current on reconnect.
        Replies to a client's own request use the priority queue and wait up
        to ``reply_timeout`` for room, which slows down only that client's
        request loop.
        """
        queues = self.connection_queues.get(websocket)
        if queues is None:
            logger.debug("attempted to send to a socket that is no longer connected")
            return False

        message = self.build_message(type, payload)
        try:
            if priority:
                await asyncio.wait_for(queues.prio.put(message), timeout=self.reply_timeout)
            else:
                queues.main.put_nowait(message)
            return True
        except (asyncio.QueueFull, asyncio.TimeoutError):
            self.stats["messages_dropped"] += 1
            logger.warning(
                f"Client {'priority' if priority else 'main'} queue full for "
                f"{getattr(websocket, 'remote_address', None)}; closing connection"
            )
            await self.remove_connection(websocket)
            return False

    def increment_error_count(self, websocket: ServerConnection) -> int:
        self.error_counts[websocket] = self.error_counts.get(websocket, 0) + 1
        self.stats["errors"] += 1
        return self.error_counts[websocket]

    async def shutdown(self):
        """Gracefully shutdown the connection manager"""
        connections = list(self.connections)
        if connections:
            await asyncio.gather(*(self.remove_connection(conn) for conn in connections), return_exceptions=True)

        tasks = list(self.sender_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=0.2)
        self.sender_tasks.clear()

        logger.info(f"ConnectionManager shutdown complete. Closed {len(connections)} connections, stats: {self.stats}")

    async def _sender_task(self, websocket: ServerConnection) -> None:
        """Background task that sends queued messages, priority queue first."""
        queues = self.connection_queues.get(websocket)
        if queues is None:
            logger.debug("No connection queues for websocket, exiting sender task")
            return

        try:
            while True:
                try:
                    try:
                        message = queues.prio.get_nowait()
                    except asyncio.QueueEmpty:
                        # let request handlers enqueue a reply before falling back to broadcasts
                        await asyncio.sleep(0)
                        try:
                            message = queues.prio.get_nowait()
                        except asyncio.QueueEmpty:
                            message = await asyncio.wait_for(queues.main.get(), timeout=0.1)

                    await websocket.send(message)

                    self.stats["messages_sent"] += 1
                except asyncio.TimeoutError:
                    if websocket not in self.connections:
                        break
                    continue
                except websockets.ConnectionClosed:
                    await self.remove_connection(websocket)
                    break
                except Exception as e:
                    logger.error(f"Error in sender task: {e}", exc_info=True)
                    await self.remove_connection(websocket)
                    break
        except asyncio.CancelledError:
            pass
        finally:
            if self.sender_tasks.get(websocket) is asyncio.current_task():
                del self.sender_tasks[websocket]
            logger.debug(f"Sender task for {getattr(websocket, 'remote_address', None)} completed")
