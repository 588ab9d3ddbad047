import json
import logging
import math
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union

from exchange_simulator.websocket_server.ConnectionManager import ConnectionManager
from exchange_simulator.websocket_server.TradingStateBroadcaster import CLOCK_STATE, SNAPSHOT
from exchange_simulator.websocket_server.errors import ExchangeError, InvalidRequest
from exchange_simulator.websocket_server.trading_system import TradingSystem

logger = logging.getLogger(__name__)

ORDER_CONFIRMATION = "order_confirmation"
ORDER_REJECTION = "order_rejection"
ORDER_STATUS_REPORT = "order_status"
ERROR = "error"

# codes that count against a connection's protocol error threshold
PROTOCOL_ERROR_CODES = {"INVALID_JSON", "INVALID_MESSAGE", "UNKNOWN_ACTION"}

VALID_ACTIONS = [
    "order",
    "get_order_status",
    "list_orders",
    "get_broker",
    "list_brokers",
    "add_broker",
    "update_broker",
    "delete_broker",
    "list_stocks",
    "get_stock_history",
    "set_stock_enabled",
    "start",
    "pause",
    "stop",
    "get_settings",
    "update_settings",
    "get_state",
]


@dataclass
class HandleResult:
    result_type: str
    payload: Union[Dict, List[Dict]]

    @property
    def is_protocol_error(self) -> bool:
        return (
            self.result_type == ERROR
            and isinstance(self.payload, dict)
            and self.payload.get("code") in PROTOCOL_ERROR_CODES
        )


def _parse_int(data: Dict, field: str, required: bool = True) -> Optional[int]:
    value = data.get(field)
    if value is None:
        if required:
            raise InvalidRequest(f"Missing required field: {field}", field=field)
        return None
    if isinstance(value, bool):
        raise InvalidRequest(f"{field} must be an integer", field=field)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"{field} must be an integer", field=field)


def _parse_date(data: Dict, field: str) -> Optional[date]:
    value = data.get(field)
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise InvalidRequest(f"{field} must be an ISO date (YYYY-MM-DD)", field=field)


def _parse_positive_float(data: Dict, field: str) -> Optional[float]:
    value = data.get(field)
    if value is None:
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"{field} must be a number", field=field)
    if not math.isfinite(parsed) or parsed <= 0:
        raise InvalidRequest(f"{field} must be positive", field=field)
    return parsed


def _parse_decimal(data: Dict, field: str) -> Decimal:
    value = data.get(field, 0)
    if isinstance(value, bool):
        raise InvalidRequest(f"{field} must be a number", field=field)
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        raise InvalidRequest(f"{field} must be a number", field=field)
    if not parsed.is_finite():
        raise InvalidRequest(f"{field} must be a finite number", field=field)
    return parsed


class MessageHandler:
    async def handle_message(
        self,
        raw_data: Union[Dict, str],
        trading_system: TradingSystem,
        connection_manager: ConnectionManager,
    ) -> HandleResult:
        if isinstance(raw_data, str):
            try:
                data = json.loads(raw_data)
            except json.JSONDecodeError:
                return self._send_error("INVALID_JSON", "Invalid JSON format received")
        else:
            data = raw_data

        if not isinstance(data, dict):
            return self._send_error("INVALID_MESSAGE", "Requests must be JSON objects")

        action = data.get("action")
        logger.debug(f"action {action}")
        try:
            if action == "order":
                return await self.handle_order(data, trading_system)
            return await self._dispatch(action, data, trading_system)
        except ExchangeError as e:
            logger.info(f"Request {action} failed: {e.code} {e.message}")
            return self._send_error(e.code, e.message)

    async def _dispatch(self, action: Any, data: Dict, trading_system: TradingSystem) -> HandleResult:
        exchange = trading_system.exchange
        clock = trading_system.clock
        store = trading_system.store

        if action == "get_order_status":
            order_id = data.get("order_id")
            if not order_id:
                raise InvalidRequest("Missing order_id for status check.", field="order_id")
            status = await exchange.get_order_status(str(order_id))
            return HandleResult(result_type=ORDER_STATUS_REPORT, payload=status)

        elif action == "list_orders":
            broker_id = _parse_int(data, "broker_id", required=False)
            orders = [o.to_dict() for o in exchange.list_orders(broker_id)]
            return HandleResult(result_type="orders", payload=orders)

        elif action == "get_broker":
            broker_id = _parse_int(data, "broker_id")
            return HandleResult(result_type="broker", payload=await exchange.get_balance(broker_id))

        elif action == "list_brokers":
            prices = exchange.current_prices()
            brokers = [p.to_dict(prices=prices) for p in trading_system.ledger.list_brokers()]
            return HandleResult(result_type="brokers", payload=brokers)

        elif action == "add_broker":
            broker_id = _parse_int(data, "id", required=False)
            portfolio = await exchange.add_broker(
                str(data.get("name") or "").strip(), _parse_decimal(data, "balance"), broker_id
            )
            return HandleResult(result_type="broker_added", payload=portfolio.to_dict())

        elif action == "update_broker":
            broker_id = _parse_int(data, "broker_id")
            portfolio = await exchange.rename_broker(broker_id, str(data.get("name") or "").strip())
            return HandleResult(result_type="broker_updated", payload=portfolio.to_dict())

        elif action == "delete_broker":
            broker_id = _parse_int(data, "broker_id")
            liquidate = data.get("liquidate", False)
            if not isinstance(liquidate, bool):
                raise InvalidRequest("liquidate must be true or false", field="liquidate")
            orders = await exchange.delete_broker(broker_id, liquidate=liquidate)
            return HandleResult(
                result_type="broker_deleted",
                payload={"broker_id": broker_id, "liquidated": [o.to_dict() for o in orders]},
            )

        elif action == "list_stocks":
            stocks = [s.model_dump(mode="json", exclude={"history"}) for s in store.list_stocks()]
            return HandleResult(result_type="stocks", payload=stocks)

        elif action == "get_stock_history":
            symbol = data.get("symbol")
            if not symbol:
                raise InvalidRequest("Missing required field: symbol", field="symbol")
            history = store.get_history(symbol, _parse_date(data, "start_date"), _parse_date(data, "end_date"))
            if history is None:
                return self._send_error("UNKNOWN_SYMBOL", f"Unknown symbol: {symbol}")
            return HandleResult(
                result_type="stock_history",
                payload={"symbol": symbol, "history": [h.model_dump(mode="json") for h in history]},
            )

        elif action == "set_stock_enabled":
            symbol = data.get("symbol")
            if not symbol:
                raise InvalidRequest("Missing required field: symbol", field="symbol")
            if not isinstance(data.get("enabled"), bool):
                raise InvalidRequest("enabled must be true or false", field="enabled")
            record = await trading_system.set_stock_enabled(symbol, data["enabled"])
            return HandleResult(result_type="stock_updated", payload=record)

        elif action == "start":
            state = await clock.start(_parse_date(data, "start_date"), _parse_positive_float(data, "tick_seconds"))
            return HandleResult(result_type=CLOCK_STATE, payload=state)

        elif action == "pause":
            return HandleResult(result_type=CLOCK_STATE, payload=await clock.pause())

        elif action == "stop":
            return HandleResult(result_type=CLOCK_STATE, payload=await clock.stop())

        elif action == "get_settings":
            return HandleResult(result_type="settings", payload=clock.settings.model_dump(mode="json", by_alias=True))

        elif action == "update_settings":
            await clock.update_settings(_parse_date(data, "start_date"), _parse_positive_float(data, "tick_seconds"))
            return HandleResult(result_type="settings", payload=clock.settings.model_dump(mode="json", by_alias=True))

        elif action == "get_state":
            return HandleResult(result_type=SNAPSHOT, payload=clock.snapshot().to_message())

        logger.warning(f"unrecognized action {action} full message {self._sanitize(data)}")
        return self._send_error(
            "UNKNOWN_ACTION", f"Unknown action: {action}", valid_actions=VALID_ACTIONS
        )

    async def handle_order(self, data: Dict, trading_system: TradingSystem) -> HandleResult:
        """Handles incoming messages for placing trade orders."""
        # order fields may be top level or nested under "data"
        order = data.get("data") if isinstance(data.get("data"), dict) else data
        try:
            broker_id = _parse_int(order, "broker_id")
            symbol = order.get("symbol") or order.get("ticker") or ""
            result = await trading_system.exchange.submit_order(
                broker_id, symbol, order.get("side", ""), order.get("quantity")
            )
        except ExchangeError as e:
            logger.info(f"Order rejected ({e.code}): {e.message}")
            return self._send_rejection(data, e)
        return HandleResult(result_type=ORDER_CONFIRMATION, payload=result.to_dict())

    @staticmethod
    def _sanitize(data: Dict) -> Dict:
        # internal runtime objects must never be echoed back to clients
        sanitized = dict(data)
        sanitized.pop("_ws", None)
        sanitized.pop("_client_id", None)
        return sanitized

    def _send_rejection(self, data: Dict, error: ExchangeError) -> HandleResult:
        payload = error.to_payload()
        payload["request"] = self._sanitize(data)
        return HandleResult(result_type=ORDER_REJECTION, payload=payload)

    def _send_error(self, code: str, message: str, **extra: Any) -> HandleResult:
        return HandleResult(result_type=ERROR, payload={"code": code, "message": message, **extra})
