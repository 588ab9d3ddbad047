import pytest

from exchange_simulator.websocket_server.ConnectionManager import ConnectionManager
from exchange_simulator.websocket_server.MessageHandler import MessageHandler


@pytest.fixture
def handle(trading_system):
    mh = MessageHandler()
    cm = ConnectionManager()

    async def _handle(message):
        return await mh.handle_message(message, trading_system, cm)

    return _handle


@pytest.mark.asyncio
async def test_invalid_json(handle):
    result = await handle("{not json")
    assert result.result_type == "error"
    assert result.payload["code"] == "INVALID_JSON"
    assert result.is_protocol_error


@pytest.mark.asyncio
async def test_unknown_action(handle):
    result = await handle({"action": "invalid"})
    assert result.result_type == "error"
    assert result.payload["code"] == "UNKNOWN_ACTION"
    assert "order" in result.payload["valid_actions"]
    assert result.is_protocol_error


@pytest.mark.asyncio
async def test_order_confirmation(handle):
    result = await handle({"action": "order", "broker_id": 1, "symbol": "AAPL", "side": "buy", "quantity": 50})
    assert result.result_type == "order_confirmation"
    assert result.payload["price"] == 100.0
    assert result.payload["new_balance"] == 5000.0
    assert result.payload["new_holdings"] == {"AAPL": 50}


@pytest.mark.asyncio
async def test_order_fields_nested_under_data(handle):
    result = await handle({"action": "order", "data": {"broker_id": "1", "symbol": "AAPL", "side": "buy", "quantity": 1}})
    assert result.result_type == "order_confirmation"


@pytest.mark.asyncio
async def test_order_rejection_echoes_sanitized_request(handle):
    request = {"action": "order", "broker_id": 1, "symbol": "AAPL", "side": "buy", "quantity": 500, "_ws": object()}
    result = await handle(request)

    assert result.result_type == "order_rejection"
    assert result.payload["code"] == "INSUFFICIENT_FUNDS"
    assert "reason" in result.payload
    assert "_ws" not in result.payload["request"]
    assert result.payload["request"]["quantity"] == 500
    assert not result.is_protocol_error


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "order,code",
    [
        ({"broker_id": 1, "symbol": "TSLA", "side": "buy", "quantity": 1}, "SYMBOL_DISABLED"),
        ({"broker_id": 1, "symbol": "NOPE", "side": "buy", "quantity": 1}, "UNKNOWN_SYMBOL"),
        ({"broker_id": 9, "symbol": "AAPL", "side": "buy", "quantity": 1}, "BROKER_NOT_FOUND"),
        ({"broker_id": 1, "symbol": "AAPL", "side": "sell", "quantity": 1}, "INSUFFICIENT_HOLDINGS"),
        ({"broker_id": 1, "symbol": "AAPL", "side": "buy", "quantity": 0}, "INVALID_ORDER"),
        ({"symbol": "AAPL", "side": "buy", "quantity": 1}, "INVALID_REQUEST"),
    ],
)
async def test_order_rejection_codes(handle, order, code):
    result = await handle({"action": "order", **order})
    assert result.result_type == "order_rejection"
    assert result.payload["code"] == code


@pytest.mark.asyncio
async def test_order_status_round_trip(handle):
    placed = await handle({"action": "order", "broker_id": 1, "symbol": "AAPL", "side": "buy", "quantity": 1})

    status = await handle({"action": "get_order_status", "order_id": placed.payload["order_id"]})
    assert status.result_type == "order_status"
    assert status.payload["status"] == "FILLED"

    missing = await handle({"action": "get_order_status"})
    assert missing.result_type == "error"
    assert missing.payload["code"] == "INVALID_REQUEST"

    orders = await handle({"action": "list_orders", "broker_id": 1})
    assert orders.result_type == "orders"
    assert len(orders.payload) == 1


@pytest.mark.asyncio
async def test_broker_administration(handle):
    added = await handle({"action": "add_broker", "name": "Bob", "balance": 2500})
    assert added.result_type == "broker_added"
    broker_id = added.payload["id"]
    assert added.payload["balance"] == 2500.0

    updated = await handle({"action": "update_broker", "broker_id": broker_id, "name": "Robert"})
    assert updated.result_type == "broker_updated"
    assert updated.payload["name"] == "Robert"

    listed = await handle({"action": "list_brokers"})
    assert {b["name"] for b in listed.payload} == {"Alice", "Robert"}

    fetched = await handle({"action": "get_broker", "broker_id": broker_id})
    assert fetched.result_type == "broker"
    assert fetched.payload["total_value"] == 2500.0

    deleted = await handle({"action": "delete_broker", "broker_id": broker_id})
    assert deleted.result_type == "broker_deleted"
    assert deleted.payload == {"broker_id": broker_id, "liquidated": []}

    gone = await handle({"action": "get_broker", "broker_id": broker_id})
    assert gone.result_type == "error"
    assert gone.payload["code"] == "BROKER_NOT_FOUND"


@pytest.mark.asyncio
async def test_delete_broker_with_holdings(handle):
    await handle({"action": "order", "broker_id": 1, "symbol": "AAPL", "side": "buy", "quantity": 2})

    refused = await handle({"action": "delete_broker", "broker_id": 1})
    assert refused.payload["code"] == "BROKER_HAS_HOLDINGS"

    not_a_flag = await handle({"action": "delete_broker", "broker_id": 1, "liquidate": "false"})
    assert not_a_flag.payload["code"] == "INVALID_REQUEST"
    assert not not_a_flag.is_protocol_error
    holdings = await handle({"action": "get_broker", "broker_id": 1})
    assert holdings.payload["holdings"] == {"AAPL": 2}

    deleted = await handle({"action": "delete_broker", "broker_id": 1, "liquidate": True})
    assert deleted.result_type == "broker_deleted"
    assert deleted.payload["liquidated"][0]["quantity"] == 2


@pytest.mark.asyncio
async def test_add_broker_invalid_balance(handle):
    result = await handle({"action": "add_broker", "name": "Bob", "balance": "lots"})
    assert result.payload["code"] == "INVALID_REQUEST"


@pytest.mark.asyncio
async def test_stock_queries(handle):
    stocks = await handle({"action": "list_stocks"})
    assert stocks.result_type == "stocks"
    assert {s["symbol"] for s in stocks.payload} == {"AAPL", "MSFT", "TSLA"}
    assert all("history" not in s for s in stocks.payload)

    history = await handle(
        {"action": "get_stock_history", "symbol": "MSFT", "start_date": "2021-11-02", "end_date": "2021-11-05"}
    )
    assert history.result_type == "stock_history"
    assert history.payload["history"] == [
        {"date": "2021-11-03", "open": 310.0},
        {"date": "2021-11-05", "open": 320.0},
    ]

    bad_date = await handle({"action": "get_stock_history", "symbol": "MSFT", "start_date": "11/02/2021"})
    assert bad_date.payload["code"] == "INVALID_REQUEST"

    unknown = await handle({"action": "get_stock_history", "symbol": "NOPE"})
    assert unknown.payload["code"] == "UNKNOWN_SYMBOL"


@pytest.mark.asyncio
async def test_set_stock_enabled(handle, trading_system):
    result = await handle({"action": "set_stock_enabled", "symbol": "TSLA", "enabled": True})
    assert result.result_type == "stock_updated"
    assert result.payload["enabled"] is True
    assert trading_system.store.is_enabled("TSLA")

    bad = await handle({"action": "set_stock_enabled", "symbol": "TSLA", "enabled": "yes"})
    assert bad.payload["code"] == "INVALID_REQUEST"


@pytest.mark.asyncio
async def test_clock_controls(handle):
    started = await handle({"action": "start", "tick_seconds": 30})
    assert started.result_type == "clock_state"
    assert started.payload["status"] == "running"
    assert started.payload["settings"]["tickSeconds"] == 30.0

    refused = await handle({"action": "update_settings", "tick_seconds": 5})
    assert refused.payload["code"] == "CLOCK_RUNNING"

    paused = await handle({"action": "pause"})
    assert paused.payload["status"] == "paused"

    stopped = await handle({"action": "stop"})
    assert stopped.payload["status"] == "stopped"

    settings = await handle({"action": "update_settings", "start_date": "2021-11-03", "tick_seconds": 5})
    assert settings.result_type == "settings"
    assert settings.payload == {"startDate": "2021-11-03", "tickSeconds": 5.0, "running": False}

    fetched = await handle({"action": "get_settings"})
    assert fetched.payload == settings.payload


@pytest.mark.asyncio
async def test_start_rejects_non_positive_tick(handle):
    result = await handle({"action": "start", "tick_seconds": 0})
    assert result.payload["code"] == "INVALID_REQUEST"


@pytest.mark.asyncio
async def test_get_state(handle):
    result = await handle({"action": "get_state"})
    assert result.result_type == "snapshot"
    assert result.payload["currentDate"] == "2021-11-01"
    assert result.payload["prices"] == {"AAPL": 100.0, "MSFT": 300.0}


@pytest.mark.asyncio
async def test_non_positive_tick_seconds_is_an_invalid_request(handle, trading_system):
    result = await handle({"action": "update_settings", "tick_seconds": 0})
    assert result.payload["code"] == "INVALID_REQUEST"

    result = await handle({"action": "start", "tick_seconds": -1})
    assert result.payload["code"] == "INVALID_REQUEST"
    assert trading_system.clock.status.value == "stopped"
