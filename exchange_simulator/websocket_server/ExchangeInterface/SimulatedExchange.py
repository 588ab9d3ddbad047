import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from exchange_simulator.models import OrderSide
from exchange_simulator.storage.PersistenceQueue import PersistenceQueue
from exchange_simulator.storage.StorageInterface import StorageInterface
from exchange_simulator.websocket_server.DataSource.PriceSeriesStore import PriceSeriesStore
from exchange_simulator.websocket_server.ExchangeInterface.ExchangeInterface import (
    ExchangeInterface,
)
from exchange_simulator.websocket_server.ExchangeInterface.Order import Order
from exchange_simulator.websocket_server.ExchangeInterface.OrderResult import OrderResult
from exchange_simulator.websocket_server.MarketClock import MarketClock
from exchange_simulator.websocket_server.errors import (
    InvalidOrder,
    PriceUnavailable,
    SymbolDisabled,
    UnknownSymbol,
)
from exchange_simulator.websocket_server.portfolio import Portfolio, PortfolioLedger


logger = logging.getLogger(__name__)


class SimulatedExchange(ExchangeInterface):
    """
    Order execution against the simulated market.

    The fill price is always the store's price for the clock's current date,
    captured once per order while the broker's lock is held. Validation and
    application happen without any suspension point in between, so an order
    sees one consistent (balance, holdings, price) triple.
    """

    def __init__(
        self,
        store: PriceSeriesStore,
        clock: MarketClock,
        ledger: PortfolioLedger,
        storage: Optional[StorageInterface] = None,
        persistence: Optional[PersistenceQueue] = None,
    ):
        self.store = store
        self.clock = clock
        self.ledger = ledger
        self.storage = storage
        self.persistence = persistence
        self._orders: List[Order] = []
        self._orders_by_id: Dict[str, Order] = {}

    @staticmethod
    def _normalize_side(side: Any) -> OrderSide:
        try:
            return OrderSide(str(side).casefold())
        except ValueError:
            raise InvalidOrder(f"Unknown order side: {side}", field="side")

    @staticmethod
    def _normalize_quantity(quantity: Any) -> int:
        if isinstance(quantity, bool) or not isinstance(quantity, (int, float)):
            raise InvalidOrder("Quantity must be a positive integer", field="quantity")
        if isinstance(quantity, float) and not quantity.is_integer():
            raise InvalidOrder("Quantity must be a positive integer", field="quantity")
        if quantity <= 0:
            raise InvalidOrder("Quantity must be a positive integer", field="quantity")
        return int(quantity)

    def _resolve_price(self, symbol: str, on: Optional[date], require_enabled: bool = True) -> Decimal:
        if not self.store.has_symbol(symbol):
            raise UnknownSymbol(f"Unknown symbol: {symbol}", symbol=symbol)
        if require_enabled and not self.store.is_enabled(symbol):
            raise SymbolDisabled(f"Trading in {symbol} is disabled", symbol=symbol)
        price = self.store.price_at(symbol, on)
        if price is None:
            raise PriceUnavailable(
                f"No price for {symbol} on {on}",
                symbol=symbol,
                date=on.isoformat() if on else None,
            )
        return price

    async def submit_order(self, broker_id: int, symbol: str, side: str, quantity: int) -> OrderResult:
        order_side = self._normalize_side(side)
        qty = self._normalize_quantity(quantity)
        if not symbol:
            raise InvalidOrder("Missing required field: symbol", field="symbol")
        self.ledger.get(broker_id)

        async with self.ledger.lock_for(broker_id):
            portfolio = self.ledger.get(broker_id)
            current_date = self.clock.current_date
            price = self._resolve_price(symbol, current_date)
            order = self._execute(portfolio, symbol, order_side, qty, price, current_date)
            self._persist_broker(portfolio)

        logger.info(
            f"Order {order.id} broker {broker_id} {order_side.value} {qty} {symbol} @ {price} on {current_date}"
        )
        return OrderResult(
            order_id=order.id,
            broker_id=broker_id,
            symbol=symbol,
            side=order_side.value,
            quantity=qty,
            price=price,
            new_balance=portfolio.balance,
            new_holdings=dict(portfolio.holdings),
            current_date=current_date,
        )

    def _execute(
        self,
        portfolio: Portfolio,
        symbol: str,
        side: OrderSide,
        quantity: int,
        price: Decimal,
        current_date: Optional[date],
    ) -> Order:
        # caller holds the broker lock
        if side == OrderSide.BUY:
            portfolio.buy(symbol, quantity, price)
        else:
            portfolio.sell(symbol, quantity, price)
        order = Order(
            id=str(uuid.uuid4()),
            broker_id=portfolio.broker_id,
            symbol=symbol,
            side=side.value,
            quantity=quantity,
            price=price,
            simulated_date=current_date,
            submitted_at=datetime.now(timezone.utc),
        )
        self._orders.append(order)
        self._orders_by_id[order.id] = order
        self._persist_order(order)
        return order

    async def liquidate(self, broker_id: int) -> List[Order]:
        async with self.ledger.lock_for(broker_id):
            portfolio = self.ledger.get(broker_id)
            orders = self._liquidate_locked(portfolio)
            self._persist_broker(portfolio)
        return orders

    def _liquidate_locked(self, portfolio: Portfolio) -> List[Order]:
        """Sell every holding at the current price. Disabled symbols can still be liquidated."""
        current_date = self.clock.current_date
        # resolve every price first so nothing is sold unless all can be
        prices = {
            symbol: self._resolve_price(symbol, current_date, require_enabled=False)
            for symbol in portfolio.holdings
        }
        orders = [
            self._execute(portfolio, symbol, OrderSide.SELL, portfolio.holdings[symbol], price, current_date)
            for symbol, price in prices.items()
        ]
        if orders:
            logger.info(f"Liquidated {len(orders)} holdings of broker {portfolio.broker_id}")
        return orders

    async def add_broker(self, name: str, balance: Decimal, broker_id: Optional[int] = None) -> Portfolio:
        portfolio = self.ledger.add_broker(name, Decimal(balance), broker_id)
        self._persist_broker(portfolio)
        return portfolio

    async def rename_broker(self, broker_id: int, name: str) -> Portfolio:
        async with self.ledger.lock_for(broker_id):
            portfolio = self.ledger.rename_broker(broker_id, name)
            self._persist_broker(portfolio)
        return portfolio

    async def delete_broker(self, broker_id: int, liquidate: bool = False) -> List[Order]:
        """
        Delete a broker. Holdings must be empty unless ``liquidate`` is set, in
        which case they are sold at the current price first.
        """
        self.ledger.get(broker_id)
        async with self.ledger.lock_for(broker_id):
            portfolio = self.ledger.get(broker_id)
            orders: List[Order] = []
            if liquidate and portfolio.holdings:
                orders = self._liquidate_locked(portfolio)
            self.ledger.remove_broker(broker_id)
        if self.persistence is not None and self.storage is not None:
            storage = self.storage
            self.persistence.enqueue(f"broker:{broker_id}", lambda: storage.delete_broker(broker_id))
        return orders

    def current_prices(self) -> Dict[str, Decimal]:
        return self.store.prices_at(self.clock.current_date)

    async def get_balance(self, broker_id: int) -> Dict[str, Any]:
        portfolio = self.ledger.get(broker_id)
        return portfolio.to_dict(prices=self.current_prices())

    async def get_order_status(self, order_id: str) -> Dict[str, Any]:
        order = self._orders_by_id.get(order_id)
        if order is None:
            return {"status": "NOT_FOUND", "order_id": order_id}
        return {"status": "FILLED", **order.to_dict()}

    def list_orders(self, broker_id: Optional[int] = None) -> List[Order]:
        if broker_id is None:
            return list(self._orders)
        return [o for o in self._orders if o.broker_id == broker_id]

    def _persist_broker(self, portfolio: Portfolio) -> None:
        if self.persistence is None or self.storage is None:
            return
        record = portfolio.to_record()
        storage = self.storage
        self.persistence.enqueue(f"broker:{record.id}", lambda: storage.save_broker(record))

    def _persist_order(self, order: Order) -> None:
        if self.persistence is None or self.storage is None:
            return
        data = order.to_dict()
        storage = self.storage
        self.persistence.enqueue(f"order:{order.id}", lambda: storage.append_order(data))
