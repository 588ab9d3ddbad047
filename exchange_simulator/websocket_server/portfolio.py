import asyncio
import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from exchange_simulator.models import BrokerRecord
from exchange_simulator.websocket_server.errors import (
    BrokerHasHoldings,
    BrokerNotFound,
    InsufficientFunds,
    InsufficientHoldings,
    InvalidOrder,
)


logger = logging.getLogger(__name__)


class Portfolio:
    def __init__(
        self,
        broker_id: int,
        name: str,
        balance: Decimal = Decimal("0"),
        holdings: Optional[Dict[str, int]] = None,
        cost_basis: Optional[Dict[str, Decimal]] = None,
    ):
        """
        Cash balance and holdings of one broker.

        Args:
            broker_id: Unique broker id
            name: Display name
            balance: Cash balance, never negative
            holdings: {symbol: quantity}, zero quantities are not kept
            cost_basis: {symbol: weighted-average purchase price}
        """
        if balance < 0:
            raise ValueError("balance must be >= 0")
        self.broker_id = broker_id
        self.name = name
        self.balance = Decimal(balance)
        self.holdings: Dict[str, int] = {s: q for s, q in (holdings or {}).items() if q > 0}
        self.cost_basis: Dict[str, Decimal] = {
            s: Decimal(p) for s, p in (cost_basis or {}).items() if s in self.holdings
        }

    @classmethod
    def from_record(cls, record: BrokerRecord) -> "Portfolio":
        return cls(
            broker_id=record.id,
            name=record.name,
            balance=record.balance,
            holdings=dict(record.holdings),
            cost_basis=dict(record.cost_basis),
        )

    def to_record(self) -> BrokerRecord:
        return BrokerRecord(
            id=self.broker_id,
            name=self.name,
            balance=self.balance,
            holdings=dict(self.holdings),
            cost_basis=dict(self.cost_basis),
        )

    def buy(self, symbol: str, quantity: int, price: Decimal) -> None:
        """Debit the balance and add to the holding; raises before mutating."""
        cost = price * quantity
        if self.balance < cost:
            raise InsufficientFunds(
                f"Insufficient funds: {quantity} {symbol} @ {price} costs {cost}, balance is {self.balance}",
                required=float(cost),
                balance=float(self.balance),
            )
        self.balance -= cost
        old_qty = self.holdings.get(symbol, 0)
        new_qty = old_qty + quantity
        old_price = self.cost_basis.get(symbol, price)
        # weighted average purchase price
        self.cost_basis[symbol] = (old_price * old_qty + price * quantity) / new_qty
        self.holdings[symbol] = new_qty

    def sell(self, symbol: str, quantity: int, price: Decimal) -> None:
        """Credit the balance and reduce the holding; raises before mutating."""
        held = self.holdings.get(symbol, 0)
        if held < quantity:
            raise InsufficientHoldings(
                f"Insufficient holdings: selling {quantity} {symbol}, holding {held}",
                requested=quantity,
                held=held,
            )
        self.balance += price * quantity
        new_qty = held - quantity
        if new_qty == 0:
            del self.holdings[symbol]
            self.cost_basis.pop(symbol, None)
        else:
            self.holdings[symbol] = new_qty

    def value(self, prices: Dict[str, Decimal]) -> Decimal:
        """Cash plus holdings marked at ``prices`` (cost basis when a price is missing)."""
        total = self.balance
        for symbol, qty in self.holdings.items():
            total += qty * prices.get(symbol, self.cost_basis.get(symbol, Decimal("0")))
        return total

    def profit_loss(self, prices: Dict[str, Decimal]) -> Dict[str, Decimal]:
        """Unrealized profit/loss per held symbol: (price - cost basis) * quantity."""
        pnl: Dict[str, Decimal] = {}
        for symbol, qty in self.holdings.items():
            price = prices.get(symbol)
            if price is None:
                continue
            pnl[symbol] = (price - self.cost_basis.get(symbol, price)) * qty
        return pnl

    def to_dict(self, prices: Optional[Dict[str, Decimal]] = None):
        """
        Convert portfolio to the dictionary format expected by clients.
        When ``prices`` are given the valuation and profit/loss are included.
        """
        data = {
            "id": self.broker_id,
            "name": self.name,
            "balance": float(self.balance),
            "holdings": dict(self.holdings),
            "cost_basis": {s: float(p) for s, p in self.cost_basis.items()},
        }
        if prices is not None:
            data["total_value"] = float(self.value(prices))
            data["profit_loss"] = {s: float(v) for s, v in self.profit_loss(prices).items()}
        return data


class PortfolioLedger:
    """
    Owns every broker's portfolio.

    Mutations for a broker must happen while holding ``lock_for(broker_id)``;
    orders for different brokers use different locks and proceed concurrently.
    """

    def __init__(self, records: Iterable[BrokerRecord] = ()):
        self._portfolios: Dict[int, Portfolio] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        for record in records:
            self._portfolios[record.id] = Portfolio.from_record(record)
        logger.info(f"Ledger loaded with {len(self._portfolios)} brokers")

    def lock_for(self, broker_id: int) -> asyncio.Lock:
        lock = self._locks.get(broker_id)
        if lock is None:
            lock = self._locks[broker_id] = asyncio.Lock()
        return lock

    def get(self, broker_id: int) -> Portfolio:
        portfolio = self._portfolios.get(broker_id)
        if portfolio is None:
            raise BrokerNotFound(f"Broker {broker_id} not found", broker_id=broker_id)
        return portfolio

    def list_brokers(self) -> List[Portfolio]:
        return list(self._portfolios.values())

    def generate_broker_id(self) -> int:
        if not self._portfolios:
            return 1
        return max(self._portfolios) + 1

    def add_broker(self, name: str, balance: Decimal, broker_id: Optional[int] = None) -> Portfolio:
        if not name:
            raise InvalidOrder("Broker name is required", field="name")
        if balance < 0:
            raise InvalidOrder("Initial balance must be >= 0", field="balance")
        if broker_id is None:
            broker_id = self.generate_broker_id()
        elif broker_id in self._portfolios:
            raise InvalidOrder(f"Broker {broker_id} already exists", field="id")
        portfolio = Portfolio(broker_id=broker_id, name=name, balance=balance)
        self._portfolios[broker_id] = portfolio
        logger.info(f"Broker {broker_id} ({name}) added with balance {balance}")
        return portfolio

    def rename_broker(self, broker_id: int, name: str) -> Portfolio:
        if not name:
            raise InvalidOrder("Broker name is required", field="name")
        portfolio = self.get(broker_id)
        portfolio.name = name
        return portfolio

    def remove_broker(self, broker_id: int) -> Portfolio:
        """Remove a broker with no holdings. Liquidation is the exchange's job."""
        portfolio = self.get(broker_id)
        if portfolio.holdings:
            raise BrokerHasHoldings(
                f"Broker {broker_id} still holds {', '.join(sorted(portfolio.holdings))}",
                broker_id=broker_id,
                holdings=dict(portfolio.holdings),
            )
        del self._portfolios[broker_id]
        self._locks.pop(broker_id, None)
        logger.info(f"Broker {broker_id} removed")
        return portfolio
