from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from exchange_simulator.websocket_server.ExchangeInterface.Order import Order
from exchange_simulator.websocket_server.ExchangeInterface.OrderResult import OrderResult


class ExchangeInterface(ABC):
    """Abstract base class for order execution services"""

    @abstractmethod
    async def submit_order(self, broker_id: int, symbol: str, side: str, quantity: int) -> OrderResult:
        """Execute a market order at the current simulated price"""
        pass

    @abstractmethod
    async def get_balance(self, broker_id: int) -> Dict[str, Any]:
        """Get a broker's balance, holdings and valuation"""
        pass

    @abstractmethod
    async def get_order_status(self, order_id: str) -> Dict[str, Any]:
        """Look up an executed order by ID"""
        pass

    @abstractmethod
    def list_orders(self, broker_id: Optional[int] = None) -> List[Order]:
        pass
