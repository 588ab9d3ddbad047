from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional


@dataclass
class OrderResult:
    order_id: str
    broker_id: int
    symbol: str
    side: str
    quantity: int
    price: Decimal
    new_balance: Decimal
    new_holdings: Dict[str, int]
    current_date: Optional[date]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "broker_id": self.broker_id,
            "symbol": self.symbol,
            "side": self.side,
            "quantity": self.quantity,
            "price": float(self.price),
            "new_balance": float(self.new_balance),
            "new_holdings": dict(self.new_holdings),
            "current_date": self.current_date.isoformat() if self.current_date else None,
        }
