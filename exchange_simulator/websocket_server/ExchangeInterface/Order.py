from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Order:
    """Executed order. Immutable once created; kept in an append-only log."""
    id: str
    broker_id: int
    symbol: str
    side: str
    quantity: int
    price: Decimal
    simulated_date: Optional[date]
    submitted_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["price"] = float(self.price)
        data["simulated_date"] = self.simulated_date.isoformat() if self.simulated_date else None
        data["submitted_at"] = self.submitted_at.isoformat()
        return data
