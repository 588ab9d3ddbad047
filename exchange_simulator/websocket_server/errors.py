class ExchangeError(Exception):
    """Base class for errors reported back to the requesting client."""
    code = "EXCHANGE_ERROR"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict:
        return {"code": self.code, "reason": self.message, **self.details}


class PriceUnavailable(ExchangeError):
    code = "PRICE_UNAVAILABLE"


class InsufficientFunds(ExchangeError):
    code = "INSUFFICIENT_FUNDS"


class InsufficientHoldings(ExchangeError):
    code = "INSUFFICIENT_HOLDINGS"


class SymbolDisabled(ExchangeError):
    code = "SYMBOL_DISABLED"


class UnknownSymbol(ExchangeError):
    code = "UNKNOWN_SYMBOL"


class BrokerNotFound(ExchangeError):
    code = "BROKER_NOT_FOUND"


class BrokerHasHoldings(ExchangeError):
    code = "BROKER_HAS_HOLDINGS"


class InvalidOrder(ExchangeError):
    code = "INVALID_ORDER"


class ClockRunning(ExchangeError):
    code = "CLOCK_RUNNING"


class PersistenceFailure(ExchangeError):
    """A durable write failed after the in-memory state was already committed."""
    code = "PERSISTENCE_FAILURE"


class InvalidRequest(ExchangeError):
    """Malformed or incomplete request fields outside of order submission."""
    code = "INVALID_REQUEST"
