"""Error types raised by the ledger, strategies and scheduler."""


class LedgerError(Exception):
    """Base class for ledger-integrity errors. Always surfaced to the submitter."""


class InvalidQuantity(LedgerError, ValueError):
    def __init__(self, quantity):
        self.quantity = quantity
        super().__init__(f"Quantity must be a positive number, got {quantity!r}")


class InvalidPrice(LedgerError, ValueError):
    def __init__(self, price):
        self.price = price
        super().__init__(f"Price must be a positive number, got {price!r}")


class InsufficientHolding(LedgerError):
    """A sell asked for more than the instrument's current holding."""

    def __init__(self, instrument: str, requested: float, holding: float):
        self.instrument = instrument
        self.requested = requested
        self.holding = holding
        super().__init__(
            f"Insufficient holding for {instrument}: attempted to sell {requested}, "
            f"current holding is {holding}"
        )


class InstrumentUnknown(LedgerError, KeyError):
    def __init__(self, instrument: str):
        self.instrument = instrument
        super().__init__(instrument)

    def __str__(self) -> str:
        return f"No trade history for instrument {self.instrument}"


class PriceUnavailable(Exception):
    """No usable (present and fresh) price for an instrument. Non-fatal."""

    def __init__(self, instrument: str, reason: str = "unavailable"):
        self.instrument = instrument
        self.reason = reason
        super().__init__(f"Price for {instrument} is {reason}")


class StrategyExecutionError(Exception):
    """A strategy raised while evaluating; other strategies still run."""

    def __init__(self, strategy_name: str, cause: BaseException):
        self.strategy_name = strategy_name
        self.cause = cause
        super().__init__(f"Strategy {strategy_name} failed: {cause}")
