"""Shared constants and defaults."""

# Interval shorthand to minutes for the scheduler
INTERVAL_MINUTES: dict[str, int] = {
    "1m": 1,
    "5m": 5,
    "10m": 10,
    "15m": 15,
    "30m": 30,
    "1h": 60,
    "2h": 120,
    "4h": 240,
    "8h": 480,
    "1d": 1440,
}

# Scheduled task ids
TASK_BUY = "buy"
TASK_SELL = "sell"
TASK_HOLDINGS = "holdings"
TASK_PERFORMANCE = "performance"
TASK_TOKEN_REFRESH = "token_refresh"

TASK_NAMES: dict[str, str] = {
    TASK_BUY: "Buy strategies",
    TASK_SELL: "Sell strategies",
    TASK_HOLDINGS: "Holdings report",
    TASK_PERFORMANCE: "Performance report",
    TASK_TOKEN_REFRESH: "Token data refresh",
}

PUMP_PROTOCOL_NAME = "pump"

# Strategy names recorded on trades
STRATEGY_EARLY_ENTRY = "early-entry"
STRATEGY_GROWTH_ENTRY = "growth-entry"
STRATEGY_TAKE_PROFIT = "take-profit"
STRATEGY_STOP_LOSS = "stop-loss"
STRATEGY_MANUAL = "manual"

# pump.fun program and accounts
PUMP_PROGRAM_ADDRESS = "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P"
PUMP_TOKEN_SUPPLY = 1_000_000_000  # every pump.fun token mints a fixed supply
PUMP_LIQUIDITY_OWNERS = [
    "BesTLFfCP9tAuUDWnqPdtDXZRu5xK6XD8TrABXGBECuf",
    "62dvmMKAfnt8jSdT3ToZtxAasx7Ud1tJ6xWsjwwhfaEQ",
    "73ZzSgNi27V9MdNQYyE39Vs9m1P9ZKgGPCHAJHin5gLd",
    "DwPwU1PAjTXtYNYkeR6awYMDBdSEk12npKzJWKbDHMta",
    "FJ4P2a2FqaWmqYpBw9eEfWD6cXV3F2qLPHvAA5jozscS",
    "6crUHiCoxZsQuxdMAB18VATKrg7ToyTVxt7MbLYmtugu",
]
