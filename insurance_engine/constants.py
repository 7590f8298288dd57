"""
System-wide constants for the insurance engine.

Centralizes magic numbers used across modules. Anything an operator may
want to tune also has a config field (see config/config.py) defaulting
to the value here.
"""
from decimal import Decimal

# Price tracking
PRICE_WINDOW_CAPACITY = 1000  # samples per symbol
PRICE_FRESHNESS_SECONDS = 10

# Locking
LOCK_KEY_PREFIX = "insurance-lock"
LOCK_TTL_SECONDS = 60

# Reconciliation
CREATION_TIMEOUT_SECONDS = 60
PENDING_SWEEP_INTERVAL_SECONDS = 15
ACTIVE_SWEEP_INTERVAL_SECONDS = 10
LEDGER_EVENT_POLL_SECONDS = 5
PAIR_CONFIG_REFRESH_SECONDS = 600

# Binance USD-M futures
BINANCE_FUTURES_WS_ENDPOINT = "wss://fstream.binance.com/stream"
MAX_STREAMS_PER_CONNECTION = 200

# Ledger
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
LEDGER_EVENT_NAME = "EInsurance"

# Formula bounds
MIN_MARGIN = Decimal("5")
MIN_Q_COVER = Decimal("10")
MAX_Q_COVER = Decimal("1000000")
MIN_HEDGE_MARGIN_PER_Q_COVER = Decimal("0.02")
MAX_HEDGE_MARGIN_PER_Q_COVER = Decimal("0.1")
MIN_P_CLAIM_DISTANCE = Decimal("0.01")
MIN_PERIOD = 1
MAX_PERIOD_DAYS = 15
MAX_LEVERAGE = Decimal("100")
REFUND_DISTANCE_RATIO = Decimal("0.3")
DEFAULT_DAY_CHANGE_RATIO = Decimal("0.04")

# Change-ratio table: (last_day_inclusive, multiplier of the 8h average range).
# The running sum restarts on CHANGE_RATIO_RESTART_DAY, whose tier carries
# the whole first-week move by itself.
CHANGE_RATIO_TABLE_DAYS = 365
CHANGE_RATIO_TIERS = (
    (1, Decimal("1.0")),
    (4, Decimal("0.5")),
    (5, Decimal("2.5")),
    (10, Decimal("0.3")),
    (15, Decimal("0.25")),
    (20, Decimal("0.2")),
    (27, Decimal("0.15")),
    (30, Decimal("0.1")),
    (365, Decimal("0.02")),
)
CHANGE_RATIO_RESTART_DAY = 5
CHANGE_RATIO_LOOKBACK_DAYS = 2
CHANGE_RATIO_CANDLE_INTERVAL = "8h"
