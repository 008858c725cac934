"""Autotrader configuration loaded from environment variables."""

import logging
import os
import sys

from pythonjsonlogger import jsonlogger


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------
STORE_BACKEND = os.environ.get("STORE_BACKEND", "clickhouse")  # clickhouse | memory
CLICKHOUSE_HOST = os.environ.get("CLICKHOUSE_HOST", "localhost")
CLICKHOUSE_PORT = int(os.environ.get("CLICKHOUSE_PORT", "8443"))
CLICKHOUSE_USER = os.environ.get("CLICKHOUSE_USER", "default")
CLICKHOUSE_PASSWORD = os.environ.get("CLICKHOUSE_PASSWORD", "")
CLICKHOUSE_DATABASE = os.environ.get("CLICKHOUSE_DATABASE", "autotrader")
CLICKHOUSE_SECURE = _env_bool("CLICKHOUSE_SECURE", "true")

WRITER_MAX_RETRIES = 3
WRITER_BASE_BACKOFF = 1.0        # Seconds, doubles per retry

# ---------------------------------------------------------------------------
# Broker (Kite Connect v3)
# ---------------------------------------------------------------------------
KITE_API_URL = os.environ.get("KITE_API_URL", "https://api.kite.trade")
KITE_API_VERSION = "3"
BROKER_ORDER_TIMEOUT = float(os.environ.get("BROKER_ORDER_TIMEOUT", "30"))   # seconds
BROKER_QUERY_TIMEOUT = float(os.environ.get("BROKER_QUERY_TIMEOUT", "15"))   # seconds
ORDER_CONFIRM_WAIT = float(os.environ.get("ORDER_CONFIRM_WAIT", "10"))       # seconds
ORDER_CONFIRM_POLL = 1.0         # seconds between order-history polls

# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------
EXECUTION_DRY_RUN = _env_bool("EXECUTION_DRY_RUN", "true")
ORDER_MAX_ATTEMPTS = int(os.environ.get("ORDER_MAX_ATTEMPTS", "3"))  # first try + 2 retries
ORDER_BASE_BACKOFF = float(os.environ.get("ORDER_BASE_BACKOFF", "1.0"))
ORDER_MAX_BACKOFF = 8.0
FANOUT_TIMEOUT = float(os.environ.get("FANOUT_TIMEOUT", "120"))  # ceiling for one signal
DEFAULT_LOT_SIZE = 1
DEFAULT_PRODUCT = "MIS"
OPTIONS_LOT_SIZE = int(os.environ.get("OPTIONS_LOT_SIZE", "75"))  # paper chain only; Kite reports its own

# ---------------------------------------------------------------------------
# Charges (fractions of turnover unless noted)
# ---------------------------------------------------------------------------
BROKERAGE_RATE = 0.0003          # 0.03% per order
BROKERAGE_CAP = 20.0             # Rs per order
EXCHANGE_CHARGES_RATE = 0.000019
STT_RATE = 0.000125              # Sell side
SEBI_CHARGES_RATE = 0.000001     # Rs 10 per crore
STAMP_DUTY_RATE = 0.00003        # Buy side
GST_RATE = 0.18                  # On brokerage + exchange charges

# ---------------------------------------------------------------------------
# Market hours
# ---------------------------------------------------------------------------
MARKET_TIMEZONE = os.environ.get("MARKET_TIMEZONE", "Asia/Kolkata")
MARKET_OPEN = os.environ.get("MARKET_OPEN", "09:15")
MARKET_CLOSE = os.environ.get("MARKET_CLOSE", "15:30")

# ---------------------------------------------------------------------------
# Scheduler intervals (seconds)
# ---------------------------------------------------------------------------
SQUARE_OFF_POLL_INTERVAL = int(os.environ.get("SQUARE_OFF_POLL_INTERVAL", "60"))
SQUARE_OFF_MAX_ATTEMPTS = int(os.environ.get("SQUARE_OFF_MAX_ATTEMPTS", "5"))
SQUARE_OFF_PRE_VALIDATE = _env_bool("SQUARE_OFF_PRE_VALIDATE", "true")
RECONCILIATION_INTERVAL = int(os.environ.get("RECONCILIATION_INTERVAL", "300"))
RECONCILIATION_CONCURRENCY = 10
ORDER_MONITOR_INTERVAL = int(os.environ.get("ORDER_MONITOR_INTERVAL", "15"))
ORDER_MONITOR_CONCURRENCY = 10
DAILY_PNL_TIME = os.environ.get("DAILY_PNL_TIME", "15:45")

# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------
HTTP_HOST = os.environ.get("HTTP_HOST", "0.0.0.0")
HTTP_PORT = int(os.environ.get("HTTP_PORT", "8080"))
WEBHOOK_PASSPHRASE = os.environ.get("WEBHOOK_PASSPHRASE", "")

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def setup_logging() -> None:
    """Configure structured JSON logging."""
    handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(LOG_LEVEL)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("clickhouse_connect").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
