"""System-wide constants and enumerations for the aggregation core.

This module defines the enumerations, default values and default series
used throughout the package. These values provide sensible defaults and
standardize string values across the codebase.
"""

from enum import Enum


# ============================================================================
# Enumerations
# ============================================================================

class Side(str, Enum):
    """Aggressor side of a trade.

    The value doubles as the bar field suffix: a buy trade feeds
    ``vbuy``/``cbuy``/``lbuy``, a sell trade ``vsell``/``csell``/``lsell``.
    """
    BUY = "buy"
    SELL = "sell"


class SerieType(str, Enum):
    """Visual type of a series.

    Closed set; every member maps to exactly one creation function on the
    render sink.
    """
    LINE = "line"
    AREA = "area"
    HISTOGRAM = "histogram"
    CANDLESTICK = "candlestick"
    BAR = "bar"
    CUSTOM = "custom"

    @property
    def is_ohlc(self) -> bool:
        """True for visuals that draw open/high/low/close points."""
        return self in (SerieType.CANDLESTICK, SerieType.BAR)


class OutputType(str, Enum):
    """Kind of value a compiled formula produces.

    - VALUE: a single number per bucket
    - OHLC: an {open, high, low, close} record per bucket
    - CUSTOM: a record with a ``value`` key plus free-form extras
    """
    VALUE = "value"
    OHLC = "ohlc"
    CUSTOM = "custom"


class InstructionType(str, Enum):
    """Tag of a compiled formula instruction.

    Every tag carries state across bucket boundaries and has a transition
    in ``advance_instructions``.
    """
    AVERAGE_FUNCTION = "average_function"
    EXPONENTIAL_FUNCTION = "exponential_function"
    CUMULATIVE_FUNCTION = "cumulative_function"
    WINDOW_FUNCTION = "window_function"
    OHLC = "ohlc"
    ARRAY = "array"


# ============================================================================
# Bar Fields
# ============================================================================

VOLUME_FIELDS = ("vbuy", "vsell", "cbuy", "csell", "lbuy", "lsell")
PRICE_FIELDS = ("open", "high", "low", "close")
SOURCE_BAR_FIELDS = PRICE_FIELDS + VOLUME_FIELDS


# ============================================================================
# Aggregation Defaults
# ============================================================================

# Finished source bars per chunk before a new chunk is opened
MAX_BARS_PER_CHUNK = 500

# Buckets kept before the visible range when selecting chunks, so series
# with lag (sma, highest, x[k]) have history at the left edge
CHUNK_LOOKBACK_BARS = 20

DEFAULT_TIMEFRAME = "1m"
DEFAULT_REFRESH_RATE_MS = 500
DEFAULT_STATS_WINDOW_MS = 60_000
DEFAULT_STATS_GRANULARITY_MS = 5_000
PAN_RELEASE_DELAY_MS = 1_000

# Bucket widths accepted as timeframe strings, in milliseconds
TIMEFRAMES_MS = {
    "1s": 1_000,
    "5s": 5_000,
    "10s": 10_000,
    "15s": 15_000,
    "30s": 30_000,
    "1m": 60_000,
    "3m": 180_000,
    "5m": 300_000,
    "15m": 900_000,
    "30m": 1_800_000,
    "1h": 3_600_000,
    "4h": 14_400_000,
    "1d": 86_400_000,
}

# Option keys that only change the look of a series; changing one never
# triggers a redraw
NO_REDRAW_OPTIONS = (
    r"priceFormat",
    r"scaleMargins",
    r"color",
    r"^linetype$",
    r"width",
    r"style$",
    r"visible$",
)


# ============================================================================
# Default Series
# ============================================================================

DEFAULT_SERIE_OPTIONS = {
    "priceLineVisible": False,
    "lastValueVisible": True,
}

DEFAULT_SERIES = {
    "price": {
        "type": "candlestick",
        "input": "avg_ohlc()",
        "options": {"priceScaleId": "right"},
    },
    "volume": {
        "type": "histogram",
        "input": "vbuy + vsell",
        "options": {"priceScaleId": "volume"},
    },
    "cvd": {
        "type": "line",
        "input": "cum(vbuy - vsell)",
        "options": {"priceScaleId": "cvd"},
    },
    "liquidations": {
        "type": "histogram",
        "input": "lbuy + lsell",
        "options": {"priceScaleId": "liquidations"},
    },
}
