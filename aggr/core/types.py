"""Core data types for the aggregation core.

This module defines the fundamental data structures shared by the
aggregator, the chunk cache, the series layer and the controller:
- Trade records are immutable (frozen)
- Bars are mutable while their bucket is current and cloned once closed
- Timestamps are integer milliseconds since the epoch (UTC)
- Amounts are floats in the instrument's quote currency
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from .constants import Side


# ============================================================================
# Market Data Types
# ============================================================================

@dataclass(frozen=True)
class Trade:
    """
    Normalized trade handed over by the transport layer.

    Attributes:
        exchange: Exchange identifier (e.g. "BINANCE")
        pair: Instrument identifier on that exchange (e.g. "btcusdt")
        price: Trade price
        size: Trade size in base units
        side: Aggressor side
        timestamp: Trade time in milliseconds
        liquidation: True when the trade is a forced liquidation
    """
    exchange: str
    pair: str
    price: float
    size: float
    side: Side
    timestamp: int
    liquidation: bool = False

    @property
    def source(self) -> str:
        """Source identifier: exchange and instrument."""
        return f"{self.exchange}:{self.pair}"

    @property
    def amount(self) -> float:
        """Traded amount in quote currency (price * size)."""
        return self.price * self.size


@dataclass
class SourceBar:
    """
    One source's contribution to a time bucket.

    Mutated in place while its bucket is current. ``empty`` is true iff no
    trade touched the bar since the last reset; an empty bar is never
    persisted and never contributes to the combined bar.
    """
    exchange: str
    pair: str
    timestamp: int = 0
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    close: float = 0.0
    vbuy: float = 0.0
    vsell: float = 0.0
    cbuy: int = 0
    csell: int = 0
    lbuy: float = 0.0
    lsell: float = 0.0
    empty: bool = True

    @property
    def source(self) -> str:
        return f"{self.exchange}:{self.pair}"

    def clone(self, timestamp: Optional[int] = None) -> "SourceBar":
        """Copy of this bar, optionally stamped with another timestamp."""
        if timestamp is None:
            return replace(self)
        return replace(self, timestamp=timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source': self.source,
            'exchange': self.exchange,
            'pair': self.pair,
            'timestamp': self.timestamp,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'vbuy': self.vbuy,
            'vsell': self.vsell,
            'cbuy': self.cbuy,
            'csell': self.csell,
            'lbuy': self.lbuy,
            'lsell': self.lsell,
        }


@dataclass
class CombinedBar:
    """Sum of all active sources' volumes and counts for one bucket."""
    vbuy: float = 0.0
    vsell: float = 0.0
    cbuy: int = 0
    csell: int = 0
    lbuy: float = 0.0
    lsell: float = 0.0
    empty: bool = True


@dataclass
class Volumes:
    """Snapshot of volumes over one drained trade batch, fed to counters."""
    vbuy: float = 0.0
    vsell: float = 0.0
    cbuy: int = 0
    csell: int = 0
    lbuy: float = 0.0
    lsell: float = 0.0

    @classmethod
    def from_trades(cls, trades: List[Trade], active: Optional[frozenset] = None) -> "Volumes":
        """Sum a batch of trades, optionally restricted to active sources."""
        volumes = cls()
        for trade in trades:
            if active is not None and trade.source not in active:
                continue
            side = trade.side.value
            if trade.liquidation:
                setattr(volumes, 'l' + side, getattr(volumes, 'l' + side) + trade.amount)
                continue
            setattr(volumes, 'v' + side, getattr(volumes, 'v' + side) + trade.amount)
            setattr(volumes, 'c' + side, getattr(volumes, 'c' + side) + 1)
        return volumes


# ============================================================================
# Cache Types
# ============================================================================

@dataclass
class TimeRange:
    """Time range in milliseconds; either bound may be unknown."""
    start: Optional[int] = None
    end: Optional[int] = None


@dataclass
class Chunk:
    """
    Ordered, size-bounded run of finished source bars.

    Attributes:
        start: Timestamp of the first bucket stored (``from``)
        end: Timestamp of the last bucket stored (``to``)
        bars: Cloned source bars in time order
        active: Still receiving appended bars
        rendered: Selected for display by the last range selection
    """
    start: int
    end: int
    bars: List[SourceBar] = field(default_factory=list)
    active: bool = True
    rendered: bool = True


# ============================================================================
# Output Types
# ============================================================================

@dataclass
class OHLC:
    """Open/high/low/close record produced by ohlc formulas."""
    open: float
    high: float
    low: float
    close: float

    def to_dict(self) -> Dict[str, float]:
        return {
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
        }


@dataclass(frozen=True)
class SerieErrorEvent:
    """Message pushed on the validation error channel."""
    serie_id: str
    message: str
