"""
Bar Aggregator - folds trades into time buckets.

A Renderer is the in-flight state of one bucket: the combined bar of the
active sources, one SourceBar per source seen so far, and the per-series
instruction state. The aggregator owns the rules for moving trades and
persisted bars into a renderer; deciding when a bucket closes and what to
do with the closed bucket is the controller's job.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from ..core.constants import VOLUME_FIELDS
from ..core.types import CombinedBar, SourceBar, Trade


@dataclass
class RendererSerieData:
    """Per-series state held by one renderer."""
    functions: List[Any] = field(default_factory=list)
    variables: List[Any] = field(default_factory=list)
    value: Optional[float] = None
    point: Any = None


@dataclass
class Renderer:
    """
    Mutable aggregation context for one bucket.

    Attributes:
        timestamp: Bucket start in ms
        bar: Combined bar of the active sources
        sources: Source bars by source id, carried across buckets
        series: Series state by series id
        active: Source ids counted in the combined bar
    """
    timestamp: int
    bar: CombinedBar = field(default_factory=CombinedBar)
    sources: Dict[str, SourceBar] = field(default_factory=dict)
    series: Dict[str, RendererSerieData] = field(default_factory=dict)
    active: FrozenSet[str] = frozenset()

    @property
    def empty(self) -> bool:
        return self.bar.empty


class BarAggregator:
    """
    Folds trades (live) and source bars (replay) into renderers.

    Stateless apart from the bucket width; every method works on the
    renderer it is given.
    """

    def __init__(self, timeframe: int):
        """
        Initialize aggregator.

        Args:
            timeframe: Bucket width in ms
        """
        self.timeframe = timeframe

    def bucket_of(self, timestamp: int) -> int:
        """Start of the bucket containing timestamp."""
        return (int(timestamp) // self.timeframe) * self.timeframe

    def create_renderer(self, timestamp: int, active: Iterable[str] = ()) -> Renderer:
        """Empty renderer positioned on a bucket."""
        return Renderer(timestamp=timestamp, active=frozenset(active))

    def fold_trade(self, renderer: Renderer, trade: Trade) -> None:
        """
        Apply one trade to the renderer's current bucket.

        Liquidations only add liquidation volume; they never move prices.
        """
        identifier = trade.source
        source_bar = renderer.sources.get(identifier)

        if source_bar is None:
            source_bar = SourceBar(
                exchange=trade.exchange,
                pair=trade.pair,
                timestamp=renderer.timestamp,
                close=trade.price
            )
            self.reset_bar(source_bar)
            renderer.sources[identifier] = source_bar

        source_bar.empty = False
        is_active = identifier in renderer.active
        side = trade.side.value
        amount = trade.amount

        if trade.liquidation:
            field_name = 'l' + side
            setattr(source_bar, field_name, getattr(source_bar, field_name) + amount)

            if is_active:
                setattr(renderer.bar, field_name, getattr(renderer.bar, field_name) + amount)
                renderer.bar.empty = False

            return

        source_bar.high = max(source_bar.high, trade.price)
        source_bar.low = min(source_bar.low, trade.price)
        source_bar.close = trade.price

        setattr(source_bar, 'c' + side, getattr(source_bar, 'c' + side) + 1)
        setattr(source_bar, 'v' + side, getattr(source_bar, 'v' + side) + amount)

        if is_active:
            setattr(renderer.bar, 'v' + side, getattr(renderer.bar, 'v' + side) + amount)
            setattr(renderer.bar, 'c' + side, getattr(renderer.bar, 'c' + side) + 1)
            renderer.bar.empty = False

    def fold_source_bar(self, renderer: Renderer, bar: SourceBar) -> None:
        """Apply a persisted source bar to the renderer (replay)."""
        source_bar = bar.clone()
        source_bar.empty = False
        renderer.sources[source_bar.source] = source_bar

        if source_bar.source not in renderer.active:
            return

        self._add_volumes(renderer.bar, source_bar)
        renderer.bar.empty = False

    def recombine(self, renderer: Renderer, active: Iterable[str]) -> None:
        """
        Rebuild the combined bar from the source bars for a new active set.

        Raw per-source data is kept for every source, so no trade needs to
        be replayed.
        """
        renderer.active = frozenset(active)
        renderer.bar = CombinedBar()

        for identifier, source_bar in renderer.sources.items():
            if source_bar.empty or identifier not in renderer.active:
                continue

            self._add_volumes(renderer.bar, source_bar)
            renderer.bar.empty = False

    def finished_bars(self, renderer: Renderer) -> List[SourceBar]:
        """Clones of the source bars touched in the current bucket."""
        return [
            source_bar.clone(renderer.timestamp)
            for source_bar in renderer.sources.values()
            if not source_bar.empty
        ]

    def reset_renderer_bar(self, renderer: Renderer) -> None:
        """Clear the renderer for the next bucket, carrying source prices."""
        renderer.bar = CombinedBar()

        for source_bar in renderer.sources.values():
            self.reset_bar(source_bar)

    def reset_bar(self, bar: SourceBar) -> None:
        """Carry close into open/high/low and zero volumes and counts."""
        bar.open = bar.close
        bar.high = bar.close
        bar.low = bar.close
        bar.vbuy = 0.0
        bar.vsell = 0.0
        bar.cbuy = 0
        bar.csell = 0
        bar.lbuy = 0.0
        bar.lsell = 0.0
        bar.empty = True

    def advance(self, renderer: Renderer, timestamp: int) -> None:
        """Move the renderer to another bucket."""
        renderer.timestamp = timestamp

        for source_bar in renderer.sources.values():
            source_bar.timestamp = timestamp

        self.reset_renderer_bar(renderer)

    @staticmethod
    def _add_volumes(bar: CombinedBar, source_bar: SourceBar) -> None:
        for field_name in VOLUME_FIELDS:
            setattr(bar, field_name, getattr(bar, field_name) + getattr(source_bar, field_name))
