"""
Data Layer - trade aggregation and bar storage.

Main Components:
    BarAggregator: Folds trades and persisted bars into renderers
    Renderer: In-flight state of one time bucket
    ChunkCache: Finished per-source bars grouped into chunks
    TradeQueue: Trade batches waiting for the next drain
"""

from .bar_aggregator import BarAggregator, Renderer, RendererSerieData
from .chunk_cache import ChunkCache
from .trade_queue import TradeQueue, trades_from_frame

__all__ = [
    "BarAggregator",
    "Renderer",
    "RendererSerieData",
    "ChunkCache",
    "TradeQueue",
    "trades_from_frame",
]
