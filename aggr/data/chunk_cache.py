"""
Chunk Cache - finished per-source bars grouped into chunks.

Chunks are kept in arrival order. Only the last chunk may be active (still
appended to); ranges never overlap and the last chunk's end is the cache's
high-water mark.
"""

import logging
from typing import Any, Dict, List, Optional

import pandas as pd

from ..core.constants import CHUNK_LOOKBACK_BARS, MAX_BARS_PER_CHUNK, SOURCE_BAR_FIELDS
from ..core.types import Chunk, SourceBar, TimeRange

logger = logging.getLogger(__name__)


class ChunkCache:
    """
    In-memory store of finished source bars.

    Holds a bounded working set only; eviction of old chunks is left to
    the caller.
    """

    def __init__(self, max_bars_per_chunk: int = MAX_BARS_PER_CHUNK):
        """
        Initialize chunk cache.

        Args:
            max_bars_per_chunk: Bars a chunk may hold before a new one is opened
        """
        self.max_bars_per_chunk = max_bars_per_chunk
        self.chunks: List[Chunk] = []
        self.cache_range = TimeRange()

    def save_chunk(self, descriptor: Dict[str, Any]) -> Chunk:
        """
        Append a new chunk.

        Args:
            descriptor: Chunk fields (start, end, bars, active, rendered)

        Returns:
            The stored chunk
        """
        chunk = Chunk(
            start=descriptor['start'],
            end=descriptor['end'],
            bars=list(descriptor.get('bars') or []),
            active=descriptor.get('active', True),
            rendered=descriptor.get('rendered', True)
        )

        self.chunks.append(chunk)

        if self.cache_range.start is None or chunk.start < self.cache_range.start:
            self.cache_range.start = chunk.start
        if self.cache_range.end is None or chunk.end > self.cache_range.end:
            self.cache_range.end = chunk.end

        logger.debug(
            "chunk saved: #%d start=%s end=%s bars=%d",
            len(self.chunks) - 1, chunk.start, chunk.end, len(chunk.bars)
        )

        return chunk

    def resolve_active_chunk(self, active_chunk: Optional[Chunk], timestamp: int) -> Chunk:
        """
        Chunk that receives the bars of the bucket at timestamp.

        A new chunk is opened when there is no active chunk or it is full.
        The bucket at the high-water mark goes back into the last chunk,
        which keeps chunk ranges disjoint. Older buckets are rejected.
        """
        if active_chunk is not None and len(active_chunk.bars) < self.max_bars_per_chunk:
            return active_chunk

        last_chunk = self.last_chunk
        high_water = self.cache_range.end

        if high_water is not None and timestamp < high_water:
            raise ValueError(f"bucket {timestamp} is older than cache end {high_water}")

        if last_chunk is not None and timestamp == high_water:
            last_chunk.active = True
            logger.debug("reuse last chunk as active chunk: end=%s bars=%d", last_chunk.end, len(last_chunk.bars))
            return last_chunk

        if active_chunk is not None:
            logger.debug(
                "seal active chunk: start=%s end=%s bars=%d",
                active_chunk.start, active_chunk.end, len(active_chunk.bars)
            )
            active_chunk.active = False

        return self.save_chunk({
            'start': timestamp,
            'end': timestamp,
            'active': True,
            'rendered': True,
            'bars': [],
        })

    def append_bars(self, chunk: Chunk, timestamp: int, bars: List[SourceBar]) -> None:
        """Append one bucket's finished bars and move the high-water mark."""
        chunk.bars.extend(bars)

        if timestamp > chunk.end:
            chunk.end = timestamp

        if self.cache_range.end is None or chunk.end > self.cache_range.end:
            self.cache_range.end = chunk.end
        if self.cache_range.start is None:
            self.cache_range.start = chunk.start

    def pop_bucket(self, timestamp: int) -> List[SourceBar]:
        """
        Remove and return the bars of the bucket at the high-water mark.

        Used to resume that bucket live; its bars are persisted again when
        it closes. Any other timestamp returns nothing.
        """
        last_chunk = self.last_chunk

        if last_chunk is None or timestamp != self.cache_range.end:
            return []

        keep = len(last_chunk.bars)
        while keep and last_chunk.bars[keep - 1].timestamp == timestamp:
            keep -= 1

        bars = last_chunk.bars[keep:]
        del last_chunk.bars[keep:]

        if bars:
            logger.debug("resume bucket %s: %d bars taken from last chunk", timestamp, len(bars))

        return bars

    def select(
        self,
        range_start: Optional[int],
        timeframe: int,
        lookback: int = CHUNK_LOOKBACK_BARS
    ) -> List[Chunk]:
        """
        Mark and return the chunks needed to draw from range_start.

        A chunk is selected when it ends after range_start minus lookback
        buckets; no range selects everything.
        """
        threshold = None if range_start is None else range_start - lookback * timeframe

        for chunk in self.chunks:
            chunk.rendered = threshold is None or chunk.end > threshold

        return [chunk for chunk in self.chunks if chunk.rendered]

    def rendered_bars(self) -> List[SourceBar]:
        """Bars of the chunks selected by the last selection."""
        return self.flatten(chunk for chunk in self.chunks if chunk.rendered)

    @staticmethod
    def flatten(chunks) -> List[SourceBar]:
        """Concatenate chunk bars in order."""
        bars: List[SourceBar] = []
        for chunk in chunks:
            bars.extend(chunk.bars)
        return bars

    @property
    def last_chunk(self) -> Optional[Chunk]:
        if not self.chunks:
            return None
        return self.chunks[-1]

    def clear(self) -> None:
        """Discard all chunks."""
        self.chunks = []
        self.cache_range = TimeRange()

    def __len__(self) -> int:
        """Number of bars in cache."""
        return sum(len(chunk.bars) for chunk in self.chunks)

    def to_frame(self) -> pd.DataFrame:
        """All cached bars as a DataFrame, one row per source bar."""
        columns = ['timestamp', 'source', 'exchange', 'pair'] + list(SOURCE_BAR_FIELDS)
        rows = [bar.to_dict() for bar in self.flatten(self.chunks)]

        df = pd.DataFrame(rows, columns=columns)
        df['time'] = pd.to_datetime(df['timestamp'], unit='ms', utc=True)
        return df
