"""
Trade Queue - holds incoming trade batches until the next drain.
"""

import logging
from collections import deque
from typing import Deque, Iterable, List

import pandas as pd

from ..core.constants import Side
from ..core.types import Trade

logger = logging.getLogger(__name__)

TRUE_FLAGS = {'true', 't', 'yes', 'y', '1'}


class TradeQueue:
    """
    FIFO of trades waiting to be aggregated.

    Batches are appended in arrival order and drained as one flat list,
    so trades keep both their in-batch and their batch order.
    """

    def __init__(self):
        self.trades: Deque[Trade] = deque()

    def push(self, trades: Iterable[Trade]) -> None:
        """Queue a batch of trades; an empty batch is ignored."""
        batch = list(trades)

        if not batch:
            return

        self.trades.extend(batch)

    def drain(self) -> List[Trade]:
        """Remove and return every queued trade."""
        trades = list(self.trades)
        self.trades.clear()
        return trades

    def clear(self) -> None:
        """Drop queued trades without processing them."""
        if self.trades:
            logger.debug("dropping %d queued trades", len(self.trades))
        self.trades.clear()

    def __len__(self) -> int:
        return len(self.trades)


def trades_from_frame(df: pd.DataFrame) -> List[Trade]:
    """
    Convert a DataFrame of trades into Trade records.

    Expected columns: exchange, pair, price, size, side, timestamp and
    optionally liquidation (blank cells are regular trades). Timestamps
    may be integer milliseconds or datetimes. Rows are sorted by timestamp (stable).

    Args:
        df: Trades table, e.g. loaded with pandas.read_csv

    Returns:
        Trades in time order
    """
    if df.empty:
        return []

    df = df.copy()

    if pd.api.types.is_datetime64_any_dtype(df['timestamp']):
        timestamps = df['timestamp']
        if timestamps.dt.tz is None:
            timestamps = timestamps.dt.tz_localize('UTC')
        df['timestamp'] = (timestamps - pd.Timestamp(0, tz='UTC')) // pd.Timedelta(milliseconds=1)

    if 'liquidation' not in df.columns:
        df['liquidation'] = False
    else:
        df['liquidation'] = df['liquidation'].map(_parse_flag)

    df = df.sort_values('timestamp', kind='stable')

    return [
        Trade(
            exchange=str(row.exchange),
            pair=str(row.pair),
            price=float(row.price),
            size=float(row.size),
            side=Side(str(row.side).lower()),
            timestamp=int(row.timestamp),
            liquidation=bool(row.liquidation)
        )
        for row in df.itertuples(index=False)
    ]


def _parse_flag(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in TRUE_FLAGS
    if pd.isna(value):
        return False
    return bool(value)
