"""
Replay entry point - aggregates a trades CSV through the chart controller.

Flow:
1. Load configuration (YAML) and apply command line overrides
2. Load trades from CSV into Trade records
3. Feed them to the controller in refresh_rate batches on a virtual
   scheduler, exactly as a live feed would be drained
4. Optionally rebuild everything from the chunk cache
5. Export every series and the cached source bars to CSV
"""

import argparse
import itertools
import sys
from pathlib import Path
from typing import List, Optional

import pandas as pd

from .chart.controller import ChartController
from .chart.sink import MemorySink
from .core.config import ChartConfig, load_config, parse_timeframe
from .core.exceptions import AggrError
from .core.scheduler import Scheduler
from .core.types import SerieErrorEvent, Trade
from .data.trade_queue import trades_from_frame
from .monitoring.logger import get_logger, setup_logger

logger = get_logger(__name__)


class ReplaySession:
    """
    Offline replay of recorded trades.

    Attributes:
        config: Effective chart settings
        sink: In-memory sink collecting the drawn points
        scheduler: Virtual clock driving queue drains and counters
        controller: The chart controller under replay
        errors: Validation errors reported during the replay
    """

    def __init__(self, config: ChartConfig, start: int = 0):
        self.config = config
        self.sink = MemorySink()
        self.scheduler = Scheduler(start=start)
        self.errors: List[SerieErrorEvent] = []

        self.controller = ChartController(
            config,
            self.sink,
            scheduler=self.scheduler,
            on_error=self._on_error
        )

        self.controller.add_counter('volume', lambda volumes: volumes.vbuy + volumes.vsell, name='Volume')
        self.controller.add_counter('trades', lambda volumes: volumes.cbuy + volumes.csell, name='Trades')

    def _on_error(self, event: SerieErrorEvent) -> None:
        logger.warning("Serie error", serie_id=event.serie_id, message=event.message)
        self.errors.append(event)

    def run(self, trades: List[Trade], rebuild: bool = False) -> None:
        """
        Replay trades batch by batch.

        Trades falling in the same refresh interval are queued together;
        the scheduler is advanced to each batch so queue drains and counter
        expiries happen at the times they would have happened live.
        """
        controller = self.controller
        controller.add_enabled_series()
        controller.setup_queue()

        interval = max(1, self.config.refresh_rate)
        batches = 0

        for _, batch in itertools.groupby(trades, key=lambda trade: trade.timestamp // interval):
            batch = list(batch)
            delay = batch[0].timestamp - self.scheduler.now

            if delay > 0:
                self.scheduler.advance(delay)

            controller.queue_trades(batch)
            batches += 1

        self.scheduler.advance(interval)
        controller.clear_queue()

        logger.info(
            "Replay finished",
            trades=len(trades),
            batches=batches,
            chunks=len(controller.cache.chunks),
            bars=len(controller.cache)
        )

        if rebuild:
            controller.render_visible_chunks()

        for counter in controller.counters.values():
            logger.info("Counter", name=counter.name, value=round(counter.get_value(), 4))

    def export(self, output_dir: Path) -> List[Path]:
        """Write one CSV per series plus the cached bars."""
        output_dir.mkdir(parents=True, exist_ok=True)
        written = []

        for serie_id in self.sink.series:
            path = output_dir / f"{serie_id}.csv"
            self.sink.to_frame(serie_id).to_csv(path)
            written.append(path)

        path = output_dir / "bars.csv"
        self.controller.cache.to_frame().to_csv(path, index=False)
        written.append(path)

        return written


def load_trades(path: str) -> List[Trade]:
    """Read trades from CSV (see trades_from_frame for the columns)."""
    df = pd.read_csv(path)

    if 'timestamp' in df.columns and not pd.api.types.is_numeric_dtype(df['timestamp']):
        df['timestamp'] = pd.to_datetime(df['timestamp'], utc=True)

    return trades_from_frame(df)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Aggregate recorded trades into bars and series")
    parser.add_argument(
        'trades',
        help='Trades CSV (exchange, pair, price, size, side, timestamp[, liquidation])'
    )
    parser.add_argument(
        '--config',
        default='config/config.yaml',
        help='Configuration file path'
    )
    parser.add_argument(
        '--output',
        default='output',
        help='Directory receiving the exported CSV files'
    )
    parser.add_argument(
        '--timeframe',
        help='Override bucket width (e.g. 5m)'
    )
    parser.add_argument(
        '--sources',
        help='Comma separated active sources (EXCHANGE:pair); default all'
    )
    parser.add_argument(
        '--rebuild',
        action='store_true',
        help='Rebuild every series from the chunk cache after the replay'
    )
    parser.add_argument(
        '--log-level',
        help='Override log level'
    )

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        print(f"Configuration file not found: {args.config}", file=sys.stderr)
        return 1
    except AggrError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    setup_logger(config.log_file, args.log_level or config.log_level)

    try:
        if args.timeframe:
            config.timeframe = parse_timeframe(args.timeframe)

        trades = load_trades(args.trades)
    except (AggrError, OSError, KeyError, ValueError) as e:
        logger.error("Cannot load input", error=str(e))
        return 1

    if args.sources:
        config = config.with_active_sources(source.strip() for source in args.sources.split(','))
    elif not config.active_sources:
        config = config.with_active_sources({trade.source for trade in trades})

    logger.info(
        "Starting replay",
        trades=len(trades),
        timeframe=config.timeframe,
        sources=','.join(sorted(config.active_sources)) or '-'
    )

    session = ReplaySession(config, start=trades[0].timestamp if trades else 0)
    session.run(trades, rebuild=args.rebuild)

    for path in session.export(Path(args.output)):
        logger.info("Exported", path=str(path))

    return 1 if session.errors else 0


if __name__ == "__main__":
    sys.exit(main())
