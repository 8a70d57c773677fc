"""
Pytest configuration and fixtures for integration tests.
"""

import logging
import pytest

from aggr.chart.controller import ChartController
from aggr.chart.sink import MemorySink
from aggr.core.config import ChartConfig, SerieSettings
from aggr.core.constants import Side
from aggr.core.scheduler import Scheduler
from aggr.core.types import Trade

SOURCE_A = "BINANCE:btcusdt"
SOURCE_B = "BITMEX:XBTUSD"


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: end-to-end tests through the chart controller"
    )


@pytest.fixture(autouse=True)
def setup_logging(caplog):
    """
    Setup logging for all tests.

    This fixture runs automatically for all tests and ensures
    log output is captured and displayed.
    """
    caplog.set_level(logging.INFO)

    # Set specific loggers to appropriate levels
    logging.getLogger('aggr.chart.controller').setLevel(logging.INFO)
    logging.getLogger('aggr.series.transpiler').setLevel(logging.INFO)
    logging.getLogger('aggr.data.chunk_cache').setLevel(logging.WARNING)


def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to handle integration test markers.

    This automatically marks all tests in the integration directory
    as 'integration' tests.
    """
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


def trade(source, price, size, side, timestamp, liquidation=False):
    """Trade on an "EXCHANGE:pair" source."""
    exchange, pair = source.split(":")
    return Trade(
        exchange=exchange,
        pair=pair,
        price=price,
        size=size,
        side=Side(side),
        timestamp=timestamp,
        liquidation=liquidation
    )


class ChartHarness:
    """Controller wired to a MemorySink, a virtual scheduler and an error list."""

    def __init__(self, series, active_sources=(SOURCE_A,), **config_kwargs):
        self.config = ChartConfig(
            active_sources=frozenset(active_sources),
            series={
                serie_id: SerieSettings.from_dict(settings)
                for serie_id, settings in series.items()
            },
            **config_kwargs
        )
        self.sink = MemorySink()
        self.scheduler = Scheduler(start=0)
        self.errors = []
        self.controller = ChartController(
            self.config,
            self.sink,
            scheduler=self.scheduler,
            on_error=self.errors.append
        )
        self.controller.add_enabled_series()

    def feed(self, *batches):
        """Render each batch of trades as one drain."""
        for batch in batches:
            self.controller.render_realtime_trades(list(batch))

    def points(self, serie_id):
        return self.sink.points(serie_id)


@pytest.fixture
def make_chart():
    """Factory of ChartHarness instances."""
    return ChartHarness
