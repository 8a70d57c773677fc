"""
Configuration for the aggregation core.

Settings are read once into a ChartConfig and handed to each component at
construction. Later changes reach the controller as explicit calls
(set_active_sources, set_serie_option, ...) instead of through a shared
mutable store.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

import yaml

from .constants import (
    CHUNK_LOOKBACK_BARS,
    DEFAULT_REFRESH_RATE_MS,
    DEFAULT_SERIES,
    DEFAULT_STATS_GRANULARITY_MS,
    DEFAULT_STATS_WINDOW_MS,
    DEFAULT_TIMEFRAME,
    MAX_BARS_PER_CHUNK,
    PAN_RELEASE_DELAY_MS,
    TIMEFRAMES_MS,
)
from .exceptions import InvalidConfigError


def parse_timeframe(timeframe: Union[str, int, float]) -> int:
    """
    Convert a timeframe to a bucket width in milliseconds.

    Args:
        timeframe: "1m"-style string, or a number of seconds

    Returns:
        Bucket width in milliseconds
    """
    if isinstance(timeframe, str):
        if timeframe in TIMEFRAMES_MS:
            return TIMEFRAMES_MS[timeframe]
        raise InvalidConfigError(f"Unknown timeframe: {timeframe}", timeframe=timeframe)

    width = int(timeframe * 1000)
    if width <= 0:
        raise InvalidConfigError("Timeframe must be positive", timeframe=timeframe)
    return width


@dataclass
class SerieSettings:
    """Persisted settings of one series."""
    type: Optional[str] = None
    input: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SerieSettings":
        return cls(
            type=data.get('type'),
            input=data.get('input'),
            options=dict(data.get('options') or {}),
            enabled=data.get('enabled', True) is not False,
        )


@dataclass
class ChartConfig:
    """
    Settings consumed by the controller, the counters and the cache.

    Attributes:
        timeframe: Bucket width in milliseconds
        refresh_rate: Interval of the queue drain in milliseconds
        stats_window: Counter window in milliseconds
        stats_granularity: Counter slot width in milliseconds
        active_sources: Source ids ("EXCHANGE:pair") counted in combined bars
        timezone_offset: Offset added to point times, in milliseconds
        max_bars_per_chunk: Chunk size cap
        lookback_bars: Buckets selected before the visible range
        pan_release_delay: Lifetime of the pan suppression flag in ms
        log_level: Level of the package logger
        log_file: Rotating log file, None for console only
        series: Series settings by id
    """
    timeframe: int = TIMEFRAMES_MS[DEFAULT_TIMEFRAME]
    refresh_rate: int = DEFAULT_REFRESH_RATE_MS
    stats_window: int = DEFAULT_STATS_WINDOW_MS
    stats_granularity: int = DEFAULT_STATS_GRANULARITY_MS
    active_sources: frozenset = frozenset()
    timezone_offset: int = 0
    max_bars_per_chunk: int = MAX_BARS_PER_CHUNK
    lookback_bars: int = CHUNK_LOOKBACK_BARS
    pan_release_delay: int = PAN_RELEASE_DELAY_MS
    log_level: str = "INFO"
    log_file: Optional[str] = None
    series: Dict[str, SerieSettings] = field(default_factory=dict)

    def __post_init__(self):
        """Validate settings."""
        if self.timeframe <= 0:
            raise InvalidConfigError("timeframe must be positive", timeframe=self.timeframe)
        if self.refresh_rate < 0:
            raise InvalidConfigError("refresh_rate must not be negative", refresh_rate=self.refresh_rate)
        if self.stats_window <= 0:
            raise InvalidConfigError("stats_window must be positive", stats_window=self.stats_window)
        if not 0 < self.stats_granularity <= self.stats_window:
            raise InvalidConfigError(
                "stats_granularity must be within (0, stats_window]",
                stats_granularity=self.stats_granularity,
                stats_window=self.stats_window
            )
        if self.max_bars_per_chunk <= 0:
            raise InvalidConfigError(
                "max_bars_per_chunk must be positive",
                max_bars_per_chunk=self.max_bars_per_chunk
            )
        self.active_sources = frozenset(self.active_sources)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChartConfig":
        """
        Build a config from a parsed YAML document.

        Missing keys fall back to defaults; the default series are used
        when the document declares none.
        """
        chart = data.get('chart', {}) or {}
        stats = data.get('stats', {}) or {}
        monitoring = data.get('monitoring', {}) or {}
        series = data.get('series') or DEFAULT_SERIES

        return cls(
            timeframe=parse_timeframe(chart.get('timeframe', DEFAULT_TIMEFRAME)),
            refresh_rate=int(chart.get('refresh_rate', DEFAULT_REFRESH_RATE_MS)),
            stats_window=int(stats.get('window', DEFAULT_STATS_WINDOW_MS)),
            stats_granularity=int(stats.get('granularity', DEFAULT_STATS_GRANULARITY_MS)),
            active_sources=frozenset(chart.get('active_sources', []) or []),
            timezone_offset=int(chart.get('timezone_offset', 0)),
            max_bars_per_chunk=int(chart.get('max_bars_per_chunk', MAX_BARS_PER_CHUNK)),
            lookback_bars=int(chart.get('lookback_bars', CHUNK_LOOKBACK_BARS)),
            pan_release_delay=int(chart.get('pan_release_delay', PAN_RELEASE_DELAY_MS)),
            log_level=monitoring.get('log_level', 'INFO'),
            log_file=monitoring.get('log_file'),
            series={
                serie_id: SerieSettings.from_dict(settings or {})
                for serie_id, settings in series.items()
            },
        )

    def with_active_sources(self, sources: Iterable[str]) -> "ChartConfig":
        """Copy of this config with another active-source set."""
        return replace(self, active_sources=frozenset(sources))


def load_config(config_file: Union[str, Path] = "config/config.yaml") -> ChartConfig:
    """
    Load configuration from a YAML file.

    Args:
        config_file: Path to configuration file

    Returns:
        Validated ChartConfig
    """
    with open(config_file, 'r') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise InvalidConfigError("Configuration root must be a mapping", file=str(config_file))

    return ChartConfig.from_dict(data)
