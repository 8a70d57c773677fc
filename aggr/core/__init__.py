"""Core types, constants, configuration and scheduling."""

from .config import ChartConfig, SerieSettings, load_config, parse_timeframe
from .constants import InstructionType, OutputType, SerieType, Side
from .exceptions import (
    AggrError,
    CompileError,
    ConfigurationError,
    InvalidConfigError,
    RuntimeValueError,
    SerieError,
)
from .scheduler import Scheduler
from .types import OHLC, Chunk, CombinedBar, SerieErrorEvent, SourceBar, TimeRange, Trade, Volumes

__all__ = [
    "ChartConfig",
    "SerieSettings",
    "load_config",
    "parse_timeframe",
    "InstructionType",
    "OutputType",
    "SerieType",
    "Side",
    "AggrError",
    "CompileError",
    "ConfigurationError",
    "InvalidConfigError",
    "RuntimeValueError",
    "SerieError",
    "Scheduler",
    "OHLC",
    "Chunk",
    "CombinedBar",
    "SerieErrorEvent",
    "SourceBar",
    "TimeRange",
    "Trade",
    "Volumes",
]
