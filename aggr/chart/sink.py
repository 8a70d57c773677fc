"""
Render Sink - outbound interface to whatever draws the series.

The controller only ever talks to a RenderSink. Series creation goes
through a closed SerieType -> creation method table; an unknown visual
type never reaches a sink.

Point shapes:
- value series: {'time': seconds, 'value': float}
- ohlc series: {'time': seconds, 'open', 'high', 'low', 'close'}
- custom series: value point plus free-form keys
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Tuple

import pandas as pd

from ..core.constants import SerieType
from ..core.exceptions import ConfigurationError

Point = Dict[str, Any]


class RenderSink(ABC):
    """
    Abstract display collaborator.

    Subclasses must implement one creation method per visual type plus
    remove_series, replace_all, append_last and apply_options.
    """

    def creators(self) -> Dict[SerieType, Callable[[str, Dict[str, Any]], None]]:
        """Creation method of every visual type."""
        return {
            SerieType.LINE: self.add_line_series,
            SerieType.AREA: self.add_area_series,
            SerieType.HISTOGRAM: self.add_histogram_series,
            SerieType.CANDLESTICK: self.add_candlestick_series,
            SerieType.BAR: self.add_bar_series,
            SerieType.CUSTOM: self.add_custom_series,
        }

    def add_series(self, serie_id: str, serie_type: SerieType, options: Dict[str, Any]) -> None:
        """Create a series of the given visual type."""
        creator = self.creators().get(serie_type)

        if creator is None:
            raise ConfigurationError(f"No creation method for serie type {serie_type}", serie_id=serie_id)

        creator(serie_id, options)

    @abstractmethod
    def add_line_series(self, serie_id: str, options: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def add_area_series(self, serie_id: str, options: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def add_histogram_series(self, serie_id: str, options: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def add_candlestick_series(self, serie_id: str, options: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def add_bar_series(self, serie_id: str, options: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def add_custom_series(self, serie_id: str, options: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def remove_series(self, serie_id: str) -> None:
        pass

    @abstractmethod
    def replace_all(self, serie_id: str, points: List[Point]) -> None:
        """Replace every point of a series (after a rebuild)."""
        pass

    @abstractmethod
    def append_last(self, serie_id: str, point: Point) -> None:
        """Append a point, or update the last one when it has the same time."""
        pass

    @abstractmethod
    def apply_options(self, serie_id: str, options: Dict[str, Any]) -> None:
        pass


@dataclass
class MemorySeries:
    """A series as held by MemorySink."""
    type: SerieType
    options: Dict[str, Any] = field(default_factory=dict)
    points: List[Point] = field(default_factory=list)


class MemorySink(RenderSink):
    """
    Sink keeping every series in memory.

    Used by the replay CLI and by tests. ``appended`` records every
    append_last call in order, ``replaced`` every replace_all call.
    """

    def __init__(self):
        self.series: Dict[str, MemorySeries] = {}
        self.appended: List[Tuple[str, Point]] = []
        self.replaced: List[Tuple[str, int]] = []

    def _create(self, serie_id: str, serie_type: SerieType, options: Dict[str, Any]) -> None:
        self.series[serie_id] = MemorySeries(type=serie_type, options=dict(options))

    def add_line_series(self, serie_id, options):
        self._create(serie_id, SerieType.LINE, options)

    def add_area_series(self, serie_id, options):
        self._create(serie_id, SerieType.AREA, options)

    def add_histogram_series(self, serie_id, options):
        self._create(serie_id, SerieType.HISTOGRAM, options)

    def add_candlestick_series(self, serie_id, options):
        self._create(serie_id, SerieType.CANDLESTICK, options)

    def add_bar_series(self, serie_id, options):
        self._create(serie_id, SerieType.BAR, options)

    def add_custom_series(self, serie_id, options):
        self._create(serie_id, SerieType.CUSTOM, options)

    def remove_series(self, serie_id):
        self.series.pop(serie_id, None)

    def replace_all(self, serie_id, points):
        serie = self.series.get(serie_id)
        if serie is None:
            return
        serie.points = [dict(point) for point in points]
        self.replaced.append((serie_id, len(points)))

    def append_last(self, serie_id, point):
        serie = self.series.get(serie_id)
        if serie is None:
            return

        point = dict(point)

        if serie.points and serie.points[-1]['time'] == point['time']:
            serie.points[-1] = point
        elif serie.points and serie.points[-1]['time'] > point['time']:
            return
        else:
            serie.points.append(point)

        self.appended.append((serie_id, point))

    def apply_options(self, serie_id, options):
        serie = self.series.get(serie_id)
        if serie is not None:
            serie.options.update(options)

    def points(self, serie_id: str) -> List[Point]:
        serie = self.series.get(serie_id)
        return [] if serie is None else list(serie.points)

    def to_frame(self, serie_id: str) -> pd.DataFrame:
        """Points of one series as a DataFrame indexed by UTC time."""
        df = pd.DataFrame(self.points(serie_id))

        if df.empty:
            return df

        df.index = pd.to_datetime(df.pop('time'), unit='s', utc=True)
        df.index.name = 'time'
        return df
