"""
Chart Controller - orchestrates aggregation, caching and series.

Data flow:
1. Trades are queued as they arrive and drained on a scheduler interval
2. Each trade is folded into the live renderer's bucket
3. When a trade opens a newer bucket, the closed bucket is computed
   through every bound series and its source bars go to the chunk cache
4. The in-progress bucket is computed once more at the end of each drained
   batch, so the last point on screen follows the live bucket
5. A rebuild (visible range change, source toggle, series edit) replays
   cached bars through a throwaway renderer and replaces the drawn data

Ownership:
- The live renderer, the active chunk and the chunk cache belong to the
  controller; nothing else mutates them
- Replay renderers never escape the rebuild that created them
- Every timer runs on the controller's Scheduler and is cancelled on
  teardown
"""

import copy
import math
import re
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..core.config import ChartConfig, SerieSettings
from ..core.constants import DEFAULT_SERIE_OPTIONS, DEFAULT_SERIES, NO_REDRAW_OPTIONS, OutputType, SerieType
from ..core.exceptions import CompileError, ConfigurationError, RuntimeValueError, SerieError
from ..core.scheduler import ScheduledTask, Scheduler
from ..core.types import Chunk, SerieErrorEvent, SourceBar, TimeRange, Trade, Volumes
from ..data.bar_aggregator import BarAggregator, Renderer, RendererSerieData
from ..data.chunk_cache import ChunkCache
from ..data.trade_queue import TradeQueue
from ..monitoring.logger import get_logger
from ..series import utils as series_utils
from ..series.instructions import advance_instructions, clone_instructions
from ..series.transpiler import Adapter, SerieModel, SeriesTranspiler
from ..stats.counter import SlidingWindowCounter, get_hms

Point = Dict[str, Any]


@dataclass
class ActiveSerie:
    """
    A series registered on the chart.

    Attributes:
        id: Series identifier
        type: Visual type
        input: Formula text
        options: Resolved options (defaults merged with settings)
        enabled: Registered and drawn
        model: Compiled formula, None until prepared
        adapter: Executable output of the model, set at bind time
        failed: Produced NaN; stays unbound until rebuilt
    """
    id: str
    type: SerieType
    input: str
    options: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = False
    model: Optional[SerieModel] = None
    adapter: Optional[Adapter] = None
    failed: bool = False


class ChartController:
    """
    Owns the live aggregation state and keeps the render sink in sync.

    Example:
        >>> controller = ChartController(config, MemorySink())
        >>> controller.add_enabled_series()
        >>> controller.setup_queue()
        >>> controller.queue_trades(trades)
        >>> controller.scheduler.advance(config.refresh_rate)
    """

    def __init__(
        self,
        config: ChartConfig,
        sink,
        scheduler: Optional[Scheduler] = None,
        on_error: Optional[Callable[[SerieErrorEvent], None]] = None
    ):
        """
        Initialize controller.

        Args:
            config: Chart settings
            sink: RenderSink receiving series and points
            scheduler: Timer queue; a virtual one is created when omitted
            on_error: Validation error channel
        """
        self.config = config
        self.sink = sink
        self.scheduler = scheduler or Scheduler()
        self.on_error = on_error

        self.aggregator = BarAggregator(config.timeframe)
        self.cache = ChunkCache(config.max_bars_per_chunk)
        self.queue = TradeQueue()
        self.transpiler = SeriesTranspiler()

        self.series_settings: Dict[str, SerieSettings] = copy.deepcopy(config.series)
        self.active_series: List[ActiveSerie] = []
        self.serie_errors: Dict[str, Optional[str]] = {}
        self.counters: Dict[str, SlidingWindowCounter] = {}

        self.active_renderer: Optional[Renderer] = None
        self.active_chunk: Optional[Chunk] = None
        self.rendered_range = TimeRange()
        self.visible_range = TimeRange()

        self.prevent_render = False
        self.pan_prevented = False

        self._order: List[str] = []
        self._release_queue_task: Optional[ScheduledTask] = None
        self._release_pan_task: Optional[ScheduledTask] = None

        self.logger = get_logger(__name__)

    @property
    def timeframe(self) -> int:
        return self.config.timeframe

    # =========================================================================
    # Series lifecycle
    # =========================================================================

    def get_serie(self, serie_id: str) -> Optional[ActiveSerie]:
        for serie in self.active_series:
            if serie.id == serie_id:
                return serie
        return None

    def add_enabled_series(self) -> None:
        """Add every enabled series, dependencies first."""
        enabled = [
            serie_id for serie_id, settings in self.series_settings.items()
            if settings.enabled
        ]

        graph = {}
        for serie_id in enabled:
            references = self._peek_references(serie_id)
            graph[serie_id] = [ref for ref in references if ref in enabled]

        try:
            order = list(TopologicalSorter(graph).static_order())
        except CycleError:
            order = enabled

        for serie_id in order:
            try:
                self.add_serie(serie_id)
            except ConfigurationError as e:
                self.logger.error("Cannot add serie", serie_id=serie_id, error=str(e))

    def add_serie(self, serie_id: str) -> bool:
        """
        Register a series, create it on the sink and bind it to the live renderer.

        Returns:
            True if the series was added

        Raises:
            ConfigurationError: Unknown visual type
        """
        if self.get_serie(serie_id) is not None:
            return False

        serie = self._build_serie(serie_id)

        self.logger.info("Adding serie", serie_id=serie_id, type=serie.type.value)

        if not self.prepare_serie(serie):
            return False

        self.sink.add_series(serie.id, serie.type, serie.options)

        serie.enabled = True
        self.active_series.append(serie)
        self._update_order()

        self.bind_serie(serie, self.active_renderer)

        return True

    def _build_serie(self, serie_id: str) -> ActiveSerie:
        settings = self.series_settings.get(serie_id) or SerieSettings()
        defaults = DEFAULT_SERIES.get(serie_id, {})
        serie_type = settings.type or defaults.get('type')

        if not serie_type:
            raise ConfigurationError("Unknown serie type", serie_id=serie_id)

        try:
            visual = SerieType(serie_type)
        except ValueError:
            raise ConfigurationError(f"Unknown serie type '{serie_type}'", serie_id=serie_id)

        options = {}
        options.update(DEFAULT_SERIE_OPTIONS)
        options.update(defaults.get('options') or {})
        options.update(settings.options)

        return ActiveSerie(
            id=serie_id,
            type=visual,
            input=settings.input or defaults.get('input'),
            options=options
        )

    def prepare_serie(self, serie: ActiveSerie) -> bool:
        """
        Compile a series' formula.

        A CompileError goes to the error channel and the series is not
        added; an earlier error is cleared on success.
        """
        try:
            model = self.transpiler.transpile(serie, known_series=self._known_series())
            self._check_cycle(serie.id, model.references)
        except CompileError as e:
            self.logger.warning("Serie transpilation failed", serie_id=serie.id, error=e.message)
            self._report_error(serie.id, e)
            return False

        self.logger.info(
            "Serie prepared",
            serie_id=serie.id,
            output=model.output,
            functions=len(model.functions),
            variables=len(model.variables),
            references=len(model.references)
        )

        self.serie_errors[serie.id] = None
        serie.model = model
        return True

    def bind_serie(self, serie: ActiveSerie, renderer: Optional[Renderer]) -> None:
        """Give the renderer fresh instruction state for the series."""
        if renderer is None or serie.id in renderer.series or serie.model is None or serie.failed:
            return

        functions = clone_instructions(serie.model.functions)
        variables = clone_instructions(serie.model.variables)

        self.transpiler.update_instructions_argument(functions, serie.options)

        renderer.series[serie.id] = RendererSerieData(functions=functions, variables=variables)
        serie.adapter = self.transpiler.get_adapter(serie.model.output)

    def unbind_serie(self, serie: ActiveSerie, renderer: Optional[Renderer]) -> None:
        if renderer is None:
            return
        renderer.series.pop(serie.id, None)

    def remove_serie(self, serie: Optional[ActiveSerie]) -> None:
        """Remove a series from the sink, the live renderer and the registry."""
        if serie is None:
            return

        self.sink.remove_series(serie.id)
        self.unbind_serie(serie, self.active_renderer)

        serie.enabled = False
        self.active_series.remove(serie)
        self._update_order()

        self.logger.info("Serie removed", serie_id=serie.id)

    def toggle_serie(self, serie_id: str, enabled: Optional[bool] = None) -> None:
        """Enable or disable a series; enabling draws it from the cache."""
        settings = self.series_settings.setdefault(serie_id, SerieSettings())

        if enabled is not None:
            settings.enabled = enabled

        if not settings.enabled:
            self.remove_serie(self.get_serie(serie_id))
        elif self.add_serie(serie_id):
            self.redraw_serie(serie_id)

    def rebuild_serie(self, serie_id: str) -> None:
        """Recreate a series from its settings and redraw it."""
        self.remove_serie(self.get_serie(serie_id))

        if self.add_serie(serie_id):
            self.redraw_serie(serie_id)

    def redraw_serie(self, serie_id: str) -> None:
        """Replay the rendered chunks for one series and what it references."""
        if self.get_serie(serie_id) is None:
            return

        series = self.get_serie_dependencies(serie_id)
        series.append(serie_id)

        self.render_bars(self.cache.rendered_bars(), series)

    def set_serie_option(self, serie_id: str, key: str, value: Any) -> None:
        """
        Change one option ("a.b" sets a nested key).

        Cosmetic keys are applied to the sink only; anything else redraws
        the series.
        """
        serie = self.get_serie(serie_id)

        if serie is None or not serie.enabled:
            return

        path = key.split('.')
        first_key = path[0]

        _set_by_path(serie.options, path, value)
        settings = self.series_settings.setdefault(serie_id, SerieSettings())
        _set_by_path(settings.options, path, value)

        self.sink.apply_options(serie_id, {first_key: serie.options[first_key]})

        if any(re.search(pattern, first_key, re.IGNORECASE) for pattern in NO_REDRAW_OPTIONS):
            return

        if self.active_renderer is not None and serie_id in self.active_renderer.series:
            self.transpiler.update_instructions_argument(
                self.active_renderer.series[serie_id].functions,
                serie.options
            )

        self.redraw_serie(serie_id)

    def set_serie_input(self, serie_id: str, formula: str) -> None:
        """Replace a series' formula and rebuild it."""
        settings = self.series_settings.setdefault(serie_id, SerieSettings())
        settings.input = formula
        self.rebuild_serie(serie_id)

    def get_serie_dependencies(self, serie_id: str) -> List[str]:
        """Series the given one references, transitively, dependencies first."""
        dependencies: List[str] = []

        def visit(current: str) -> None:
            serie = self.get_serie(current)
            if serie is None or serie.model is None:
                return
            for reference in serie.model.references:
                if reference not in dependencies and reference != serie_id:
                    visit(reference)
                    dependencies.append(reference)

        visit(serie_id)
        return dependencies

    def get_series_depending_on(self, serie_id: str) -> List[str]:
        """Series whose formula references the given one."""
        return [
            serie.id for serie in self.active_series
            if serie.id != serie_id and serie.model is not None and serie_id in serie.model.references
        ]

    def _known_series(self) -> List[str]:
        known = [serie.id for serie in self.active_series]
        known.extend(self.series_settings)
        known.extend(DEFAULT_SERIES)
        return known

    def _peek_references(self, serie_id: str) -> List[str]:
        try:
            serie = self._build_serie(serie_id)
            return self.transpiler.transpile(serie).references
        except (SerieError, ConfigurationError):
            return []

    def _check_cycle(self, serie_id: str, references: Iterable[str]) -> None:
        graph = {
            serie.id: list(serie.model.references)
            for serie in self.active_series
            if serie.model is not None and serie.id != serie_id
        }
        graph[serie_id] = list(references)

        try:
            TopologicalSorter(graph).prepare()
        except CycleError as e:
            cycle = e.args[1] if len(e.args) > 1 else [serie_id]
            raise CompileError(
                f"Circular reference between series: {' -> '.join(cycle)}",
                serie_id=serie_id
            )

    def _update_order(self) -> None:
        active_ids = {serie.id for serie in self.active_series}
        graph = {
            serie.id: [ref for ref in serie.model.references if ref in active_ids]
            for serie in self.active_series
            if serie.model is not None
        }

        try:
            self._order = list(TopologicalSorter(graph).static_order())
        except CycleError:
            self.logger.error("Circular series references, using registration order")
            self._order = [serie.id for serie in self.active_series]

    def _ordered_series(self, series: Optional[Iterable[str]] = None) -> List[ActiveSerie]:
        wanted = None if series is None else set(series)
        ordered = []

        for serie_id in self._order:
            if wanted is not None and serie_id not in wanted:
                continue
            serie = self.get_serie(serie_id)
            if serie is not None:
                ordered.append(serie)

        return ordered

    def _report_error(self, serie_id: str, error: SerieError) -> None:
        self.serie_errors[serie_id] = error.message

        if self.on_error is not None:
            self.on_error(SerieErrorEvent(serie_id=serie_id, message=error.message))

    # =========================================================================
    # Trade stream
    # =========================================================================

    def queue_trades(self, trades: Iterable[Trade]) -> None:
        """Queue trades for the next drain."""
        self.queue.push(trades)

    def setup_queue(self) -> None:
        """Start draining the queue every refresh_rate ms."""
        if self._release_queue_task is not None or not self.config.refresh_rate:
            return

        self.logger.info("Setup queue", interval=get_hms(self.config.refresh_rate))

        self._release_queue_task = self.scheduler.call_every(self.config.refresh_rate, self.release_queue)

    def clear_queue(self) -> None:
        """Stop the drain interval, flushing what is queued."""
        if self._release_queue_task is None:
            return

        self.logger.info("Clear queue")

        self.scheduler.cancel(self._release_queue_task)
        self._release_queue_task = None

        self.release_queue()

    def release_queue(self) -> None:
        """Render every queued trade now."""
        if not len(self.queue) or self.prevent_render:
            return

        self.render_realtime_trades(self.queue.drain())

    def lock_render(self) -> None:
        self.prevent_render = True

    def unlock_render(self) -> None:
        self.prevent_render = False

    def render_realtime_trades(self, trades: List[Trade]) -> None:
        """
        Fold trades into the live renderer and draw the result.

        Trades older than the live bucket are dropped. Without a live
        renderer, trades older than the cache high-water mark are dropped
        and a trade in the high-water bucket resumes it from the cache.
        """
        if not trades:
            return

        points: List[Dict[str, Point]] = []
        dropped = 0

        for trade in trades:
            timestamp = self.aggregator.bucket_of(trade.timestamp)
            renderer = self.active_renderer

            if renderer is None:
                high_water = self.cache.cache_range.end

                if high_water is not None and timestamp < high_water:
                    dropped += 1
                    continue

                renderer = self.active_renderer = self.create_renderer(timestamp)

                if timestamp == high_water:
                    self._resume_cached_bucket(renderer)

                self.prevent_pan()
            elif timestamp < renderer.timestamp:
                dropped += 1
                continue
            elif timestamp > renderer.timestamp:
                self._close_bucket(renderer, points)
                self.next_bar(timestamp, renderer)
                self.prevent_pan()

            self.aggregator.fold_trade(renderer, trade)

        if dropped:
            self.logger.debug("Dropped trades older than live bucket", count=dropped)

        renderer = self.active_renderer

        if renderer is not None and not renderer.empty:
            points.append(self.compute_bar(renderer))
            self._extend_rendered_range(renderer.timestamp)

        for bar_points in points:
            self._update_bar(bar_points)

        if self.counters:
            volumes = Volumes.from_trades(trades, self.config.active_sources)
            for counter in self.counters.values():
                counter.on_update(self.scheduler.now, volumes)

    def _resume_cached_bucket(self, renderer: Renderer) -> None:
        """Move the cached bars of the renderer's bucket back into it."""
        bars = self.cache.pop_bucket(renderer.timestamp)

        for bar in bars:
            self.aggregator.fold_source_bar(renderer, bar)

        if bars:
            self.logger.info("Resumed cached bucket", timestamp=renderer.timestamp, bars=len(bars))

    def _close_bucket(self, renderer: Renderer, points: List[Dict[str, Point]]) -> None:
        """Compute the finished bucket and persist its source bars."""
        if not renderer.empty:
            points.append(self.compute_bar(renderer))

        bars = self.aggregator.finished_bars(renderer)

        if bars:
            self.active_chunk = self.cache.resolve_active_chunk(self.active_chunk, renderer.timestamp)
            self.cache.append_bars(self.active_chunk, renderer.timestamp, bars)

        self._extend_rendered_range(renderer.timestamp)

    def _extend_rendered_range(self, timestamp: int) -> None:
        if self.rendered_range.end is None or self.rendered_range.end < timestamp:
            self.rendered_range.end = timestamp
        if self.rendered_range.start is None:
            self.rendered_range.start = timestamp

    def _update_bar(self, points: Dict[str, Point]) -> None:
        for serie in self.active_series:
            point = points.get(serie.id)
            if point is not None:
                self.sink.append_last(serie.id, point)

    # =========================================================================
    # Computation
    # =========================================================================

    def create_renderer(self, timestamp: int, series: Optional[Iterable[str]] = None) -> Renderer:
        """Empty renderer on a bucket with the given series (default all) bound."""
        renderer = self.aggregator.create_renderer(timestamp, self.config.active_sources)
        wanted = None if series is None else set(series)

        for serie in self.active_series:
            if wanted is not None and serie.id not in wanted:
                continue
            self.bind_serie(serie, renderer)

        return renderer

    def next_bar(self, timestamp: int, renderer: Renderer) -> None:
        """Commit the renderer's bucket into series state and move to timestamp."""
        if not renderer.empty:
            for data in renderer.series.values():
                advance_instructions(data.functions, data.variables)

        self.aggregator.advance(renderer, timestamp)

    def compute_bar(self, renderer: Renderer, series: Optional[Iterable[str]] = None) -> Dict[str, Point]:
        """
        Evaluate bound series on the renderer's bucket.

        Series run in dependency order. A NaN result or an arithmetic error
        unbinds the series and reports a RuntimeValueError; the remaining
        series carry on. Null values and zero histogram values produce no
        point.

        Returns:
            Point by series id
        """
        points: Dict[str, Point] = {}
        time = (renderer.timestamp + self.config.timezone_offset) / 1000

        for serie in self._ordered_series(series):
            data = renderer.series.get(serie.id)

            if data is None or serie.adapter is None:
                continue

            try:
                point = serie.adapter(renderer, data.functions, data.variables, serie.options, series_utils)
                value, shaped = _shape_point(serie.model.type, point, time)
            except (ArithmeticError, TypeError, ValueError) as exc:
                self._fail_serie(serie, renderer, f"{serie.id} failed: {exc}")
                continue

            data.point = point
            data.value = value

            if value is None:
                continue

            if _is_nan(value):
                self._fail_serie(serie, renderer, f"{serie.id} is NaN")
                continue

            if serie.type == SerieType.HISTOGRAM and value == 0:
                continue

            points[serie.id] = shaped

        return points

    def _fail_serie(self, serie: ActiveSerie, renderer: Renderer, message: str) -> None:
        serie.failed = True
        self.unbind_serie(serie, renderer)
        self.unbind_serie(serie, self.active_renderer)

        error = RuntimeValueError(message, serie_id=serie.id)
        self.logger.warning("Serie failed, unbound", serie_id=serie.id, timestamp=renderer.timestamp, error=message)
        self._report_error(serie.id, error)

    # =========================================================================
    # Rebuild
    # =========================================================================

    def render_bars(self, bars: List[SourceBar], series: Optional[List[str]] = None) -> None:
        """
        Replay cached bars and replace the drawn data.

        Args:
            bars: Source bars in time order
            series: Restrict to these series; None rebuilds everything
        """
        self.logger.debug(
            "Render bars",
            series=','.join(series) if series else 'all',
            bars=len(bars)
        )

        if not bars:
            return

        computed: Dict[str, List[Point]] = {}
        start = end = None
        replay: Optional[Renderer] = None

        for bar in list(bars) + [None]:
            if bar is None or replay is None or bar.timestamp > replay.timestamp:
                if replay is not None and not replay.empty:
                    if start is None:
                        start = replay.timestamp
                    end = replay.timestamp

                    for serie_id, point in self.compute_bar(replay, series).items():
                        computed.setdefault(serie_id, []).append(point)

                if bar is None:
                    break

                if replay is None:
                    replay = self.create_renderer(bar.timestamp, series)
                else:
                    self.next_bar(bar.timestamp, replay)

            self.aggregator.fold_source_bar(replay, bar)

        if series is None:
            self.rendered_range = TimeRange(start, end)

        self.replace_data(computed, series)
        self._adopt_replay(replay, full=series is None)
        self._refresh_live(series)

    def _adopt_replay(self, replay: Renderer, full: bool) -> None:
        """
        Hand the replay's series state to the live renderer.

        Only a replay that ended on the cache high-water mark is adopted;
        anything older would rewind live state.
        """
        high_water = self.cache.cache_range.end

        if high_water is None or replay.timestamp < high_water:
            return

        live = self.active_renderer

        if live is not None and live.timestamp > replay.timestamp:
            self.next_bar(live.timestamp, replay)

            for serie_id, data in replay.series.items():
                live.series[serie_id] = data
        elif live is None and full:
            self.next_bar(replay.timestamp + self.timeframe, replay)
            self.active_renderer = replay

    def _refresh_live(self, series: Optional[Iterable[str]] = None) -> None:
        """Redraw the in-progress bucket after its points were replaced."""
        live = self.active_renderer

        if live is None or live.empty:
            return

        self._update_bar(self.compute_bar(live, series))
        self._extend_rendered_range(live.timestamp)

    def replace_data(self, computed: Dict[str, List[Point]], series: Optional[Iterable[str]] = None) -> None:
        """Full replace of every series in scope."""
        self.prevent_pan()

        for serie in self._ordered_series(series):
            self.sink.replace_all(serie.id, computed.get(serie.id, []))

    def render_visible_chunks(self) -> None:
        """Rebuild from the chunks that cover the visible range."""
        if not self.cache.chunks:
            return

        chunks = self.cache.select(self.visible_range.start, self.timeframe, self.config.lookback_bars)

        self.logger.debug(
            "Render visible chunks",
            selected=len(chunks),
            chunks=len(self.cache.chunks),
            start=self.visible_range.start
        )

        self.render_bars(ChunkCache.flatten(chunks))

    def redraw(self) -> None:
        self.render_visible_chunks()

    def set_visible_range(self, start: Optional[int], end: Optional[int]) -> None:
        """
        Display-driven range change (ms).

        Ignored while pan is prevented; rebuilds only when the selected
        chunks change.
        """
        self.visible_range = TimeRange(start, end)

        if self.pan_prevented or not self.cache.chunks:
            return

        threshold = None if start is None else start - self.config.lookback_bars * self.timeframe
        wanted = [threshold is None or chunk.end > threshold for chunk in self.cache.chunks]

        if wanted != [chunk.rendered for chunk in self.cache.chunks]:
            self.render_visible_chunks()

    def set_active_sources(self, sources: Iterable[str]) -> None:
        """Change which sources count in combined bars and rebuild."""
        self.config = self.config.with_active_sources(sources)

        self.logger.info("Active sources changed", sources=','.join(sorted(self.config.active_sources)) or '-')

        if self.active_renderer is not None:
            self.aggregator.recombine(self.active_renderer, self.config.active_sources)

        if self.cache.chunks:
            self.render_visible_chunks()
        else:
            self._refresh_live()

    def toggle_source(self, source: str) -> None:
        active = set(self.config.active_sources)

        if source in active:
            active.discard(source)
        else:
            active.add(source)

        self.set_active_sources(active)

    # =========================================================================
    # Pan suppression and teardown
    # =========================================================================

    def prevent_pan(self) -> None:
        """Raise the pan suppression flag; it clears itself after a delay."""
        if self.pan_prevented:
            return

        self.scheduler.cancel(self._release_pan_task)

        self.pan_prevented = True
        self._release_pan_task = self.scheduler.call_later(self.config.pan_release_delay, self._release_pan)

    def _release_pan(self) -> None:
        self.pan_prevented = False
        self._release_pan_task = None

    def clear_chart(self) -> None:
        """Empty every drawn series."""
        self.logger.info("Clear chart")

        self.prevent_pan()

        for serie in self.active_series:
            self.sink.replace_all(serie.id, [])

        self.rendered_range = TimeRange()

    def clear_data(self) -> None:
        """Drop live state: renderer, active chunk and queued trades."""
        self.logger.info("Clear data")

        self.active_renderer = None
        self.active_chunk = None
        self.queue.clear()

    def clear(self) -> None:
        """Clear cache, live state and drawn data."""
        self.cache.clear()
        self.clear_data()
        self.clear_chart()

    def destroy(self) -> None:
        """Tear everything down and cancel every timer."""
        self.logger.info("Destroy")

        self.clear()

        while self.active_series:
            self.remove_serie(self.active_series[0])

        self.clear_queue()

        for counter_id in list(self.counters):
            self.remove_counter(counter_id)

        self.scheduler.cancel(self._release_pan_task)
        self._release_pan_task = None
        self.pan_prevented = False

    # =========================================================================
    # Counters
    # =========================================================================

    def add_counter(
        self,
        counter_id: str,
        projection: Callable[[Volumes], float],
        **kwargs: Any
    ) -> SlidingWindowCounter:
        """
        Register a sliding-window counter fed by every drained batch.

        Args:
            counter_id: Counter identifier
            projection: Maps a Volumes snapshot to the counted value
            **kwargs: name, type, precision, color, window, granularity
        """
        self.remove_counter(counter_id)

        counter = SlidingWindowCounter(
            projection,
            self.scheduler,
            window=kwargs.pop('window', self.config.stats_window),
            granularity=kwargs.pop('granularity', self.config.stats_granularity),
            id=counter_id,
            **kwargs
        )

        self.counters[counter_id] = counter
        return counter

    def remove_counter(self, counter_id: str) -> None:
        counter = self.counters.pop(counter_id, None)
        if counter is not None:
            counter.unbind()


def _shape_point(kind: OutputType, point: Any, time: float):
    """(value, sink point) of an adapter result."""
    if point is None:
        return None, None

    if kind == OutputType.OHLC:
        shaped = {'time': time}
        shaped.update(point.to_dict())
        return point.close, shaped

    if kind == OutputType.CUSTOM:
        shaped = dict(point)
        shaped['time'] = time
        return shaped.get('value'), shaped

    return point, {'time': time, 'value': point}


def _is_nan(value: Any) -> bool:
    try:
        return math.isnan(float(value))
    except (TypeError, ValueError):
        return True


def _set_by_path(target: Dict[str, Any], path: List[str], value: Any) -> None:
    for key in path[:-1]:
        nested = target.get(key)
        if not isinstance(nested, dict):
            nested = target[key] = {}
        target = nested
    target[path[-1]] = value
