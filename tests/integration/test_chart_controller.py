"""
Integration tests for the chart controller.

Trades go through the live path (render_realtime_trades or the scheduled
queue drain) and the rebuild path (chunk replay), and the MemorySink is
checked for what ends up drawn.
"""

import pytest

from aggr.core.constants import SerieType
from aggr.core.exceptions import ConfigurationError
from aggr.data.chunk_cache import ChunkCache

from conftest import SOURCE_A, SOURCE_B, trade

VOLUME = {'type': 'histogram', 'input': 'vbuy + vsell'}
CVD = {'type': 'line', 'input': 'cum(vbuy - vsell)'}


def bucket_batches():
    """Four buckets of trades; the second one has inactive-source trades only."""
    return [
        [trade(SOURCE_A, 100, 1, "buy", 1000), trade(SOURCE_B, 10, 3, "sell", 2000)],
        [trade(SOURCE_B, 10, 2, "buy", 61000)],
        [trade(SOURCE_A, 100, 2, "sell", 121000), trade(SOURCE_B, 10, 1, "buy", 122000)],
        [trade(SOURCE_A, 100, 1, "buy", 181000)],
    ]


# =============================================================================
# Live aggregation
# =============================================================================

def test_live_points_for_active_source_only(make_chart):
    chart = make_chart({'volume': VOLUME})

    chart.feed([
        trade(SOURCE_A, 100, 1, "buy", 0),
        trade(SOURCE_B, 102, 2, "sell", 10000),
        trade(SOURCE_A, 101, 1, "buy", 65000),
    ])

    assert chart.points('volume') == [
        {'time': 0.0, 'value': 100.0},
        {'time': 60.0, 'value': 101.0},
    ]

    # both sources are cached for the closed bucket, the live one is not
    bars = chart.controller.cache.rendered_bars()
    assert {bar.source for bar in bars} == {SOURCE_A, SOURCE_B}
    assert {bar.timestamp for bar in bars} == {0}
    assert chart.controller.active_renderer.timestamp == 60000


def test_live_bucket_updated_in_place(make_chart):
    chart = make_chart({'cvd': CVD})

    chart.feed(
        [trade(SOURCE_A, 100, 1, "buy", 0)],
        [trade(SOURCE_A, 100, 1, "sell", 1000), trade(SOURCE_A, 100, 3, "buy", 2000)],
    )

    assert chart.points('cvd') == [{'time': 0.0, 'value': 300.0}]


def test_trades_older_than_live_bucket_dropped(make_chart):
    chart = make_chart({'volume': VOLUME})

    chart.feed(
        [trade(SOURCE_A, 100, 1, "buy", 60000)],
        [trade(SOURCE_A, 100, 5, "buy", 1000)],
    )

    assert chart.points('volume') == [{'time': 60.0, 'value': 100.0}]
    assert chart.controller.cache.chunks == []


def test_timezone_offset_shifts_point_time(make_chart):
    chart = make_chart({'volume': VOLUME}, timezone_offset=3600000)

    chart.feed([trade(SOURCE_A, 100, 1, "buy", 0)])

    assert chart.points('volume') == [{'time': 3600.0, 'value': 100.0}]


def test_histogram_zero_values_skipped(make_chart):
    chart = make_chart({'liquidations': {'type': 'histogram', 'input': 'lbuy + lsell'}})

    chart.feed(
        [trade(SOURCE_A, 100, 1, "buy", 0)],
        [trade(SOURCE_A, 100, 1, "sell", 60000, liquidation=True)],
    )

    assert chart.points('liquidations') == [{'time': 60.0, 'value': 100.0}]


def test_candlestick_price(make_chart):
    chart = make_chart(
        {'price': {'type': 'candlestick', 'input': 'avg_ohlc()'}},
        active_sources=(SOURCE_A, SOURCE_B)
    )

    chart.feed(
        [trade(SOURCE_A, 100, 1, "buy", 0), trade(SOURCE_B, 104, 1, "buy", 0)],
        [trade(SOURCE_A, 110, 1, "buy", 1000)],
        [trade(SOURCE_A, 106, 1, "sell", 60000)],
    )

    assert chart.points('price') == [
        {'time': 0.0, 'open': 102.0, 'high': 107.0, 'low': 102.0, 'close': 107.0},
        {'time': 60.0, 'open': 107.0, 'high': 107.0, 'low': 105.0, 'close': 105.0},
    ]


# =============================================================================
# Series management
# =============================================================================

def test_dependencies_computed_first(make_chart):
    chart = make_chart({
        'double': {'type': 'line', 'input': '$volume * 2'},
        'volume': VOLUME,
    })

    chart.feed(
        [trade(SOURCE_A, 100, 1, "buy", 0)],
        [trade(SOURCE_A, 100, 3, "buy", 60000)],
    )

    assert [point['value'] for point in chart.points('double')] == [200.0, 600.0]
    assert chart.controller.get_serie_dependencies('double') == ['volume']
    assert chart.controller.get_series_depending_on('volume') == ['double']


def test_compile_error_reported_and_serie_not_added(make_chart):
    chart = make_chart({'broken': {'type': 'line', 'input': 'sma(vbuy)'}, 'volume': VOLUME})

    assert chart.controller.get_serie('broken') is None
    assert 'broken' not in chart.sink.series
    assert [event.serie_id for event in chart.errors] == ['broken']
    assert "'sma' takes 2 argument(s), got 1" in chart.errors[0].message

    chart.controller.set_serie_input('broken', 'sma(vbuy, 2)')

    assert chart.controller.get_serie('broken') is not None
    assert chart.controller.serie_errors['broken'] is None


def test_unknown_identifier_fails_compile(make_chart):
    chart = make_chart({'typo': {'type': 'line', 'input': 'vbuyy + 1'}, 'volume': VOLUME})

    assert chart.controller.get_serie('typo') is None
    assert 'typo' not in chart.sink.series
    assert 'volume' in chart.sink.series
    assert [event.serie_id for event in chart.errors] == ['typo']
    assert "Unknown identifier 'vbuyy'" in chart.errors[0].message


def test_unknown_serie_type(make_chart):
    chart = make_chart({'pie': {'type': 'pie', 'input': 'vbuy'}, 'volume': VOLUME})

    # skipped by add_enabled_series, the other series still load
    assert chart.controller.get_serie('pie') is None
    assert chart.controller.get_serie('volume') is not None

    with pytest.raises(ConfigurationError):
        chart.controller.add_serie('pie')


def test_circular_reference_rejected(make_chart):
    chart = make_chart({
        'a': {'type': 'line', 'input': 'vbuy'},
        'b': {'type': 'line', 'input': '$a + 1'},
    })

    chart.controller.set_serie_input('a', '$b * 2')

    assert chart.controller.get_serie('a') is None
    assert chart.errors[-1].serie_id == 'a'
    assert chart.errors[-1].message.startswith("Circular reference between series")


def test_nan_unbinds_only_the_failing_serie(make_chart):
    chart = make_chart({
        'volume': VOLUME,
        'broken': {'type': 'line', 'input': 'time == 300000 ? log(-1) : vbuy'},
    })

    for i in range(9):
        chart.feed([trade(SOURCE_A, 1, 1, "buy", i * 60000)])

    broken_times = [point['time'] for serie_id, point in chart.sink.appended if serie_id == 'broken']
    volume_times = [point['time'] for serie_id, point in chart.sink.appended if serie_id == 'volume']

    assert broken_times[-1] == 240.0
    assert volume_times[-1] == 480.0
    assert [event.message for event in chart.errors] == ["broken is NaN"]
    assert chart.controller.get_serie('broken').failed is True
    assert 'broken' not in chart.controller.active_renderer.series


@pytest.mark.parametrize("formula", [
    'round(vbuy, sqrt(-1))',
    'x = {value: vbuy, label: "a"}; x.label',
])
def test_invalid_helper_input_fails_only_that_serie(make_chart, formula):
    chart = make_chart({'volume': VOLUME, 'broken': {'type': 'line', 'input': formula}})

    chart.feed(
        [trade(SOURCE_A, 100, 1, "buy", 0)],
        [trade(SOURCE_A, 100, 2, "buy", 60000)],
    )

    assert [point['value'] for point in chart.points('volume')] == [100.0, 200.0]
    assert chart.points('broken') == []
    assert [event.message for event in chart.errors] == ["broken is NaN"]
    assert chart.controller.get_serie('broken').failed is True


def test_adapter_exception_fails_only_that_serie(make_chart):
    chart = make_chart({'volume': VOLUME, 'broken': {'type': 'line', 'input': 'vbuy'}})

    def explode(*args):
        raise ZeroDivisionError("division by zero")

    chart.controller.get_serie('broken').adapter = explode

    chart.feed(
        [trade(SOURCE_A, 100, 1, "buy", 0)],
        [trade(SOURCE_A, 100, 2, "buy", 60000)],
    )

    assert [point['value'] for point in chart.points('volume')] == [100.0, 200.0]
    assert [event.message for event in chart.errors] == ["broken failed: division by zero"]
    assert 'broken' not in chart.controller.active_renderer.series


def test_toggle_serie(make_chart):
    chart = make_chart({'volume': VOLUME, 'cvd': dict(CVD, enabled=False)})

    batches = bucket_batches()
    chart.feed(*batches)

    assert 'cvd' not in chart.sink.series

    chart.controller.toggle_serie('cvd', True)

    assert chart.sink.series['cvd'].type == SerieType.LINE
    assert [point['value'] for point in chart.points('cvd')] == [100.0, -100.0, 0.0]

    chart.controller.toggle_serie('cvd', False)

    assert 'cvd' not in chart.sink.series
    assert 'cvd' not in chart.controller.active_renderer.series


def test_serie_changes_leave_caller_config_untouched(make_chart):
    chart = make_chart({'volume': VOLUME, 'cvd': CVD})

    chart.controller.toggle_serie('cvd', False)
    chart.controller.set_serie_option('volume', 'color', 'red')
    chart.controller.set_serie_input('volume', 'vbuy')

    assert chart.config.series['cvd'].enabled is True
    assert chart.config.series['volume'].options == {}
    assert chart.config.series['volume'].input == 'vbuy + vsell'
    assert chart.controller.series_settings['volume'].options == {'color': 'red'}


def test_cosmetic_option_does_not_redraw(make_chart):
    chart = make_chart({'volume': VOLUME})
    chart.feed(*bucket_batches())
    replaced = len(chart.sink.replaced)

    chart.controller.set_serie_option('volume', 'color', 'red')
    chart.controller.set_serie_option('volume', 'priceFormat.precision', 2)

    assert len(chart.sink.replaced) == replaced
    assert chart.sink.series['volume'].options['color'] == 'red'
    assert chart.sink.series['volume'].options['priceFormat'] == {'precision': 2}
    assert chart.controller.series_settings['volume'].options['color'] == 'red'


def test_length_option_redraws_serie(make_chart):
    chart = make_chart({
        'smooth': {'type': 'line', 'input': 'sma(vbuy, options.length)', 'options': {'length': 3}},
        'volume': VOLUME,
    })

    chart.feed(*[[trade(SOURCE_A, 1, i + 1, "buy", i * 60000)] for i in range(4)])

    assert [point['value'] for point in chart.points('smooth')] == pytest.approx([1, 1.5, 2, 3])

    chart.controller.set_serie_option('smooth', 'length', 2)

    assert chart.sink.replaced[-1] == ('smooth', 3)
    assert [point['value'] for point in chart.points('smooth')] == pytest.approx([1, 1.5, 2.5, 3.5])

    # live state continues with the new length
    chart.feed([trade(SOURCE_A, 1, 6, "buy", 240000)])
    assert chart.points('smooth')[-1]['value'] == pytest.approx(5)


# =============================================================================
# Rebuilds
# =============================================================================

def test_rebuild_matches_live(make_chart):
    chart = make_chart({'volume': VOLUME, 'cvd': CVD})
    chart.feed(*bucket_batches())

    live_volume = chart.points('volume')
    live_cvd = chart.points('cvd')

    chart.controller.redraw()

    assert chart.points('volume') == live_volume
    assert chart.points('cvd') == live_cvd

    # the live renderer keeps aggregating on adopted state
    chart.feed([trade(SOURCE_A, 100, 1, "buy", 241000)])
    assert chart.points('cvd')[-1] == {'time': 240.0, 'value': 100.0}


def test_toggle_source_equals_fresh_aggregation(make_chart):
    both = make_chart({'volume': VOLUME, 'cvd': CVD}, active_sources=(SOURCE_A, SOURCE_B))
    only_a = make_chart({'volume': VOLUME, 'cvd': CVD}, active_sources=(SOURCE_A,))

    both.feed(*bucket_batches())
    only_a.feed(*bucket_batches())

    assert both.points('volume') != only_a.points('volume')

    both.controller.toggle_source(SOURCE_B)

    assert both.controller.config.active_sources == frozenset({SOURCE_A})
    assert both.points('volume') == only_a.points('volume')
    assert both.points('cvd') == only_a.points('cvd')
    assert only_a.points('volume') == [
        {'time': 0.0, 'value': 100.0},
        {'time': 120.0, 'value': 200.0},
        {'time': 180.0, 'value': 100.0},
    ]


def test_rebuild_without_live_renderer_adopts_replay(make_chart):
    chart = make_chart({'cvd': CVD})
    chart.feed(*bucket_batches())

    chart.controller.clear_data()
    assert chart.controller.active_renderer is None

    chart.controller.redraw()

    live = chart.controller.active_renderer
    assert live is not None
    assert live.timestamp == 180000

    chart.feed([trade(SOURCE_A, 100, 1, "sell", 181000)])
    assert chart.points('cvd')[-1] == {'time': 180.0, 'value': -200.0}


def test_trades_before_cache_end_dropped_after_clear_data(make_chart):
    chart = make_chart({'volume': VOLUME})
    chart.feed(*[[trade(SOURCE_A, 100, 1, "buy", i * 60000)] for i in range(4)])

    chart.controller.clear_data()

    chart.feed(
        [trade(SOURCE_A, 100, 1, "buy", 61000)],
        [trade(SOURCE_A, 100, 1, "buy", 300000)],
        [trade(SOURCE_A, 100, 1, "buy", 360000)],
    )

    timestamps = [bar.timestamp for bar in ChunkCache.flatten(chart.controller.cache.chunks)]
    assert timestamps == [0, 60000, 120000, 300000]
    assert chart.controller.active_renderer.timestamp == 360000


def test_cached_bucket_resumed_after_clear_data(make_chart):
    chart = make_chart({'volume': VOLUME})
    chart.feed(
        [trade(SOURCE_A, 100, 1, "buy", 0)],
        [trade(SOURCE_A, 100, 2, "buy", 60000)],
        [trade(SOURCE_A, 100, 1, "buy", 120000)],
    )

    chart.controller.clear_data()

    # same bucket as the cache high-water mark
    chart.feed([trade(SOURCE_A, 100, 1, "buy", 61000)])

    assert chart.controller.active_renderer.timestamp == 60000
    assert [bar.timestamp for bar in chart.controller.cache.rendered_bars()] == [0]

    chart.feed([trade(SOURCE_A, 100, 1, "buy", 180000)])

    bars = ChunkCache.flatten(chart.controller.cache.chunks)
    assert [bar.timestamp for bar in bars] == [0, 60000]
    assert bars[1].vbuy == 300.0

    chart.controller.redraw()

    assert chart.points('volume') == [
        {'time': 0.0, 'value': 100.0},
        {'time': 60.0, 'value': 300.0},
        {'time': 180.0, 'value': 100.0},
    ]


def test_visible_range_selects_chunks(make_chart):
    chart = make_chart({'volume': VOLUME}, max_bars_per_chunk=1, lookback_bars=1)
    chart.feed(*[[trade(SOURCE_A, 1, 1, "buy", i * 60000)] for i in range(4)])
    replaced = len(chart.sink.replaced)

    # ignored while the pan suppression flag is up
    assert chart.controller.pan_prevented is True
    chart.controller.set_visible_range(120000, None)
    assert len(chart.sink.replaced) == replaced

    chart.scheduler.advance(chart.config.pan_release_delay)
    assert chart.controller.pan_prevented is False

    chart.controller.set_visible_range(120000, None)

    assert len(chart.sink.replaced) == replaced + 1
    assert [point['time'] for point in chart.points('volume')] == [120.0, 180.0]
    assert chart.controller.rendered_range.start == 120000
    assert chart.controller.rendered_range.end == 180000

    # same selection: nothing to rebuild
    chart.scheduler.advance(chart.config.pan_release_delay)
    chart.controller.set_visible_range(125000, None)
    assert len(chart.sink.replaced) == replaced + 1


# =============================================================================
# Queue, counters and teardown
# =============================================================================

def test_queue_drained_on_interval(make_chart):
    chart = make_chart({'volume': VOLUME}, refresh_rate=500)
    controller = chart.controller
    counter = controller.add_counter('volume', lambda volumes: volumes.vbuy + volumes.vsell, name='Volume')

    controller.setup_queue()
    controller.queue_trades([trade(SOURCE_A, 100, 1, "buy", 100), trade(SOURCE_B, 100, 1, "buy", 200)])

    assert chart.points('volume') == []

    chart.scheduler.advance(500)

    assert chart.points('volume') == [{'time': 0.0, 'value': 100.0}]
    assert counter.get_value() == 100.0
    assert counter.name == "Volume/m"


def test_locked_render_keeps_trades_queued(make_chart):
    chart = make_chart({'volume': VOLUME}, refresh_rate=500)
    controller = chart.controller

    controller.setup_queue()
    controller.lock_render()
    controller.queue_trades([trade(SOURCE_A, 100, 1, "buy", 100)])
    chart.scheduler.advance(1000)

    assert chart.points('volume') == []
    assert len(controller.queue) == 1

    controller.unlock_render()
    chart.scheduler.advance(500)

    assert len(chart.points('volume')) == 1


def test_destroy_cancels_every_timer(make_chart):
    chart = make_chart({'volume': VOLUME, 'cvd': CVD}, refresh_rate=500)
    controller = chart.controller
    controller.add_counter('trades', lambda volumes: volumes.cbuy + volumes.csell)

    controller.setup_queue()
    controller.queue_trades(bucket_batches()[0])
    chart.scheduler.advance(500)

    assert chart.scheduler.pending() > 0

    controller.destroy()

    assert chart.scheduler.pending() == 0
    assert controller.active_series == []
    assert controller.counters == {}
    assert chart.sink.series == {}
    assert controller.cache.chunks == []
    assert controller.active_renderer is None


def test_clear_chart_empties_series(make_chart):
    chart = make_chart({'volume': VOLUME})
    chart.feed(*bucket_batches())

    chart.controller.clear()

    assert chart.points('volume') == []
    assert chart.controller.cache.chunks == []
    assert chart.controller.rendered_range.end is None
