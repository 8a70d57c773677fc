"""
Unit tests for the formula parser and the series transpiler.
"""

import math
from types import SimpleNamespace

import pytest

from aggr.core.constants import InstructionType, OutputType
from aggr.core.exceptions import CompileError
from aggr.core.types import CombinedBar, OHLC, SourceBar
from aggr.data.bar_aggregator import Renderer
from aggr.series import parser, utils
from aggr.series.instructions import clone_instructions
from aggr.series.transpiler import SeriesTranspiler


def make_serie(formula, type="line", options=None, id="test"):
    return SimpleNamespace(id=id, type=type, input=formula, options=options or {})


@pytest.fixture
def transpiler():
    return SeriesTranspiler()


def evaluate(transpiler, formula, bar=None, type="line", options=None, renderer=None):
    """Compile a formula and evaluate it once against a single bucket."""
    options = options or {}
    model = transpiler.transpile(make_serie(formula, type=type, options=options))
    adapter = transpiler.get_adapter(model.output)

    if renderer is None:
        renderer = Renderer(timestamp=0, bar=bar or CombinedBar(empty=False))

    return adapter(
        renderer,
        clone_instructions(model.functions),
        clone_instructions(model.variables),
        options,
        utils
    )


# =============================================================================
# Parser
# =============================================================================

def test_parse_precedence():
    program = parser.parse("1 + 2 * 3")

    node = program.statements[0]
    assert isinstance(node, parser.Binary)
    assert node.op == '+'
    assert isinstance(node.right, parser.Binary)
    assert node.right.op == '*'


def test_parse_statements_and_comments():
    program = parser.parse("delta = vbuy - vsell // net flow\n\nsma(delta, 14)")

    assert len(program.statements) == 2
    assert isinstance(program.statements[0], parser.Assign)
    assert isinstance(program.statements[1], parser.Call)


def test_parse_newline_inside_brackets():
    program = parser.parse("max(\n  vbuy,\n  vsell\n)")

    assert len(program.statements) == 1
    assert len(program.statements[0].args) == 2


def test_parse_word_operators():
    program = parser.parse("not vbuy or vsell and cbuy")

    node = program.statements[0]
    assert isinstance(node, parser.Logical)
    assert node.op == '||'
    assert isinstance(node.left, parser.Unary)
    assert node.right.op == '&&'


@pytest.mark.parametrize("formula", ["", "   ", "\n\n"])
def test_parse_empty_formula(formula):
    with pytest.raises(CompileError) as exc_info:
        parser.parse(formula)

    assert exc_info.value.message == "Formula is empty"


def test_parse_error_position():
    with pytest.raises(CompileError) as exc_info:
        parser.parse("vbuy +")

    assert "Unexpected end of formula at position 6" in exc_info.value.message


def test_parse_unexpected_character():
    with pytest.raises(CompileError) as exc_info:
        parser.parse("vbuy # 2")

    assert "Unexpected character '#'" in exc_info.value.message


def test_parse_unclosed_call():
    with pytest.raises(CompileError) as exc_info:
        parser.parse("sma(vbuy, 2")

    assert "but found end of formula" in exc_info.value.message


# =============================================================================
# Compilation
# =============================================================================

def test_transpile_simple_value(transpiler):
    model = transpiler.transpile(make_serie("vbuy + vsell"))

    assert model.type == OutputType.VALUE
    assert model.output == "(vbuy + vsell)"
    assert model.functions == []
    assert model.variables == []
    assert model.references == []


def test_transpile_function_instructions(transpiler):
    model = transpiler.transpile(make_serie("sma(vbuy, 3) + ema(vsell, options.length)", options={'length': 9}))

    assert [f.name for f in model.functions] == ['sma', 'ema']
    assert model.functions[0].type == InstructionType.AVERAGE_FUNCTION
    assert model.functions[0].arg == 3
    assert model.functions[1].arg == 9
    assert model.functions[1].arg_option == 'length'
    assert model.output == "(sma(vbuy, 3) + ema(vsell, options.length))"


def test_transpile_variables(transpiler):
    model = transpiler.transpile(make_serie("x = vbuy - vsell\nx - x[3]"))

    assert len(model.variables) == 1
    assert model.variables[0].type == InstructionType.ARRAY
    assert model.variables[0].arg == 4
    assert model.variables[0].state == [None]
    assert model.output == "x = (vbuy - vsell); (x - x[3])"


def test_cum_ohlc_macro(transpiler):
    model = transpiler.transpile(make_serie("cum_ohlc(vbuy - vsell)", type="candlestick"))

    assert model.type == OutputType.OHLC
    assert model.output == "ohlc(cum((vbuy - vsell)))"
    assert [f.name for f in model.functions] == ['ohlc', 'cum']


def test_canonical_output_recompiles_identically(transpiler):
    formula = "d = vbuy - vsell\nr = highest(d, 5) - lowest(d, 5)\nd > 0 ? sma(r, 3) : -cum(d)"
    model = transpiler.transpile(make_serie(formula))

    again = transpiler.transpile(make_serie(model.output))

    assert again.output == model.output
    assert [f.name for f in again.functions] == [f.name for f in model.functions]
    assert [f.arg for f in again.functions] == [f.arg for f in model.functions]


def test_ohlc_output_narrowed_to_close_on_line(transpiler):
    model = transpiler.transpile(make_serie("ohlc(vbuy)"))

    assert model.type == OutputType.VALUE
    assert model.output == "(ohlc(vbuy)).close"


def test_ohlc_assignment_narrowed_to_close_on_line(transpiler):
    model = transpiler.transpile(make_serie("c = ohlc(vbuy)"))

    assert model.output == "c = ohlc(vbuy); (c).close"


def test_series_references(transpiler):
    model = transpiler.transpile(make_serie("$volume * 2 + $price.close"))

    assert model.references == ['volume', 'price']


def test_options_in_expression(transpiler):
    result = evaluate(transpiler, "vbuy * options.factor", bar=CombinedBar(vbuy=3, empty=False), options={'factor': 2})

    assert result == 6


@pytest.mark.parametrize("formula, message", [
    ("foo + 1", "Unknown identifier 'foo'"),
    ("foo(1)", "Unknown function 'foo'"),
    ("sma(vbuy)", "'sma' takes 2 argument(s), got 1"),
    ("round()", "'round' takes 1 to 2 argument(s), got 0"),
    ("sma(vbuy, vsell)", "Window length of 'sma' must be a number or an option"),
    ("sma(vbuy, 0)", "Window length of 'sma' must be a whole number >= 1"),
    ("ohlc(vbuy) + 1", "Operator '+' cannot be applied to an ohlc value"),
    ("sma(vbuy, options.length)", "Unknown option 'length'"),
    ("vbuy[1]", "Only variables can be indexed"),
    ("$test + 1", "Series 'test' cannot reference itself"),
    ("vbuy = 1\nvbuy", "'vbuy' is reserved and cannot be assigned"),
    ("{high: 1}", "Object output needs open/high/low/close keys or a value key"),
    ("sma", "Function 'sma' must be called"),
])
def test_compile_errors(transpiler, formula, message):
    with pytest.raises(CompileError) as exc_info:
        transpiler.transpile(make_serie(formula))

    assert message in exc_info.value.message
    assert exc_info.value.serie_id == "test"


def test_unknown_series_reference(transpiler):
    with pytest.raises(CompileError) as exc_info:
        transpiler.transpile(make_serie("$missing * 2"), known_series=['volume'])

    assert "Unknown series '$missing'" in exc_info.value.message


def test_candlestick_requires_ohlc_output(transpiler):
    with pytest.raises(CompileError) as exc_info:
        transpiler.transpile(make_serie("vbuy", type="candlestick"))

    assert "candlestick series needs an OHLC output" in exc_info.value.message


def test_unknown_visual_type(transpiler):
    with pytest.raises(ValueError):
        transpiler.transpile(make_serie("vbuy", type="pie"))


# =============================================================================
# Adapters
# =============================================================================

def test_adapter_cached_by_output(transpiler):
    model = transpiler.transpile(make_serie("vbuy - vsell"))

    assert transpiler.get_adapter(model.output) is transpiler.get_adapter(model.output)


def test_adapter_arithmetic_and_logic(transpiler):
    bar = CombinedBar(vbuy=5, vsell=2, cbuy=3, csell=1, empty=False)

    assert evaluate(transpiler, "(vbuy - vsell) * 2 % 4", bar=bar) == 2
    assert evaluate(transpiler, "vbuy > vsell && cbuy >= 3 ? 1 : -1", bar=bar) == 1
    assert evaluate(transpiler, "!(vbuy > vsell) || csell == 0", bar=bar) == 0
    assert evaluate(transpiler, "max(vbuy, vsell, 10) + abs(-2)", bar=bar) == 12
    assert evaluate(transpiler, "round(vbuy / 3, 2)", bar=bar) == pytest.approx(1.67)


def test_adapter_time_and_bar_fields(transpiler):
    renderer = Renderer(timestamp=120000, bar=CombinedBar(lbuy=4, empty=False))

    assert evaluate(transpiler, "time / 1000 + bar.lbuy", renderer=renderer) == 124


def test_invalid_math_yields_nan(transpiler):
    bar = CombinedBar(vbuy=0, empty=False)

    assert math.isnan(evaluate(transpiler, "vbuy / vbuy", bar=bar))
    assert math.isnan(evaluate(transpiler, "log(-1)", bar=bar))
    assert math.isinf(evaluate(transpiler, "1 / vbuy", bar=bar))
    assert math.isnan(evaluate(transpiler, "round(vbuy, sqrt(-1))", bar=bar))


def test_source_field(transpiler):
    renderer = Renderer(timestamp=0, bar=CombinedBar(empty=False))
    renderer.sources["BINANCE:btcusdt"] = SourceBar(exchange="BINANCE", pair="btcusdt", close=101.5)

    assert evaluate(transpiler, 'sources["BINANCE:btcusdt"].close', renderer=renderer) == 101.5
    assert math.isnan(evaluate(transpiler, 'sources["KRAKEN:XBTUSD"].close', renderer=renderer))


def test_source_name_survives_canonical_output(transpiler):
    renderer = Renderer(timestamp=0, bar=CombinedBar(empty=False))
    renderer.sources["BITSTAMP:btcéur"] = SourceBar(exchange="BITSTAMP", pair="btcéur", close=99.0)

    model = transpiler.transpile(make_serie('sources["BITSTAMP:btcéur"].close'))

    assert model.output == 'sources["BITSTAMP:btcéur"].close'
    assert evaluate(transpiler, model.output, renderer=renderer) == 99.0


def test_avg_ohlc(transpiler):
    renderer = Renderer(timestamp=0, bar=CombinedBar(empty=False), active=frozenset({"A:x", "B:y"}))
    renderer.sources["A:x"] = SourceBar(exchange="A", pair="x", close=100)
    renderer.sources["B:y"] = SourceBar(exchange="B", pair="y", close=102)
    renderer.sources["C:z"] = SourceBar(exchange="C", pair="z", close=500)

    result = evaluate(transpiler, "avg_ohlc()", type="candlestick", renderer=renderer)

    assert result == OHLC(101.0, 101.0, 101.0, 101.0)


def test_custom_output(transpiler):
    bar = CombinedBar(vbuy=3, empty=False)
    result = evaluate(transpiler, '{value: vbuy, color: "red"}', bar=bar, type="custom")

    assert result == {'value': 3, 'color': 'red'}


def test_ohlc_object_output(transpiler):
    bar = CombinedBar(vbuy=3, vsell=1, empty=False)
    result = evaluate(transpiler, "{open: vsell, high: vbuy, low: vsell, close: vbuy}", bar=bar, type="bar")

    assert result == OHLC(1.0, 3.0, 1.0, 3.0)


def test_update_instructions_argument(transpiler):
    model = transpiler.transpile(make_serie("sma(vbuy, options.length) + lag(vbuy, 2)", options={'length': 14}))

    transpiler.update_instructions_argument(model.functions, {'length': 3})
    assert [f.arg for f in model.functions] == [3, 2]

    transpiler.update_instructions_argument(model.functions, {'length': 'abc'})
    transpiler.update_instructions_argument(model.functions, {'length': 0})
    assert [f.arg for f in model.functions] == [3, 2]
