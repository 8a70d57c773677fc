"""
Helper library passed to every series adapter.

Stateful helpers take the instruction state as first argument and record
their output in it so the bucket-advance transition can commit it. Math
helpers go through numpy so that invalid operations (0/0, sqrt(-1), log(0))
yield NaN or inf instead of raising; the controller turns NaN into a
per-series runtime error.
"""

import math
from typing import Any, Dict, Optional

import numpy as np

from ..core.types import OHLC


def _float(value: Any) -> float:
    if value is None:
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


# =============================================================================
# Stateful helpers
# =============================================================================

def sma(state: Dict[str, Any], value: float) -> float:
    """Mean of value and the committed past outputs (at most n - 1 of them)."""
    value = _float(value)
    state['output'] = value
    return (state['sum'] + value) / (state['count'] + 1)


def ema(state: Dict[str, Any], value: float, length: int) -> float:
    value = _float(value)
    previous = state['previous']

    if previous is None:
        output = value
    else:
        alpha = 2 / (length + 1)
        output = alpha * value + (1 - alpha) * previous

    state['output'] = output
    return output


def cum(state: Dict[str, Any], value: float) -> float:
    output = state['sum'] + _float(value)
    state['output'] = output
    return output


def highest(state: Dict[str, Any], value: float, length: int) -> float:
    value = _float(value)
    state['output'] = value
    past = list(state['points'])[-(length - 1):] if length > 1 else []
    return float(np.max(past + [value]))


def lowest(state: Dict[str, Any], value: float, length: int) -> float:
    value = _float(value)
    state['output'] = value
    past = list(state['points'])[-(length - 1):] if length > 1 else []
    return float(np.min(past + [value]))


def lag(state: Dict[str, Any], value: float, length: int) -> float:
    """Value from length buckets ago, or the oldest one available."""
    value = _float(value)
    state['output'] = value
    points = state['points']

    if not points:
        return value
    if len(points) < length:
        return points[0]
    return points[-length]


def ohlc(state: Dict[str, Any], value: float) -> OHLC:
    """Open/high/low/close of value within the bucket, opening at the last close."""
    value = _float(value)

    if state['open'] is None:
        state['open'] = value
        state['high'] = value
        state['low'] = value

    state['high'] = max(state['high'], value)
    state['low'] = min(state['low'], value)
    state['close'] = value

    return OHLC(state['open'], state['high'], state['low'], state['close'])


def avg_ohlc(state: Dict[str, Any], renderer: Any) -> OHLC:
    """Candle of the mean close across active sources that have a price."""
    closes = [
        source_bar.close
        for identifier, source_bar in renderer.sources.items()
        if identifier in renderer.active and source_bar.close
    ]

    value = float(np.mean(closes)) if closes else math.nan
    return ohlc(state, value)


# =============================================================================
# Stateless helpers
# =============================================================================

def divide(left: float, right: float) -> float:
    with np.errstate(divide='ignore', invalid='ignore'):
        return float(np.divide(_float(left), _float(right)))


def modulo(left: float, right: float) -> float:
    with np.errstate(divide='ignore', invalid='ignore'):
        return float(np.fmod(_float(left), _float(right)))


def _unary(func):
    def wrapped(value):
        with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
            return float(func(_float(value)))
    wrapped.__name__ = func.__name__
    return wrapped


def _pow(base: float, exponent: float) -> float:
    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        return float(np.power(_float(base), _float(exponent)))


def _round(value: float, digits: Optional[float] = None) -> float:
    if digits is None:
        return float(np.round(_float(value)))
    digits = _float(digits)
    if not math.isfinite(digits):
        return math.nan
    return float(np.round(_float(value), int(digits)))


def _min(*values: float) -> float:
    return float(np.min([_float(value) for value in values]))


def _max(*values: float) -> float:
    return float(np.max([_float(value) for value in values]))


# name -> (callable, min arity, max arity); None means variadic
STATELESS_FUNCTIONS = {
    'abs': (_unary(np.abs), 1, 1),
    'sqrt': (_unary(np.sqrt), 1, 1),
    'log': (_unary(np.log), 1, 1),
    'exp': (_unary(np.exp), 1, 1),
    'floor': (_unary(np.floor), 1, 1),
    'ceil': (_unary(np.ceil), 1, 1),
    'round': (_round, 1, 2),
    'pow': (_pow, 2, 2),
    'min': (_min, 1, None),
    'max': (_max, 1, None),
}


def call(name: str, *args: float) -> float:
    """Invoke a stateless helper by name."""
    return STATELESS_FUNCTIONS[name][0](*args)
