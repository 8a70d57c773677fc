"""
Executable instruction tree of a compiled formula.

The transpiler resolves a parsed formula into these nodes. Evaluation
receives every piece of state through an EvalContext; nodes hold no
mutable state of their own, so one tree serves every renderer and cloned
instruction state replays identically.

Every node can render itself back to formula text. The rendered text of a
whole program is the canonical output expression of a series, and
compiling it again yields the same tree with the same instruction indices.
"""

import json
import math
import re
from dataclasses import dataclass
from typing import Any, List, NamedTuple, Optional, Tuple

from ..core.constants import OutputType
from ..core.types import OHLC

IDENTIFIER_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class EvalContext(NamedTuple):
    """Arguments of an adapter call."""
    renderer: Any
    functions: List[Any]
    variables: List[Any]
    options: dict
    utils: Any


def _number(value: Any) -> float:
    if value is None:
        return math.nan
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def _truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


def format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


class Node:
    """Base class of executable nodes."""

    kind = OutputType.VALUE

    def evaluate(self, ctx: EvalContext) -> Any:
        raise NotImplementedError

    def render(self) -> str:
        raise NotImplementedError


# =============================================================================
# Leaves
# =============================================================================

@dataclass
class Literal(Node):
    value: Any

    def evaluate(self, ctx):
        return self.value

    def render(self):
        if isinstance(self.value, str):
            return json.dumps(self.value, ensure_ascii=False)
        return format_number(self.value)


@dataclass
class BarField(Node):
    """Volume or count of the combined bar."""
    field: str

    def evaluate(self, ctx):
        return getattr(ctx.renderer.bar, self.field)

    def render(self):
        return self.field


@dataclass
class TimeRef(Node):

    def evaluate(self, ctx):
        return ctx.renderer.timestamp

    def render(self):
        return 'time'


@dataclass
class SourceField(Node):
    """Field of one source's bar, active or not."""
    source: str
    field: str

    def evaluate(self, ctx):
        source_bar = ctx.renderer.sources.get(self.source)
        if source_bar is None:
            return math.nan
        return getattr(source_bar, self.field)

    def render(self):
        return f'sources[{json.dumps(self.source, ensure_ascii=False)}].{self.field}'


@dataclass
class SerieValue(Node):
    """Output of another series for the same bucket."""
    serie_id: str
    field: Optional[str] = None

    def evaluate(self, ctx):
        data = ctx.renderer.series.get(self.serie_id)

        if data is None:
            return math.nan

        if self.field is None:
            return _number(data.value)

        point = data.point
        if isinstance(point, OHLC):
            return getattr(point, self.field, math.nan)
        if isinstance(point, dict):
            return _number(point.get(self.field))
        return math.nan

    def render(self):
        if self.field is None:
            return f'${self.serie_id}'
        return f'${self.serie_id}.{self.field}'


@dataclass
class OptionRef(Node):
    key: str

    def evaluate(self, ctx):
        try:
            return float(ctx.options.get(self.key))
        except (TypeError, ValueError):
            return math.nan

    def render(self):
        return f'options.{self.key}'


# =============================================================================
# Variables and functions
# =============================================================================

@dataclass
class VarRead(Node):
    """Value of a variable offset buckets back (oldest available beyond history)."""
    index: int
    name: str
    offset: int = 0
    kind: OutputType = OutputType.VALUE

    def evaluate(self, ctx):
        history = ctx.variables[self.index].state
        value = history[min(self.offset, len(history) - 1)]
        if value is None and self.kind == OutputType.VALUE:
            return math.nan
        return value

    def render(self):
        if self.offset:
            return f'{self.name}[{self.offset}]'
        return self.name


@dataclass
class VarWrite(Node):
    index: int
    name: str
    value: Node
    kind: OutputType = OutputType.VALUE

    def evaluate(self, ctx):
        result = self.value.evaluate(ctx)
        ctx.variables[self.index].state[0] = result
        return result

    def render(self):
        return f'{self.name} = {self.value.render()}'


@dataclass
class FunctionCall(Node):
    """
    Call of a stateful helper bound to instruction functions[index].

    Attributes:
        helper: Name of the helper in the helper library
        takes_length: Helper receives the instruction's window length
        length_text: Window argument as written (number or options.key)
    """
    index: int
    name: str
    helper: str
    args: Tuple[Node, ...] = ()
    takes_length: bool = False
    length_text: Optional[str] = None
    kind: OutputType = OutputType.VALUE

    def evaluate(self, ctx):
        instruction = ctx.functions[self.index]
        helper = getattr(ctx.utils, self.helper)

        if self.helper == 'avg_ohlc':
            return helper(instruction.state, ctx.renderer)

        values = [arg.evaluate(ctx) for arg in self.args]

        if self.takes_length:
            return helper(instruction.state, *values, instruction.arg)
        return helper(instruction.state, *values)

    def render(self):
        parts = [arg.render() for arg in self.args]
        if self.length_text is not None:
            parts.append(self.length_text)
        return f"{self.name}({', '.join(parts)})"


@dataclass
class HelperCall(Node):
    """Call of a stateless math helper."""
    name: str
    args: Tuple[Node, ...] = ()

    def evaluate(self, ctx):
        return ctx.utils.call(self.name, *[_number(arg.evaluate(ctx)) for arg in self.args])

    def render(self):
        return f"{self.name}({', '.join(arg.render() for arg in self.args)})"


# =============================================================================
# Operators
# =============================================================================

@dataclass
class Member(Node):
    """Field of an OHLC or custom value."""
    target: Node
    field: str

    def evaluate(self, ctx):
        value = self.target.evaluate(ctx)
        if isinstance(value, OHLC):
            return getattr(value, self.field, math.nan)
        if isinstance(value, dict):
            return _number(value.get(self.field))
        return math.nan

    def render(self):
        return f'({self.target.render()}).{self.field}'


@dataclass
class UnaryOp(Node):
    op: str
    operand: Node

    def evaluate(self, ctx):
        value = self.operand.evaluate(ctx)
        if self.op == '!':
            return 0.0 if _truthy(value) else 1.0
        value = _number(value)
        return -value if self.op == '-' else value

    def render(self):
        return f'({self.op}{self.operand.render()})'


@dataclass
class BinaryOp(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, ctx):
        left = _number(self.left.evaluate(ctx))
        right = _number(self.right.evaluate(ctx))

        if self.op == '+':
            return left + right
        if self.op == '-':
            return left - right
        if self.op == '*':
            return left * right
        if self.op == '/':
            return ctx.utils.divide(left, right)
        return ctx.utils.modulo(left, right)

    def render(self):
        return f'({self.left.render()} {self.op} {self.right.render()})'


@dataclass
class CompareOp(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, ctx):
        left = _number(self.left.evaluate(ctx))
        right = _number(self.right.evaluate(ctx))

        if self.op == '==':
            result = left == right
        elif self.op == '!=':
            result = left != right
        elif self.op == '<':
            result = left < right
        elif self.op == '<=':
            result = left <= right
        elif self.op == '>':
            result = left > right
        else:
            result = left >= right

        return 1.0 if result else 0.0

    def render(self):
        return f'({self.left.render()} {self.op} {self.right.render()})'


@dataclass
class LogicalOp(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, ctx):
        left = _truthy(self.left.evaluate(ctx))

        if self.op == '&&' and not left:
            return 0.0
        if self.op == '||' and left:
            return 1.0

        return 1.0 if _truthy(self.right.evaluate(ctx)) else 0.0

    def render(self):
        return f'({self.left.render()} {self.op} {self.right.render()})'


@dataclass
class ConditionalOp(Node):
    test: Node
    body: Node
    orelse: Node
    kind: OutputType = OutputType.VALUE

    def evaluate(self, ctx):
        if _truthy(self.test.evaluate(ctx)):
            return self.body.evaluate(ctx)
        return self.orelse.evaluate(ctx)

    def render(self):
        return f'({self.test.render()} ? {self.body.render()} : {self.orelse.render()})'


# =============================================================================
# Outputs
# =============================================================================

@dataclass
class ObjectOut(Node):
    """Object literal: an OHLC record or a custom point."""
    items: Tuple[Tuple[str, Node], ...]
    kind: OutputType = OutputType.CUSTOM

    def evaluate(self, ctx):
        values = {key: node.evaluate(ctx) for key, node in self.items}

        if self.kind == OutputType.OHLC:
            return OHLC(
                open=_number(values['open']),
                high=_number(values['high']),
                low=_number(values['low']),
                close=_number(values['close'])
            )

        return values

    def render(self):
        parts = []
        for key, node in self.items:
            label = key if IDENTIFIER_RE.match(key) else json.dumps(key)
            parts.append(f'{label}: {node.render()}')
        return '{' + ', '.join(parts) + '}'


@dataclass
class Block(Node):
    """Statements of a formula; the last one is the output."""
    statements: Tuple[Node, ...]

    @property
    def kind(self):
        return self.statements[-1].kind

    def evaluate(self, ctx):
        result = None
        for statement in self.statements:
            result = statement.evaluate(ctx)
        return result

    def render(self):
        return '; '.join(statement.render() for statement in self.statements)
