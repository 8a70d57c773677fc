"""
Series Transpiler - compiles formula text into a series model and adapter.

transpile() validates a formula against the series it belongs to and
produces a SerieModel: the canonical output expression, the output kind,
the instructions the formula needs and the series it references.

get_adapter() turns a canonical output expression into the callable the
controller evaluates once per bucket:

    adapter(renderer, functions, variables, options, utils)

The adapter reads and writes nothing but its arguments.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional

from ..core.constants import (
    PRICE_FIELDS,
    SOURCE_BAR_FIELDS,
    VOLUME_FIELDS,
    InstructionType,
    OutputType,
    SerieType,
)
from ..core.exceptions import CompileError
from ..monitoring.logger import get_logger
from . import parser as syntax
from .instructions import Instruction, initial_state, update_arguments
from .nodes import (
    BarField,
    BinaryOp,
    Block,
    CompareOp,
    ConditionalOp,
    FunctionCall,
    HelperCall,
    EvalContext,
    Literal,
    LogicalOp,
    Member,
    Node,
    ObjectOut,
    OptionRef,
    SerieValue,
    SourceField,
    TimeRef,
    UnaryOp,
    VarRead,
    VarWrite,
    format_number,
)
from .utils import STATELESS_FUNCTIONS

logger = get_logger(__name__)


class FunctionSpec(NamedTuple):
    """
    Stateful function of the formula language.

    Attributes:
        type: Instruction allocated for each call
        helper: Helper library function evaluating the call
        arity: Number of arguments as written
        windowed: Last argument is a window length
        passes_length: Helper receives the window length when evaluated
        kind: Output kind of the call
    """
    type: InstructionType
    helper: str
    arity: int
    windowed: bool = False
    passes_length: bool = False
    kind: OutputType = OutputType.VALUE


FUNCTIONS: Dict[str, FunctionSpec] = {
    'sma': FunctionSpec(InstructionType.AVERAGE_FUNCTION, 'sma', 2, windowed=True),
    'avg': FunctionSpec(InstructionType.AVERAGE_FUNCTION, 'sma', 2, windowed=True),
    'ema': FunctionSpec(InstructionType.EXPONENTIAL_FUNCTION, 'ema', 2, windowed=True, passes_length=True),
    'cum': FunctionSpec(InstructionType.CUMULATIVE_FUNCTION, 'cum', 1),
    'highest': FunctionSpec(InstructionType.WINDOW_FUNCTION, 'highest', 2, windowed=True, passes_length=True),
    'lowest': FunctionSpec(InstructionType.WINDOW_FUNCTION, 'lowest', 2, windowed=True, passes_length=True),
    'lag': FunctionSpec(InstructionType.WINDOW_FUNCTION, 'lag', 2, windowed=True, passes_length=True),
    'ohlc': FunctionSpec(InstructionType.OHLC, 'ohlc', 1, kind=OutputType.OHLC),
    'avg_ohlc': FunctionSpec(InstructionType.OHLC, 'avg_ohlc', 0, kind=OutputType.OHLC),
}

# Rewritten before compilation
MACROS = ('cum_ohlc',)

RESERVED_NAMES = frozenset(
    VOLUME_FIELDS
    + ('time', 'bar', 'sources', 'options', 'and', 'or', 'not')
    + tuple(FUNCTIONS)
    + tuple(STATELESS_FUNCTIONS)
    + MACROS
)

Adapter = Callable[[Any, List[Instruction], List[Instruction], dict, Any], Any]


@dataclass
class SerieModel:
    """
    Compiled form of a series formula.

    Attributes:
        output: Canonical output expression (input of get_adapter)
        type: Kind of value the output produces
        functions: Function instructions, in evaluation index order
        variables: Variable instructions, in declaration order
        references: Ids of other series the formula reads
    """
    output: str
    type: OutputType
    functions: List[Instruction] = field(default_factory=list)
    variables: List[Instruction] = field(default_factory=list)
    references: List[str] = field(default_factory=list)


class _Compiler:
    """Resolves one parsed formula into an executable Block."""

    def __init__(
        self,
        serie_id: Optional[str] = None,
        options: Optional[dict] = None,
        known_series: Optional[Iterable[str]] = None,
        strict: bool = True
    ):
        self.serie_id = serie_id
        self.options = options or {}
        self.known_series = None if known_series is None else set(known_series)
        self.strict = strict

        self.functions: List[Instruction] = []
        self.variables: List[Instruction] = []
        self.variable_kinds: Dict[str, OutputType] = {}
        self.variable_index: Dict[str, int] = {}
        self.references: List[str] = []

    def error(self, message: str) -> CompileError:
        return CompileError(message, serie_id=self.serie_id)

    def compile(self, program: syntax.Program) -> Block:
        statements = []

        for statement in program.statements:
            if isinstance(statement, syntax.Assign):
                statements.append(self._assign(statement))
            else:
                statements.append(self._expr(statement))

        return Block(tuple(statements))

    # -- statements ----------------------------------------------------------

    def _assign(self, statement: syntax.Assign) -> VarWrite:
        name = statement.name

        if name in RESERVED_NAMES:
            raise self.error(f"'{name}' is reserved and cannot be assigned")

        value = self._expr(statement.value)

        if name in self.variable_index:
            if self.variable_kinds[name] != value.kind:
                raise self.error(f"Variable '{name}' cannot change from {self.variable_kinds[name].value} to {value.kind.value}")
        else:
            self.variable_index[name] = len(self.variables)
            self.variable_kinds[name] = value.kind
            self.variables.append(Instruction(
                name=name,
                type=InstructionType.ARRAY,
                arg=1,
                state=initial_state(InstructionType.ARRAY)
            ))

        return VarWrite(self.variable_index[name], name, value, kind=value.kind)

    # -- expressions ---------------------------------------------------------

    def _expr(self, node: syntax.SyntaxNode) -> Node:
        if isinstance(node, syntax.Number):
            return Literal(node.value)

        if isinstance(node, syntax.String):
            raise self.error(f"Unexpected string \"{node.value}\"")

        if isinstance(node, syntax.Name):
            return self._name(node.name)

        if isinstance(node, syntax.SerieRef):
            return SerieValue(self._reference(node.serie_id))

        if isinstance(node, syntax.Attribute):
            return self._attribute(node)

        if isinstance(node, syntax.Index):
            return self._index(node)

        if isinstance(node, syntax.Call):
            return self._call(node)

        if isinstance(node, syntax.Unary):
            return UnaryOp(node.op, self._value(node.operand, node.op))

        if isinstance(node, syntax.Binary):
            return BinaryOp(node.op, self._value(node.left, node.op), self._value(node.right, node.op))

        if isinstance(node, syntax.Compare):
            return CompareOp(node.op, self._value(node.left, node.op), self._value(node.right, node.op))

        if isinstance(node, syntax.Logical):
            return LogicalOp(node.op, self._value(node.left, node.op), self._value(node.right, node.op))

        if isinstance(node, syntax.Conditional):
            test = self._value(node.test, '?')
            body = self._expr(node.body)
            orelse = self._expr(node.orelse)
            if body.kind != orelse.kind:
                raise self.error("Both branches of '?' must produce the same kind of value")
            return ConditionalOp(test, body, orelse, kind=body.kind)

        if isinstance(node, syntax.ObjectLiteral):
            return self._object(node)

        if isinstance(node, syntax.Assign):
            raise self.error(f"Assignment to '{node.name}' must be a statement of its own")

        raise self.error(f"Unsupported expression {type(node).__name__}")

    def _value(self, node: syntax.SyntaxNode, operator: str) -> Node:
        """Compile an operand that must be a single number."""
        compiled = self._expr(node)
        if compiled.kind != OutputType.VALUE:
            raise self.error(
                f"Operator '{operator}' cannot be applied to an {compiled.kind.value} value, "
                f"pick a field such as .close"
            )
        return compiled

    def _name(self, name: str) -> Node:
        if name in VOLUME_FIELDS:
            return BarField(name)

        if name == 'time':
            return TimeRef()

        if name in self.variable_index:
            return VarRead(self.variable_index[name], name, 0, kind=self.variable_kinds[name])

        if name in FUNCTIONS or name in STATELESS_FUNCTIONS or name in MACROS:
            raise self.error(f"Function '{name}' must be called")

        raise self.error(f"Unknown identifier '{name}'")

    def _reference(self, serie_id: str) -> str:
        if serie_id == self.serie_id:
            raise self.error(f"Series '{serie_id}' cannot reference itself")

        if self.known_series is not None and serie_id not in self.known_series:
            raise self.error(f"Unknown series '${serie_id}'")

        if serie_id not in self.references:
            self.references.append(serie_id)

        return serie_id

    def _attribute(self, node: syntax.Attribute) -> Node:
        target = node.target

        if isinstance(target, syntax.Name) and target.name == 'bar':
            if node.name not in VOLUME_FIELDS:
                raise self.error(f"Unknown bar field '{node.name}'")
            return BarField(node.name)

        if isinstance(target, syntax.Name) and target.name == 'options':
            if self.strict and node.name not in self.options:
                raise self.error(f"Unknown option '{node.name}'")
            return OptionRef(node.name)

        if (
            isinstance(target, syntax.Index)
            and isinstance(target.target, syntax.Name)
            and target.target.name == 'sources'
        ):
            if not isinstance(target.index, syntax.String):
                raise self.error("Source must be written as sources[\"EXCHANGE:pair\"]")
            if node.name not in SOURCE_BAR_FIELDS:
                raise self.error(f"Unknown source field '{node.name}'")
            return SourceField(target.index.value, node.name)

        if isinstance(target, syntax.SerieRef):
            return SerieValue(self._reference(target.serie_id), node.name)

        compiled = self._expr(target)

        if compiled.kind == OutputType.OHLC:
            if node.name not in PRICE_FIELDS:
                raise self.error(f"Unknown OHLC field '{node.name}'")
            return Member(compiled, node.name)

        if compiled.kind == OutputType.CUSTOM:
            return Member(compiled, node.name)

        raise self.error(f"Cannot read '{node.name}' of a single value")

    def _index(self, node: syntax.Index) -> Node:
        target = node.target

        if isinstance(target, syntax.Name) and target.name == 'sources':
            raise self.error("sources[...] must be followed by a field, e.g. sources[\"EX:pair\"].close")

        if not isinstance(target, syntax.Name) or target.name not in self.variable_index:
            raise self.error("Only variables can be indexed")

        index = node.index
        if not isinstance(index, syntax.Number) or not index.value.is_integer() or index.value < 0:
            raise self.error(f"Offset of '{target.name}' must be a non-negative whole number")

        offset = int(index.value)
        position = self.variable_index[target.name]
        variable = self.variables[position]
        variable.arg = max(variable.arg, offset + 1)

        return VarRead(position, target.name, offset, kind=self.variable_kinds[target.name])

    def _call(self, node: syntax.Call) -> Node:
        name = node.name

        if name == 'cum_ohlc':
            self._check_arity(name, node.args, 1, 1)
            return self._expr(syntax.Call('ohlc', (syntax.Call('cum', node.args),)))

        if name in FUNCTIONS:
            spec = FUNCTIONS[name]
            self._check_arity(name, node.args, spec.arity, spec.arity)

            index = len(self.functions)
            instruction = Instruction(name=name, type=spec.type, state=initial_state(spec.type))
            self.functions.append(instruction)

            value_args = node.args[:-1] if spec.windowed else node.args
            args = tuple(self._argument(name, arg) for arg in value_args)

            length_text = None
            if spec.windowed:
                instruction.arg, instruction.arg_option, length_text = self._length(name, node.args[-1])

            return FunctionCall(
                index=index,
                name=name,
                helper=spec.helper,
                args=args,
                takes_length=spec.passes_length,
                length_text=length_text,
                kind=spec.kind
            )

        if name in STATELESS_FUNCTIONS:
            _, minimum, maximum = STATELESS_FUNCTIONS[name]
            self._check_arity(name, node.args, minimum, maximum)
            return HelperCall(name, tuple(self._argument(name, arg) for arg in node.args))

        raise self.error(f"Unknown function '{name}'")

    def _argument(self, function: str, node: syntax.SyntaxNode) -> Node:
        compiled = self._expr(node)
        if compiled.kind != OutputType.VALUE:
            raise self.error(f"'{function}' expects a single value, got {compiled.kind.value}")
        return compiled

    def _check_arity(self, name: str, args, minimum: int, maximum: Optional[int]) -> None:
        count = len(args)

        if count >= minimum and (maximum is None or count <= maximum):
            return

        if maximum is None:
            expected = f"at least {minimum}"
        elif minimum == maximum:
            expected = str(minimum)
        else:
            expected = f"{minimum} to {maximum}"

        raise self.error(f"'{name}' takes {expected} argument(s), got {count}")

    def _length(self, function: str, node: syntax.SyntaxNode):
        """Window argument: (length, option key, text as written)."""
        if isinstance(node, syntax.Number):
            if not node.value.is_integer() or node.value < 1:
                raise self.error(f"Window length of '{function}' must be a whole number >= 1")
            return int(node.value), None, format_number(node.value)

        if (
            isinstance(node, syntax.Attribute)
            and isinstance(node.target, syntax.Name)
            and node.target.name == 'options'
        ):
            key = node.name
            text = f'options.{key}'

            if not self.strict:
                return 1, key, text

            if key not in self.options:
                raise self.error(f"Unknown option '{key}'")

            try:
                length = int(self.options[key])
            except (TypeError, ValueError):
                raise self.error(f"Option '{key}' used as window length of '{function}' is not a number")

            if length < 1:
                raise self.error(f"Option '{key}' used as window length of '{function}' must be >= 1")

            return length, key, text

        raise self.error(f"Window length of '{function}' must be a number or an option")

    def _object(self, node: syntax.ObjectLiteral) -> ObjectOut:
        keys = [key for key, _ in node.items]

        if len(set(keys)) != len(keys):
            raise self.error("Duplicate key in object output")

        if set(PRICE_FIELDS).issubset(keys):
            kind = OutputType.OHLC
        elif 'value' in keys:
            kind = OutputType.CUSTOM
        else:
            raise self.error("Object output needs open/high/low/close keys or a value key")

        items = []
        for key, value in node.items:
            if isinstance(value, syntax.String):
                if kind == OutputType.OHLC or key == 'value':
                    raise self.error(f"'{key}' must be a number")
                items.append((key, Literal(value.value)))
            else:
                items.append((key, self._argument('{' + key + '}', value)))

        return ObjectOut(tuple(items), kind=kind)


class SeriesTranspiler:
    """
    Compiles series formulas.

    Adapters are cached by output expression; two series with the same
    canonical output share one adapter (they never share state).
    """

    def __init__(self):
        self._adapters: Dict[str, Adapter] = {}

    def transpile(self, serie: Any, known_series: Optional[Iterable[str]] = None) -> SerieModel:
        """
        Compile a series' formula.

        Args:
            serie: Object with id, type, input and options
            known_series: Ids a formula may reference; None accepts any

        Returns:
            SerieModel of the formula

        Raises:
            CompileError: Formula is invalid or conflicts with the visual type
        """
        visual = SerieType(serie.type)

        try:
            program = syntax.parse(serie.input)
            compiler = _Compiler(serie.id, serie.options, known_series)
            block = compiler.compile(program)
        except CompileError as error:
            error.serie_id = serie.id
            raise

        output_type = block.kind

        if visual.is_ohlc and output_type != OutputType.OHLC:
            raise CompileError(
                f"A {visual.value} series needs an OHLC output (e.g. ohlc(x)), "
                f"the formula produces a {output_type.value}",
                serie_id=serie.id
            )

        if not visual.is_ohlc and output_type == OutputType.OHLC:
            block = self._narrow(block)
            output_type = OutputType.VALUE

        model = SerieModel(
            output=block.render(),
            type=output_type,
            functions=compiler.functions,
            variables=compiler.variables,
            references=compiler.references
        )

        logger.debug(
            "serie transpiled",
            serie_id=serie.id,
            output=model.output,
            type=model.type.value,
            functions=len(model.functions),
            variables=len(model.variables),
            references=','.join(model.references) or '-'
        )

        return model

    @staticmethod
    def _narrow(block: Block) -> Block:
        """Keep only the close of an OHLC output."""
        statements = list(block.statements)
        last = statements[-1]

        if isinstance(last, VarWrite):
            statements.append(Member(VarRead(last.index, last.name, 0, kind=OutputType.OHLC), 'close'))
        else:
            statements[-1] = Member(last, 'close')

        return Block(tuple(statements))

    def get_adapter(self, output: str) -> Adapter:
        """Executable adapter of a canonical output expression (cached)."""
        adapter = self._adapters.get(output)

        if adapter is None:
            block = _Compiler(strict=False).compile(syntax.parse(output))

            def adapter(renderer, functions, variables, options, utils, _block=block):
                return _block.evaluate(EvalContext(renderer, functions, variables, options, utils))

            self._adapters[output] = adapter

        return adapter

    def update_instructions_argument(self, functions: List[Instruction], options: dict) -> None:
        """Re-resolve window lengths that come from series options."""
        update_arguments(functions, options)
