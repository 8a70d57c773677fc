"""
Formula parser - turns formula text into a syntax tree.

Formulas are a small expression language:

    delta = vbuy - vsell
    sma(delta, options.length)

Statements are separated by newlines or ';'. An assignment declares a
variable; the last statement is the series output. Newlines inside
brackets do not end a statement.

The tree produced here is purely syntactic. Name resolution, arity checks
and instruction allocation happen in the transpiler.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..core.exceptions import CompileError


# -----------------------------------------------------------------------------
# Syntax nodes
# -----------------------------------------------------------------------------


class SyntaxNode:
    """Base class of parsed nodes."""


@dataclass(frozen=True)
class Number(SyntaxNode):
    value: float


@dataclass(frozen=True)
class String(SyntaxNode):
    value: str


@dataclass(frozen=True)
class Name(SyntaxNode):
    name: str


@dataclass(frozen=True)
class SerieRef(SyntaxNode):
    serie_id: str


@dataclass(frozen=True)
class Attribute(SyntaxNode):
    target: SyntaxNode
    name: str


@dataclass(frozen=True)
class Index(SyntaxNode):
    target: SyntaxNode
    index: SyntaxNode


@dataclass(frozen=True)
class Call(SyntaxNode):
    name: str
    args: Tuple[SyntaxNode, ...]


@dataclass(frozen=True)
class Unary(SyntaxNode):
    op: str
    operand: SyntaxNode


@dataclass(frozen=True)
class Binary(SyntaxNode):
    op: str
    left: SyntaxNode
    right: SyntaxNode


@dataclass(frozen=True)
class Compare(SyntaxNode):
    op: str
    left: SyntaxNode
    right: SyntaxNode


@dataclass(frozen=True)
class Logical(SyntaxNode):
    op: str
    left: SyntaxNode
    right: SyntaxNode


@dataclass(frozen=True)
class Conditional(SyntaxNode):
    test: SyntaxNode
    body: SyntaxNode
    orelse: SyntaxNode


@dataclass(frozen=True)
class ObjectLiteral(SyntaxNode):
    items: Tuple[Tuple[str, SyntaxNode], ...]


@dataclass(frozen=True)
class Assign(SyntaxNode):
    name: str
    value: SyntaxNode


@dataclass(frozen=True)
class Program(SyntaxNode):
    statements: Tuple[SyntaxNode, ...]


# -----------------------------------------------------------------------------
# Tokenizer
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    position: int


TOKEN_SPEC = [
    ('NUMBER', r'(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?'),
    ('STRING', r'"(?:[^"\\\n]|\\.)*"|\'(?:[^\'\\\n]|\\.)*\''),
    ('COMMENT', r'//[^\n]*'),
    ('SERIE', r'\$[A-Za-z_][A-Za-z0-9_]*'),
    ('NAME', r'[A-Za-z_][A-Za-z0-9_]*'),
    ('OP', r'==|!=|<=|>=|&&|\|\||[-+*/%<>!?:=.,()\[\]{}]'),
    ('NEWLINE', r'[\n;]'),
    ('SKIP', r'[ \t\r]+'),
    ('MISMATCH', r'.'),
]

TOKEN_RE = re.compile('|'.join(f'(?P<{kind}>{pattern})' for kind, pattern in TOKEN_SPEC))

OPENING = '([{'
CLOSING = ')]}'


def tokenize(text: str) -> List[Token]:
    """Split formula text into tokens, ending with an EOF token."""
    tokens: List[Token] = []
    depth = 0

    for match in TOKEN_RE.finditer(text):
        kind = match.lastgroup
        value = match.group()
        position = match.start()

        if kind in ('SKIP', 'COMMENT'):
            continue
        if kind == 'MISMATCH':
            raise CompileError(f"Unexpected character '{value}' at position {position}")
        if kind == 'NEWLINE':
            # Statement breaks only count outside brackets
            if depth > 0 or not tokens or tokens[-1].kind == 'NEWLINE':
                continue
        if kind == 'OP':
            if value in OPENING:
                depth += 1
            elif value in CLOSING:
                depth = max(0, depth - 1)

        tokens.append(Token(kind, value, position))

    tokens.append(Token('EOF', '', len(text)))
    return tokens


# -----------------------------------------------------------------------------
# Parser
# -----------------------------------------------------------------------------

COMPARISON_OPS = ('==', '!=', '<', '<=', '>', '>=')


class Parser:
    """Recursive descent parser over the token list."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.pos = 0

    def parse(self) -> Program:
        statements = []

        while self._peek().kind == 'NEWLINE':
            self._advance()

        while self._peek().kind != 'EOF':
            statements.append(self._statement())

            if self._peek().kind == 'NEWLINE':
                self._advance()
            elif self._peek().kind != 'EOF':
                self._error(self._peek())

        if not statements:
            raise CompileError("Formula is empty")

        return Program(tuple(statements))

    # -- helpers -------------------------------------------------------------

    def _peek(self, offset: int = 0) -> Token:
        index = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def _advance(self) -> Token:
        token = self.tokens[self.pos]
        self.pos = min(self.pos + 1, len(self.tokens) - 1)
        return token

    def _match(self, *values: str) -> Optional[Token]:
        token = self._peek()
        if token.kind in ('OP', 'NAME') and token.value in values:
            return self._advance()
        return None

    def _expect(self, value: str) -> Token:
        token = self._peek()
        if token.kind == 'OP' and token.value == value:
            return self._advance()
        raise CompileError(
            f"Expected '{value}' but found {self._describe(token)} at position {token.position}"
        )

    def _describe(self, token: Token) -> str:
        if token.kind == 'EOF':
            return 'end of formula'
        if token.kind == 'NEWLINE':
            return 'end of statement'
        return f"'{token.value}'"

    def _error(self, token: Token):
        raise CompileError(f"Unexpected {self._describe(token)} at position {token.position}")

    # -- grammar -------------------------------------------------------------

    def _statement(self) -> SyntaxNode:
        token = self._peek()
        following = self._peek(1)

        if token.kind == 'NAME' and following.kind == 'OP' and following.value == '=':
            self._advance()
            self._advance()
            return Assign(token.value, self._expression())

        return self._expression()

    def _expression(self) -> SyntaxNode:
        node = self._or()

        if self._match('?'):
            body = self._expression()
            self._expect(':')
            orelse = self._expression()
            return Conditional(node, body, orelse)

        return node

    def _or(self) -> SyntaxNode:
        node = self._and()
        while self._match('||', 'or'):
            node = Logical('||', node, self._and())
        return node

    def _and(self) -> SyntaxNode:
        node = self._comparison()
        while self._match('&&', 'and'):
            node = Logical('&&', node, self._comparison())
        return node

    def _comparison(self) -> SyntaxNode:
        node = self._additive()
        token = self._match(*COMPARISON_OPS)
        if token:
            node = Compare(token.value, node, self._additive())
        return node

    def _additive(self) -> SyntaxNode:
        node = self._multiplicative()
        while True:
            token = self._match('+', '-')
            if not token:
                return node
            node = Binary(token.value, node, self._multiplicative())

    def _multiplicative(self) -> SyntaxNode:
        node = self._unary()
        while True:
            token = self._match('*', '/', '%')
            if not token:
                return node
            node = Binary(token.value, node, self._unary())

    def _unary(self) -> SyntaxNode:
        token = self._match('-', '+', '!', 'not')
        if token:
            op = '!' if token.value == 'not' else token.value
            return Unary(op, self._unary())
        return self._postfix()

    def _postfix(self) -> SyntaxNode:
        node = self._primary()

        while True:
            if self._match('.'):
                token = self._advance()
                if token.kind != 'NAME':
                    self._error(token)
                node = Attribute(node, token.value)
            elif self._match('['):
                node = Index(node, self._expression())
                self._expect(']')
            elif self._peek().kind == 'OP' and self._peek().value == '(':
                if not isinstance(node, Name):
                    self._error(self._peek())
                self._advance()
                node = Call(node.name, self._arguments())
            else:
                return node

    def _arguments(self) -> Tuple[SyntaxNode, ...]:
        args = []

        if self._match(')'):
            return ()

        while True:
            args.append(self._expression())
            if self._match(')'):
                return tuple(args)
            self._expect(',')

    def _primary(self) -> SyntaxNode:
        token = self._advance()

        if token.kind == 'NUMBER':
            return Number(float(token.value))
        if token.kind == 'STRING':
            return String(_unquote(token.value))
        if token.kind == 'SERIE':
            return SerieRef(token.value[1:])
        if token.kind == 'NAME':
            return Name(token.value)
        if token.kind == 'OP' and token.value == '(':
            node = self._expression()
            self._expect(')')
            return node
        if token.kind == 'OP' and token.value == '{':
            return self._object()

        self._error(token)

    def _object(self) -> ObjectLiteral:
        items = []

        if self._match('}'):
            raise CompileError("Empty object cannot be a series output")

        while True:
            token = self._advance()
            if token.kind == 'NAME':
                key = token.value
            elif token.kind == 'STRING':
                key = _unquote(token.value)
            else:
                self._error(token)

            self._expect(':')
            items.append((key, self._expression()))

            if self._match('}'):
                return ObjectLiteral(tuple(items))
            self._expect(',')


def _unquote(raw: str) -> str:
    return re.sub(r'\\(.)', r'\1', raw[1:-1])


def parse(text: str) -> Program:
    """Parse formula text into a Program."""
    if text is None or not str(text).strip():
        raise CompileError("Formula is empty")
    return Parser(str(text)).parse()
