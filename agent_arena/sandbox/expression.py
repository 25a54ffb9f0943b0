"""Sandboxed arithmetic expression evaluator.

Expressions proposed by the reasoning oracle are untrusted input. They are
tokenized, parsed into a small AST by a recursive-descent parser and walked by
an interpreter that only knows arithmetic, a fixed set of math functions and
the variables supplied by the caller. Nothing is ever handed to ``eval``.

Grammar::

    expr    := term (('+' | '-') term)*
    term    := unary (('*' | '/') unary)*
    unary   := '-' unary | power
    power   := primary ('^' unary)?
    primary := NUMBER | IDENT | FUNC '(' expr (',' expr)* ')' | '(' expr ')'

``^`` is right-associative and binds tighter than unary minus, so ``-2^2``
evaluates to ``-4`` and ``2^3^2`` to ``512``.
"""

import math
import re
import time
from dataclasses import dataclass
from numbers import Real
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, NamedTuple, Optional, Tuple

import structlog

from agent_arena.core.config import SandboxConfig, sandbox_config

logger = structlog.get_logger(__name__)


class SandboxRejection(ValueError):
    """Expression refused by the sandbox, or its result is not a finite number."""


@dataclass
class Evaluation:
    """Outcome of a sandboxed evaluation.

    Attributes:
        accepted: True when ``value`` holds a finite result
        value: The result when accepted
        reason: Why the expression was rejected
    """
    accepted: bool
    value: Optional[float] = None
    reason: str = ""

    @classmethod
    def accept(cls, value: float) -> "Evaluation":
        return cls(accepted=True, value=value)

    @classmethod
    def reject(cls, reason: str) -> "Evaluation":
        return cls(accepted=False, reason=reason)


# name -> (callable, min args, max args); None means unbounded
FUNCTIONS: Dict[str, Tuple[Callable[..., float], int, Optional[int]]] = {
    "sqrt": (math.sqrt, 1, 1),
    "log": (math.log, 1, 1),
    "exp": (math.exp, 1, 1),
    "sin": (math.sin, 1, 1),
    "cos": (math.cos, 1, 1),
    "abs": (abs, 1, 1),
    "min": (min, 1, None),
    "max": (max, 1, None),
}

_NUMBER = r"\d+(?:\.\d*)?(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?"
_IDENT = r"[A-Za-z][A-Za-z0-9_]*"
_OP = r"[-+*/^(),]"

_TOKEN_RE = re.compile(rf"\s*(?:(?P<number>{_NUMBER})|(?P<ident>{_IDENT})|(?P<op>{_OP}))")


class Token(NamedTuple):
    kind: str  # number | ident | op | end
    text: str
    pos: int


def tokenize(expression: str) -> List[Token]:
    """Split an expression into tokens, rejecting anything outside the grammar."""
    tokens: List[Token] = []
    pos = 0
    length = len(expression)
    while pos < length:
        if expression[pos].isspace():
            pos += 1
            continue
        match = _TOKEN_RE.match(expression, pos)
        if match is None or match.end() == pos:
            raise SandboxRejection(
                f"Invalid character {expression[pos]!r} at position {pos}"
            )
        kind = match.lastgroup
        tokens.append(Token(kind, match.group(kind), match.start(kind)))
        pos = match.end()
    tokens.append(Token("end", "", length))
    return tokens


# =============================================================================
# AST
# =============================================================================

class Node:
    __slots__ = ()


class Number(Node):
    __slots__ = ("value",)

    def __init__(self, value: float):
        self.value = value


class Name(Node):
    __slots__ = ("name",)

    def __init__(self, name: str):
        self.name = name


class Negate(Node):
    __slots__ = ("operand",)

    def __init__(self, operand: Node):
        self.operand = operand


class BinaryOp(Node):
    __slots__ = ("op", "left", "right")

    def __init__(self, op: str, left: Node, right: Node):
        self.op = op
        self.left = left
        self.right = right


class Call(Node):
    __slots__ = ("func", "args")

    def __init__(self, func: str, args: List[Node]):
        self.func = func
        self.args = args


# =============================================================================
# Parser
# =============================================================================

class _Parser:
    """Recursive-descent parser producing an AST from a token list."""

    def __init__(self, tokens: List[Token], allowed_names: FrozenSet[str], max_depth: int):
        self.tokens = tokens
        self.index = 0
        self.allowed_names = allowed_names
        self.max_depth = max_depth
        self.depth = 0
        self.names: set = set()

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def expect(self, text: str) -> Token:
        token = self.current
        if token.kind != "op" or token.text != text:
            raise SandboxRejection(f"Expected {text!r} at position {token.pos}")
        return self.advance()

    def enter(self) -> None:
        self.depth += 1
        if self.depth > self.max_depth:
            raise SandboxRejection(f"Expression nesting exceeds {self.max_depth} levels")

    def leave(self) -> None:
        self.depth -= 1

    def parse(self) -> Node:
        node = self.expr()
        if self.current.kind != "end":
            raise SandboxRejection(
                f"Unexpected token {self.current.text!r} at position {self.current.pos}"
            )
        return node

    def expr(self) -> Node:
        node = self.term()
        while self.current.kind == "op" and self.current.text in "+-":
            op = self.advance().text
            node = BinaryOp(op, node, self.term())
        return node

    def term(self) -> Node:
        node = self.unary()
        while self.current.kind == "op" and self.current.text in "*/":
            op = self.advance().text
            node = BinaryOp(op, node, self.unary())
        return node

    def unary(self) -> Node:
        if self.current.kind == "op" and self.current.text == "-":
            self.advance()
            self.enter()
            node = Negate(self.unary())
            self.leave()
            return node
        return self.power()

    def power(self) -> Node:
        base = self.primary()
        if self.current.kind == "op" and self.current.text == "^":
            self.advance()
            self.enter()
            exponent = self.unary()
            self.leave()
            return BinaryOp("^", base, exponent)
        return base

    def primary(self) -> Node:
        token = self.current

        if token.kind == "number":
            self.advance()
            return Number(float(token.text))

        if token.kind == "ident":
            self.advance()
            if token.text in FUNCTIONS:
                return self.call(token)
            if token.text not in self.allowed_names:
                raise SandboxRejection(f"Unknown variable {token.text!r}")
            self.names.add(token.text)
            return Name(token.text)

        if token.kind == "op" and token.text == "(":
            self.advance()
            self.enter()
            node = self.expr()
            self.leave()
            self.expect(")")
            return node

        if token.kind == "end":
            raise SandboxRejection("Unexpected end of expression")
        raise SandboxRejection(f"Unexpected token {token.text!r} at position {token.pos}")

    def call(self, name_token: Token) -> Node:
        func = name_token.text
        if not (self.current.kind == "op" and self.current.text == "("):
            raise SandboxRejection(f"Function {func!r} must be called")
        self.advance()
        self.enter()
        args = [self.expr()]
        while self.current.kind == "op" and self.current.text == ",":
            self.advance()
            args.append(self.expr())
        self.leave()
        self.expect(")")

        _, min_args, max_args = FUNCTIONS[func]
        if len(args) < min_args or (max_args is not None and len(args) > max_args):
            raise SandboxRejection(f"Function {func!r} called with {len(args)} arguments")
        return Call(func, args)


# =============================================================================
# Evaluation
# =============================================================================

def _finite(value: float, what: str) -> float:
    if isinstance(value, complex) or not math.isfinite(value):
        raise SandboxRejection(f"{what} produced a non-finite result")
    return value


def _walk(node: Node, env: Mapping[str, float], deadline: float) -> float:
    if time.monotonic() > deadline:
        raise SandboxRejection("Evaluation timed out")

    if isinstance(node, Number):
        return _finite(node.value, "Literal")

    if isinstance(node, Name):
        if node.name not in env:
            raise SandboxRejection(f"Variable {node.name!r} has no value")
        return env[node.name]

    if isinstance(node, Negate):
        return -_walk(node.operand, env, deadline)

    if isinstance(node, BinaryOp):
        left = _walk(node.left, env, deadline)
        right = _walk(node.right, env, deadline)
        try:
            if node.op == "+":
                result = left + right
            elif node.op == "-":
                result = left - right
            elif node.op == "*":
                result = left * right
            elif node.op == "/":
                result = left / right
            else:
                result = math.pow(left, right)
        except ZeroDivisionError:
            raise SandboxRejection("Division by zero") from None
        except OverflowError:
            raise SandboxRejection(f"Overflow in {node.op!r}") from None
        except ValueError:
            raise SandboxRejection(f"Math domain error in {node.op!r}") from None
        return _finite(result, f"Operator {node.op!r}")

    if isinstance(node, Call):
        args = [_walk(arg, env, deadline) for arg in node.args]
        func = FUNCTIONS[node.func][0]
        try:
            result = func(*args)
        except OverflowError:
            raise SandboxRejection(f"Overflow in {node.func}()") from None
        except ValueError:
            raise SandboxRejection(f"Math domain error in {node.func}()") from None
        return _finite(float(result), f"{node.func}()")

    raise SandboxRejection(f"Unsupported node {type(node).__name__}")


def coerce_variables(variables: Mapping[str, object]) -> Dict[str, float]:
    """Validate variable bindings and convert them to floats."""
    if not isinstance(variables, Mapping):
        raise SandboxRejection("Variables must be a mapping of names to numbers")
    env: Dict[str, float] = {}
    for name, value in variables.items():
        if not isinstance(name, str):
            raise SandboxRejection("Variable names must be strings")
        if isinstance(value, bool) or not isinstance(value, Real):
            raise SandboxRejection(f"Variable {name!r} is not a number")
        value = float(value)
        if not math.isfinite(value):
            raise SandboxRejection(f"Variable {name!r} is not finite")
        env[name] = value
    return env


class CompiledExpression:
    """A parsed and validated expression, ready to evaluate."""

    def __init__(self, source: str, tree: Node, names: FrozenSet[str]):
        self.source = source
        self.tree = tree
        self.names = names

    def evaluate(self, variables: Mapping[str, object], timeout_seconds: float) -> float:
        """Evaluate against ``variables``; raise SandboxRejection on any failure."""
        env = coerce_variables(variables)
        missing = self.names - env.keys()
        if missing:
            raise SandboxRejection(f"Missing values for {sorted(missing)}")
        deadline = time.monotonic() + timeout_seconds
        try:
            return _walk(self.tree, env, deadline)
        except RecursionError:
            raise SandboxRejection("Expression too deeply nested") from None

    def __repr__(self) -> str:
        return f"CompiledExpression({self.source!r})"


def compile_expression(
    expression: str,
    allowed_names: Iterable[str],
    config: Optional[SandboxConfig] = None,
) -> CompiledExpression:
    """Parse and validate ``expression`` against the names it may reference.

    Raises:
        SandboxRejection: when the expression is too long, contains tokens
            outside the grammar, nests too deeply, calls an unknown function
            with the wrong arity, or references a name not in ``allowed_names``.
    """
    config = config or sandbox_config
    if not isinstance(expression, str) or not expression.strip():
        raise SandboxRejection("Expression must be a non-empty string")
    if len(expression) > config.max_expression_length:
        raise SandboxRejection(
            f"Expression exceeds maximum length of {config.max_expression_length} characters"
        )

    allowed = frozenset(allowed_names)
    parser = _Parser(tokenize(expression), allowed, config.max_nesting_depth)
    try:
        tree = parser.parse()
    except RecursionError:
        raise SandboxRejection("Expression too deeply nested") from None
    return CompiledExpression(expression, tree, frozenset(parser.names))


def evaluate(
    expression: str,
    variables: Optional[Mapping[str, object]] = None,
    config: Optional[SandboxConfig] = None,
) -> Evaluation:
    """Evaluate an untrusted expression. Never raises."""
    config = config or sandbox_config
    variables = {} if variables is None else variables
    try:
        env = coerce_variables(variables)
        compiled = compile_expression(expression, env.keys(), config)
        value = compiled.evaluate(env, config.evaluation_timeout_seconds)
    except SandboxRejection as e:
        logger.debug("sandbox.expression_rejected", reason=str(e))
        return Evaluation.reject(str(e))
    return Evaluation.accept(value)
