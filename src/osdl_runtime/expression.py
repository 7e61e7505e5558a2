"""Parser and evaluator for the ``{{ ... }}`` expression language.

The grammar, from lowest to highest precedence::

    ternary         test ? a : b
    logical or      ||
    logical and     &&
    comparison      == != === !== >= <= > <
    additive        + -
    multiplicative  * / %
    unary           ! -
    postfix         .name  [expr]  name(args...)
    primary         identifier, number, string, true/false/null/undefined, (expr)

Evaluation is tolerant about missing data: member and index access on
``undefined``/``null`` or out-of-range indexes yield ``UNDEFINED`` instead of
raising, so ``items[10] ? items[10].name : "fallback"`` works. Genuine
mistakes (bad syntax, unknown functions, arithmetic on strings) raise
``ParseError``/``EvalError`` from :func:`evaluate_strict`; :func:`evaluate`
logs them and returns ``UNDEFINED`` so a single broken placeholder never takes
down the render.
"""

from __future__ import annotations

import functools
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from .errors import EvalError, ExpressionError, ParseError
from .values import (
    UNDEFINED,
    get_path,
    is_nullish,
    is_number,
    is_truthy,
    strict_equals,
    get_member,
    to_js_string,
)

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<name>[A-Za-z_$][A-Za-z0-9_$]*)
  | (?P<op>===|!==|==|!=|>=|<=|&&|\|\||[-+*/%!<>?:.,()\[\]])
    """,
    re.VERBOSE,
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "0": "\0"}

_KEYWORDS = {"true": True, "false": False, "null": None, "undefined": UNDEFINED}

_COMPARISON_OPS = {"==", "!=", "===", "!==", ">=", "<=", ">", "<"}

MAX_NESTING_DEPTH = 64


@dataclass(frozen=True)
class _Token:
    kind: str
    value: str
    position: int


def _unescape(body: str) -> str:
    out: list[str] = []
    chars = iter(body)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, "")
        out.append(_ESCAPES.get(nxt, nxt))
    return "".join(out)


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            if text[pos] in "\"'":
                raise ParseError("Unterminated string literal", expression=text, position=pos)
            raise ParseError(f"Unexpected character {text[pos]!r}", expression=text, position=pos)
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind=kind, value=match.group(0), position=pos))
        pos = match.end()
    tokens.append(_Token(kind="eof", value="", position=len(text)))
    return tokens


# --- AST -------------------------------------------------------------------


class Expression:
    def evaluate(self, scope: "_Scope") -> Any:
        raise NotImplementedError


@dataclass(frozen=True)
class Literal(Expression):
    value: Any

    def evaluate(self, scope: "_Scope") -> Any:
        return self.value


@dataclass(frozen=True)
class Name(Expression):
    name: str

    def evaluate(self, scope: "_Scope") -> Any:
        return get_member(scope.context, self.name)


@dataclass(frozen=True)
class Member(Expression):
    target: Expression
    name: str

    def evaluate(self, scope: "_Scope") -> Any:
        return get_member(self.target.evaluate(scope), self.name)


@dataclass(frozen=True)
class Index(Expression):
    target: Expression
    index: Expression

    def evaluate(self, scope: "_Scope") -> Any:
        container = self.target.evaluate(scope)
        if is_nullish(container):
            return UNDEFINED
        return get_member(container, self.index.evaluate(scope))


@dataclass(frozen=True)
class Call(Expression):
    function: str
    arguments: tuple[Expression, ...]

    def evaluate(self, scope: "_Scope") -> Any:
        fn = scope.functions.get(self.function)
        if fn is None:
            raise EvalError(f"Unknown function '{self.function}'", function=self.function)
        args = [argument.evaluate(scope) for argument in self.arguments]
        try:
            return fn(*args)
        except ExpressionError:
            raise
        except (TypeError, ValueError, ArithmeticError) as exc:
            raise EvalError(f"{self.function}() failed: {exc}", function=self.function) from exc


@dataclass(frozen=True)
class Unary(Expression):
    op: str
    operand: Expression

    def evaluate(self, scope: "_Scope") -> Any:
        value = self.operand.evaluate(scope)
        if self.op == "!":
            return not is_truthy(value)
        if not is_number(value):
            raise EvalError(f"Cannot negate {to_js_string(value)!r}", operator=self.op)
        return -value


@dataclass(frozen=True)
class Logical(Expression):
    op: str
    left: Expression
    right: Expression

    def evaluate(self, scope: "_Scope") -> Any:
        left = self.left.evaluate(scope)
        if self.op == "&&":
            return self.right.evaluate(scope) if is_truthy(left) else left
        return left if is_truthy(left) else self.right.evaluate(scope)


@dataclass(frozen=True)
class Binary(Expression):
    op: str
    left: Expression
    right: Expression

    def evaluate(self, scope: "_Scope") -> Any:
        return _apply_binary(self.op, self.left.evaluate(scope), self.right.evaluate(scope))


@dataclass(frozen=True)
class Conditional(Expression):
    test: Expression
    then: Expression
    otherwise: Expression

    def evaluate(self, scope: "_Scope") -> Any:
        if is_truthy(self.test.evaluate(scope)):
            return self.then.evaluate(scope)
        return self.otherwise.evaluate(scope)


def _apply_binary(op: str, left: Any, right: Any) -> Any:
    if op in ("==", "==="):
        return strict_equals(left, right)
    if op in ("!=", "!=="):
        return not strict_equals(left, right)
    if op in (">", "<", ">=", "<="):
        if is_nullish(left) or is_nullish(right):
            return False
        comparable = (is_number(left) and is_number(right)) or (
            isinstance(left, str) and isinstance(right, str)
        )
        if not comparable:
            raise EvalError(
                f"Cannot compare {to_js_string(left)!r} {op} {to_js_string(right)!r}", operator=op
            )
        if op == ">":
            return left > right
        if op == "<":
            return left < right
        if op == ">=":
            return left >= right
        return left <= right
    if op == "+" and (isinstance(left, str) or isinstance(right, str)):
        return to_js_string(left) + to_js_string(right)
    if not (is_number(left) and is_number(right)):
        raise EvalError(
            f"Operator '{op}' needs numbers, got {to_js_string(left)!r} and {to_js_string(right)!r}",
            operator=op,
        )
    if op == "+":
        return left + right
    if op == "-":
        return left - right
    if op == "*":
        return left * right
    if right == 0:
        raise EvalError("Division by zero", operator=op)
    if op == "/":
        return left / right
    remainder = math.fmod(left, right)
    return int(remainder) if isinstance(left, int) and isinstance(right, int) else remainder


# --- Parser ----------------------------------------------------------------


class _Parser:
    def __init__(self, text: str) -> None:
        self._text = text
        self._tokens = _tokenize(text)
        self._pos = 0
        self._depth = 0

    def parse(self) -> Expression:
        if self._peek().kind == "eof":
            raise ParseError("Empty expression", expression=self._text, position=0)
        expr = self._parse_ternary()
        token = self._peek()
        if token.kind != "eof":
            raise self._error(f"Unexpected token {token.value!r}", token)
        return expr

    def _peek(self) -> _Token:
        return self._tokens[self._pos]

    def _advance(self) -> _Token:
        token = self._tokens[self._pos]
        if token.kind != "eof":
            self._pos += 1
        return token

    def _match(self, *values: str) -> _Token | None:
        token = self._peek()
        if token.kind == "op" and token.value in values:
            self._pos += 1
            return token
        return None

    def _expect(self, value: str) -> _Token:
        token = self._match(value)
        if token is None:
            found = self._peek()
            raise self._error(f"Expected '{value}' but found {found.value or 'end of expression'!r}", found)
        return token

    def _error(self, message: str, token: _Token) -> ParseError:
        return ParseError(message, expression=self._text, position=token.position)

    def _parse_ternary(self) -> Expression:
        self._depth += 1
        if self._depth > MAX_NESTING_DEPTH:
            raise self._error(f"Expression nests deeper than {MAX_NESTING_DEPTH} levels", self._peek())
        try:
            test = self._parse_or()
            if self._match("?"):
                then = self._parse_ternary()
                self._expect(":")
                otherwise = self._parse_ternary()
                return Conditional(test=test, then=then, otherwise=otherwise)
            return test
        finally:
            self._depth -= 1

    def _parse_or(self) -> Expression:
        left = self._parse_and()
        while self._match("||"):
            left = Logical(op="||", left=left, right=self._parse_and())
        return left

    def _parse_and(self) -> Expression:
        left = self._parse_comparison()
        while self._match("&&"):
            left = Logical(op="&&", left=left, right=self._parse_comparison())
        return left

    def _parse_comparison(self) -> Expression:
        left = self._parse_additive()
        while (token := self._match(*_COMPARISON_OPS)) is not None:
            left = Binary(op=token.value, left=left, right=self._parse_additive())
        return left

    def _parse_additive(self) -> Expression:
        left = self._parse_multiplicative()
        while (token := self._match("+", "-")) is not None:
            left = Binary(op=token.value, left=left, right=self._parse_multiplicative())
        return left

    def _parse_multiplicative(self) -> Expression:
        left = self._parse_unary()
        while (token := self._match("*", "/", "%")) is not None:
            left = Binary(op=token.value, left=left, right=self._parse_unary())
        return left

    def _parse_unary(self) -> Expression:
        operators: list[str] = []
        while (token := self._match("!", "-")) is not None:
            operators.append(token.value)
            if len(operators) > MAX_NESTING_DEPTH:
                raise self._error(f"More than {MAX_NESTING_DEPTH} unary operators in a row", token)
        expr = self._parse_postfix()
        for op in reversed(operators):
            expr = Unary(op=op, operand=expr)
        return expr

    def _parse_postfix(self) -> Expression:
        expr = self._parse_primary()
        while True:
            if self._match("."):
                token = self._advance()
                if token.kind != "name":
                    raise self._error("Expected property name after '.'", token)
                expr = Member(target=expr, name=token.value)
            elif self._match("["):
                index = self._parse_ternary()
                self._expect("]")
                expr = Index(target=expr, index=index)
            elif self._peek().kind == "op" and self._peek().value == "(":
                if not isinstance(expr, Name):
                    raise self._error("Only named functions can be called", self._peek())
                self._advance()
                expr = Call(function=expr.name, arguments=self._parse_arguments())
            else:
                return expr

    def _parse_arguments(self) -> tuple[Expression, ...]:
        args: list[Expression] = []
        if self._match(")"):
            return ()
        while True:
            args.append(self._parse_ternary())
            if self._match(")"):
                return tuple(args)
            self._expect(",")

    def _parse_primary(self) -> Expression:
        token = self._advance()
        if token.kind == "number":
            if any(c in token.value for c in ".eE"):
                return Literal(float(token.value))
            return Literal(int(token.value))
        if token.kind == "string":
            return Literal(_unescape(token.value[1:-1]))
        if token.kind == "name":
            if token.value in _KEYWORDS:
                return Literal(_KEYWORDS[token.value])
            return Name(token.value)
        if token.kind == "op" and token.value == "(":
            expr = self._parse_ternary()
            self._expect(")")
            return expr
        raise self._error(f"Unexpected token {token.value or 'end of expression'!r}", token)


# --- Functions -------------------------------------------------------------


def _to_fixed(number: Any, digits: Any = 0) -> Any:
    if not is_number(number):
        return number
    return f"{number:.{int(digits)}f}"


def _round(number: Any, digits: Any = 0) -> Any:
    if not is_number(number):
        return number
    factor = 10 ** int(digits)
    result = math.floor(number * factor + 0.5) / factor
    return int(result) if int(digits) == 0 else result


def _includes(container: Any, value: Any) -> bool:
    if isinstance(container, str):
        return to_js_string(value) in container
    if isinstance(container, Sequence):
        return any(strict_equals(item, value) for item in container)
    return False


def _length(value: Any) -> int:
    if isinstance(value, (str, Sequence, Mapping)):
        return len(value)
    return 0


FUNCTIONS: dict[str, Callable[..., Any]] = {
    "toFixed": _to_fixed,
    "round": _round,
    "toUpperCase": lambda value: to_js_string(value).upper(),
    "toLowerCase": lambda value: to_js_string(value).lower(),
    "includes": _includes,
    "len": _length,
    "get": lambda obj, path, default=UNDEFINED: get_path(obj, path, default),
}


def register_function(name: str, fn: Callable[..., Any]) -> None:
    FUNCTIONS[name] = fn


@dataclass(frozen=True)
class _Scope:
    context: Mapping[str, Any]
    functions: Mapping[str, Callable[..., Any]]


# --- Public API ------------------------------------------------------------


@functools.lru_cache(maxsize=2048)
def parse_expression(text: str) -> Expression:
    return _Parser(text.strip()).parse()


def evaluate_strict(expr: str, context: Mapping[str, Any]) -> Any:
    try:
        return parse_expression(expr).evaluate(_Scope(context=context, functions=FUNCTIONS))
    except RecursionError as exc:
        # Long operator chains build left-deep trees that the nesting cap does not bound
        raise EvalError("Expression is too deeply nested to evaluate") from exc


def evaluate(expr: str, context: Mapping[str, Any]) -> Any:
    try:
        return evaluate_strict(expr, context)
    except ExpressionError as exc:
        logger.warning(
            "Expression evaluation failed",
            extra={"expression": expr, "error_type": type(exc).__name__, "error": exc.message},
        )
        return UNDEFINED


__all__ = [
    "Expression",
    "FUNCTIONS",
    "register_function",
    "parse_expression",
    "evaluate_strict",
    "evaluate",
]
