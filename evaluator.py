"""Prefix-notation expression evaluation over typed Logo values."""

from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from lexer import LogoError, SourceLocation


TYPE_INT = "INT"
TYPE_BOOL = "BOOL"
TYPE_WORD = "WORD"

TRUE = "TRUE"
FALSE = "FALSE"

LITERAL_PREFIX = '"'
VARIABLE_PREFIX = ":"

_INTEGER_RE = re.compile(r"-?[0-9]+")


@dataclass
class Value:
    type: str
    value: Any

    def render(self) -> str:
        if self.type == TYPE_BOOL:
            return TRUE if self.value else FALSE
        return str(self.value)


class LogoRuntimeError(LogoError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rewrite_rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rewrite_rule = rewrite_rule
        self.step_index: Optional[int] = None


def make_int(value: int) -> Value:
    return Value(TYPE_INT, int(value))


def make_bool(value: bool) -> Value:
    return Value(TYPE_BOOL, bool(value))


def parse_literal(text: str) -> Value:
    """Type the text of a quoted literal once, at the leaf."""
    if _INTEGER_RE.fullmatch(text):
        return make_int(int(text))
    if text == TRUE:
        return make_bool(True)
    if text == FALSE:
        return make_bool(False)
    return Value(TYPE_WORD, text)


def exactly(values: List[Value], count: int, rule: str, location: Optional[SourceLocation]) -> List[Value]:
    if len(values) != count:
        noun = "value" if count == 1 else "values"
        raise LogoRuntimeError(
            f"{rule} expects {count} {noun} but got {len(values)}",
            location=location,
            rewrite_rule=rule,
        )
    return values


def expect_int(value: Value, rule: str, location: Optional[SourceLocation]) -> int:
    if value.type != TYPE_INT:
        raise LogoRuntimeError(
            f"{rule} expects an integer but got {value.type} '{value.render()}'",
            location=location,
            rewrite_rule=rule,
        )
    return value.value


def expect_bool(value: Value, rule: str, location: Optional[SourceLocation]) -> bool:
    if value.type != TYPE_BOOL:
        raise LogoRuntimeError(
            f"{rule} expects TRUE or FALSE but got {value.type} '{value.render()}'",
            location=location,
            rewrite_rule=rule,
        )
    return value.value


def expect_word(value: Value, rule: str, location: Optional[SourceLocation]) -> str:
    if value.type != TYPE_WORD:
        raise LogoRuntimeError(
            f"{rule} expects a name but got {value.type} '{value.render()}'",
            location=location,
            rewrite_rule=rule,
        )
    return value.value


Resolver = Callable[[str, Optional[SourceLocation]], Value]
BinaryImpl = Callable[[Value, Value, Optional[SourceLocation]], Value]


class ExpressionEvaluator:
    """Evaluates whitespace-separated prefix expressions.

    ``+ "3 "4`` is read right to left: operands are pushed, and an operator
    pops its left operand first and its right operand second. The result is
    whatever remains on the stack, in written order.
    """

    def __init__(self) -> None:
        self.operators: Dict[str, BinaryImpl] = {}
        self._register("+", self._add)
        self._register("-", self._sub)
        self._register("*", self._mul)
        self._register("/", self._div)
        self._register("EQ", self._eq)
        self._register("NE", self._ne)
        self._register("LT", self._lt)
        self._register("GT", self._gt)
        self._register("AND", self._and)
        self._register("OR", self._or)

    def _register(self, name: str, impl: BinaryImpl) -> None:
        self.operators[name] = impl

    def evaluate(
        self,
        text: str,
        *,
        resolve: Resolver,
        queries: Dict[str, Callable[[], int]],
        location: Optional[SourceLocation] = None,
    ) -> List[Value]:
        stack: List[Value] = []
        push = stack.append
        operators = self.operators
        for token in reversed(text.split()):
            impl = operators.get(token)
            if impl is not None:
                if len(stack) < 2:
                    raise LogoRuntimeError(
                        f"Stack underflow: {token} expects 2 operands but found {len(stack)}",
                        location=location,
                        rewrite_rule=token,
                    )
                left = stack.pop()
                right = stack.pop()
                push(impl(left, right, location))
                continue
            if token.startswith(LITERAL_PREFIX):
                push(parse_literal(token[1:]))
                continue
            if token.startswith(VARIABLE_PREFIX):
                push(resolve(token[1:], location))
                continue
            query = queries.get(token)
            if query is not None:
                push(make_int(query()))
                continue
            # Bare words are reserved and evaluate to nothing.
        stack.reverse()
        return stack

    # Arithmetic
    def _int_pair(self, left: Value, right: Value, rule: str, location: Optional[SourceLocation]) -> Tuple[int, int]:
        return expect_int(left, rule, location), expect_int(right, rule, location)

    def _add(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        a, b = self._int_pair(left, right, "+", location)
        return make_int(a + b)

    def _sub(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        a, b = self._int_pair(left, right, "-", location)
        return make_int(a - b)

    def _mul(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        a, b = self._int_pair(left, right, "*", location)
        return make_int(a * b)

    def _div(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        a, b = self._int_pair(left, right, "/", location)
        if b == 0:
            raise LogoRuntimeError("Division by zero", location=location, rewrite_rule="/")
        q = abs(a) // abs(b)
        return make_int(q if (a < 0) == (b < 0) else -q)

    # Relational
    def _compare(self, left: Value, right: Value, rule: str, location: Optional[SourceLocation]) -> Tuple[Any, Any]:
        if left.type == TYPE_BOOL or right.type == TYPE_BOOL:
            if left.type != right.type:
                raise LogoRuntimeError(
                    f"{rule} cannot compare {left.type} with {right.type}",
                    location=location,
                    rewrite_rule=rule,
                )
            if rule not in ("EQ", "NE"):
                raise LogoRuntimeError(f"{rule} is not defined for booleans", location=location, rewrite_rule=rule)
            return left.value, right.value
        return self._int_pair(left, right, rule, location)

    def _eq(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        a, b = self._compare(left, right, "EQ", location)
        return make_bool(a == b)

    def _ne(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        a, b = self._compare(left, right, "NE", location)
        return make_bool(a != b)

    def _lt(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        a, b = self._compare(left, right, "LT", location)
        return make_bool(a < b)

    def _gt(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        a, b = self._compare(left, right, "GT", location)
        return make_bool(a > b)

    # Logical
    def _and(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        a = expect_bool(left, "AND", location)
        b = expect_bool(right, "AND", location)
        return make_bool(a and b)

    def _or(self, left: Value, right: Value, location: Optional[SourceLocation]) -> Value:
        a = expect_bool(left, "OR", location)
        b = expect_bool(right, "OR", location)
        return make_bool(a or b)
