"""
Declarative conditions

Compiles condition strings used in YAML/JSON definitions into predicates
over a WorkflowContext.

Grammar::

    expr    := and ("or" and)*
    and     := unary ("and" unary)*
    unary   := "not" unary | "(" expr ")" | "exists" PATH | operand [OP operand]
    operand := PATH | literal
    OP      := == | != | > | >= | < | <=

Literals are parsed as YAML scalars, so ``8``, ``0.5``, ``true``, ``null``
and ``'text'`` all work. A comparison involving a path that does not
resolve is false.
"""
import logging
import operator
import re
from typing import Any, Callable, List, Optional, Tuple

import yaml

from ..exceptions import MissingVariableError, WorkflowValidationError
from ..models.execution import WorkflowContext
from .resolver import navigate, parse_path


logger = logging.getLogger(__name__)

Predicate = Callable[[WorkflowContext], bool]

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<lparen>\()
      | (?P<rparen>\))
      | (?P<op>==|!=|>=|<=|>|<)
      | (?P<string>'[^']*'|"[^"]*")
      | (?P<path>\$[^\s()=!<>]*)
      | (?P<word>[^\s()=!<>]+)
    )""",
    re.VERBOSE,
)

_OPERATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
}

_KEYWORDS = {"and", "or", "not", "exists"}

_UNRESOLVED = object()


def _tokenize(expression: str) -> List[Tuple[str, str]]:
    tokens = []
    pos = 0
    text = expression.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise WorkflowValidationError(
                f"Invalid condition '{expression}' near position {pos}"
            )
        kind = match.lastgroup
        value = match.group(kind)
        if kind == "word" and value.lower() in _KEYWORDS:
            kind = value.lower()
        tokens.append((kind, value))
        pos = match.end()
    return tokens


class _Parser:
    """Recursive descent parser producing predicate closures"""

    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.pos = 0

    def _peek(self) -> Optional[str]:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos][0]
        return None

    def _next(self) -> Tuple[str, str]:
        if self.pos >= len(self.tokens):
            raise WorkflowValidationError(f"Unexpected end of condition '{self.expression}'")
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def parse(self) -> Predicate:
        predicate = self._expr()
        if self.pos != len(self.tokens):
            raise WorkflowValidationError(
                f"Unexpected token '{self.tokens[self.pos][1]}' in condition '{self.expression}'"
            )
        return predicate

    def _expr(self) -> Predicate:
        terms = [self._and()]
        while self._peek() == "or":
            self._next()
            terms.append(self._and())
        if len(terms) == 1:
            return terms[0]
        return lambda ctx: any(term(ctx) for term in terms)

    def _and(self) -> Predicate:
        terms = [self._unary()]
        while self._peek() == "and":
            self._next()
            terms.append(self._unary())
        if len(terms) == 1:
            return terms[0]
        return lambda ctx: all(term(ctx) for term in terms)

    def _unary(self) -> Predicate:
        kind = self._peek()
        if kind == "not":
            self._next()
            inner = self._unary()
            return lambda ctx: not inner(ctx)
        if kind == "lparen":
            self._next()
            inner = self._expr()
            if self._next()[0] != "rparen":
                raise WorkflowValidationError(f"Missing ')' in condition '{self.expression}'")
            return inner
        if kind == "exists":
            self._next()
            path_kind, path = self._next()
            if path_kind != "path":
                raise WorkflowValidationError(f"'exists' expects a path in condition '{self.expression}'")
            parse_path(path)
            return lambda ctx: _lookup(ctx, path) is not _UNRESOLVED
        return self._comparison()

    def _comparison(self) -> Predicate:
        left = self._operand()
        if self._peek() != "op":
            return lambda ctx: bool(_value(left(ctx)))
        op = _OPERATORS[self._next()[1]]
        right = self._operand()

        def compare(ctx: WorkflowContext) -> bool:
            a, b = left(ctx), right(ctx)
            if a is _UNRESOLVED or b is _UNRESOLVED:
                return False
            try:
                return bool(op(a, b))
            except TypeError:
                return False

        return compare

    def _operand(self) -> Callable[[WorkflowContext], Any]:
        kind, value = self._next()
        if kind == "path":
            parse_path(value)
            return lambda ctx: _lookup(ctx, value)
        if kind in ("string", "word"):
            literal = _literal(value)
            return lambda ctx: literal
        raise WorkflowValidationError(
            f"Unexpected token '{value}' in condition '{self.expression}'"
        )


def _literal(text: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def _lookup(context: WorkflowContext, path: str) -> Any:
    try:
        return navigate(context.as_data(), path)
    except MissingVariableError:
        return _UNRESOLVED


def _value(value: Any) -> Any:
    return None if value is _UNRESOLVED else value


def compile_condition(expression: str) -> Predicate:
    """Compile a condition string into a predicate"""
    if not expression or not expression.strip():
        raise WorkflowValidationError("Condition expression is empty")
    predicate = _Parser(expression).parse()
    logger.debug(f"Compiled condition: {expression}")
    return predicate
