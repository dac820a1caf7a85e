"""A small evaluator for ``if:`` guards.

Supports the subset of the Actions expression language workflows actually
use in guards: string/number/boolean literals, ``github.*`` and ``env.*``
lookups, ``== != && || !`` with parentheses, and the functions ``success()``,
``failure()``, ``always()``, ``cancelled()``, ``startsWith``, ``endsWith``
and ``contains``. String comparison is case-insensitive.
"""
import re
from dataclasses import dataclass, field
from typing import Mapping

from pipeflow.errors import PipeflowError

TOKEN = re.compile(r"""
    \s*(?:
        (?P<string>'(?:[^']|'')*')
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<op>==|!=|&&|\|\||!|\(|\)|,)
      | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_][A-Za-z0-9_\-]*)*)
    )""", re.VERBOSE)

WRAPPED = re.compile(r"^\$\{\{(.*)\}\}$", re.DOTALL)


class ConditionError(PipeflowError):
    """The guard expression could not be parsed or evaluated."""


@dataclass(frozen=True)
class ConditionContext:
    github: Mapping = field(default_factory=dict)
    env: Mapping = field(default_factory=dict)
    status: str = "success"


def tokenize(text: str) -> list:
    tokens = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = TOKEN.match(text, pos)
        if m is None or m.end() == pos:
            raise ConditionError(f"Unexpected input at position {pos}: {text[pos:]!r}")
        kind = m.lastgroup
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, tokens, ctx: ConditionContext):
        self.tokens = tokens
        self.pos = 0
        self.ctx = ctx

    def peek(self):
        return self.tokens[self.pos] if self.pos < len(self.tokens) else (None, None)

    def take(self, value=None):
        kind, text = self.peek()
        if kind is None:
            raise ConditionError("Unexpected end of expression")
        if value is not None and text != value:
            raise ConditionError(f"Expected {value!r}, got {text!r}")
        self.pos += 1
        return kind, text

    def parse(self):
        value = self.or_expr()
        if self.pos != len(self.tokens):
            raise ConditionError(f"Unexpected token {self.peek()[1]!r}")
        return value

    def or_expr(self):
        value = self.and_expr()
        while self.peek()[1] == "||":
            self.take()
            rhs = self.and_expr()
            value = value if truthy(value) else rhs
        return value

    def and_expr(self):
        value = self.compare()
        while self.peek()[1] == "&&":
            self.take()
            rhs = self.compare()
            value = rhs if truthy(value) else value
        return value

    def compare(self):
        value = self.unary()
        while self.peek()[1] in ("==", "!="):
            _, op = self.take()
            rhs = self.unary()
            equal = _equal(value, rhs)
            value = equal if op == "==" else not equal
        return value

    def unary(self):
        if self.peek()[1] == "!":
            self.take()
            return not truthy(self.unary())
        return self.primary()

    def primary(self):
        kind, text = self.take()
        if kind == "string":
            return text[1:-1].replace("''", "'")
        if kind == "number":
            return float(text)
        if kind == "op" and text == "(":
            value = self.or_expr()
            self.take(")")
            return value
        if kind == "name":
            if self.peek()[1] == "(":
                return self.call(text)
            return self.lookup(text)
        raise ConditionError(f"Unexpected token {text!r}")

    def call(self, name):
        self.take("(")
        args = []
        if self.peek()[1] != ")":
            args.append(self.or_expr())
            while self.peek()[1] == ",":
                self.take()
                args.append(self.or_expr())
        self.take(")")
        return _call(name, args, self.ctx)

    def lookup(self, name):
        if name == "true":
            return True
        if name == "false":
            return False
        if name == "null":
            return None
        scope, _, key = name.partition(".")
        if scope == "github":
            return self.ctx.github.get(key, "")
        if scope == "env":
            return self.ctx.env.get(key, "")
        raise ConditionError(f"Unknown context '{name}'")


def _call(name, args, ctx):
    lowered = name.lower()
    if lowered in ("success", "failure", "always", "cancelled"):
        if args:
            raise ConditionError(f"{name}() takes no arguments")
        if lowered == "always":
            return True
        return ctx.status == lowered
    if lowered in ("startswith", "endswith", "contains"):
        if len(args) != 2:
            raise ConditionError(f"{name}() takes two arguments")
        a, b = (str(x).lower() for x in args)
        if lowered == "startswith":
            return a.startswith(b)
        if lowered == "endswith":
            return a.endswith(b)
        return b in a
    raise ConditionError(f"Unknown function '{name}'")


def _equal(a, b) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.lower() == b.lower()
    return a == b


def truthy(value) -> bool:
    if isinstance(value, str):
        return value != ""
    return bool(value)


def evaluate(expression: str, ctx: ConditionContext | None = None) -> bool:
    ctx = ctx or ConditionContext()
    text = expression.strip()
    m = WRAPPED.match(text)
    if m:
        text = m.group(1).strip()
    if not text:
        raise ConditionError("Empty condition")
    return truthy(_Parser(tokenize(text), ctx).parse())
