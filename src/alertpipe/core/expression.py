"""Alerting expression language.

A small PromQL subset parsed into a typed AST of frozen dataclasses and
evaluated against a window of snapshots. Supported:

- vector selectors ``name{label="v", label!="v", label=~"re", label!~"re"}``
  and range selectors ``name[5m]``
- arithmetic ``+ - * / %``, comparisons ``== != > < >= <=`` (optionally with
  ``bool``), set operators ``and or unless``, ``on(...)``/``ignoring(...)``
- range functions ``rate increase delta avg_over_time min_over_time
  max_over_time sum_over_time count_over_time`` and ``abs``, ``absent``
- aggregations ``sum avg min max count`` with ``by``/``without``

Two vectors match when every label name both samples carry (other than
``__name__``) has the same value on each side; the result keeps those
shared labels. ``on``/``ignoring`` override that.
"""

import enum
import math
import operator
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from alertpipe.core.durations import format_duration, parse_duration
from alertpipe.core.exceptions import EvaluationError, ExpressionSyntaxError
from alertpipe.core.models import Snapshot

NAME_LABEL = "__name__"


class ValueType(enum.StrEnum):
    SCALAR = "scalar"
    VECTOR = "vector"
    MATRIX = "matrix"


# === AST ===


@dataclass(frozen=True)
class NumberLiteral:
    value: float

    @property
    def type(self) -> ValueType:
        return ValueType.SCALAR

    def __str__(self) -> str:
        return repr(self.value) if not self.value.is_integer() else str(int(self.value))


@dataclass(frozen=True)
class LabelMatcher:
    name: str
    op: str
    value: str
    _pattern: re.Pattern[str] | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.op in ("=~", "!~"):
            try:
                object.__setattr__(self, "_pattern", re.compile(self.value))
            except re.error as exc:
                raise ExpressionSyntaxError(
                    f"invalid regular expression {self.value!r}: {exc}"
                ) from exc

    def matches(self, value: str) -> bool:
        if self.op == "=":
            return value == self.value
        if self.op == "!=":
            return value != self.value
        assert self._pattern is not None
        matched = self._pattern.fullmatch(value) is not None
        return matched if self.op == "=~" else not matched

    def __str__(self) -> str:
        escaped = self.value.replace("\\", "\\\\").replace('"', '\\"')
        return f'{self.name}{self.op}"{escaped}"'


@dataclass(frozen=True)
class VectorSelector:
    name: str
    matchers: tuple[LabelMatcher, ...] = ()

    @property
    def type(self) -> ValueType:
        return ValueType.VECTOR

    def __str__(self) -> str:
        if not self.matchers:
            return self.name
        return f"{self.name}{{{', '.join(str(m) for m in self.matchers)}}}"


@dataclass(frozen=True)
class MatrixSelector:
    vector: VectorSelector
    range: float

    @property
    def type(self) -> ValueType:
        return ValueType.MATRIX

    def __str__(self) -> str:
        return f"{self.vector}[{format_duration(self.range)}]"


@dataclass(frozen=True)
class VectorMatching:
    on: bool
    labels: tuple[str, ...]

    def __str__(self) -> str:
        keyword = "on" if self.on else "ignoring"
        return f"{keyword}({', '.join(self.labels)})"


@dataclass(frozen=True)
class UnaryExpr:
    op: str
    expr: "Expr"

    @property
    def type(self) -> ValueType:
        return self.expr.type

    def __str__(self) -> str:
        return f"{self.op}{self.expr}"


@dataclass(frozen=True)
class BinaryExpr:
    op: str
    lhs: "Expr"
    rhs: "Expr"
    return_bool: bool = False
    matching: VectorMatching | None = None

    @property
    def type(self) -> ValueType:
        if ValueType.VECTOR in (self.lhs.type, self.rhs.type):
            return ValueType.VECTOR
        return ValueType.SCALAR

    def __str__(self) -> str:
        modifiers = " bool" if self.return_bool else ""
        if self.matching is not None:
            modifiers += f" {self.matching}"
        return f"{self.lhs} {self.op}{modifiers} {self.rhs}"


@dataclass(frozen=True)
class Call:
    func: str
    args: tuple["Expr", ...]

    @property
    def type(self) -> ValueType:
        return FUNCTIONS[self.func][1]

    def __str__(self) -> str:
        return f"{self.func}({', '.join(str(a) for a in self.args)})"


@dataclass(frozen=True)
class Aggregation:
    op: str
    expr: "Expr"
    grouping: tuple[str, ...] = ()
    without: bool = False

    @property
    def type(self) -> ValueType:
        return ValueType.VECTOR

    def __str__(self) -> str:
        clause = ""
        if self.grouping or self.without:
            keyword = "without" if self.without else "by"
            clause = f" {keyword} ({', '.join(self.grouping)})"
        return f"{self.op}{clause} ({self.expr})"


@dataclass(frozen=True)
class Paren:
    expr: "Expr"

    @property
    def type(self) -> ValueType:
        return self.expr.type

    def __str__(self) -> str:
        return f"({self.expr})"


Expr = (
    NumberLiteral
    | VectorSelector
    | MatrixSelector
    | UnaryExpr
    | BinaryExpr
    | Call
    | Aggregation
    | Paren
)

FUNCTIONS: dict[str, tuple[ValueType, ValueType]] = {
    "rate": (ValueType.MATRIX, ValueType.VECTOR),
    "increase": (ValueType.MATRIX, ValueType.VECTOR),
    "delta": (ValueType.MATRIX, ValueType.VECTOR),
    "avg_over_time": (ValueType.MATRIX, ValueType.VECTOR),
    "min_over_time": (ValueType.MATRIX, ValueType.VECTOR),
    "max_over_time": (ValueType.MATRIX, ValueType.VECTOR),
    "sum_over_time": (ValueType.MATRIX, ValueType.VECTOR),
    "count_over_time": (ValueType.MATRIX, ValueType.VECTOR),
    "abs": (ValueType.VECTOR, ValueType.VECTOR),
    "absent": (ValueType.VECTOR, ValueType.VECTOR),
}
AGGREGATIONS = frozenset({"sum", "avg", "min", "max", "count"})
COMPARISONS: dict[str, Callable[[float, float], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
}
ARITHMETIC: dict[str, Callable[[float, float], float]] = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
    "%": math.fmod,
}
SET_OPERATORS = frozenset({"and", "or", "unless"})
_PRECEDENCE = {
    "or": 1,
    "and": 2,
    "unless": 2,
    **dict.fromkeys(COMPARISONS, 3),
    "+": 4,
    "-": 4,
    "*": 5,
    "/": 5,
    "%": 5,
}


def max_range(expr: Expr) -> float:
    """Longest range selector used anywhere in the expression."""
    if isinstance(expr, MatrixSelector):
        return expr.range
    children: Sequence[Expr]
    if isinstance(expr, BinaryExpr):
        children = (expr.lhs, expr.rhs)
    elif isinstance(expr, Call):
        children = expr.args
    elif isinstance(expr, (UnaryExpr, Aggregation, Paren)):
        children = (expr.expr,)
    else:
        children = ()
    return max((max_range(child) for child in children), default=0.0)


# === Lexer ===

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<duration>(?:\d+(?:ms|s|m|h|d|w|y))+(?![a-zA-Z0-9_:]))
    |(?P<number>(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?(?![a-zA-Z_:]))
    |(?P<ident>[a-zA-Z_:][a-zA-Z0-9_:]*)
    |(?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    |(?P<op>==|!=|>=|<=|=~|!~|[-+*/%<>=(){}\[\],])
    """,
    re.VERBOSE,
)
_STRING_ESCAPE_RE = re.compile(r"\\(.)")


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    position: int


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    position = 0
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        if match is None:
            raise ExpressionSyntaxError(
                f"unexpected character {text[position]!r} at position {position}",
                position,
            )
        kind = match.lastgroup
        assert kind is not None
        if kind != "ws":
            tokens.append(_Token(kind, match.group(), position))
        position = match.end()
    tokens.append(_Token("eof", "", len(text)))
    return tokens


# === Parser ===


class _Parser:
    def __init__(self, text: str) -> None:
        self._text = text
        self._tokens = _tokenize(text)
        self._index = 0

    def _peek(self, offset: int = 0) -> _Token:
        return self._tokens[min(self._index + offset, len(self._tokens) - 1)]

    def _advance(self) -> _Token:
        token = self._tokens[self._index]
        self._index += 1
        return token

    def _error(
        self, message: str, token: _Token | None = None
    ) -> ExpressionSyntaxError:
        token = token or self._peek()
        return ExpressionSyntaxError(
            f"{message} at position {token.position} in {self._text!r}", token.position
        )

    def _expect(self, text: str) -> _Token:
        token = self._peek()
        if token.text != text or token.kind == "string":
            found = token.text or "end of input"
            raise self._error(f"expected {text!r}, found {found!r}")
        return self._advance()

    def parse(self) -> Expr:
        if self._peek().kind == "eof":
            raise self._error("empty expression")
        expr = self._parse_binary(1)
        if self._peek().kind != "eof":
            raise self._error(f"unexpected {self._peek().text!r}")
        return expr

    def _binary_operator(self) -> str | None:
        token = self._peek()
        if token.kind == "op" and token.text in _PRECEDENCE:
            return token.text
        if token.kind == "ident" and token.text in SET_OPERATORS:
            return token.text
        return None

    def _parse_binary(self, min_precedence: int) -> Expr:
        lhs = self._parse_unary()
        while True:
            op = self._binary_operator()
            if op is None or _PRECEDENCE[op] < min_precedence:
                return lhs
            op_token = self._advance()
            return_bool = False
            if op in COMPARISONS and self._peek().text == "bool":
                self._advance()
                return_bool = True
            matching = None
            if self._peek().kind == "ident" and self._peek().text in ("on", "ignoring"):
                keyword = self._advance().text
                matching = VectorMatching(
                    on=keyword == "on", labels=self._parse_label_list()
                )
            rhs = self._parse_binary(_PRECEDENCE[op] + 1)
            lhs = self._check_binary(
                BinaryExpr(op, lhs, rhs, return_bool, matching), op_token
            )

    def _check_binary(self, node: BinaryExpr, token: _Token) -> BinaryExpr:
        types = (node.lhs.type, node.rhs.type)
        if ValueType.MATRIX in types:
            raise self._error(f"range vectors cannot be used with {node.op!r}", token)
        both_vectors = types == (ValueType.VECTOR, ValueType.VECTOR)
        if node.op in SET_OPERATORS and not both_vectors:
            raise self._error(
                f"{node.op!r} requires instant vectors on both sides", token
            )
        if node.matching is not None and not both_vectors:
            raise self._error(
                "vector matching needs instant vectors on both sides", token
            )
        if (
            node.op in COMPARISONS
            and types == (ValueType.SCALAR, ValueType.SCALAR)
            and not node.return_bool
        ):
            raise self._error("comparisons between scalars must use bool", token)
        return node

    def _parse_unary(self) -> Expr:
        token = self._peek()
        if token.kind == "op" and token.text in ("-", "+"):
            self._advance()
            operand = self._parse_unary()
            if operand.type is ValueType.MATRIX:
                raise self._error(
                    "unary operators need a scalar or instant vector", token
                )
            if token.text == "+":
                return operand
            if isinstance(operand, NumberLiteral):
                return NumberLiteral(-operand.value)
            return UnaryExpr("-", operand)
        return self._parse_primary()

    def _parse_primary(self) -> Expr:
        token = self._peek()
        if token.kind == "number":
            self._advance()
            return NumberLiteral(float(token.text))
        if token.kind == "op" and token.text == "(":
            self._advance()
            inner = self._parse_binary(1)
            self._expect(")")
            return Paren(inner)
        if token.kind == "ident":
            lowered = token.text.lower()
            if lowered in ("inf", "nan") and self._peek(1).text not in ("{", "(", "["):
                self._advance()
                return NumberLiteral(float(lowered))
            if token.text in AGGREGATIONS and self._peek(1).text in (
                "(",
                "by",
                "without",
            ):
                return self._parse_aggregation()
            if self._peek(1).text == "(" and self._peek(1).kind == "op":
                return self._parse_call()
            return self._parse_selector()
        if token.kind == "op" and token.text == "{":
            raise self._error("a metric name is required before '{'")
        found = token.text or "end of input"
        raise self._error(f"unexpected {found!r}")

    def _parse_label_list(self) -> tuple[str, ...]:
        self._expect("(")
        labels: list[str] = []
        while self._peek().text != ")":
            token = self._advance()
            if token.kind != "ident":
                raise self._error(f"expected label name, found {token.text!r}", token)
            labels.append(token.text)
            if self._peek().text == ",":
                self._advance()
            elif self._peek().text != ")":
                raise self._error("expected ',' or ')'")
        self._expect(")")
        return tuple(labels)

    def _parse_aggregation(self) -> Aggregation:
        op = self._advance().text
        grouping: tuple[str, ...] = ()
        without = False
        if self._peek().text in ("by", "without"):
            without = self._advance().text == "without"
            grouping = self._parse_label_list()
        self._expect("(")
        inner = self._parse_binary(1)
        self._expect(")")
        if self._peek().text in ("by", "without") and not grouping and not without:
            without = self._advance().text == "without"
            grouping = self._parse_label_list()
        if inner.type is not ValueType.VECTOR:
            raise self._error(f"{op}() expects an instant vector")
        return Aggregation(op, inner, grouping, without)

    def _parse_call(self) -> Call:
        name_token = self._advance()
        if name_token.text not in FUNCTIONS:
            raise self._error(f"unknown function {name_token.text!r}", name_token)
        self._expect("(")
        args: list[Expr] = []
        while self._peek().text != ")":
            args.append(self._parse_binary(1))
            if self._peek().text == ",":
                self._advance()
            elif self._peek().text != ")":
                raise self._error("expected ',' or ')'")
        self._expect(")")
        expected = FUNCTIONS[name_token.text][0]
        if len(args) != 1:
            raise self._error(
                f"{name_token.text}() takes exactly one argument, got {len(args)}",
                name_token,
            )
        if args[0].type is not expected:
            raise self._error(
                f"{name_token.text}() expects a {expected}, got a {args[0].type}",
                name_token,
            )
        return Call(name_token.text, tuple(args))

    def _parse_selector(self) -> VectorSelector | MatrixSelector:
        name = self._advance().text
        matchers: list[LabelMatcher] = []
        if self._peek().text == "{":
            self._advance()
            while self._peek().text != "}":
                label = self._advance()
                if label.kind != "ident":
                    raise self._error(
                        f"expected label name, found {label.text!r}", label
                    )
                op = self._advance()
                if op.text not in ("=", "!=", "=~", "!~"):
                    raise self._error(f"expected label matcher, found {op.text!r}", op)
                value = self._advance()
                if value.kind != "string":
                    raise self._error("label values must be quoted strings", value)
                unquoted = _STRING_ESCAPE_RE.sub(lambda m: m.group(1), value.text[1:-1])
                matchers.append(LabelMatcher(label.text, op.text, unquoted))
                if self._peek().text == ",":
                    self._advance()
                elif self._peek().text != "}":
                    raise self._error("expected ',' or '}'")
            self._expect("}")
        selector = VectorSelector(name, tuple(matchers))
        if self._peek().text == "[":
            self._advance()
            token = self._advance()
            if token.kind != "duration":
                raise self._error(f"expected a duration, found {token.text!r}", token)
            self._expect("]")
            return MatrixSelector(selector, parse_duration(token.text))
        return selector


def parse(text: str) -> Expr:
    """Parse an expression.

    Raises:
        ExpressionSyntaxError: The text is not a valid expression.
    """
    return _Parser(text).parse()


# === Evaluation ===


@dataclass(frozen=True)
class VectorSample:
    labels: dict[str, str]
    value: float


_Points = tuple[tuple[float, float], ...]


@dataclass(frozen=True)
class RangeSeries:
    labels: dict[str, str]
    points: _Points


Value = float | list[VectorSample] | list[RangeSeries]


def _without_name(labels: dict[str, str]) -> dict[str, str]:
    return {k: v for k, v in labels.items() if k != NAME_LABEL}


def _sort_key(labels: dict[str, str]) -> tuple[tuple[str, str], ...]:
    return tuple(sorted(labels.items()))


def _increase(points: _Points) -> float:
    total = 0.0
    previous = points[0][1]
    for _, value in points[1:]:
        total += value - previous if value >= previous else value
        previous = value
    return total


_RANGE_FUNCTIONS: dict[str, Callable[[_Points], float | None]] = {
    "rate": lambda p: (
        _increase(p) / (p[-1][0] - p[0][0])
        if len(p) > 1 and p[-1][0] > p[0][0]
        else None
    ),
    "increase": lambda p: _increase(p) if len(p) > 1 else None,
    "delta": lambda p: p[-1][1] - p[0][1] if len(p) > 1 else None,
    "avg_over_time": lambda p: sum(v for _, v in p) / len(p),
    "min_over_time": lambda p: min(v for _, v in p),
    "max_over_time": lambda p: max(v for _, v in p),
    "sum_over_time": lambda p: sum(v for _, v in p),
    "count_over_time": lambda p: float(len(p)),
}


class Evaluator:
    """Evaluates expressions at the time of the newest snapshot in a window."""

    def __init__(self, snapshots: Sequence[Snapshot]) -> None:
        if not snapshots:
            raise EvaluationError("no snapshots to evaluate against")
        self._snapshots = snapshots
        self._latest = snapshots[-1]
        self.time = self._latest.timestamp

    def evaluate(self, expr: Expr) -> Value:
        if isinstance(expr, NumberLiteral):
            return expr.value
        if isinstance(expr, Paren):
            return self.evaluate(expr.expr)
        if isinstance(expr, VectorSelector):
            return self._select(expr)
        if isinstance(expr, MatrixSelector):
            return self._select_range(expr)
        if isinstance(expr, UnaryExpr):
            return self._negate(self.evaluate(expr.expr))
        if isinstance(expr, BinaryExpr):
            return self._binary(expr)
        if isinstance(expr, Call):
            return self._call(expr)
        if isinstance(expr, Aggregation):
            return self._aggregate(expr)
        raise EvaluationError(f"cannot evaluate {type(expr).__name__}")

    def _select(
        self, selector: VectorSelector, strict: bool = True
    ) -> list[VectorSample]:
        if not self._latest.knows(selector.name):
            if strict:
                raise EvaluationError(f"unknown metric {selector.name!r}")
            return []
        result = []
        for sample in self._latest.select(selector.name):
            labels = sample.label_dict()
            if all(m.matches(labels.get(m.name, "")) for m in selector.matchers):
                result.append(
                    VectorSample({NAME_LABEL: sample.name, **labels}, sample.value)
                )
        return sorted(result, key=lambda s: _sort_key(s.labels))

    def _select_range(self, node: MatrixSelector) -> list[RangeSeries]:
        lower = self.time - node.range
        in_range = [s for s in self._snapshots if lower < s.timestamp <= self.time]
        if not any(s.knows(node.vector.name) for s in in_range):
            raise EvaluationError(f"unknown metric {node.vector.name!r}")
        points: dict[tuple[tuple[str, str], ...], list[tuple[float, float]]] = {}
        for snapshot in in_range:
            for sample in snapshot.select(node.vector.name):
                labels = sample.label_dict()
                if all(m.matches(labels.get(m.name, "")) for m in node.vector.matchers):
                    points.setdefault(sample.labels, []).append(
                        (snapshot.timestamp, sample.value)
                    )
        return [
            RangeSeries({NAME_LABEL: node.vector.name, **dict(key)}, tuple(series))
            for key, series in sorted(points.items())
        ]

    def _negate(self, value: Value) -> Value:
        if isinstance(value, float):
            return -value
        return [
            VectorSample(_without_name(s.labels), -s.value)
            for s in value
            if isinstance(s, VectorSample)
        ]

    def _call(self, node: Call) -> list[VectorSample]:
        arg = node.args[0]
        if node.func == "absent":
            if isinstance(arg, VectorSelector):
                present = self._select(arg, strict=False)
            else:
                present = self._vector(arg)
            if present:
                return []
            labels = {}
            if isinstance(arg, VectorSelector):
                labels = {m.name: m.value for m in arg.matchers if m.op == "="}
            return [VectorSample(labels, 1.0)]
        if node.func == "abs":
            return [
                VectorSample(_without_name(s.labels), abs(s.value))
                for s in self._vector(arg)
            ]
        function = _RANGE_FUNCTIONS[node.func]
        result = []
        for series in self.evaluate(arg):
            assert isinstance(series, RangeSeries)
            value = function(series.points)
            if value is not None:
                result.append(VectorSample(_without_name(series.labels), value))
        return result

    def _vector(self, expr: Expr) -> list[VectorSample]:
        value = self.evaluate(expr)
        if isinstance(value, float):
            raise EvaluationError(f"expected an instant vector from {expr}")
        return [s for s in value if isinstance(s, VectorSample)]

    def _aggregate(self, node: Aggregation) -> list[VectorSample]:
        groups: dict[tuple[tuple[str, str], ...], list[float]] = {}
        for sample in self._vector(node.expr):
            if node.without:
                excluded = {*node.grouping, NAME_LABEL}
                key_labels = {
                    k: v for k, v in sample.labels.items() if k not in excluded
                }
            else:
                key_labels = {
                    k: sample.labels[k] for k in node.grouping if k in sample.labels
                }
            groups.setdefault(_sort_key(key_labels), []).append(sample.value)
        result = []
        for key, values in sorted(groups.items()):
            if node.op == "sum":
                value = sum(values)
            elif node.op == "avg":
                value = sum(values) / len(values)
            elif node.op == "min":
                value = min(values)
            elif node.op == "max":
                value = max(values)
            else:
                value = float(len(values))
            result.append(VectorSample(dict(key), value))
        return result

    # --- binary operators ---

    @staticmethod
    def _arith(op: str, left: float, right: float) -> float:
        if op in ("/", "%") and right == 0:
            raise EvaluationError("division by zero")
        try:
            return ARITHMETIC[op](left, right)
        except (ArithmeticError, ValueError) as exc:
            raise EvaluationError(f"{left} {op} {right}: {exc}") from exc

    def _binary(self, node: BinaryExpr) -> Value:
        lhs = self.evaluate(node.lhs)
        rhs = self.evaluate(node.rhs)
        if isinstance(lhs, float) and isinstance(rhs, float):
            if node.op in COMPARISONS:
                return 1.0 if COMPARISONS[node.op](lhs, rhs) else 0.0
            return self._arith(node.op, lhs, rhs)
        if isinstance(lhs, float) or isinstance(rhs, float):
            return self._vector_scalar(node, lhs, rhs)
        return self._vector_vector(
            node,
            [s for s in lhs if isinstance(s, VectorSample)],
            [s for s in rhs if isinstance(s, VectorSample)],
        )

    def _vector_scalar(
        self, node: BinaryExpr, lhs: Value, rhs: Value
    ) -> list[VectorSample]:
        scalar_on_left = isinstance(lhs, float)
        vector = rhs if scalar_on_left else lhs
        scalar = lhs if scalar_on_left else rhs
        assert isinstance(scalar, float) and isinstance(vector, list)
        result = []
        for sample in vector:
            assert isinstance(sample, VectorSample)
            if scalar_on_left:
                left, right = scalar, sample.value
            else:
                left, right = sample.value, scalar
            if node.op in COMPARISONS:
                holds = COMPARISONS[node.op](left, right)
                if node.return_bool:
                    result.append(
                        VectorSample(_without_name(sample.labels), float(holds))
                    )
                elif holds:
                    result.append(sample)
            else:
                value = self._arith(node.op, left, right)
                result.append(VectorSample(_without_name(sample.labels), value))
        return result

    @staticmethod
    def _matches(
        matching: VectorMatching | None, left: dict[str, str], right: dict[str, str]
    ) -> bool:
        if matching is None:
            shared = (left.keys() & right.keys()) - {NAME_LABEL}
            return all(left[k] == right[k] for k in shared)
        if matching.on:
            return all(left.get(k, "") == right.get(k, "") for k in matching.labels)
        ignored = {*matching.labels, NAME_LABEL}
        return {k: v for k, v in left.items() if k not in ignored} == {
            k: v for k, v in right.items() if k not in ignored
        }

    @staticmethod
    def _result_labels(
        matching: VectorMatching | None, left: dict[str, str], right: dict[str, str]
    ) -> dict[str, str]:
        if matching is None:
            return {k: v for k, v in left.items() if k != NAME_LABEL and k in right}
        if matching.on:
            return {k: left[k] for k in matching.labels if k in left}
        ignored = {*matching.labels, NAME_LABEL}
        return {k: v for k, v in left.items() if k not in ignored}

    def _vector_vector(
        self, node: BinaryExpr, lhs: list[VectorSample], rhs: list[VectorSample]
    ) -> list[VectorSample]:
        def matched(
            sample: VectorSample, others: list[VectorSample], flip: bool
        ) -> bool:
            for other in others:
                left, right = (other, sample) if flip else (sample, other)
                if self._matches(node.matching, left.labels, right.labels):
                    return True
            return False

        if node.op == "and":
            return [s for s in lhs if matched(s, rhs, flip=False)]
        if node.op == "unless":
            return [s for s in lhs if not matched(s, rhs, flip=False)]
        if node.op == "or":
            return [*lhs, *(s for s in rhs if not matched(s, lhs, flip=True))]

        result: list[VectorSample] = []
        seen: set[tuple[tuple[str, str], ...]] = set()
        for left in lhs:
            matches = [
                r for r in rhs if self._matches(node.matching, left.labels, r.labels)
            ]
            if not matches:
                continue
            if len(matches) > 1:
                raise EvaluationError(
                    f"{node}: found {len(matches)} matches for "
                    f"{_without_name(left.labels)}; "
                    "use on() or ignoring() to make matching one-to-one"
                )
            right = matches[0]
            if node.op in COMPARISONS:
                holds = COMPARISONS[node.op](left.value, right.value)
                if node.return_bool:
                    sample = VectorSample(
                        self._result_labels(node.matching, left.labels, right.labels),
                        float(holds),
                    )
                elif holds:
                    sample = left
                else:
                    continue
            else:
                sample = VectorSample(
                    self._result_labels(node.matching, left.labels, right.labels),
                    self._arith(node.op, left.value, right.value),
                )
            key = _sort_key(sample.labels)
            if key in seen:
                raise EvaluationError(f"{node}: duplicate series {dict(key)} in result")
            seen.add(key)
            result.append(sample)
        return result


def evaluate(expr: Expr | str, snapshots: Sequence[Snapshot]) -> Value:
    """Evaluate an expression at the newest snapshot's timestamp.

    Raises:
        ExpressionSyntaxError: expr is a string that does not parse.
        EvaluationError: The expression cannot be evaluated on this data.
    """
    if isinstance(expr, str):
        expr = parse(expr)
    return Evaluator(snapshots).evaluate(expr)
