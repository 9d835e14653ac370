"""Parsing and matching of Kubernetes label selector expressions.

The grammar is the one accepted by ``kubectl get -l``: comma-separated
requirements of the forms ``key``, ``!key``, ``key=value``,
``key==value``, ``key!=value``, ``key in (a,b)``, ``key notin (a,b)``,
``key>n`` and ``key<n``.
"""

from __future__ import annotations

__all__ = ("LabelSelector", "Operator", "Requirement", "SelectorError")

import enum
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

_NAME_RE = re.compile(r"^([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]$")
_PREFIX_RE = re.compile(
    r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"
)
_TOKEN_RE = re.compile(
    r"\s*(?:(?P<symbol>==|!=|=|\(|\)|,|!|>|<)|(?P<word>[^\s=!(),<>]+))"
)


class SelectorError(ValueError):
    """Raised when a label selector expression cannot be parsed."""


class Operator(enum.Enum):
    """Operators of a single selector requirement."""

    EQUALS = "="
    NOT_EQUALS = "!="
    IN = "in"
    NOT_IN = "notin"
    EXISTS = "exists"
    DOES_NOT_EXIST = "!"
    GREATER_THAN = "gt"
    LESS_THAN = "lt"


@dataclass(frozen=True)
class Requirement:
    """A single requirement of a label selector."""

    key: str
    operator: Operator
    values: tuple[str, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        """Return `True` if ``labels`` satisfies this requirement."""
        present = self.key in labels
        if self.operator is Operator.EXISTS:
            return present
        if self.operator is Operator.DOES_NOT_EXIST:
            return not present
        if self.operator in (Operator.EQUALS, Operator.IN):
            return present and labels[self.key] in self.values
        if self.operator in (Operator.NOT_EQUALS, Operator.NOT_IN):
            return not present or labels[self.key] not in self.values
        if not present:
            return False
        try:
            value = int(labels[self.key])
        except ValueError:
            return False
        if self.operator is Operator.GREATER_THAN:
            return value > int(self.values[0])
        return value < int(self.values[0])

    def __str__(self) -> str:
        if self.operator is Operator.EXISTS:
            return self.key
        if self.operator is Operator.DOES_NOT_EXIST:
            return f"!{self.key}"
        if self.operator in (Operator.IN, Operator.NOT_IN):
            return f"{self.key} {self.operator.value} ({','.join(self.values)})"
        if self.operator is Operator.GREATER_THAN:
            return f"{self.key}>{self.values[0]}"
        if self.operator is Operator.LESS_THAN:
            return f"{self.key}<{self.values[0]}"
        return f"{self.key}{self.operator.value}{self.values[0]}"


class LabelSelector:
    """A parsed label selector.

    A selector without requirements matches every set of labels.

    Parameters
    ----------
    requirements : iterable of `Requirement`
        The requirements, all of which must match.
    """

    def __init__(self, requirements: Iterable[Requirement] = ()) -> None:
        self.requirements = tuple(requirements)

    @classmethod
    def parse(cls, expression: str) -> LabelSelector:
        """Parse a selector expression such as ``app=db,tier notin (test)``.

        Raises
        ------
        SelectorError
            Raised if the expression is malformed or contains an invalid
            label key or value.
        """
        return cls(_Parser(expression).parse())

    def matches(self, labels: Mapping[str, str] | None) -> bool:
        """Return `True` if ``labels`` satisfies every requirement."""
        labels = labels or {}
        return all(r.matches(labels) for r in self.requirements)

    def __str__(self) -> str:
        return ",".join(str(r) for r in self.requirements)

    def __repr__(self) -> str:
        return f"LabelSelector({str(self)!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LabelSelector):
            return NotImplemented
        return self.requirements == other.requirements

    def __hash__(self) -> int:
        return hash(self.requirements)


def _validate_key(key: str) -> str:
    prefix, slash, name = key.rpartition("/")
    if slash:
        if not prefix or len(prefix) > 253 or not _PREFIX_RE.match(prefix):
            raise SelectorError(f"invalid label key prefix in {key!r}")
    if len(name) > 63 or not _NAME_RE.match(name):
        raise SelectorError(f"invalid label key {key!r}")
    return key


def _validate_value(value: str) -> str:
    if value and (len(value) > 63 or not _NAME_RE.match(value)):
        raise SelectorError(f"invalid label value {value!r}")
    return value


class _Parser:
    def __init__(self, expression: str) -> None:
        self.expression = expression
        self.tokens = self._tokenize(expression)
        self.position = 0

    @staticmethod
    def _tokenize(expression: str) -> list[tuple[str, str]]:
        tokens = []
        position = 0
        stripped = expression.rstrip()
        while position < len(stripped):
            match = _TOKEN_RE.match(stripped, position)
            if match is None or match.end() == position:
                raise SelectorError(
                    f"unexpected character at position {position} in "
                    f"{expression!r}"
                )
            kind = "symbol" if match.group("symbol") else "word"
            tokens.append((kind, match.group(kind)))
            position = match.end()
        return tokens

    def _peek(self) -> tuple[str, str] | None:
        if self.position < len(self.tokens):
            return self.tokens[self.position]
        return None

    def _next(self) -> tuple[str, str]:
        token = self._peek()
        if token is None:
            raise SelectorError(
                f"unexpected end of selector {self.expression!r}"
            )
        self.position += 1
        return token

    def _expect_word(self) -> str:
        kind, text = self._next()
        if kind != "word":
            raise SelectorError(
                f"expected a label key or value, found {text!r} in "
                f"{self.expression!r}"
            )
        return text

    def _expect_symbol(self, symbol: str) -> None:
        _, text = self._next()
        if text != symbol:
            raise SelectorError(
                f"expected {symbol!r}, found {text!r} in {self.expression!r}"
            )

    def parse(self) -> list[Requirement]:
        requirements: list[Requirement] = []
        if not self.tokens:
            return requirements
        while True:
            requirements.append(self._parse_requirement())
            token = self._peek()
            if token is None:
                return requirements
            self._expect_symbol(",")

    def _parse_requirement(self) -> Requirement:
        kind, text = self._next()
        if (kind, text) == ("symbol", "!"):
            key = _validate_key(self._expect_word())
            return Requirement(key, Operator.DOES_NOT_EXIST)
        if kind != "word":
            raise SelectorError(
                f"expected a label key, found {text!r} in "
                f"{self.expression!r}"
            )
        key = _validate_key(text)

        token = self._peek()
        if token is None or token == ("symbol", ","):
            return Requirement(key, Operator.EXISTS)

        kind, text = self._next()
        if text in ("=", "=="):
            return Requirement(key, Operator.EQUALS, (self._parse_value(),))
        if text == "!=":
            return Requirement(
                key, Operator.NOT_EQUALS, (self._parse_value(),)
            )
        if (kind, text) == ("word", "in"):
            return Requirement(key, Operator.IN, self._parse_value_set())
        if (kind, text) == ("word", "notin"):
            return Requirement(key, Operator.NOT_IN, self._parse_value_set())
        if text in (">", "<"):
            value = self._expect_word()
            try:
                int(value)
            except ValueError:
                raise SelectorError(
                    f"value {value!r} for {key!r} must be an integer"
                ) from None
            operator = (
                Operator.GREATER_THAN if text == ">" else Operator.LESS_THAN
            )
            return Requirement(key, operator, (value,))
        raise SelectorError(
            f"unknown operator {text!r} for key {key!r} in "
            f"{self.expression!r}"
        )

    def _parse_value(self) -> str:
        token = self._peek()
        if token is None or token == ("symbol", ","):
            return ""
        return _validate_value(self._expect_word())

    def _parse_value_set(self) -> tuple[str, ...]:
        self._expect_symbol("(")
        values: list[str] = []
        if self._peek() == ("symbol", ")"):
            raise SelectorError(
                f"empty value set in {self.expression!r}"
            )
        while True:
            values.append(_validate_value(self._expect_word()))
            _, text = self._next()
            if text == ")":
                return tuple(sorted(set(values)))
            if text != ",":
                raise SelectorError(
                    f"expected ',' or ')', found {text!r} in "
                    f"{self.expression!r}"
                )
