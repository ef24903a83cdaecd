"""Row filter expressions.

A filter renders to PostgREST query parameters for the REST client and the
realtime subscription, and can also be evaluated against a row dict so that
realtime events are re-checked client-side with the exact same expression.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

# Characters that force a value to be double-quoted inside or=(...) / and=(...)
_RESERVED = re.compile(r"[,.:()\"\s]")


def _format_value(value: Any) -> str:
    """Render a Python value the way PostgREST expects it in a filter."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _quote(text: str) -> str:
    if _RESERVED.search(text):
        return '"' + text.replace('"', '\\"') + '"'
    return text


def _normalize(value: Any) -> str:
    """Comparable form of a row value (rows arrive as JSON)."""
    return _format_value(value).lower() if isinstance(value, bool) or value is None else str(value)


def _like_to_regex(pattern: str) -> re.Pattern[str]:
    parts = []
    for ch in pattern:
        if ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.DOTALL)


class Filter:
    """Base class for filter expressions."""

    def to_params(self) -> list[tuple[str, str]]:
        """Top-level query parameters for this filter."""
        raise NotImplementedError

    def to_expr(self) -> str:
        """Nested form used inside logical operators."""
        raise NotImplementedError

    def matches(self, row: dict[str, Any]) -> bool:
        """Evaluate the filter against a row."""
        raise NotImplementedError

    def to_query_string(self) -> str:
        """Render as ``col=op.value&...`` (used by the realtime subscribe call)."""
        return "&".join(f"{key}={value}" for key, value in self.to_params())


@dataclass(frozen=True)
class Condition(Filter):
    """A single ``column op value`` comparison."""

    column: str
    op: str
    value: Any

    def _rendered(self) -> str:
        if self.op == "in":
            values = ",".join(_quote(_format_value(v)) for v in self.value)
            return f"({values})"
        if self.op == "like":
            # PostgREST accepts * as the wildcard in URLs
            return str(self.value).replace("%", "*")
        return _format_value(self.value)

    def to_params(self) -> list[tuple[str, str]]:
        return [(self.column, f"{self.op}.{self._rendered()}")]

    def to_expr(self) -> str:
        rendered = self._rendered()
        if self.op not in ("in", "like"):
            rendered = _quote(rendered)
        return f"{self.column}.{self.op}.{rendered}"

    def matches(self, row: dict[str, Any]) -> bool:
        actual = row.get(self.column)
        if self.op == "eq":
            return _normalize(actual) == _normalize(self.value)
        if self.op == "neq":
            return _normalize(actual) != _normalize(self.value)
        if self.op == "is":
            return actual is None if self.value is None else actual is self.value
        if self.op == "in":
            return _normalize(actual) in {_normalize(v) for v in self.value}
        if self.op == "like":
            if actual is None:
                return False
            return _like_to_regex(str(self.value)).fullmatch(str(actual)) is not None
        if actual is None:
            return False
        try:
            if self.op == "gte":
                return actual >= self.value
            if self.op == "lte":
                return actual <= self.value
        except TypeError:
            # Timestamps arrive as ISO strings; compare textually
            if self.op == "gte":
                return str(actual) >= str(self.value)
            if self.op == "lte":
                return str(actual) <= str(self.value)
        raise ValueError(f"Unsupported filter operator: {self.op}")


@dataclass(frozen=True)
class And(Filter):
    """All parts must match."""

    parts: tuple[Filter, ...]

    def to_params(self) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = []
        nested = [p for p in self.parts if not isinstance(p, Condition)]
        for part in self.parts:
            if isinstance(part, Condition):
                params.extend(part.to_params())
        if len(nested) == 1:
            params.extend(nested[0].to_params())
        elif nested:
            params.append(("and", "(" + ",".join(p.to_expr() for p in nested) + ")"))
        return params

    def to_expr(self) -> str:
        return "and(" + ",".join(p.to_expr() for p in self.parts) + ")"

    def matches(self, row: dict[str, Any]) -> bool:
        return all(p.matches(row) for p in self.parts)


@dataclass(frozen=True)
class Or(Filter):
    """At least one part must match."""

    parts: tuple[Filter, ...]

    def to_params(self) -> list[tuple[str, str]]:
        return [("or", "(" + ",".join(p.to_expr() for p in self.parts) + ")")]

    def to_expr(self) -> str:
        return "or(" + ",".join(p.to_expr() for p in self.parts) + ")"

    def matches(self, row: dict[str, Any]) -> bool:
        return any(p.matches(row) for p in self.parts)


def eq(column: str, value: Any) -> Condition:
    return Condition(column, "eq", value)


def neq(column: str, value: Any) -> Condition:
    return Condition(column, "neq", value)


def like(column: str, pattern: str) -> Condition:
    """SQL LIKE pattern, ``%`` matches any run of characters."""
    return Condition(column, "like", pattern)


def in_(column: str, values: list[Any] | tuple[Any, ...]) -> Condition:
    return Condition(column, "in", tuple(values))


def gte(column: str, value: Any) -> Condition:
    return Condition(column, "gte", value)


def lte(column: str, value: Any) -> Condition:
    return Condition(column, "lte", value)


def and_(*parts: Filter) -> Filter:
    if len(parts) == 1:
        return parts[0]
    return And(tuple(parts))


def or_(*parts: Filter) -> Filter:
    if len(parts) == 1:
        return parts[0]
    return Or(tuple(parts))
