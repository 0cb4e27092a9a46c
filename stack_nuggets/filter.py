"""Filter queries.

A query is a whitespace separated list of tokens::

    pgwire                  free text (at most one term)
    wait:5                  blocked exactly 5 minutes
    wait:>5  wait:<10       strictly more / less than (stored inclusively: 6 / 9)
    wait:5+                 at least 5 minutes
    wait:4-9                between 4 and 9 minutes inclusive
    state:select,running    one of these states

Contradictory combinations are rejected with a ``FilterError`` rather than
silently producing an empty result.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field


class FilterError(ValueError):
    pass


_NUMBER_RE = re.compile(r"^\d*\.?\d+$")


@dataclass(frozen=True)
class Filter:
    """Structured constraints; ``None`` means unconstrained."""

    text: str | None = None
    min_wait: float | None = None
    max_wait: float | None = None
    states: frozenset[str] | None = None
    forced_goroutine: str | None = None
    excluded_files: frozenset[str] = field(default_factory=frozenset)

    def matches_wait(self, wait: float) -> bool:
        if self.min_wait is not None and wait < self.min_wait:
            return False
        if self.max_wait is not None and wait > self.max_wait:
            return False
        return True

    def matches_state(self, state: str) -> bool:
        return not self.states or state in self.states


@dataclass
class _WaitBuilder:
    min: float | None = None
    max: float | None = None
    exact: bool = False

    def set_min(self, value: float):
        if self.exact:
            raise FilterError("Exact wait time cannot be combined with other wait constraints")
        if self.min is not None:
            raise FilterError("Multiple minimum wait constraints not allowed")
        self.min = value

    def set_max(self, value: float):
        if self.exact:
            raise FilterError("Exact wait time cannot be combined with other wait constraints")
        if self.max is not None:
            raise FilterError("Multiple maximum wait constraints not allowed")
        self.max = value

    def set_exact(self, value: float):
        if self.exact:
            raise FilterError("Multiple exact wait constraints not allowed")
        if self.min is not None or self.max is not None:
            raise FilterError("Exact wait time cannot be combined with other wait constraints")
        self.min = self.max = value
        self.exact = True

    def check(self):
        for value in (self.min, self.max):
            if value is not None and value < 0:
                raise FilterError("Wait time cannot be negative")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise FilterError(
                f"Minimum wait time cannot be greater than maximum ({self.min:g} > {self.max:g})"
            )


def _number(text: str, spec: str) -> float:
    if text.startswith("-"):
        raise FilterError(f"Wait time cannot be negative: {spec}")
    if not _NUMBER_RE.match(text):
        raise FilterError(f"Invalid wait value: {spec}")
    return float(text)


def _apply_wait(builder: _WaitBuilder, spec: str):
    if spec.startswith(">"):
        builder.set_min(_number(spec[1:], spec) + 1)
    elif spec.startswith("<"):
        builder.set_max(_number(spec[1:], spec) - 1)
    elif spec.endswith("+"):
        builder.set_min(_number(spec[:-1], spec))
    elif "-" in spec[1:]:
        low, _, high = spec.partition("-")
        builder.set_min(_number(low, spec))
        builder.set_max(_number(high, spec))
    else:
        builder.set_exact(_number(spec, spec))


def parse_wait_spec(spec: str) -> tuple[float | None, float | None]:
    """Parse a wait constraint such as ``"5+"``, ``"4-9"`` or ``">5 <10"``.

    Returns:
        (min_wait, max_wait), both inclusive, either possibly None.

    Raises:
        FilterError: for malformed or contradictory constraints.
    """
    builder = _WaitBuilder()
    for part in spec.split():
        _apply_wait(builder, part)
    builder.check()
    return builder.min, builder.max


def parse_filter(
    query: str,
    states: set[str] | frozenset[str] | None = None,
    forced_goroutine: str | None = None,
    excluded_files: set[str] | frozenset[str] | None = None,
) -> Filter:
    """Parse a query string into a Filter.

    Raises:
        FilterError: for malformed or contradictory queries.
    """
    builder = _WaitBuilder()
    text = None
    query_states = set(states or ())
    for token in query.split():
        if token.startswith("wait:"):
            _apply_wait(builder, token[len("wait:") :])
        elif token.startswith("state:"):
            query_states.update(s for s in token[len("state:") :].split(",") if s)
        elif text is not None:
            raise FilterError("Only one search term allowed (plus wait: and state: filters)")
        else:
            text = token
    builder.check()

    return Filter(
        text=text,
        min_wait=builder.min,
        max_wait=builder.max,
        states=frozenset(query_states) or None,
        forced_goroutine=forced_goroutine,
        excluded_files=frozenset(excluded_files or ()),
    )
