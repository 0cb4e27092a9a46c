"""Derive display names and categories for stacks from ordered rule lists.

Traces are in dump order: ``trace[0]`` is the innermost call (where the
goroutine is blocked) and ``trace[-1]`` the function the goroutine started in.
Names are built from the inside out; categories from the outside in.

Title rules::

    Skip("runtime.")                       ignore frames with this prefix
    Trim("github.com/org/")                strip a prefix from the chosen frame
    Trim("s|\\.func\\d+$||")               or rewrite it with a regex
    Fold("sync.(*Cond).Wait", "condwait")  replace a frame with a label
    Find("kvcoord.(*DistSender).Send", "DistSender")
                                           label a deeper frame without
                                           discarding the current name

Category rules::

    CategorySkip("sync.")                  ignore frames with this prefix
    CategoryMatch("^github\\.com/[^/]+/([^/.]+)")
                                           first capture group is the category
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from stack_nuggets.parser.types import Frame
from stack_nuggets.patterns import compile_pattern, matches_pattern, substitute


logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "CategoryMatch",
    "CategoryRule",
    "CategorySkip",
    "Find",
    "Fold",
    "Skip",
    "TitleRule",
    "Trim",
    "generate_category_name",
    "generate_stack_name",
    "generate_stack_searchable_text",
    "is_std_lib",
    "parse_category_rule",
    "parse_title_rule",
]

NAME_SEPARATOR = " → "
EMPTY_STACK_NAME = "empty"
FRAMELESS_CATEGORY = "<frameless stack>"
STDLIB = "stdlib"


@dataclass(frozen=True)
class Skip:
    pattern: str


@dataclass(frozen=True)
class Trim:
    spec: str


@dataclass(frozen=True)
class Fold:
    """Replace a matching frame by ``to``.

    ``while_`` optionally keeps discarding the frames that follow: either a
    pattern they must match or ``"stdlib"`` to discard standard library frames.
    """

    pattern: str
    to: str
    while_: str | None = None


@dataclass(frozen=True)
class Find:
    pattern: str
    to: str
    while_: str | None = None


@dataclass(frozen=True)
class CategorySkip:
    pattern: str


@dataclass(frozen=True)
class CategoryMatch:
    pattern: str


TitleRule = Skip | Trim | Fold | Find
CategoryRule = CategorySkip | CategoryMatch


_ARROW_RULE_RE = re.compile(r"^(.+?)->(.*)$")
_SLASH_TRIM_RE = re.compile(r"^s/(.+)/(.*)/$")
_PIPE_TRIM_RE = re.compile(r"^s\|(.*)\|([^|]*)\|([gimuy]*)$")
_GROUP_SELECTOR_RE = re.compile(r"^(.*)#(\d+)$")


def _split_while(pattern: str) -> tuple[str, str | None]:
    pattern, _, while_ = pattern.partition(",")
    return pattern, while_ or None


def parse_title_rule(line: str) -> TitleRule | None:
    """Parse ``kind:body`` rule text, returning None for anything unrecognised.

    Accepted forms: ``skip:P``, ``trim:SPEC``, ``fold:P[,WHILE]->TO``,
    ``find:P[,WHILE]->TO`` and ``foldstdlib:P->TO``.
    """
    kind, sep, body = line.strip().partition(":")
    if not sep or not body:
        return None
    match kind:
        case "skip":
            return Skip(body)
        case "trim":
            return Trim(body)
        case "fold" | "find" | "foldstdlib":
            m = _ARROW_RULE_RE.match(body)
            if m is None:
                return None
            pattern, to = m.group(1), m.group(2)
            if kind == "foldstdlib":
                return Fold(pattern, to, STDLIB)
            pattern, while_ = _split_while(pattern)
            return (Fold if kind == "fold" else Find)(pattern, to, while_)
    return None


def parse_category_rule(line: str) -> CategoryRule | None:
    kind, sep, body = line.strip().partition(":")
    if not sep or not body:
        return None
    if kind == "skip":
        return CategorySkip(body)
    if kind == "match":
        return CategoryMatch(body)
    return None


def is_std_lib(function: str, app_package: str = "main") -> bool:
    """Whether ``function`` belongs to the Go standard library.

    Top-level packages (no "/") are standard library except the application
    package. Import paths with a "." before the first "/" are domain
    qualified and therefore never standard library.
    """
    first_slash = function.find("/")
    if first_slash == -1:
        return not function.startswith(app_package)
    return "." not in function[:first_slash]


def _is_skipped(function: str, rules: Sequence[TitleRule]) -> bool:
    return any(isinstance(rule, Skip) and function.startswith(rule.pattern) for rule in rules)


def _continues(function: str, while_: str, app_package: str) -> bool:
    if while_ == STDLIB:
        return is_std_lib(function, app_package)
    regex = compile_pattern(while_)
    if regex is None:
        return function.startswith(while_)
    return regex.search(function) is not None


def _advance_while(
    trace: Sequence[Frame],
    offset: int,
    while_: str | None,
    rules: Sequence[TitleRule],
    app_package: str,
) -> int:
    if not while_:
        return offset
    while offset < len(trace):
        function = trace[offset].func
        if _is_skipped(function, rules) or _continues(function, while_, app_package):
            offset += 1
        else:
            break
    return offset


def apply_trim(name: str, spec: str) -> str:
    """Apply one trim spec: a literal prefix or an ``s/pat/rep/`` or ``s|pat|rep|flags`` rewrite."""
    if spec.startswith("s/"):
        m = _SLASH_TRIM_RE.match(spec)
        if m is None:
            return name
        pattern, replacement, flags = m.group(1), m.group(2), ""
    elif spec.startswith("s|"):
        m = _PIPE_TRIM_RE.match(spec)
        if m is None:
            return name
        pattern, replacement, flags = m.groups()
    else:
        return name[len(spec) :] if name.startswith(spec) else name

    regex = compile_pattern(pattern, flags)
    if regex is None:
        return name
    return substitute(regex, replacement, name, replace_all="g" in flags)


def _trim_name(function: str, rules: Sequence[TitleRule]) -> str:
    for rule in rules:
        if isinstance(rule, Trim):
            function = apply_trim(function, rule.spec)
    return function


def _prepend(name: str, part: str) -> str:
    if name.startswith(part):
        return name
    return part + NAME_SEPARATOR + name if name else part


def generate_stack_name(
    trace: Sequence[Frame], rules: Sequence[TitleRule], app_package: str = "main"
) -> str:
    """Build a display name for ``trace`` by applying ``rules`` in order.

    Walks from the innermost frame outwards. Skip rules discard frames, fold
    rules replace frames with their label, the first remaining frame is
    trimmed and becomes the base name, and find rules then label the deepest
    matching frame further out and continue from there. Parts are joined
    outermost first with " → ".
    """
    if not trace:
        return EMPTY_STACK_NAME

    name = ""
    offset = 0
    while offset < len(trace):
        function = trace[offset].func

        if _is_skipped(function, rules):
            offset += 1
            continue

        fold = next(
            (r for r in rules if isinstance(r, Fold) and matches_pattern(function, r.pattern)),
            None,
        )
        if fold is not None:
            name = _prepend(name, fold.to)
            offset = _advance_while(trace, offset + 1, fold.while_, rules, app_package)
            continue

        name = _prepend(name, _trim_name(function, rules))

        best: Find | None = None
        best_offset = -1
        for search in range(offset + 1, len(trace)):
            for rule in rules:
                if (
                    search > best_offset
                    and isinstance(rule, Find)
                    and matches_pattern(trace[search].func, rule.pattern)
                ):
                    best, best_offset = rule, search
        if best is None:
            break

        name = _prepend(name, best.to)
        offset = _advance_while(trace, best_offset + 1, best.while_, rules, app_package)

    return name or _trim_name(trace[-1].func, rules)


def _match_category(function: str, rule: str) -> str | None:
    comment = rule.find(" --")
    pattern = rule[:comment].strip() if comment != -1 else rule
    group = 1
    if m := _GROUP_SELECTOR_RE.match(pattern):
        pattern, group = m.group(1), int(m.group(2))

    regex = compile_pattern(pattern)
    if regex is None:
        logger.warning("Invalid category match pattern: %s", pattern)
        return None
    match = regex.search(function)
    if match is None:
        return None
    if 0 < group <= regex.groups and match.group(group):
        return match.group(group)
    return match.group(0)


def _fallback_category(function: str) -> str:
    first_slash = function.find("/")
    return function if first_slash == -1 else function[:first_slash]


def generate_category_name(trace: Sequence[Frame], rules: Sequence[CategoryRule]) -> str:
    """Categorise ``trace`` by the outermost frame not excluded by a skip rule.

    The first match rule that matches that frame decides the category;
    otherwise the function's leading path segment is used.
    """
    if not trace:
        return FRAMELESS_CATEGORY

    skips = [r.pattern for r in rules if isinstance(r, CategorySkip)]
    matches = [r.pattern for r in rules if isinstance(r, CategoryMatch)]
    for frame in reversed(trace):
        function = frame.func
        if any(function.startswith(p) for p in skips):
            continue
        for pattern in matches:
            result = _match_category(function, pattern)
            if result:
                return result
        return _fallback_category(function)

    return _fallback_category(trace[0].func)


def generate_stack_searchable_text(trace: Sequence[Frame]) -> str:
    parts = []
    for frame in trace:
        parts.append(frame.func)
        parts.append(f"{frame.file}:{frame.line}")
    return " ".join(parts).lower()
