"""Helpers for the regular expressions found in user rules.

Rules are written as JavaScript-flavoured regexes (``$1`` backreferences,
``(?<name>...)`` groups, ``gimuy`` flags) so they can be shared with the web
viewer. These helpers translate them to :mod:`re`.
"""

import functools
import logging
import re


logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

REGEX_METACHARS = "([*+?\\"

_NAMED_GROUP = re.compile(r"\(\?<(?![=!])")
_FLAG_MAP = {"i": re.IGNORECASE, "m": re.MULTILINE}


@functools.lru_cache(maxsize=1024)
def compile_pattern(pattern: str, flags: str = "") -> re.Pattern | None:
    """Compile a rule regex, returning None when it is invalid."""
    re_flags = 0
    for flag in flags:
        re_flags |= _FLAG_MAP.get(flag, 0)
    try:
        return re.compile(_NAMED_GROUP.sub("(?P<", pattern), re_flags)
    except re.error as e:
        logger.debug("Ignoring invalid pattern %r: %s", pattern, e)
        return None


def looks_like_regex(pattern: str) -> bool:
    return any(c in pattern for c in REGEX_METACHARS)


def matches_pattern(text: str, pattern: str) -> bool:
    """Literal prefix match first, then a regex search if the pattern has metacharacters."""
    if text.startswith(pattern):
        return True
    if not looks_like_regex(pattern):
        return False
    regex = compile_pattern(pattern)
    return regex is not None and regex.search(text) is not None


def convert_replacement(template: str) -> str:
    """Translate a ``$1``/``$&``/``$$`` style template into an :func:`re.sub` template."""
    out = []
    i = 0
    while i < len(template):
        c = template[i]
        if c == "\\":
            out.append("\\\\")
        elif c == "$" and i + 1 < len(template):
            nxt = template[i + 1]
            if nxt.isdigit():
                j = i + 1
                while j < len(template) and template[j].isdigit():
                    j += 1
                out.append(f"\\g<{template[i + 1 : j]}>")
                i = j
                continue
            if nxt == "&":
                out.append("\\g<0>")
                i += 2
                continue
            if nxt == "$":
                out.append("$")
                i += 2
                continue
            out.append("$")
        else:
            out.append(c)
        i += 1
    return "".join(out)


def substitute(regex: re.Pattern, replacement: str, text: str, replace_all: bool = False) -> str:
    """Apply a converted replacement, leaving ``text`` unchanged on a bad group reference."""
    try:
        return regex.sub(convert_replacement(replacement), text, count=0 if replace_all else 1)
    except (re.error, IndexError) as e:
        logger.debug("Ignoring substitution %r on %r: %s", replacement, text, e)
        return text
