"""User-facing configuration.

A ``Settings`` object is an immutable snapshot; ``evolve`` returns a new one
with a bumped ``version`` so consumers can tell snapshots apart cheaply.

Rule groups are plain multi-line text, one rule per line, mirroring what a
user types into a settings dialog. Each group combines the built-in defaults
(when ``use_default_*`` is set) with the user's custom lines.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from stack_nuggets.naming import (
    CategoryMatch,
    CategoryRule,
    CategorySkip,
    Find,
    Fold,
    Skip,
    TitleRule,
    Trim,
    parse_category_rule,
    parse_title_rule,
)
from stack_nuggets.parser import FileParser
from stack_nuggets.parser.names import DEFAULT_NAME_EXTRACTION_PATTERNS, NameExtractionPattern
from stack_nuggets.parser.zip import DEFAULT_ZIP_PATTERN
from stack_nuggets.patterns import compile_pattern


logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


class SettingsError(ValueError):
    pass


DEFAULT_CATEGORY_SKIP_RULES = "\n".join(
    [
        "sync.",
        "internal/",
        "golang.org/x/sync/errgroup",
        "util/stop",
        "util/ctxgroup",
        "jobs.",
        "kv/kvclient/rangefeed",
        "kv/kvpb._",
        "google.golang.org/grpc",
        "rpc.NewServerEx",
        "rpc.internalClientAdapter",
        "rpc.serverStreamInterceptorsChain",
        "rpc.kvAuth",
        "sql/flowinfra.(*FlowBase).StartInternal.func",
        "sql/execinfra.(*ProcessorBaseNoHelper).Run",
        "sql/execinfra.Run",
    ]
)

# Domain-qualified prefix (if any) plus at most two package path segments.
DEFAULT_CATEGORY_MATCH_RULES = r"s|^((([^/.]*\.[^/]*)?/)?[^/.]+(/[^/.]+)?)|$1|"

DEFAULT_NAME_SKIP_RULES = "\n".join(
    [
        "sync.runtime_notifyListWait",
        "sync.runtime_Semacquire",
        "golang.org/x/sync/errgroup.(*Group).Wait",
        "rpc.NewContext.ClientInterceptor.func8",
        "util/cidr.metricsConn.Read",
        "server.(*Node).batchInternal",
    ]
)

DEFAULT_NAME_TRIM_RULES = "\n".join(
    [
        r"s|\.func\d+(\.\d+)?$||",
        "util/",
        r"s|^server\.\(\*Node\)\.Batch$|batch|",
    ]
)

DEFAULT_NAME_FOLD_RULES = "\n".join(
    [
        "s|sync.(*Cond).Wait,|condwait|",
        "s|sync.(*WaitGroup).Wait,|waitgroup|",
        "s|util/ctxgroup.Group.Wait,|waitgroup|",
        "s|util/ctxgroup.GroupWorkers,|waitgroup|",
        "s|util/ctxgroup.GoAndWait,|waitgroup|",
        "s|net/http,stdlib|net/http|",
        "s|syscall.Syscall,stdlib|syscall|",
        "s|internal/poll.runtime_pollWait,stdlib|netpoll|",
        "s|google.golang.org/grpc/internal/transport.(*Stream).waitOnHeader,google.golang.org/grpc|grpc|",
        "s|util/admission.(*WorkQueue).Admit,^(util/admission|kv/kvserver/kvadmission)|AC|",
    ]
)

DEFAULT_NAME_FIND_RULES = (
    r"s|kv/kvclient/kvcoord.(*DistSender).Send,^(kv/kvclient/kvcoord|kv\.)|DistSender|"
)

_SUBST_RULE_RE = re.compile(r"^s\|(.*)\|([^|]*)\|$")
_CATEGORY_SUBST_RE = re.compile(r"^s\|([^|]+)\|([^|]*)\|$")
_GENERIC_TITLE_PREFIXES = ("skip:", "trim:", "fold:", "find:", "foldstdlib:")


def _lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def _combine(use_default: bool, default: str, custom: str) -> list[str]:
    return (_lines(default) if use_default else []) + _lines(custom)


def _parse_prefixes(text: str) -> tuple[re.Pattern, ...]:
    """Comma separated regexes, anchored at the start; invalid ones match literally."""
    out = []
    for prefix in (p.strip() for p in text.split(",")):
        if not prefix:
            continue
        regex = compile_pattern(prefix if prefix.startswith("^") else f"^{prefix}")
        if regex is None:
            logger.warning("Invalid trim prefix %r, matching it literally", prefix)
            regex = re.compile("^" + re.escape(prefix))
        out.append(regex)
    return tuple(out)


def parse_title_rule_lines(lines: list[str], kind: str) -> list[TitleRule]:
    """Parse one rule group; ``kind`` is "skip", "trim", "fold" or "find"."""
    rules: list[TitleRule] = []
    for line in lines:
        if line.startswith(_GENERIC_TITLE_PREFIXES):
            rule = parse_title_rule(line)
        elif line.startswith("s|") and kind != "skip":
            rule = None
            if kind == "trim":
                rule = Trim(line)
            elif m := _SUBST_RULE_RE.match(line):
                pattern, _, while_ = m.group(1).partition(",")
                rule = (Fold if kind == "fold" else Find)(pattern, m.group(2), while_ or None)
        elif kind == "skip":
            rule = Skip(line)
        elif kind == "trim":
            rule = Trim(line)
        else:
            rule = None

        if rule is None:
            logger.debug("Dropping unparsable %s rule: %s", kind, line)
            continue
        rules.append(rule)
    return rules


def parse_category_rule_lines(skip_lines: list[str], match_lines: list[str]) -> list[CategoryRule]:
    rules: list[CategoryRule] = [CategorySkip(line) for line in skip_lines]
    for line in match_lines:
        if line.startswith("s|"):
            m = _CATEGORY_SUBST_RE.match(line)
            if m is None:
                logger.debug("Dropping unparsable category rule: %s", line)
                continue
            rules.append(CategoryMatch(m.group(1)))
        elif line.startswith(("match:", "skip:")):
            rule = parse_category_rule(line)
            if rule is not None:
                rules.append(rule)
        else:
            rules.append(CategoryMatch(line))
    return rules


@dataclass(frozen=True)
class Settings:
    """Configuration snapshot consumed by the parser and the collection.

    Attributes:
        function_trim_prefixes: Comma separated regex prefixes removed from
            function names at import.
        file_trim_prefixes: Same, for file paths.
        name_extraction_patterns: Patterns deriving a file's display name
            from its content.
        zip_file_pattern: Regex selecting archive entries to decode.
        app_package: Top-level package that is never standard library.
        version: Incremented by ``evolve``.
    """

    function_trim_prefixes: str = ""
    file_trim_prefixes: str = ""

    use_default_category_skip_rules: bool = True
    custom_category_skip_rules: str = ""
    use_default_category_match_rules: bool = True
    custom_category_match_rules: str = ""
    use_default_name_skip_rules: bool = True
    custom_name_skip_rules: str = ""
    use_default_name_trim_rules: bool = True
    custom_name_trim_rules: str = ""
    use_default_name_fold_rules: bool = True
    custom_name_fold_rules: str = ""
    use_default_name_find_rules: bool = True
    custom_name_find_rules: str = ""

    name_extraction_patterns: tuple[NameExtractionPattern, ...] = DEFAULT_NAME_EXTRACTION_PATTERNS
    zip_file_pattern: str = DEFAULT_ZIP_PATTERN
    app_package: str = "main"
    version: int = 0

    @classmethod
    def without_defaults(cls, **kwargs) -> Settings:
        """Settings with every built-in rule group disabled."""
        flags = {f.name: False for f in dataclasses.fields(cls) if f.name.startswith("use_default_")}
        flags.setdefault("name_extraction_patterns", ())
        return cls(**{**flags, **kwargs})

    def evolve(self, **changes) -> Settings:
        return dataclasses.replace(self, version=self.version + 1, **changes)

    def function_trim_regexes(self) -> tuple[re.Pattern, ...]:
        return _parse_prefixes(self.function_trim_prefixes)

    def file_trim_regexes(self) -> tuple[re.Pattern, ...]:
        return _parse_prefixes(self.file_trim_prefixes)

    def title_rules(self) -> list[TitleRule]:
        rules: list[TitleRule] = []
        for kind, default in (
            ("skip", DEFAULT_NAME_SKIP_RULES),
            ("trim", DEFAULT_NAME_TRIM_RULES),
            ("fold", DEFAULT_NAME_FOLD_RULES),
            ("find", DEFAULT_NAME_FIND_RULES),
        ):
            lines = _combine(
                getattr(self, f"use_default_name_{kind}_rules"),
                default,
                getattr(self, f"custom_name_{kind}_rules"),
            )
            rules.extend(parse_title_rule_lines(lines, kind))
        return rules

    def category_rules(self) -> list[CategoryRule]:
        return parse_category_rule_lines(
            _combine(
                self.use_default_category_skip_rules,
                DEFAULT_CATEGORY_SKIP_RULES,
                self.custom_category_skip_rules,
            ),
            _combine(
                self.use_default_category_match_rules,
                DEFAULT_CATEGORY_MATCH_RULES,
                self.custom_category_match_rules,
            ),
        )

    def zip_regex(self) -> re.Pattern:
        regex = compile_pattern(self.zip_file_pattern)
        if regex is None:
            logger.warning("Invalid zip file pattern %r, using default", self.zip_file_pattern)
            regex = compile_pattern(DEFAULT_ZIP_PATTERN)
        return regex

    def make_parser(self) -> FileParser:
        return FileParser(self.name_extraction_patterns)

    def to_dict(self) -> dict:
        data = dataclasses.asdict(self)
        data["name_extraction_patterns"] = [
            dataclasses.asdict(p) for p in self.name_extraction_patterns
        ]
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: dict) -> Settings:
        """Build settings from an exported mapping; missing keys take defaults.

        Raises:
            SettingsError: on unknown keys or malformed values.
        """
        if not isinstance(data, dict):
            raise SettingsError(f"Settings must be a JSON object, got {type(data).__name__}")
        known = {f.name for f in dataclasses.fields(cls)}
        for key in data:
            if key not in known:
                raise SettingsError(f"Unknown setting: {key}")

        data = dict(data)
        if "name_extraction_patterns" in data:
            try:
                data["name_extraction_patterns"] = tuple(
                    NameExtractionPattern(**p) for p in data["name_extraction_patterns"]
                )
            except TypeError as e:
                raise SettingsError(f"Invalid name extraction pattern: {e}") from e
        return cls(**data)

    @classmethod
    def from_json(cls, text: str) -> Settings:
        try:
            data = json.loads(text)
        except ValueError as e:
            raise SettingsError(f"Invalid settings JSON: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def load(cls, path: str | Path) -> Settings:
        return cls.from_json(Path(path).read_text())
