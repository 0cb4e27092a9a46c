"""In-memory model of every loaded goroutine dump.

Hierarchy::

    Category            stacks sharing a derived category name
      Stack             a unique trace (merge key: fingerprint) across files
        FileSection     the part of a stack contributed by one file
          Group         goroutines of one file sharing state and labels
            Goroutine   a single goroutine

Every container carries ``Counts`` which are recomputed by one pass over the
tree after each mutation: goroutine match flags first, then a bottom-up fold.
Callers must treat the returned objects as read-only and change pins and
filters through ``ProfileCollection``.
"""

from __future__ import annotations

import dataclasses
import itertools
import logging
import math
from collections import Counter
from collections.abc import Iterator
from dataclasses import dataclass, field

from stack_nuggets.filter import Filter, FilterError, parse_filter
from stack_nuggets.naming import (
    generate_category_name,
    generate_stack_name,
    generate_stack_searchable_text,
)
from stack_nuggets.parser.types import Frame, ParsedFile, fingerprint
from stack_nuggets.settings import Settings


logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "Category",
    "Counts",
    "FileSection",
    "Goroutine",
    "Group",
    "LoadedFile",
    "ProfileCollection",
    "Stack",
    "sort_states",
]

ID_SEPARATOR = "#"

STATE_SORT_ORDER = (
    "running",
    "runnable",
    "syscall",
    "IO wait",
    "semacquire",
    "select",
    "chan receive",
    "chan send",
    "wait",
)
_STATE_PRIORITY = {state: i for i, state in enumerate(STATE_SORT_ORDER)}


def state_sort_key(state: str) -> tuple[float, str]:
    return _STATE_PRIORITY.get(state, math.inf), state


def sort_states(states) -> list[str]:
    """Known states in a fixed order, then unknown ones alphabetically."""
    return sorted(states, key=state_sort_key)


@dataclass
class Counts:
    """Aggregate counters for a container.

    Attributes:
        total: Goroutines below this node.
        matches: Goroutines currently visible (filter, forced or pinned).
        filter_matches: Goroutines satisfying the filter itself.
        pinned: Goroutines kept visible by a pin on themselves or an ancestor.
        prior_matches: ``matches`` before the latest recompute.
        min_wait, max_wait: Wait bounds over all goroutines with wait data.
        min_matching_wait, max_matching_wait: Same, over visible goroutines.
        visibility_changed: The set of visible goroutines changed in the
            latest recompute.
        states, matching_states: Goroutine counts per state.
    """

    total: int = 0
    matches: int = 0
    filter_matches: int = 0
    pinned: int = 0
    prior_matches: int = 0
    min_wait: float = math.inf
    max_wait: float = -math.inf
    min_matching_wait: float = math.inf
    max_matching_wait: float = -math.inf
    visibility_changed: bool = False
    states: Counter = field(default_factory=Counter)
    matching_states: Counter = field(default_factory=Counter)

    def begin(self) -> None:
        """Reset the tallies for a recompute, keeping ``matches`` as the prior count."""
        self.prior_matches = self.matches
        self.total = self.matches = self.filter_matches = self.pinned = 0
        self.min_wait = self.min_matching_wait = math.inf
        self.max_wait = self.max_matching_wait = -math.inf
        self.visibility_changed = False
        self.states.clear()
        self.matching_states.clear()

    def add_goroutines(
        self,
        n: int,
        state: str,
        wait: float | None,
        matched: bool,
        filter_matched: bool,
        pinned: bool,
    ) -> None:
        self.total += n
        self.states[state] += n
        if wait is not None:
            self.min_wait = min(self.min_wait, wait)
            self.max_wait = max(self.max_wait, wait)
        if matched:
            self.matches += n
            self.matching_states[state] += n
            if wait is not None:
                self.min_matching_wait = min(self.min_matching_wait, wait)
                self.max_matching_wait = max(self.max_matching_wait, wait)
        if filter_matched:
            self.filter_matches += n
        if pinned:
            self.pinned += n

    def add(self, other: Counts) -> None:
        self.total += other.total
        self.matches += other.matches
        self.filter_matches += other.filter_matches
        self.pinned += other.pinned
        self.min_wait = min(self.min_wait, other.min_wait)
        self.max_wait = max(self.max_wait, other.max_wait)
        self.min_matching_wait = min(self.min_matching_wait, other.min_matching_wait)
        self.max_matching_wait = max(self.max_matching_wait, other.max_matching_wait)
        self.visibility_changed |= other.visibility_changed
        self.states.update(other.states)
        self.matching_states.update(other.matching_states)


@dataclass(eq=False)
class LoadedFile:
    """One uploaded dump. ``sources`` keeps the decoded input for re-import."""

    id: str
    name: str
    sources: list[ParsedFile] = field(default_factory=list, repr=False)
    namespaced: bool = False


@dataclass(eq=False)
class Goroutine:
    original_id: str
    state: str
    wait_minutes: float
    file: LoadedFile = field(repr=False)
    group: Group = field(repr=False)
    creator: str = ""
    creator_exists: bool = False
    created: list[str] = field(default_factory=list)
    created_by: Frame | None = None
    pinned: bool = False
    matches: bool = False

    def _display(self, original_id: str) -> str:
        if self.file.namespaced:
            return f"{self.file.name}{ID_SEPARATOR}{original_id}"
        return original_id

    @property
    def id(self) -> str:
        return self._display(self.original_id)

    @property
    def creator_id(self) -> str:
        return self._display(self.creator) if self.creator else ""

    @property
    def created_ids(self) -> list[str]:
        return [self._display(i) for i in self.created]

    @property
    def stack(self) -> Stack:
        return self.group.section.stack


@dataclass(eq=False)
class Group:
    """Goroutines sharing state and labels within one FileSection.

    ``anonymous`` counts goroutines known only by number (legacy aggregated
    dumps and label-less profile samples); they are matched as a block.
    """

    id: str
    state: str
    labels: tuple[str, ...]
    section: FileSection = field(repr=False)
    goroutines: list[Goroutine] = field(default_factory=list)
    anonymous: int = 0
    anonymous_matches: bool = False
    pinned: bool = False
    counts: Counts = field(default_factory=Counts)


@dataclass(eq=False)
class FileSection:
    id: str
    file: LoadedFile = field(repr=False)
    stack: Stack = field(repr=False)
    groups: list[Group] = field(default_factory=list)
    counts: Counts = field(default_factory=Counts)

    @property
    def file_name(self) -> str:
        return self.file.name


@dataclass(eq=False)
class Stack:
    id: str
    trace: tuple[Frame, ...]
    name: str
    searchable_text: str
    category: Category = field(repr=False)
    files: list[FileSection] = field(default_factory=list)
    pinned: bool = False
    counts: Counts = field(default_factory=Counts)


@dataclass(eq=False)
class Category:
    id: str
    name: str
    stacks: list[Stack] = field(default_factory=list)
    pinned: bool = False
    counts: Counts = field(default_factory=Counts)


@dataclass
class _CascadeUndo:
    node: object
    generation: int
    saved: list[tuple[object, bool]]


class ProfileCollection:
    """Merges decoded dumps into a Category/Stack/FileSection/Group tree.

    Example:
        >>> collection = ProfileCollection(Settings())
        >>> collection.add_file(FileParser().parse_string(text, "stacks.txt").file)
        >>> collection.set_filter("wait:10+ pgwire")
        >>> [c.name for c in collection.categories if c.counts.matches]
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self._derive_rules()
        self.clear()

    def _derive_rules(self) -> None:
        self._title_rules = self.settings.title_rules()
        self._category_rules = self.settings.category_rules()
        self._function_trims = self.settings.function_trim_regexes()
        self._file_trims = self.settings.file_trim_regexes()

    def clear(self) -> None:
        """Drop every loaded file, pin and filter."""
        self._files: dict[str, LoadedFile] = {}
        self._categories: dict[str, Category] = {}
        self._stacks: dict[str, Stack] = {}
        self._groups: dict[str, Group] = {}
        self._goroutines: dict[tuple[str, str], Goroutine] = {}
        self._filter = Filter()
        self._file_ids = itertools.count(1)
        self._group_ids = itertools.count(1)
        self._category_ids = itertools.count(1)
        self._pin_generation = 0
        self._cascade_undo: _CascadeUndo | None = None
        self._lost_matches: set[str] = set()

    # -- read access -------------------------------------------------------

    @property
    def categories(self) -> list[Category]:
        return list(self._categories.values())

    @property
    def files(self) -> list[LoadedFile]:
        return list(self._files.values())

    @property
    def current_filter(self) -> Filter:
        return self._filter

    def get_file_names(self) -> list[str]:
        return sorted(self._files)

    def iter_stacks(self) -> Iterator[Stack]:
        for category in self._categories.values():
            yield from category.stacks

    def iter_goroutines(self) -> Iterator[Goroutine]:
        for stack in self.iter_stacks():
            for section in stack.files:
                for group in section.groups:
                    yield from group.goroutines

    def lookup_goroutine(self, goroutine_id: str) -> Goroutine | None:
        if len(self._files) == 1:
            (only,) = self._files.values()
            return self._goroutines.get((only.id, goroutine_id))
        name, sep, original_id = goroutine_id.rpartition(ID_SEPARATOR)
        file = self._files.get(name) if sep else None
        if file is None:
            return None
        return self._goroutines.get((file.id, original_id))

    def get_category_for_goroutine(self, goroutine_id: str) -> Category | None:
        goroutine = self.lookup_goroutine(goroutine_id)
        return goroutine.stack.category if goroutine else None

    def get_stack(self, stack_id: str) -> Stack | None:
        return self._stacks.get(stack_id)

    def get_group(self, group_id: str) -> Group | None:
        return self._groups.get(group_id)

    def get_category(self, category_id: str) -> Category | None:
        return next((c for c in self._categories.values() if c.id == category_id), None)

    def get_file_statistics(self) -> dict[str, dict[str, int]]:
        stats = {name: {"visible": 0, "total": 0} for name in self._files}
        for stack in self.iter_stacks():
            for section in stack.files:
                entry = stats[section.file_name]
                entry["visible"] += section.counts.matches
                entry["total"] += section.counts.total
        return stats

    def get_state_statistics(self) -> dict[str, dict[str, int]]:
        total: Counter = Counter()
        visible: Counter = Counter()
        for category in self._categories.values():
            total.update(category.counts.states)
            visible.update(category.counts.matching_states)
        return {s: {"visible": visible[s], "total": total[s]} for s in sort_states(total)}

    def get_stack_statistics(self) -> dict[str, int]:
        stacks = list(self.iter_stacks())
        return {
            "total": len(stacks),
            "visible": sum(1 for s in stacks if s.counts.matches),
            "total_goroutines": sum(s.counts.total for s in stacks),
            "visible_goroutines": sum(s.counts.matches for s in stacks),
        }

    # -- files -------------------------------------------------------------

    def _unique_name(self, name: str) -> str:
        if name not in self._files:
            return name
        for i in itertools.count(2):
            candidate = f"{name} ({i})"
            if candidate not in self._files:
                return candidate

    def add_file(self, parsed: ParsedFile, custom_name: str | None = None) -> list[FileSection]:
        """Merge a decoded dump into the tree.

        Args:
            parsed: Decoder output.
            custom_name: Display name overriding the extracted or original name.

        Returns:
            The FileSections created for this file, one per touched stack.
        """
        name = self._unique_name(custom_name or parsed.name)
        file = LoadedFile(id=f"f{next(self._file_ids)}", name=name, sources=[parsed])
        self._files[name] = file
        sections = self._import(file, parsed)
        self._update_namespacing()
        self._recompute()
        logger.info(
            "Added %s: %d goroutines in %d stacks", name, parsed.goroutine_count, len(sections)
        )
        return sections

    def _trim(self, text: str, regexes) -> str:
        for regex in regexes:
            if regex.match(text):
                return regex.sub("", text, count=1)
        return text

    def _trim_trace(self, trace: tuple[Frame, ...]) -> tuple[Frame, ...]:
        if not self._function_trims and not self._file_trims:
            return trace
        return tuple(
            Frame(
                self._trim(f.func, self._function_trims),
                self._trim(f.file, self._file_trims),
                f.line,
            )
            for f in trace
        )

    def _new_stack(self, stack_id: str, trace: tuple[Frame, ...]) -> Stack:
        category = self._category_for(
            generate_category_name(trace, self._category_rules)
        )
        stack = Stack(
            id=stack_id,
            trace=trace,
            name=generate_stack_name(trace, self._title_rules, self.settings.app_package),
            searchable_text=generate_stack_searchable_text(trace),
            category=category,
        )
        category.stacks.append(stack)
        self._stacks[stack_id] = stack
        return stack

    def _category_for(self, name: str) -> Category:
        category = self._categories.get(name)
        if category is None:
            category = Category(id=f"cat{next(self._category_ids)}", name=name)
            self._categories[name] = category
        return category

    def _section_for(self, stack: Stack, file: LoadedFile) -> tuple[FileSection, bool]:
        for section in stack.files:
            if section.file is file:
                return section, False
        section = FileSection(id=f"{stack.id}-{file.id}", file=file, stack=stack)
        stack.files.append(section)
        return section, True

    def _group_for(self, section: FileSection, state: str, labels: tuple[str, ...]) -> Group:
        for group in section.groups:
            if group.state == state and group.labels == labels:
                return group
        group = Group(id=f"g{next(self._group_ids)}", state=state, labels=labels, section=section)
        section.groups.append(group)
        self._groups[group.id] = group
        return group

    def _register(self, goroutine: Goroutine) -> None:
        key = (goroutine.file.id, goroutine.original_id)
        if key in self._goroutines:
            logger.warning("Duplicate goroutine id %s in %s", goroutine.original_id, goroutine.file.name)
        self._goroutines[key] = goroutine

    def _import(self, file: LoadedFile, parsed: ParsedFile) -> list[FileSection]:
        sections: list[FileSection] = []
        for parsed_group in parsed.groups:
            trace = self._trim_trace(parsed_group.trace)
            stack_id = "s" + fingerprint(trace)
            stack = self._stacks.get(stack_id) or self._new_stack(stack_id, trace)
            section, created = self._section_for(stack, file)
            if created:
                sections.append(section)

            group = self._group_for(section, parsed_group.state, tuple(sorted(parsed_group.labels)))
            for g in parsed_group.goroutines:
                goroutine = Goroutine(
                    original_id=g.id,
                    state=g.state,
                    wait_minutes=g.wait_minutes,
                    file=file,
                    group=group,
                    creator=g.creator,
                    creator_exists=g.creator_exists,
                    created=list(g.created),
                    created_by=g.created_by,
                )
                group.goroutines.append(goroutine)
                self._register(goroutine)
            group.anonymous += max(parsed_group.count - len(parsed_group.goroutines), 0)
        return sections

    def _update_namespacing(self) -> None:
        namespaced = len(self._files) > 1
        for file in self._files.values():
            file.namespaced = namespaced

    def _drop_empty(self) -> None:
        for stack_id, stack in list(self._stacks.items()):
            if stack.files:
                continue
            del self._stacks[stack_id]
            category = stack.category
            category.stacks.remove(stack)
            self._lost_matches.add(category.id)
            if not category.stacks:
                del self._categories[category.name]

    def remove_file(self, name: str) -> bool:
        file = self._files.pop(name, None)
        if file is None:
            return False

        for stack in list(self._stacks.values()):
            kept = []
            for section in stack.files:
                if section.file is not file:
                    kept.append(section)
                    continue
                if section.counts.matches:
                    self._lost_matches.add(stack.id)
                for group in section.groups:
                    del self._groups[group.id]
                    for goroutine in group.goroutines:
                        self._goroutines.pop((file.id, goroutine.original_id), None)
            stack.files = kept

        self._drop_empty()
        self._update_namespacing()
        self._recompute()
        logger.info("Removed %s", name)
        return True

    def rename_file(self, old: str, new: str, merge_if_target: bool = False) -> bool:
        """Rename a loaded file.

        When ``new`` is already loaded the rename is refused unless
        ``merge_if_target`` is set, in which case the two files are merged
        under ``new``.
        """
        file = self._files.get(old)
        if file is None or not new:
            return False
        if new == old:
            return True

        target = self._files.get(new)
        if target is not None:
            if not merge_if_target:
                logger.warning("Cannot rename %s to %s: name already in use", old, new)
                return False
            self._merge_files(file, target)
            del self._files[old]
        else:
            file.name = new
            self._files = {(new if k == old else k): v for k, v in self._files.items()}

        self._update_namespacing()
        self._recompute()
        logger.info("Renamed %s to %s", old, new)
        return True

    def _merge_files(self, source: LoadedFile, target: LoadedFile) -> None:
        for stack in self._stacks.values():
            section = next((s for s in stack.files if s.file is source), None)
            if section is None:
                continue
            stack.files.remove(section)
            if section.counts.matches:
                self._lost_matches.add(stack.id)
            target_section, _ = self._section_for(stack, target)
            for group in section.groups:
                into = self._group_for(target_section, group.state, group.labels)
                into.pinned |= group.pinned
                into.anonymous += group.anonymous
                for goroutine in group.goroutines:
                    self._goroutines.pop((source.id, goroutine.original_id), None)
                    goroutine.file = target
                    goroutine.group = into
                    into.goroutines.append(goroutine)
                    self._register(goroutine)
                del self._groups[group.id]
        target.sources.extend(source.sources)

    # -- settings ----------------------------------------------------------

    def update_settings(self, settings: Settings) -> None:
        """Switch to a new settings snapshot.

        Names and categories are re-derived in place. Changing the trim
        prefixes changes fingerprints, so stored inputs are re-imported
        instead; goroutine pins survive that.
        """
        old = self.settings
        self.settings = settings
        self._derive_rules()
        if (old.function_trim_prefixes, old.file_trim_prefixes) != (
            settings.function_trim_prefixes,
            settings.file_trim_prefixes,
        ):
            self._reimport()
        else:
            self._rederive_names()
        self._recompute()

    def _rederive_names(self) -> None:
        old_categories = self._categories
        for category in old_categories.values():
            category.stacks = []
        self._categories = {}
        for stack in list(self._stacks.values()):
            stack.name = generate_stack_name(stack.trace, self._title_rules, self.settings.app_package)
            name = generate_category_name(stack.trace, self._category_rules)
            category = self._categories.get(name)
            if category is None:
                category = old_categories.get(name) or Category(
                    id=f"cat{next(self._category_ids)}", name=name
                )
                self._categories[name] = category
            if category is not stack.category:
                self._lost_matches.add(category.id)
                self._lost_matches.add(stack.category.id)
            stack.category = category
            category.stacks.append(stack)

    def _reimport(self) -> None:
        pinned = {(g.file.name, g.original_id) for g in self.iter_goroutines() if g.pinned}
        files = list(self._files.values())
        filter_ = self._filter
        self.clear()
        self._filter = filter_
        for file in files:
            fresh = LoadedFile(id=f"f{next(self._file_ids)}", name=file.name, sources=file.sources)
            self._files[file.name] = fresh
            for parsed in file.sources:
                self._import(fresh, parsed)
        self._update_namespacing()
        for goroutine in self.iter_goroutines():
            goroutine.pinned = (goroutine.file.name, goroutine.original_id) in pinned
        logger.info("Re-imported %d files after trim prefix change", len(files))

    # -- filtering ---------------------------------------------------------

    def set_filter(
        self,
        query: str | Filter,
        states: set[str] | None = None,
        forced_goroutine: str | None = None,
        excluded_files: set[str] | None = None,
    ) -> str | None:
        """Replace the active filter.

        Returns:
            None on success, otherwise a description of why the query was
            rejected; the previous filter then stays active.
        """
        if isinstance(query, Filter):
            new_filter = query
            error = _validate(new_filter)
            if error:
                return error
        else:
            try:
                new_filter = parse_filter(query, states, forced_goroutine, excluded_files)
            except FilterError as e:
                logger.info("Rejected filter %r: %s", query, e)
                return str(e)
        self._filter = new_filter
        self._recompute()
        return None

    def clear_filter(self) -> None:
        self._filter = Filter()
        self._recompute()

    def set_forced_goroutine(self, goroutine_id: str | None) -> None:
        """Keep exactly this goroutine visible regardless of the filter."""
        self._filter = dataclasses.replace(self._filter, forced_goroutine=goroutine_id)
        self._recompute()

    def clear_filter_changes(self) -> None:
        """Acknowledge the latest visibility changes."""
        for node in self._containers():
            node.counts.prior_matches = node.counts.matches
            node.counts.visibility_changed = False

    def _containers(self) -> Iterator[Category | Stack | FileSection | Group]:
        for category in self._categories.values():
            yield category
            for stack in category.stacks:
                yield stack
                for section in stack.files:
                    yield section
                    yield from section.groups

    def _recompute(self) -> None:
        f = self._filter
        text = f.text.lower() if f.text else None
        forced = f.forced_goroutine

        def passes(state: str, wait: float | None, text_hit: bool) -> bool:
            return (
                text_hit
                and f.matches_state(state)
                and f.matches_wait(wait if wait is not None else 0)
            )

        for category in self._categories.values():
            category.counts.begin()
            for stack in category.stacks:
                stack.counts.begin()
                stack_pinned = category.pinned or stack.pinned
                stack_hit = text is None or text in stack.searchable_text
                for section in stack.files:
                    section.counts.begin()
                    excluded = section.file.name in f.excluded_files
                    for group in section.groups:
                        counts = group.counts
                        counts.begin()
                        group_pinned = stack_pinned or group.pinned
                        group_hit = stack_hit or any(text in label.lower() for label in group.labels)
                        changed = False

                        for g in group.goroutines:
                            hit = group_hit or _goroutine_text_hit(g, text)
                            filter_match = not excluded and passes(g.state, g.wait_minutes, hit)
                            pinned = group_pinned or g.pinned
                            matched = (
                                filter_match
                                or (not excluded and forced is not None and g.id == forced)
                                or pinned
                            )
                            changed |= matched != g.matches
                            g.matches = matched
                            counts.add_goroutines(
                                1, g.state, g.wait_minutes, matched, filter_match, pinned
                            )

                        if group.anonymous:
                            hit = group_hit or (text is not None and text in group.state.lower())
                            filter_match = not excluded and passes(group.state, None, hit)
                            matched = filter_match or group_pinned
                            changed |= matched != group.anonymous_matches
                            group.anonymous_matches = matched
                            counts.add_goroutines(
                                group.anonymous, group.state, None, matched, filter_match, group_pinned
                            )

                        counts.visibility_changed = changed
                        section.counts.add(counts)
                    stack.counts.add(section.counts)
                stack.counts.visibility_changed |= stack.id in self._lost_matches
                category.counts.add(stack.counts)
            category.counts.visibility_changed |= category.id in self._lost_matches
        self._lost_matches.clear()

    # -- pins --------------------------------------------------------------

    def _pins_changed(self) -> None:
        self._pin_generation += 1
        self._cascade_undo = None

    def _toggle(self, node) -> bool:
        if node is None:
            return False
        node.pinned = not node.pinned
        self._pins_changed()
        self._recompute()
        return node.pinned

    def toggle_goroutine_pin(self, goroutine_id: str) -> bool:
        return self._toggle(self.lookup_goroutine(goroutine_id))

    def toggle_group_pin(self, group_id: str) -> bool:
        return self._toggle(self._groups.get(group_id))

    def toggle_stack_pin(self, stack_id: str) -> bool:
        return self._toggle(self._stacks.get(stack_id))

    def toggle_category_pin(self, category_id: str) -> bool:
        return self._toggle(self.get_category(category_id))

    def _toggle_cascade(self, node, descendants: list) -> bool:
        undo = self._cascade_undo
        if undo is not None and undo.node is node and undo.generation == self._pin_generation:
            for target, pinned in undo.saved:
                target.pinned = pinned
            self._pins_changed()
        else:
            targets = [node, *descendants]
            saved = [(t, t.pinned) for t in targets]
            pinned = not node.pinned
            for target in targets:
                target.pinned = pinned
            self._pins_changed()
            self._cascade_undo = _CascadeUndo(node, self._pin_generation, saved)
        self._recompute()
        return node.pinned

    def toggle_goroutine_pin_with_children(self, goroutine_id: str) -> bool:
        """Toggle a goroutine and every goroutine it (transitively) created."""
        goroutine = self.lookup_goroutine(goroutine_id)
        if goroutine is None:
            return False
        descendants = []
        seen = {goroutine.original_id}
        pending = list(goroutine.created)
        while pending:
            child_id = pending.pop()
            if child_id in seen:
                continue
            seen.add(child_id)
            child = self._goroutines.get((goroutine.file.id, child_id))
            if child is not None:
                descendants.append(child)
                pending.extend(child.created)
        return self._toggle_cascade(goroutine, descendants)

    def toggle_group_pin_with_children(self, group_id: str) -> bool:
        group = self._groups.get(group_id)
        if group is None:
            return False
        return self._toggle_cascade(group, list(group.goroutines))

    def toggle_stack_pin_with_children(self, stack_id: str) -> bool:
        stack = self._stacks.get(stack_id)
        if stack is None:
            return False
        return self._toggle_cascade(stack, _stack_descendants(stack))

    def toggle_category_pin_with_children(self, category_id: str) -> bool:
        category = self.get_category(category_id)
        if category is None:
            return False
        descendants = []
        for stack in category.stacks:
            descendants.append(stack)
            descendants.extend(_stack_descendants(stack))
        return self._toggle_cascade(category, descendants)

    def _pinnable(self) -> Iterator:
        for category in self._categories.values():
            yield category
            for stack in category.stacks:
                yield stack
                for section in stack.files:
                    for group in section.groups:
                        yield group
                        yield from group.goroutines

    def unpin_all(self) -> None:
        for node in self._pinnable():
            node.pinned = False
        self._pins_changed()
        self._recompute()

    def has_any_pinned(self) -> bool:
        return any(node.pinned for node in self._pinnable())


def _stack_descendants(stack: Stack) -> list:
    out = []
    for section in stack.files:
        for group in section.groups:
            out.append(group)
            out.extend(group.goroutines)
    return out


def _goroutine_text_hit(goroutine: Goroutine, text: str | None) -> bool:
    if text is None:
        return True
    if text in goroutine.id.lower() or text in goroutine.state.lower():
        return True
    created_by = goroutine.created_by
    return created_by is not None and text in str(created_by).lower()


def _validate(f: Filter) -> str | None:
    for value in (f.min_wait, f.max_wait):
        if value is not None and value < 0:
            return "Wait time cannot be negative"
    if f.min_wait is not None and f.max_wait is not None and f.min_wait > f.max_wait:
        return "Minimum wait time cannot be greater than maximum"
    return None
