import math
from pathlib import Path

import pytest

from stack_nuggets.collection import Counts, ProfileCollection, sort_states
from stack_nuggets.filter import Filter
from stack_nuggets.parser import FileParser
from stack_nuggets.settings import Settings


DATA_DIR = Path(__file__).parent / "data"
STACKS = (DATA_DIR / "stacks.txt").read_text()

LEGACY_DUMP = """goroutine profile: total 4
2 @ 0x1000
#\t0x1000\tmain.worker\t/main.go:10

1 @ 0x1000
# labels {"state":"running"}
#\t0x1000\tmain.worker\t/main.go:10

1 @ 0x2000
#\t0x2000\tio.read\t/io.go:5"""

TWINS = """goroutine 11 [running]:
main.f()
\t/m.go:3

goroutine 12 [running]:
main.f()
\t/m.go:3"""


def _add(collection, name, text=STACKS, custom_name=None):
    result = FileParser().parse_string(text, name)
    assert result.ok, result.error
    return collection.add_file(result.file, custom_name)


def _visible(collection):
    return {g.id for g in collection.iter_goroutines() if g.matches}


def _check_counts(collection):
    for category in collection.categories:
        assert category.counts.total == sum(s.counts.total for s in category.stacks)
        assert category.counts.matches <= category.counts.total
        for stack in category.stacks:
            assert stack.counts.total == sum(f.counts.total for f in stack.files)
            assert stack.counts.matches <= stack.counts.total
            for section in stack.files:
                assert section.counts.total == sum(g.counts.total for g in section.groups)
                for group in section.groups:
                    assert group.counts.total == len(group.goroutines) + group.anonymous
                    assert group.counts.matches <= group.counts.total


@pytest.fixture
def collection():
    c = ProfileCollection()
    _add(c, "stacks.txt")
    return c


class TestMerge:
    def test_identical_traces_share_a_stack(self, collection):
        g1 = collection.lookup_goroutine("1")
        g3 = collection.lookup_goroutine("3")
        assert g1.stack is g3.stack
        assert g1.group is g3.group
        assert collection.lookup_goroutine("2").stack is not g1.stack
        assert collection.get_stack_statistics() == {
            "total": 3,
            "visible": 3,
            "total_goroutines": 4,
            "visible_goroutines": 4,
        }
        _check_counts(collection)

    def test_add_file_returns_new_sections(self):
        c = ProfileCollection()
        sections = _add(c, "a.txt")
        assert len(sections) == 3
        assert all(s.file_name == "a.txt" for s in sections)

    def test_names_and_categories(self, collection):
        names = {s.name for s in collection.iter_stacks()}
        assert names == {"main.function1", "main.worker", "main.consumer"}
        assert [c.name for c in collection.categories] == ["main"]
        assert collection.get_category_for_goroutine("4").name == "main"
        assert collection.get_category_for_goroutine("99") is None

    def test_counts(self, collection):
        (category,) = collection.categories
        assert category.counts.total == 4
        assert category.counts.states == {"running": 2, "select": 1, "chan receive": 1}
        assert (category.counts.min_wait, category.counts.max_wait) == (0, 5)

    def test_legacy_groups_are_counted(self):
        c = ProfileCollection()
        _add(c, "legacy.txt", LEGACY_DUMP)
        assert c.get_stack_statistics()["total_goroutines"] == 4
        _check_counts(c)
        stack = next(s for s in c.iter_stacks() if s.name == "main.worker")
        assert sorted((g.state, g.anonymous) for g in stack.files[0].groups) == [
            ("running", 1),
            ("unknown", 2),
        ]
        assert math.isinf(stack.counts.min_wait)

    def test_stack_id_is_fingerprint_of_trimmed_trace(self):
        a = ProfileCollection(Settings(function_trim_prefixes="main."))
        _add(a, "a.txt")
        b = ProfileCollection()
        _add(b, "b.txt", STACKS.replace("\nmain.", "\n"))
        assert {s.id for s in a.iter_stacks()} == {s.id for s in b.iter_stacks()}

    def test_clear(self, collection):
        collection.clear()
        assert collection.categories == []
        assert collection.get_file_names() == []
        assert collection.lookup_goroutine("1") is None


class TestFilter:
    def test_text_matches_trace_and_creator(self, collection):
        assert collection.set_filter("function1") is None
        assert _visible(collection) == {"1", "2", "3"}
        stats = collection.get_stack_statistics()
        assert (stats["visible"], stats["visible_goroutines"]) == (2, 3)
        _check_counts(collection)

    def test_text_is_case_insensitive(self, collection):
        collection.set_filter("FUNCTION1")
        assert _visible(collection) == {"1", "2", "3"}

    def test_state_and_wait(self, collection):
        collection.set_filter("state:select")
        assert _visible(collection) == {"2"}
        collection.set_filter("wait:5+")
        assert _visible(collection) == {"2"}
        (category,) = collection.categories
        assert (category.counts.min_matching_wait, category.counts.max_matching_wait) == (5, 5)
        collection.set_filter("wait:<4")
        assert _visible(collection) == {"1", "3", "4"}

    def test_text_matches_id_and_state(self, collection):
        collection.set_filter("receive")
        assert _visible(collection) == {"4"}

    def test_legacy_groups_match_as_a_block(self):
        c = ProfileCollection()
        _add(c, "legacy.txt", LEGACY_DUMP)
        c.set_filter("state:running")
        assert c.get_stack_statistics()["visible_goroutines"] == 1
        c.set_filter("worker")
        assert c.get_stack_statistics()["visible_goroutines"] == 3
        c.set_filter("wait:1+")
        assert c.get_stack_statistics()["visible_goroutines"] == 0

    def test_rejected_filter_keeps_previous(self, collection):
        collection.set_filter("function1")
        error = collection.set_filter("wait:5-3")
        assert "Minimum" in error
        assert collection.current_filter.text == "function1"
        assert _visible(collection) == {"1", "2", "3"}
        assert collection.set_filter(Filter(min_wait=5, max_wait=3)) is not None

    def test_structured_filter(self, collection):
        assert collection.set_filter(Filter(states=frozenset({"running"}))) is None
        assert _visible(collection) == {"1", "3"}

    def test_clear_filter(self, collection):
        collection.set_filter("function1")
        collection.clear_filter()
        assert _visible(collection) == {"1", "2", "3", "4"}

    def test_forced_goroutine(self, collection):
        collection.set_filter("function1", forced_goroutine="4")
        assert _visible(collection) == {"1", "2", "3", "4"}
        assert collection.lookup_goroutine("4").stack.counts.filter_matches == 0
        collection.set_forced_goroutine(None)
        assert _visible(collection) == {"1", "2", "3"}
        collection.set_forced_goroutine("4")
        assert "4" in _visible(collection)

    def test_state_statistics(self, collection):
        collection.set_filter("function1")
        stats = collection.get_state_statistics()
        assert list(stats) == ["running", "select", "chan receive"]
        assert stats["chan receive"] == {"visible": 0, "total": 1}
        assert stats["running"] == {"visible": 2, "total": 2}


class TestVisibilityChanged:
    def test_same_count_different_subset(self):
        c = ProfileCollection()
        _add(c, "twins.txt", TWINS)
        (stack,) = c.iter_stacks()

        c.set_filter("11")
        assert stack.counts.matches == 1
        assert stack.counts.visibility_changed

        c.set_filter("12")
        assert stack.counts.matches == 1
        assert stack.counts.prior_matches == 1
        assert stack.counts.visibility_changed
        assert stack.category.counts.visibility_changed

        c.set_filter("12")
        assert not stack.counts.visibility_changed

    def test_clear_filter_changes(self):
        c = ProfileCollection()
        _add(c, "twins.txt", TWINS)
        c.set_filter("11")
        c.clear_filter_changes()
        (stack,) = c.iter_stacks()
        assert not stack.counts.visibility_changed
        assert stack.counts.prior_matches == stack.counts.matches

    def test_file_removal_flags_surviving_category(self):
        c = ProfileCollection()
        _add(c, "a.txt")
        _add(c, "legacy.txt", LEGACY_DUMP)
        assert sorted(cat.name for cat in c.categories) == ["io", "main"]
        c.clear_filter_changes()

        assert c.remove_file("legacy.txt")
        (category,) = c.categories
        assert category.name == "main"
        assert category.counts.visibility_changed


class TestPins:
    def test_pin_overrides_filter(self, collection):
        collection.set_filter("function1")
        assert collection.toggle_goroutine_pin("4") is True
        g4 = collection.lookup_goroutine("4")
        assert g4.matches
        assert g4.stack.counts.pinned == 1
        assert g4.stack.counts.filter_matches == 0
        assert collection.toggle_goroutine_pin("4") is False
        assert not g4.matches

    def test_pinned_category_matches_total(self, collection):
        collection.set_filter("nothing-matches-this")
        (category,) = collection.categories
        assert collection.toggle_category_pin(category.id) is True
        assert category.counts.matches == category.counts.total == 4
        _check_counts(collection)

    def test_pinned_group_and_stack(self, collection):
        collection.set_filter("nothing-matches-this")
        g2 = collection.lookup_goroutine("2")
        assert collection.toggle_group_pin(g2.group.id) is True
        assert _visible(collection) == {"2"}
        g1 = collection.lookup_goroutine("1")
        assert collection.toggle_stack_pin(g1.stack.id) is True
        assert _visible(collection) == {"1", "2", "3"}

    def test_stack_cascade_round_trip(self, collection):
        collection.toggle_goroutine_pin("4")
        g4 = collection.lookup_goroutine("4")
        stack = g4.stack

        assert collection.toggle_stack_pin_with_children(stack.id) is True
        assert stack.pinned and g4.group.pinned and g4.pinned

        assert collection.toggle_stack_pin_with_children(stack.id) is False
        assert not stack.pinned
        assert not g4.group.pinned
        assert g4.pinned

    def test_cascade_after_other_pin_change(self, collection):
        collection.toggle_goroutine_pin("4")
        g4 = collection.lookup_goroutine("4")
        collection.toggle_stack_pin_with_children(g4.stack.id)
        collection.toggle_goroutine_pin("1")
        assert collection.toggle_stack_pin_with_children(g4.stack.id) is False
        assert not g4.pinned

    def test_category_cascade(self, collection):
        (category,) = collection.categories
        assert collection.toggle_category_pin_with_children(category.id) is True
        assert all(s.pinned for s in category.stacks)
        assert all(g.pinned for g in collection.iter_goroutines())
        assert collection.toggle_category_pin_with_children(category.id) is False
        assert not collection.has_any_pinned()

    def test_group_cascade(self, collection):
        group = collection.lookup_goroutine("1").group
        assert collection.toggle_group_pin_with_children(group.id) is True
        assert [g.pinned for g in group.goroutines] == [True, True]

    def test_goroutine_cascade_follows_created(self, collection):
        assert collection.toggle_goroutine_pin_with_children("1") is True
        pinned = {g.id for g in collection.iter_goroutines() if g.pinned}
        assert pinned == {"1", "2", "4"}
        assert collection.toggle_goroutine_pin_with_children("1") is False
        assert not collection.has_any_pinned()

    @pytest.mark.parametrize(
        "method",
        [
            "toggle_goroutine_pin",
            "toggle_group_pin",
            "toggle_stack_pin",
            "toggle_category_pin",
            "toggle_goroutine_pin_with_children",
            "toggle_group_pin_with_children",
            "toggle_stack_pin_with_children",
            "toggle_category_pin_with_children",
        ],
    )
    def test_unknown_ids(self, collection, method):
        assert getattr(collection, method)("nope") is False

    def test_unpin_all(self, collection):
        collection.toggle_goroutine_pin("1")
        collection.toggle_stack_pin(collection.lookup_goroutine("2").stack.id)
        assert collection.has_any_pinned()
        collection.unpin_all()
        assert not collection.has_any_pinned()


class TestFiles:
    def test_ids_are_namespaced_with_several_files(self):
        c = ProfileCollection()
        _add(c, "a.txt")
        _add(c, "b.txt")
        g = c.lookup_goroutine("b.txt#2")
        assert g.id == "b.txt#2"
        assert g.creator_id == "b.txt#1"
        assert c.lookup_goroutine("1") is None
        assert c.lookup_goroutine("c.txt#1") is None
        assert [s.file_name for s in g.stack.files] == ["a.txt", "b.txt"]
        assert c.get_stack_statistics()["total"] == 3
        _check_counts(c)

        assert c.remove_file("a.txt")
        assert g.id == "2"
        assert c.lookup_goroutine("2") is g
        assert c.get_file_names() == ["b.txt"]
        _check_counts(c)

    def test_remove_unknown_file(self, collection):
        assert not collection.remove_file("missing.txt")

    def test_remove_last_file_drops_everything(self, collection):
        assert collection.remove_file("stacks.txt")
        assert collection.categories == []
        assert collection.get_stack_statistics()["total"] == 0

    def test_duplicate_names(self):
        c = ProfileCollection()
        _add(c, "a.txt")
        _add(c, "a.txt")
        assert c.get_file_names() == ["a.txt", "a.txt (2)"]

    def test_custom_name(self):
        c = ProfileCollection()
        _add(c, "a.txt", custom_name="node1")
        assert c.get_file_names() == ["node1"]

    def test_excluded_files(self):
        c = ProfileCollection()
        _add(c, "a.txt")
        _add(c, "b.txt")
        c.set_filter("", excluded_files={"a.txt"})
        assert c.get_file_statistics() == {
            "a.txt": {"visible": 0, "total": 4},
            "b.txt": {"visible": 4, "total": 4},
        }

    def test_rename(self):
        c = ProfileCollection()
        _add(c, "a.txt")
        _add(c, "b.txt")
        assert c.rename_file("a.txt", "c.txt")
        assert c.get_file_names() == ["b.txt", "c.txt"]
        assert c.lookup_goroutine("c.txt#1") is not None
        assert not c.rename_file("c.txt", "b.txt")
        assert not c.rename_file("missing.txt", "d.txt")
        assert c.get_file_names() == ["b.txt", "c.txt"]

    def test_rename_merges_into_existing(self):
        c = ProfileCollection()
        _add(c, "a.txt")
        _add(c, "b.txt")
        assert c.rename_file("a.txt", "b.txt", merge_if_target=True)
        assert c.get_file_names() == ["b.txt"]
        assert c.get_file_statistics() == {"b.txt": {"visible": 8, "total": 8}}
        g1 = c.lookup_goroutine("1")
        assert g1.id == "1"
        (section,) = g1.stack.files
        (group,) = section.groups
        assert len(group.goroutines) == 4
        _check_counts(c)


class TestSettings:
    def test_rederive_categories(self):
        c = ProfileCollection(Settings.without_defaults())
        _add(c, "stacks.txt")
        assert sorted(cat.name for cat in c.categories) == ["main.consumer", "main.main", "main.worker"]
        stacks = {s.id: s for s in c.iter_stacks()}

        c.update_settings(c.settings.evolve(custom_category_match_rules=r"^(main)\."))
        (category,) = c.categories
        assert category.name == "main"
        assert len(category.stacks) == 3
        assert category.counts.total == 4
        assert {s.id: s for s in c.iter_stacks()} == stacks

    def test_rederive_keeps_prior_matches(self):
        settings = Settings.without_defaults(custom_category_match_rules=r"^(main)\.")
        c = ProfileCollection(settings)
        _add(c, "stacks.txt")
        (main,) = c.categories
        c.clear_filter_changes()

        c.update_settings(c.settings.evolve(custom_name_trim_rules="main."))
        assert c.categories == [main]
        assert main.counts.prior_matches == 4
        assert not main.counts.visibility_changed

        c.update_settings(c.settings.evolve(custom_category_match_rules=r"^(main)\.(main|worker)"))
        by_name = {cat.name: cat for cat in c.categories}
        assert by_name["main"] is main
        assert main.counts.prior_matches == 4
        assert main.counts.matches == 3
        assert main.counts.visibility_changed
        assert by_name["main.consumer"].counts.matches == 1
        assert by_name["main.consumer"].counts.visibility_changed
        _check_counts(c)

    def test_rederive_names(self, collection):
        collection.update_settings(collection.settings.evolve(custom_name_trim_rules="main."))
        assert {s.name for s in collection.iter_stacks()} == {"function1", "worker", "consumer"}

    def test_category_pin_survives_rederive(self, collection):
        (category,) = collection.categories
        collection.toggle_category_pin(category.id)
        collection.update_settings(collection.settings.evolve(custom_name_trim_rules="main."))
        assert collection.categories[0].pinned

    def test_trim_prefix_change_reimports(self, collection):
        collection.toggle_goroutine_pin("4")
        collection.set_filter("consumer")
        collection.update_settings(collection.settings.evolve(function_trim_prefixes="main."))

        g4 = collection.lookup_goroutine("4")
        assert g4.pinned
        assert g4.stack.trace[0].func == "consumer"
        assert {s.name for s in collection.iter_stacks()} == {"function1", "worker", "consumer"}
        assert collection.current_filter.text == "consumer"
        assert _visible(collection) == {"4"}
        _check_counts(collection)


def test_counts_begin_keeps_prior_matches():
    counts = Counts()
    counts.add_goroutines(2, "select", 5.0, True, True, False)
    counts.visibility_changed = True
    counts.begin()
    assert counts.prior_matches == 2
    assert (counts.total, counts.matches, counts.visibility_changed) == (0, 0, False)
    assert (counts.min_wait, counts.max_matching_wait) == (math.inf, -math.inf)
    assert not counts.states and not counts.matching_states


@pytest.mark.parametrize(
    "states, expected",
    [
        (["select", "running", "chan receive"], ["running", "select", "chan receive"]),
        (["zzz", "wait", "aaa", "runnable"], ["runnable", "wait", "aaa", "zzz"]),
    ],
)
def test_sort_states(states, expected):
    assert sort_states(states) == expected
