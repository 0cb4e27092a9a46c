import gzip

import pytest

from stack_nuggets.parser import DEFAULT_NAME_EXTRACTION_PATTERNS, DecodeError, FileParser, Frame
from stack_nuggets.parser.pprof import decode_profile, iter_fields, read_varint


def _varint(n):
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            return bytes(out)


def _int(field, value):
    return _varint(field << 3) + _varint(value)


def _msg(field, payload):
    return _varint(field << 3 | 2) + _varint(len(payload)) + payload


class _ProfileBuilder:
    """Writes just enough of profile.proto for goroutine profiles."""

    def __init__(self):
        self.strings = [""]
        self.functions = []
        self.locations = []
        self.samples = []
        self.comments = []

    def s(self, text):
        if text not in self.strings:
            self.strings.append(text)
        return self.strings.index(text)

    def location(self, func, file="/main.go", line=1):
        function_id = len(self.functions) + 1
        self.functions.append(
            _int(1, function_id) + _int(2, self.s(func)) + _int(4, self.s(file))
        )
        location_id = len(self.locations) + 1
        self.locations.append(_int(1, location_id) + _msg(4, _int(1, function_id) + _int(2, line)))
        return location_id

    def sample(self, location_ids, value=1, **labels):
        body = _msg(1, b"".join(_varint(i) for i in location_ids))
        body += _msg(2, _varint(value))
        for key, label_value in labels.items():
            if isinstance(label_value, int):
                body += _msg(3, _int(1, self.s(key)) + _int(3, label_value))
            else:
                body += _msg(3, _int(1, self.s(key)) + _int(2, self.s(label_value)))
        self.samples.append(body)

    def build(self, compress=True):
        data = _msg(1, _int(1, self.s("goroutine")) + _int(2, self.s("count")))
        data += b"".join(_msg(2, s) for s in self.samples)
        data += b"".join(_msg(4, loc) for loc in self.locations)
        data += b"".join(_msg(5, f) for f in self.functions)
        data += b"".join(_int(13, c) for c in self.comments)
        data += b"".join(_msg(6, s.encode()) for s in self.strings)
        return gzip.compress(data) if compress else data


@pytest.fixture
def builder():
    return _ProfileBuilder()


def _parse(data, patterns=()):
    result = FileParser(patterns).parse_bytes(data, "goroutine.pb.gz")
    assert result.ok, result.error
    return result.file


class TestWire:
    @pytest.mark.parametrize("value", [0, 1, 127, 128, 300, 2**32, 2**63])
    def test_varint(self, value):
        encoded = _varint(value)
        assert read_varint(encoded, 0) == (value, len(encoded))

    def test_truncated_varint(self):
        with pytest.raises(DecodeError, match="truncated varint"):
            read_varint(b"\x80\x80", 0)

    def test_fields(self):
        data = _int(1, 5) + _msg(2, b"abc")
        assert list(iter_fields(data)) == [(1, 0, 5), (2, 2, b"abc")]

    def test_unsupported_wire_type(self):
        with pytest.raises(DecodeError, match="wire type"):
            list(iter_fields(bytes([1 << 3 | 3])))


class TestProfile:
    def test_synthetic_labels_become_goroutines(self, builder):
        stack = [builder.location("main.worker", line=10), builder.location("main.main", line=3)]
        builder.sample(stack, goroutine=1, state="running")
        builder.sample(stack, goroutine=2, state="running", created_by=1, wait_minutes=4)
        parsed = _parse(builder.build())

        (group,) = parsed.groups
        assert group.count == 2
        assert group.state == "running"
        assert group.labels == ()
        assert group.trace == (Frame("main.worker", "/main.go", 10), Frame("main.main", "/main.go", 3))
        g1, g2 = group.goroutines
        assert (g1.id, g1.created) == ("1", ["2"])
        assert (g2.creator, g2.creator_exists, g2.wait_minutes) == ("1", True, 4)

    def test_user_labels_split_groups(self, builder):
        stack = [builder.location("main.worker")]
        builder.sample(stack, goroutine=1, state="select", n="1")
        builder.sample(stack, goroutine=2, state="select", n="2")
        builder.sample(stack, goroutine=3, state="select", n="1")
        parsed = _parse(builder.build())
        assert sorted((g.labels, g.count) for g in parsed.groups) == [
            (("n=1",), 2),
            (("n=2",), 1),
        ]

    def test_state_from_blocking_frames(self, builder):
        stack = [
            builder.location("runtime.gopark"),
            builder.location("runtime.chanrecv1"),
            builder.location("main.consume", line=7),
        ]
        builder.sample(stack, goroutine=1)
        (group,) = _parse(builder.build()).groups
        assert group.state == "chan receive"
        assert group.trace == (Frame("main.consume", "/main.go", 7),)

    def test_explicit_state_keeps_frames(self, builder):
        stack = [builder.location("runtime.selectgo"), builder.location("main.loop")]
        builder.sample(stack, goroutine=1, state="select")
        (group,) = _parse(builder.build()).groups
        assert group.state == "select"
        assert [f.func for f in group.trace] == ["runtime.selectgo", "main.loop"]

    def test_samples_without_ids_are_counted(self, builder):
        builder.sample([builder.location("main.idle")], value=5)
        (group,) = _parse(builder.build()).groups
        assert group.count == 5
        assert group.goroutines == []
        assert group.state == "unknown"

    def test_uncompressed(self, builder):
        builder.sample([builder.location("main.worker")], goroutine=1, state="running")
        assert _parse(builder.build(compress=False)).goroutine_count == 1

    def test_name_from_labels(self, builder):
        builder.sample([builder.location("main.worker")], goroutine=1, n="3")
        parsed = _parse(builder.build(), DEFAULT_NAME_EXTRACTION_PATTERNS)
        assert parsed.name == "n3"

    def test_name_from_comments(self, builder):
        builder.sample([builder.location("main.worker")], goroutine=1)
        builder.comments.append(builder.s("# labels: {\"n\":\"9\"}"))
        parsed = _parse(builder.build(), DEFAULT_NAME_EXTRACTION_PATTERNS)
        assert parsed.name == "n9"


class TestCorruptProfiles:
    def test_truncated(self, builder):
        builder.sample([builder.location("main.worker")], goroutine=1)
        data = builder.build(compress=False)[:-3]
        with pytest.raises(DecodeError, match="truncated"):
            decode_profile(data)
        result = FileParser().parse_bytes(gzip.compress(data), "goroutine.pb.gz")
        assert not result.ok
        assert "Failed to decode profile" in result.error

    def test_bad_gzip(self):
        result = FileParser().parse_bytes(b"\x1f\x8b\x08\x00garbage", "goroutine.pb.gz")
        assert not result.ok
        assert "gzip" in result.error

    def test_string_table_must_start_empty(self):
        with pytest.raises(DecodeError, match="empty string"):
            decode_profile(_msg(6, b"goroutine"))

    def test_unknown_location(self, builder):
        builder.sample([42], goroutine=1)
        result = FileParser().parse_bytes(builder.build(), "goroutine.pb.gz")
        assert not result.ok
        assert "unknown location id 42" in result.error

    @pytest.mark.parametrize(
        "data, message",
        [
            (_int(2, 1) + _msg(6, b""), "sample is not length-delimited"),
            (_int(4, 1) + _msg(6, b""), "location is not length-delimited"),
            (_int(5, 1) + _msg(6, b""), "function is not length-delimited"),
            (_int(1, 1) + _msg(6, b""), "sample type is not length-delimited"),
            (_msg(2, _msg(3, _msg(1, b"k"))) + _msg(6, b""), "label key is not a number"),
            (_msg(2, _int(3, 7)) + _msg(6, b""), "sample label is not length-delimited"),
            (_msg(4, _msg(1, b"1")) + _msg(6, b""), "location id is not a number"),
            (_msg(4, _int(4, 3)) + _msg(6, b""), "location line is not length-delimited"),
            (_msg(5, _msg(2, b"main")) + _msg(6, b""), "function name is not a number"),
        ],
    )
    def test_unexpected_wire_types(self, data, message):
        with pytest.raises(DecodeError, match=message):
            decode_profile(data)

    def test_unexpected_wire_type_fails_only_the_file(self):
        result = FileParser().parse_bytes(_int(2, 1) + b"\xff", "goroutine.pb")
        assert not result.ok
        assert "sample is not length-delimited" in result.error
