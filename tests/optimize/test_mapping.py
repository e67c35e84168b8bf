"""
Tests for the source map value types and their revision 3 encoding.
"""

import json

import pytest

from plugins.optimize.errors import ParseError
from plugins.optimize.mapping import (
    Mapping,
    Position,
    Segment,
    Span,
    decode_mappings,
    decode_vlq,
    encode_mappings,
    encode_vlq,
    end_position,
    merge_segments,
)


def seg(start, end, source_index=None, source=None, name_index=None):
    return Segment(Span(Position(*start), Position(*end)), source_index, Position(*source) if source else None, name_index)


class TestVlq:
    """VLQ digits for single values."""

    @pytest.mark.parametrize(
        "value, digits",
        [(0, "A"), (1, "C"), (-1, "D"), (15, "e"), (16, "gB"), (-16, "hB"), (1000, "w+B")],
    )
    def test_known_values(self, value, digits):
        """Test: values encode to the digits every source map consumer expects."""
        assert encode_vlq(value) == digits
        assert decode_vlq(digits) == [value]

    def test_decode_run(self):
        """Test: a run of digits decodes to several values."""
        assert decode_vlq("AAgBC") == [0, 0, 16, 1]

    def test_invalid_character(self):
        """Test: characters outside the base64 alphabet are rejected."""
        with pytest.raises(ParseError):
            decode_vlq("A!")

    def test_truncated_value(self):
        """Test: a trailing continuation digit is rejected."""
        with pytest.raises(ParseError):
            decode_vlq("g")


class TestMappingsString:
    """Encoding and decoding of the `mappings` field."""

    def test_decode_spans(self):
        """Test: decoded segments end at the next segment or at the next line."""
        segments = decode_mappings("AAAA,CAAC;AACA")
        assert segments == [
            seg((0, 0), (0, 1), 0, (0, 0)),
            seg((0, 1), (1, 0), 0, (0, 1)),
            seg((1, 0), (2, 0), 0, (1, 1)),
        ]

    def test_encode_matches_decode(self):
        """Test: segments without gaps encode back to the same string."""
        text = "AAAA,CAAC;AACA;;EACAC"
        assert encode_mappings(decode_mappings(text)) == text

    def test_unmapped_and_named_segments(self):
        """Test: 1-field segments are unmapped and 5-field segments carry a name."""
        segments = decode_mappings("A,CAAAA")
        assert segments[0].source_index is None
        assert segments[1].name_index == 0
        assert segments[1].source == Position(0, 0)

    def test_empty_string(self):
        """Test: an empty mappings string means zero segments."""
        assert decode_mappings("") == []
        assert encode_mappings([]) == ""

    def test_multiline_segment(self):
        """Test: a segment covering several lines gets one entry per line."""
        mapping = Mapping.identity("ab\ncd\n", "x.js")
        assert len(mapping.segments) == 1
        assert encode_mappings(mapping.segments) == "AAAA;AACA"

    def test_gap_after_mapped_segment_is_closed(self):
        """Test: a gap between segments is encoded as unmapped."""
        segments = [seg((0, 0), (0, 2), 0, (0, 0)), seg((0, 5), (1, 0), 0, (0, 9))]
        assert encode_mappings(segments) == "AAAA,E,GAAS"

    @pytest.mark.parametrize("text", ["AA", "AAAAAA", "AAAA,,CAAC"])
    def test_invalid_segments(self, text):
        """Test: segments with 2, 3 or 6 fields, or empty ones, are rejected."""
        with pytest.raises(ParseError):
            decode_mappings(text)

    def test_negative_source_line(self):
        """Test: accumulated values may not go negative."""
        with pytest.raises(ParseError):
            decode_mappings("AADA")


class TestMapping:
    """The Mapping value type."""

    def test_segments_sorted(self):
        """Test: segments are ordered by output position whatever the input order."""
        mapping = Mapping(
            sources=("a.js",),
            segments=[seg((1, 0), (2, 0), 0, (1, 0)), seg((0, 0), (1, 0), 0, (0, 0))],
        )
        assert [s.output.start for s in mapping.segments] == [Position(0, 0), Position(1, 0)]

    def test_resolve_applies_column_delta(self):
        """Test: a position inside a segment is offset from the segment's source."""
        mapping = Mapping(sources=("a.ts",), names=("foo",), segments=[seg((0, 4), (1, 0), 0, (3, 2), 0)])
        assert mapping.resolve(Position(0, 6)) == ("a.ts", Position(3, 4), "foo")
        assert mapping.resolve(Position(0, 1)) is None

    def test_resolve_out_of_range_source(self):
        """Test: a segment pointing at a missing source does not resolve."""
        mapping = Mapping(sources=("a.ts",), segments=[seg((0, 0), (1, 0), 4, (0, 0))])
        assert mapping.resolve(Position(0, 0)) is None

    def test_identity_of_empty_text(self):
        """Test: an empty buffer has no segments."""
        assert Mapping.identity("", "a.js").segments == ()

    def test_end_position_counts_utf16_units(self):
        """Test: astral characters count as two columns."""
        assert end_position("a\n\U0001F600b") == Position(1, 3)

    def test_merge_contiguous_runs(self):
        """Test: segments continuing the same source run are merged."""
        merged = merge_segments(
            [
                seg((0, 0), (0, 2), 0, (0, 0)),
                seg((0, 2), (1, 0), 0, (0, 2)),
                seg((1, 0), (1, 3), 0, (1, 0)),
                seg((1, 3), (1, 4)),
                seg((1, 4), (1, 5)),
                seg((1, 5), (2, 0), 0, (7, 7)),
            ]
        )
        assert merged == [
            seg((0, 0), (1, 3), 0, (0, 0)),
            seg((1, 3), (1, 5)),
            seg((1, 5), (2, 0), 0, (7, 7)),
        ]


class TestJson:
    """Loading and writing the on-disk JSON."""

    def test_round_trip(self):
        """Test: to_json output loads back into an equal mapping."""
        mapping = Mapping(
            sources=("a.ts",),
            sources_content=("let a = 1;\n",),
            names=("a",),
            segments=decode_mappings("AAAA,IAAIA"),
            file="a.js",
        )
        data = json.loads(mapping.to_json())
        assert data["version"] == 3
        assert data["file"] == "a.js"
        assert data["mappings"] == "AAAA,IAAIA"
        assert Mapping.from_json(mapping.to_json()) == mapping

    def test_tolerates_empty_sources_and_mappings(self):
        """Test: zero sources, empty sourcesContent and empty mappings load fine."""
        mapping = Mapping.from_json('{"version":3,"sources":[],"sourcesContent":[],"names":[],"mappings":""}')
        assert mapping.sources == ()
        assert mapping.sources_content is None
        assert mapping.segments == ()

    def test_source_root(self):
        """Test: sourceRoot is folded into each source."""
        mapping = Mapping.from_dict(
            {"version": 3, "sourceRoot": "src/", "sources": ["a.ts", "https://x/b.ts"], "mappings": ""}
        )
        assert mapping.sources == ("src/a.ts", "https://x/b.ts")

    def test_bytes_input(self):
        """Test: raw bytes read from disk are accepted."""
        mapping = Mapping.from_json(b'{"version":3,"sources":["a.ts"],"mappings":"AAAA"}')
        assert mapping.resolve(Position(0, 0)) == ("a.ts", Position(0, 0), None)

    @pytest.mark.parametrize(
        "text",
        [
            "{not json",
            "[]",
            '{"version":2,"sources":[],"mappings":""}',
            '{"version":3,"sources":[1],"mappings":""}',
            '{"version":3,"sources":["a"],"sourcesContent":["x","y"],"mappings":""}',
            '{"version":3,"sources":["a"],"names":"x","mappings":""}',
            '{"version":3,"sources":["a"]}',
            '{"version":3,"sources":["a"],"mappings":"A!"}',
            '{"version":3,"sections":[]}',
        ],
    )
    def test_malformed_input_is_parse_error(self, text):
        """Test: every non-conforming input raises ParseError."""
        with pytest.raises(ParseError):
            Mapping.from_json(text, "a.js.map")

    def test_parse_error_names_file(self):
        """Test: the error message carries the map path."""
        with pytest.raises(ParseError) as info:
            Mapping.from_json("{", "dist/a.js.map")
        assert "dist/a.js.map" in str(info.value)
