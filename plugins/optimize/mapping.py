"""
Source map value types and the revision 3 JSON / base64 VLQ encoding.
"""

import bisect
import json
from dataclasses import dataclass, replace
from functools import cached_property
from typing import Any, Dict, Iterable, Iterator, List, NamedTuple, Optional, Sequence, Tuple, Union

from plugins.optimize.errors import ParseError
from plugins.optimize.paths import is_url


SOURCE_MAP_VERSION = 3

BASE64_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
BASE64_VALUES: Dict[str, int] = {char: index for index, char in enumerate(BASE64_ALPHABET)}

# Each base64 digit carries 5 value bits plus a continuation bit.
VLQ_BASE_SHIFT = 5
VLQ_BASE = 1 << VLQ_BASE_SHIFT
VLQ_BASE_MASK = VLQ_BASE - 1
VLQ_CONTINUATION_BIT = VLQ_BASE


class Position(NamedTuple):
    """Zero-based line and column; the column counts UTF-16 code units."""

    line: int
    column: int


class Span(NamedTuple):
    """Half-open range [start, end) over a text buffer."""

    start: Position
    end: Position

    def contains(self, position: Position) -> bool:
        return self.start <= position < self.end

    @property
    def empty(self) -> bool:
        return self.start >= self.end


ORIGIN = Position(0, 0)


def utf16_length(text: str) -> int:
    """Length of `text` in UTF-16 code units."""
    if text.isascii():
        return len(text)
    return len(text.encode("utf-16-le")) // 2


def end_position(text: str) -> Position:
    """Position just past the last character of `text`."""
    last_newline = text.rfind("\n")
    return Position(text.count("\n"), utf16_length(text[last_newline + 1:]))


def translate(position: Position, origin: Position, target: Position) -> Position:
    """Move `position` from a run starting at `origin` onto a run starting at `target`.

    On the origin's own line the column delta is applied; on later lines the
    column is kept and only the line delta carries over.
    """
    if position.line == origin.line:
        return Position(target.line, target.column + position.column - origin.column)
    return Position(target.line + position.line - origin.line, position.column)


@dataclass(frozen=True)
class Segment:
    """One region of the output buffer and the source position it came from.

    `source_index is None` marks output with no traceable origin.
    """

    output: Span
    source_index: Optional[int] = None
    source: Optional[Position] = None
    name_index: Optional[int] = None

    @property
    def mapped(self) -> bool:
        return self.source_index is not None and self.source is not None

    def source_at(self, position: Position) -> Position:
        """Source position for an output `position` inside this segment."""
        return translate(position, self.output.start, self.source)

    def output_at(self, source_position: Position) -> Position:
        """Inverse of `source_at`."""
        return translate(source_position, self.source, self.output.start)

    def unmapped(self) -> "Segment":
        return Segment(self.output)


@dataclass(frozen=True)
class Mapping:
    """A positional mapping from an output buffer to one or more sources.

    Values are immutable; every transformation returns a new Mapping.
    Segments are kept sorted by their output start.
    """

    sources: Tuple[str, ...] = ()
    sources_content: Optional[Tuple[Optional[str], ...]] = None
    names: Tuple[str, ...] = ()
    segments: Tuple[Segment, ...] = ()
    file: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "sources", tuple(self.sources))
        object.__setattr__(self, "names", tuple(self.names))
        if self.sources_content is not None:
            object.__setattr__(self, "sources_content", tuple(self.sources_content))
        object.__setattr__(self, "segments", tuple(sorted(self.segments, key=lambda s: s.output.start)))

    @classmethod
    def identity(cls, content: str, source: str, file: Optional[str] = None) -> "Mapping":
        """Mapping of `content` onto itself as the single source `source`."""
        segments: Tuple[Segment, ...] = ()
        if content:
            segments = (Segment(Span(ORIGIN, end_position(content)), 0, ORIGIN),)
        return cls(sources=(source,), sources_content=(content,), segments=segments, file=file)

    # -------------------------------
    # Lookup
    # -------------------------------

    @cached_property
    def _starts(self) -> List[Position]:
        return [segment.output.start for segment in self.segments]

    def segment_before(self, position: Position) -> Optional[Segment]:
        """Last non-empty segment starting at or before `position`."""
        index = bisect.bisect_right(self._starts, position) - 1
        while index >= 0:
            segment = self.segments[index]
            if not segment.output.empty:
                return segment
            index -= 1
        return None

    def segment_at(self, position: Position) -> Optional[Segment]:
        """Segment whose output span contains `position`, if any."""
        segment = self.segment_before(position)
        if segment is not None and segment.output.contains(position):
            return segment
        return None

    def overlapping(self, start: Position, end: Position) -> Iterator[Segment]:
        """Non-empty segments intersecting the output range [start, end)."""
        index = max(bisect.bisect_right(self._starts, start) - 1, 0)
        for segment in self.segments[index:]:
            if segment.output.start >= end:
                break
            if segment.output.empty or segment.output.end <= start:
                continue
            yield segment

    def resolve(self, position: Position) -> Optional[Tuple[str, Position, Optional[str]]]:
        """Return `(source, source position, name)` for an output position.

        Unmapped, uncovered or inconsistent positions resolve to None.
        """
        segment = self.segment_at(position)
        if segment is None or not segment.mapped:
            return None
        if not 0 <= segment.source_index < len(self.sources):
            return None
        name = None
        if segment.name_index is not None and 0 <= segment.name_index < len(self.names):
            name = self.names[segment.name_index]
        return self.sources[segment.source_index], segment.source_at(position), name

    def content_for(self, index: int) -> Optional[str]:
        if self.sources_content is None or index >= len(self.sources_content):
            return None
        return self.sources_content[index]

    def with_sources(self, sources: Sequence[str]) -> "Mapping":
        return replace(self, sources=tuple(sources))

    # -------------------------------
    # Standard encoding
    # -------------------------------

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"version": SOURCE_MAP_VERSION}
        if self.file is not None:
            data["file"] = self.file
        data["sources"] = list(self.sources)
        if self.sources_content is not None:
            data["sourcesContent"] = list(self.sources_content)
        data["names"] = list(self.names)
        data["mappings"] = encode_mappings(self.segments)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Any, file_path: Optional[str] = None) -> "Mapping":
        """Validate a decoded JSON object into a Mapping, raising ParseError otherwise."""

        def fail(message: str) -> ParseError:
            return ParseError(message, file_path)

        if not isinstance(data, dict):
            raise fail("source map must be a JSON object")
        if "sections" in data:
            raise fail("indexed source maps are not supported")
        if data.get("version") != SOURCE_MAP_VERSION:
            raise fail(f"unsupported source map version {data.get('version')!r}")

        sources = data.get("sources", [])
        if not isinstance(sources, list) or not all(isinstance(s, str) for s in sources):
            raise fail("'sources' must be a list of strings")

        source_root = data.get("sourceRoot") or ""
        if not isinstance(source_root, str):
            raise fail("'sourceRoot' must be a string")
        if source_root:
            sources = [_apply_source_root(source_root, s) for s in sources]

        content = data.get("sourcesContent")
        if content is not None:
            if not isinstance(content, list) or not all(c is None or isinstance(c, str) for c in content):
                raise fail("'sourcesContent' must be a list of strings or nulls")
            if not content:
                content = None
            elif len(content) != len(sources):
                raise fail(f"'sourcesContent' has {len(content)} entries for {len(sources)} sources")

        names = data.get("names", [])
        if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
            raise fail("'names' must be a list of strings")

        mappings = data.get("mappings")
        if not isinstance(mappings, str):
            raise fail("'mappings' must be a string")

        file = data.get("file")
        if file is not None and not isinstance(file, str):
            raise fail("'file' must be a string")

        try:
            segments = decode_mappings(mappings)
        except ParseError as e:
            raise fail(e.message) from e

        return cls(sources=sources, sources_content=content, names=names, segments=segments, file=file)

    @classmethod
    def from_json(cls, text: Union[str, bytes], file_path: Optional[str] = None) -> "Mapping":
        try:
            data = json.loads(text)
        except (ValueError, UnicodeDecodeError) as e:
            raise ParseError(f"invalid JSON: {e}", file_path) from e
        return cls.from_dict(data, file_path)


def _apply_source_root(root: str, source: str) -> str:
    if is_url(source) or source.startswith("/"):
        return source
    return root.rstrip("/") + "/" + source


def merge_segments(segments: Iterable[Segment]) -> List[Segment]:
    """Collapse adjacent segments whose sources form one contiguous run."""
    merged: List[Segment] = []
    for segment in segments:
        if segment.output.empty:
            continue
        if merged and _continues(merged[-1], segment):
            previous = merged[-1]
            merged[-1] = replace(previous, output=Span(previous.output.start, segment.output.end))
        else:
            merged.append(segment)
    return merged


def _continues(previous: Segment, segment: Segment) -> bool:
    if previous.output.end != segment.output.start:
        return False
    if previous.name_index is not None or segment.name_index is not None:
        return False
    if not previous.mapped or not segment.mapped:
        return not previous.mapped and not segment.mapped
    return (
        previous.source_index == segment.source_index
        and previous.source_at(segment.output.start) == segment.source
    )


# -------------------------------
# VLQ
# -------------------------------


def encode_vlq(value: int) -> str:
    """Encode one signed integer as base64 VLQ digits."""
    vlq = ((-value) << 1) | 1 if value < 0 else value << 1
    digits: List[str] = []
    while True:
        digit = vlq & VLQ_BASE_MASK
        vlq >>= VLQ_BASE_SHIFT
        if vlq:
            digit |= VLQ_CONTINUATION_BIT
        digits.append(BASE64_ALPHABET[digit])
        if not vlq:
            return "".join(digits)


def decode_vlq(text: str) -> List[int]:
    """Decode a run of base64 VLQ digits into the signed integers it holds."""
    values: List[int] = []
    value = 0
    shift = 0
    for char in text:
        digit = BASE64_VALUES.get(char)
        if digit is None:
            raise ParseError(f"invalid base64 character {char!r} in mappings")
        value += (digit & VLQ_BASE_MASK) << shift
        if digit & VLQ_CONTINUATION_BIT:
            shift += VLQ_BASE_SHIFT
            continue
        negative = value & 1
        value >>= 1
        values.append(-value if negative else value)
        value = 0
        shift = 0
    if shift:
        raise ParseError("truncated VLQ value in mappings")
    return values


def _line_entries(segments: Sequence[Segment]) -> Iterator[Tuple[int, int, Optional[Segment], Position]]:
    """Yield one `(line, column, segment, source)` entry per output line a segment covers.

    A `None` segment marks the end of a mapped run that is followed by a gap.
    """
    for index, segment in enumerate(segments):
        start, end = segment.output
        yield start.line, start.column, segment, segment.source
        last_line = end.line if end.column > 0 else end.line - 1
        for line in range(start.line + 1, last_line + 1):
            position = Position(line, 0)
            yield line, 0, segment, segment.source_at(position) if segment.mapped else None

        following = segments[index + 1] if index + 1 < len(segments) else None
        if following is not None and segment.mapped and end.column > 0 and following.output.start > end:
            yield end.line, end.column, None, None


def encode_mappings(segments: Sequence[Segment]) -> str:
    """Serialize segments into the `mappings` string of a revision 3 map.

    The generated column restarts on each line; every other field is relative
    to the previous entry that carried it.
    """
    groups: List[List[str]] = []
    previous_column = 0
    previous_source = 0
    previous_line = 0
    previous_source_column = 0
    previous_name = 0

    ordered = [s for s in segments if not s.output.empty]
    for line, column, segment, source in _line_entries(ordered):
        while len(groups) <= line:
            groups.append([])
            previous_column = 0
        fields = [column - previous_column]
        previous_column = column
        if segment is not None and segment.mapped:
            fields.append(segment.source_index - previous_source)
            fields.append(source.line - previous_line)
            fields.append(source.column - previous_source_column)
            previous_source = segment.source_index
            previous_line = source.line
            previous_source_column = source.column
            if segment.name_index is not None and source == segment.source:
                fields.append(segment.name_index - previous_name)
                previous_name = segment.name_index
        groups[line].append("".join(encode_vlq(value) for value in fields))

    return ";".join(",".join(group) for group in groups)


def decode_mappings(text: str) -> List[Segment]:
    """Parse a `mappings` string into segments with explicit output spans.

    A segment ends where the next one on its line starts, or at the start of
    the following line.
    """
    segments: List[Segment] = []
    if not text:
        return segments

    source_index = 0
    source_line = 0
    source_column = 0
    name_index = 0

    for line, group in enumerate(text.split(";")):
        if not group:
            continue
        column = 0
        entries: List[Tuple[int, Optional[int], Optional[Position], Optional[int]]] = []
        for raw in group.split(","):
            if not raw:
                raise ParseError(f"empty segment on generated line {line}")
            fields = decode_vlq(raw)
            if len(fields) not in (1, 4, 5):
                raise ParseError(f"segment {raw!r} has {len(fields)} fields")
            column += fields[0]
            if column < 0:
                raise ParseError(f"negative generated column on line {line}")
            if len(fields) == 1:
                entries.append((column, None, None, None))
                continue
            source_index += fields[1]
            source_line += fields[2]
            source_column += fields[3]
            if source_index < 0 or source_line < 0 or source_column < 0:
                raise ParseError(f"negative source reference on generated line {line}")
            name = None
            if len(fields) == 5:
                name_index += fields[4]
                if name_index < 0:
                    raise ParseError(f"negative name index on generated line {line}")
                name = name_index
            entries.append((column, source_index, Position(source_line, source_column), name))

        entries.sort(key=lambda entry: entry[0])
        for index, (start_column, index_value, source, name) in enumerate(entries):
            if index + 1 < len(entries):
                end = Position(line, entries[index + 1][0])
            else:
                end = Position(line + 1, 0)
            segments.append(Segment(Span(Position(line, start_column), end), index_value, source, name))

    return segments
