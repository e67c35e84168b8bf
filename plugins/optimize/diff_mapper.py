"""
Synthesize a source map from the text of an asset before and after a
transformation, for minifiers (jsmin, csscompressor, htmlmin) that do not
track positions themselves.
"""

import bisect
import difflib
import logging
import re
from typing import Dict, List, Optional, Sequence, Tuple

from plugins.optimize.errors import DiffFailure
from plugins.optimize.mapping import Mapping, Position, Segment, Span

logger = logging.getLogger(f"mkdocs.plugins.{__name__}")

LINE_RE = re.compile(r"[^\n]*\n|[^\n]+")

# Words, whitespace runs and single punctuation characters. Together they tile the text.
TOKEN_RE = re.compile(r"\w+|\s+|[^\w\s]")

# Changed token blocks no longer than this (per side) are re-aligned character by character.
CHAR_DIFF_LIMIT = 200

# Above this many units (both sides together) difflib may junk popular units.
AUTOJUNK_LIMIT = 1000

# Changed token blocks larger than this (both sides together) are split on
# tokens that occur once on each side, or cut into windows, before alignment.
BLOCK_LIMIT = 300

# How many times a changed token block is re-split on its own unique tokens.
MAX_ANCHOR_DEPTH = 8

LINES, TOKENS, CHARS = range(3)

# (tag, before start, before end, after start, after end) as character offsets.
Opcode = Tuple[str, int, int, int, int]


class _OffsetIndex:
    """Converts character offsets of one buffer into (line, UTF-16 column) positions."""

    def __init__(self, text: str):
        self.text = text
        self.line_starts: List[int] = [0] + [m.end() for m in re.finditer("\n", text)]
        self._ascii: List[bool] = [
            text[start:end].isascii()
            for start, end in zip(self.line_starts, self.line_starts[1:] + [len(text)])
        ]
        self._wide: Dict[int, List[int]] = {}

    def position(self, offset: int) -> Position:
        line = bisect.bisect_right(self.line_starts, offset) - 1
        column = offset - self.line_starts[line]
        if not self._ascii[line]:
            column = self._units(line)[column]
        return Position(line, column)

    def _units(self, line: int) -> List[int]:
        units = self._wide.get(line)
        if units is None:
            start = self.line_starts[line]
            end = self.line_starts[line + 1] if line + 1 < len(self.line_starts) else len(self.text)
            units = [0]
            for char in self.text[start:end]:
                units.append(units[-1] + (2 if ord(char) > 0xFFFF else 1))
            self._wide[line] = units
        return units


def _check_text(value, label: str, file_path: Optional[str]) -> None:
    if not isinstance(value, str):
        raise DiffFailure(f"{label} content is {type(value).__name__}, expected text", file_path)
    if "\x00" in value:
        raise DiffFailure(f"{label} content looks binary (contains NUL)", file_path)


def _offsets(units: Sequence[str], base: int) -> List[int]:
    offsets = [base]
    for unit in units:
        offsets.append(offsets[-1] + len(unit))
    return offsets


def _unique_positions(units: Sequence[str]) -> Dict[str, int]:
    """Index of every non-blank unit that occurs exactly once in `units`."""
    positions: Dict[str, int] = {}
    for index, unit in enumerate(units):
        if not unit.isspace():
            positions[unit] = -1 if unit in positions else index
    return {unit: index for unit, index in positions.items() if index >= 0}


def _anchors(before_units: Sequence[str], after_units: Sequence[str]) -> List[Tuple[int, int]]:
    """Pairs of units unique on both sides, kept in the same order on both sides.

    Returns the longest such chain (patience sorting over the after-side
    indexes), ordered by position.
    """
    after_unique = _unique_positions(after_units)
    pairs = sorted(
        (index, after_unique[unit]) for unit, index in _unique_positions(before_units).items() if unit in after_unique
    )

    tails: List[int] = []
    tail_values: List[int] = []
    previous: List[int] = [-1] * len(pairs)
    for index, (_, after_index) in enumerate(pairs):
        length = bisect.bisect_left(tail_values, after_index)
        if length:
            previous[index] = tails[length - 1]
        if length == len(tails):
            tails.append(index)
            tail_values.append(after_index)
        else:
            tails[length] = index
            tail_values[length] = after_index

    chain: List[Tuple[int, int]] = []
    index = tails[-1] if tails else -1
    while index >= 0:
        chain.append(pairs[index])
        index = previous[index]
    chain.reverse()
    return chain


def _merge_opcodes(opcodes: List[Opcode]) -> List[Opcode]:
    """Join neighbouring runs of the same kind (retained vs. changed)."""
    merged: List[Opcode] = []
    for op in opcodes:
        if merged:
            tag, b1, b2, a1, a2 = merged[-1]
            if (tag == "equal") == (op[0] == "equal") and b2 == op[1] and a2 == op[3]:
                b2, a2 = op[2], op[4]
                if tag != "equal":
                    tag = "replace" if b1 < b2 and a1 < a2 else ("insert" if a1 < a2 else "delete")
                merged[-1] = (tag, b1, b2, a1, a2)
                continue
        merged.append(op)
    return merged


class TextDiffMapper:
    """Aligns two buffers and turns the alignment into segments.

    Alignment runs over lines first, then over lexical tokens inside changed
    line blocks, then over characters inside small changed token blocks.
    Large changed token blocks are first cut at tokens that occur once on each
    side, and cut into windows when there are none, so cost stays bounded when
    a minifier rewrites every line.
    Retained text maps onto source #0 (the "before" buffer); inserted text is
    unmapped; deleted text produces nothing.
    """

    def __init__(
        self,
        char_diff_limit: int = CHAR_DIFF_LIMIT,
        autojunk_limit: int = AUTOJUNK_LIMIT,
        block_limit: int = BLOCK_LIMIT,
    ):
        self.char_diff_limit = char_diff_limit
        self.autojunk_limit = autojunk_limit
        self.block_limit = max(block_limit, 2)

    def synthesize(
        self,
        before: str,
        after: str,
        source_name: str = "",
        file: Optional[str] = None,
        file_path: Optional[str] = None,
    ) -> Mapping:
        _check_text(before, "before", file_path)
        _check_text(after, "after", file_path)

        if before == after:
            return Mapping.identity(after, source_name, file)

        opcodes = self.align(before, after)
        before_index = _OffsetIndex(before)
        after_index = _OffsetIndex(after)

        segments: List[Segment] = []
        for tag, b1, _b2, a1, a2 in opcodes:
            if a1 == a2:
                continue
            span = Span(after_index.position(a1), after_index.position(a2))
            if tag == "equal":
                segments.append(Segment(span, 0, before_index.position(b1)))
            else:
                segments.append(Segment(span))

        logger.debug("[optimize] synthesized %d segments for %s", len(segments), file_path or source_name)
        return Mapping(sources=(source_name,), sources_content=(before,), segments=segments, file=file)

    def align(self, before: str, after: str) -> List[Opcode]:
        """Edit script between `before` and `after` as character-offset opcodes."""
        opcodes: List[Opcode] = []
        self._align(LINE_RE.findall(before), LINE_RE.findall(after), 0, 0, LINES, opcodes)
        return _merge_opcodes(opcodes)

    def _align(
        self,
        before_units: List[str],
        after_units: List[str],
        before_base: int,
        after_base: int,
        level: int,
        out: List[Opcode],
    ) -> None:
        autojunk = len(before_units) + len(after_units) > self.autojunk_limit
        matcher = difflib.SequenceMatcher(None, before_units, after_units, autojunk=autojunk)
        before_offsets = _offsets(before_units, before_base)
        after_offsets = _offsets(after_units, after_base)

        for tag, i1, i2, j1, j2 in matcher.get_opcodes():
            b1, b2 = before_offsets[i1], before_offsets[i2]
            a1, a2 = after_offsets[j1], after_offsets[j2]
            if tag == "replace" and level == LINES:
                self._align_tokens(
                    TOKEN_RE.findall("".join(before_units[i1:i2])),
                    TOKEN_RE.findall("".join(after_units[j1:j2])),
                    b1, a1, out,
                )
            elif (
                tag == "replace"
                and level == TOKENS
                and b2 - b1 <= self.char_diff_limit
                and a2 - a1 <= self.char_diff_limit
            ):
                self._align(
                    list("".join(before_units[i1:i2])),
                    list("".join(after_units[j1:j2])),
                    b1, a1, CHARS, out,
                )
            else:
                out.append((tag, b1, b2, a1, a2))

    def _align_tokens(
        self,
        before_units: List[str],
        after_units: List[str],
        before_base: int,
        after_base: int,
        out: List[Opcode],
        depth: int = 0,
    ) -> None:
        if not before_units or not after_units or len(before_units) + len(after_units) <= self.block_limit:
            self._align(before_units, after_units, before_base, after_base, TOKENS, out)
            return

        before_offsets = _offsets(before_units, before_base)
        after_offsets = _offsets(after_units, after_base)
        anchors = _anchors(before_units, after_units) if depth < MAX_ANCHOR_DEPTH else []
        if not anchors:
            self._align_windows(before_units, after_units, before_offsets, after_offsets, out)
            return

        i0 = j0 = 0
        for i, j in anchors + [(len(before_units), len(after_units))]:
            if i0 < i or j0 < j:
                self._align_tokens(
                    before_units[i0:i], after_units[j0:j], before_offsets[i0], after_offsets[j0], out, depth + 1
                )
            if i < len(before_units):
                out.append(("equal", before_offsets[i], before_offsets[i + 1], after_offsets[j], after_offsets[j + 1]))
            i0, j0 = i + 1, j + 1

    def _align_windows(
        self,
        before_units: List[str],
        after_units: List[str],
        before_offsets: List[int],
        after_offsets: List[int],
        out: List[Opcode],
    ) -> None:
        """Align matching fractions of both sides, one window at a time."""
        window = self.block_limit // 2
        pieces = -(-max(len(before_units), len(after_units)) // window)
        for piece in range(pieces):
            i1 = len(before_units) * piece // pieces
            i2 = len(before_units) * (piece + 1) // pieces
            j1 = len(after_units) * piece // pieces
            j2 = len(after_units) * (piece + 1) // pieces
            self._align(before_units[i1:i2], after_units[j1:j2], before_offsets[i1], after_offsets[j1], TOKENS, out)


def synthesize(before: str, after: str, source_name: str = "", file: Optional[str] = None) -> Mapping:
    """Shortcut for `TextDiffMapper().synthesize(...)`."""
    return TextDiffMapper().synthesize(before, after, source_name, file)
