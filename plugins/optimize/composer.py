"""
Compose a chain of source maps (newest transformation first) into one map from
the final output straight to the original authored sources.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from plugins.optimize.errors import ComposeInconsistency
from plugins.optimize.mapping import Mapping, Position, Segment, Span, merge_segments

logger = logging.getLogger(f"mkdocs.plugins.{__name__}")


@dataclass(frozen=True)
class Composition:
    """A composed mapping plus whatever could not be resolved on the way.

    `resolved` is only true when no step degraded.
    """

    mapping: Mapping
    diagnostics: Tuple[str, ...] = ()

    @property
    def resolved(self) -> bool:
        return not self.diagnostics


class _Names:
    """Builds the `names` table of a composed mapping."""

    def __init__(self, intern: Optional[Callable[[str], str]]):
        self._intern = intern
        self._ids: Dict[str, int] = {}
        self.values: List[str] = []

    def index(self, name: Optional[str]) -> Optional[int]:
        if name is None:
            return None
        if self._intern is not None:
            name = self._intern(name)
        if name not in self._ids:
            self._ids[name] = len(self.values)
            self.values.append(name)
        return self._ids[name]


class MappingComposer:
    """Resolves every segment of `chain[0]` through the following mappings.

    Each outer segment is split at the boundaries of the next mapping's
    segments. Positions that fall between segments of the next mapping snap to
    the source start of the nearest preceding segment. Positions before any
    segment stay unmapped. References to sources or names a mapping does not
    have also become unmapped, and are reported as inconsistencies; with
    `strict` set they raise ComposeInconsistency instead.
    """

    def __init__(
        self,
        merge: bool = True,
        intern: Optional[Callable[[str], str]] = None,
        strict: bool = False,
    ):
        self.merge = merge
        self.intern = intern
        self.strict = strict

    def compose(self, chain: Sequence[Optional[Mapping]], label: str = "") -> Composition:
        if not chain or chain[0] is None:
            raise ValueError("cannot compose an empty chain")

        diagnostics: List[str] = []
        result = chain[0]
        for depth, inner in enumerate(chain[1:], start=1):
            if not isinstance(inner, Mapping) or not inner.segments:
                state = "absent" if inner is None else ("malformed" if not isinstance(inner, Mapping) else "empty")
                message = f"mapping #{depth} in the chain is {state}; kept the unresolved mapping"
                logger.info("[optimize] %s%s", f"{label}: " if label else "", message)
                diagnostics.append(message)
                break
            result = self._compose_pair(result, inner, diagnostics, label)
        return Composition(result, tuple(diagnostics))

    def _compose_pair(self, outer: Mapping, inner: Mapping, diagnostics: List[str], label: str) -> Mapping:
        names = _Names(self.intern)
        segments: List[Segment] = []
        inconsistent = 0

        for segment in outer.segments:
            if segment.output.empty:
                continue
            if not segment.mapped:
                segments.append(segment)
                continue
            if not 0 <= segment.source_index < len(outer.sources):
                inconsistent += 1
                segments.append(segment.unmapped())
                continue

            outer_name = None
            if segment.name_index is not None:
                if 0 <= segment.name_index < len(outer.names):
                    outer_name = outer.names[segment.name_index]
                else:
                    inconsistent += 1

            pieces, failures = self._resolve(segment, outer_name, inner, names)
            segments.extend(pieces)
            inconsistent += failures

        if inconsistent:
            message = f"{inconsistent} segment(s) referenced sources or names missing from their mapping"
            if self.strict:
                raise ComposeInconsistency(message, label or None)
            logger.info("[optimize] %s%s", f"{label}: " if label else "", message)
            diagnostics.append(message)

        if self.merge:
            segments = merge_segments(segments)

        return Mapping(
            sources=inner.sources,
            sources_content=_sources_content(outer, inner),
            names=names.values,
            segments=segments,
            file=outer.file,
        )

    def _resolve(
        self, segment: Segment, outer_name: Optional[str], inner: Mapping, names: _Names
    ) -> Tuple[List[Segment], int]:
        start = segment.source
        end = segment.source_at(segment.output.end)
        pieces: List[Segment] = []
        failures = 0

        def emit(piece_start: Position, piece_end: Position, source_index, source, name) -> None:
            span = Span(segment.output_at(piece_start), segment.output_at(piece_end))
            if source_index is None:
                pieces.append(Segment(span))
            else:
                pieces.append(Segment(span, source_index, source, names.index(name)))

        def outer_name_at(piece_start: Position) -> Optional[str]:
            return outer_name if piece_start == start else None

        def gap(gap_start: Position, gap_end: Position) -> None:
            preceding = inner.segment_before(gap_start)
            if preceding is None or not preceding.mapped or not 0 <= preceding.source_index < len(inner.sources):
                emit(gap_start, gap_end, None, None, None)
            else:
                emit(gap_start, gap_end, preceding.source_index, preceding.source, outer_name_at(gap_start))

        cursor = start
        for candidate in inner.overlapping(start, end):
            if cursor < candidate.output.start:
                gap(cursor, candidate.output.start)
                cursor = candidate.output.start
            piece_end = min(end, candidate.output.end)
            if not candidate.mapped:
                emit(cursor, piece_end, None, None, None)
            elif not 0 <= candidate.source_index < len(inner.sources):
                failures += 1
                emit(cursor, piece_end, None, None, None)
            else:
                name = None
                if candidate.name_index is not None and cursor == candidate.output.start:
                    if 0 <= candidate.name_index < len(inner.names):
                        name = inner.names[candidate.name_index]
                    else:
                        failures += 1
                emit(cursor, piece_end, candidate.source_index, candidate.source_at(cursor), name or outer_name_at(cursor))
            cursor = piece_end

        if cursor < end:
            gap(cursor, end)
        return pieces, failures


def _sources_content(outer: Mapping, inner: Mapping) -> Optional[Tuple[Optional[str], ...]]:
    """Content per inner source, from the first mapping in the chain that supplies it.

    An outer source with the same name is checked before the inner mapping's
    own `sourcesContent`.
    """
    values: List[Optional[str]] = []
    for index, source in enumerate(inner.sources):
        text = None
        for outer_index, outer_source in enumerate(outer.sources):
            candidate = outer.content_for(outer_index)
            if outer_source == source and candidate:
                text = candidate
                break
        values.append(text or inner.content_for(index))
    if all(value is None for value in values):
        return None
    return tuple(values)


def compose(chain: Sequence[Optional[Mapping]]) -> Mapping:
    """Shortcut for `MappingComposer().compose(chain).mapping`."""
    return MappingComposer().compose(chain).mapping
