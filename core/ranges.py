"""Run finding and interval bookkeeping for artefacts, removed windows and processing ranges."""
from __future__ import annotations

from typing import Iterable, List, Sequence, Tuple

import numpy as np

from shared.types import Span, times_in_spans

Run = Tuple[int, int, int]


def find_runs(indices: Sequence[int]) -> List[Run]:
    """
    Group sorted unique integers into maximal runs of consecutive values.

    Each run is ``(start_pos, end_pos, length)`` where the positions index into
    ``indices`` (inclusive) rather than being the values themselves. An empty
    input yields the single degenerate run ``(0, -1, 0)``.
    """
    arr = np.asarray(indices, dtype=np.int64).ravel()
    if arr.size == 0:
        return [(0, -1, 0)]
    breaks = np.flatnonzero(np.diff(arr) != 1)
    starts = np.concatenate(([0], breaks + 1))
    ends = np.concatenate((breaks, [arr.size - 1]))
    return [(int(s), int(e), int(e - s + 1)) for s, e in zip(starts, ends)]


def runs_to_index_spans(indices: Sequence[int], *, min_length: int = 1) -> List[Tuple[int, int]]:
    """Runs of ``indices`` as ``(first_value, last_value)`` pairs, keeping runs of at least ``min_length``."""
    arr = np.asarray(indices, dtype=np.int64).ravel()
    spans = []
    for start, end, length in find_runs(arr):
        if length >= max(1, min_length):
            spans.append((int(arr[start]), int(arr[end])))
    return spans


def mask_runs(mask: np.ndarray, min_length: int) -> np.ndarray:
    """Boolean mask keeping only True runs at least ``min_length`` long."""
    mask = np.asarray(mask, dtype=bool)
    out = np.zeros_like(mask)
    for first, last in runs_to_index_spans(np.flatnonzero(mask), min_length=min_length):
        out[first : last + 1] = True
    return out


# ----------------------------
# Span algebra
# ----------------------------

def merge_spans(spans: Iterable[Span], *, gap: float = 0.0) -> Tuple[Span, ...]:
    """Union of ``spans``; spans closer than ``gap`` seconds are joined as well."""
    ordered = sorted(spans)
    merged: List[Span] = []
    for span in ordered:
        if merged and span.start - merged[-1].end <= gap:
            last = merged[-1]
            merged[-1] = Span(last.start, max(last.end, span.end))
        else:
            merged.append(span)
    return tuple(merged)


def subtract_spans(span: Span, others: Iterable[Span]) -> Tuple[Span, ...]:
    """Pieces of ``span`` not covered by any of ``others`` (open boundaries are kept)."""
    pieces = [span]
    for other in sorted(others):
        next_pieces: List[Span] = []
        for piece in pieces:
            if not piece.overlaps(other):
                next_pieces.append(piece)
                continue
            if other.start > piece.start:
                next_pieces.append(Span(piece.start, other.start))
            if other.end < piece.end:
                next_pieces.append(Span(other.end, piece.end))
        pieces = next_pieces
    return tuple(piece for piece in pieces if piece.duration > 0)


def insert_removed_window(
    removed: Sequence[Span], artefacts: Sequence[Span], window: Span
) -> Tuple[Span, ...]:
    """
    Add ``window`` to the user-declared removed windows.

    The window absorbs every removed window it overlaps, then the parts that
    fall inside an artefact span are cut away (splitting the window when an
    artefact sits inside it). The result is sorted and non-overlapping and
    never intersects ``artefacts`` beyond shared end points.
    """
    absorbed = [w for w in removed if w.overlaps(window)]
    kept = [w for w in removed if not w.overlaps(window)]
    start = min([window.start] + [w.start for w in absorbed])
    end = max([window.end] + [w.end for w in absorbed])
    pieces = subtract_spans(Span(start, end), artefacts)
    return tuple(sorted(kept + list(pieces)))


def delete_window(removed: Sequence[Span], index: int) -> Tuple[Span, ...]:
    if not 0 <= index < len(removed):
        raise IndexError(f"no removed window at position {index}")
    return tuple(w for i, w in enumerate(removed) if i != index)


def spans_overlap(spans: Sequence[Span]) -> bool:
    ordered = sorted(spans)
    return any(b.start < a.end for a, b in zip(ordered, ordered[1:]))


# ----------------------------
# Processing ranges
# ----------------------------

def processing_ranges(
    beats: np.ndarray,
    exclusions: Iterable[Span],
    *,
    start: float,
    end: float,
    discontinue: float,
    merge_gap: float = 0.0,
) -> Tuple[Span, ...]:
    """
    Split ``[start, end]`` into independent ranges for the projector.

    Beat gaps longer than ``discontinue`` join ``exclusions``; exclusions
    closer than ``merge_gap`` are merged, and only exclusions longer than
    ``discontinue`` separate ranges.
    """
    beats = np.asarray(beats, dtype=np.float64)
    excluded: List[Span] = [Span(max(s.start, start), min(s.end, end)) for s in exclusions if s.end >= start and s.start <= end]
    if beats.size > 1:
        gaps = np.flatnonzero(np.diff(beats) > discontinue)
        excluded.extend(Span(float(beats[i]), float(beats[i + 1])) for i in gaps)
    blocking = [s for s in merge_spans(excluded, gap=merge_gap) if s.duration > discontinue]

    ranges: List[Span] = []
    cursor = start
    for span in blocking:
        if span.start > cursor:
            ranges.append(Span(cursor, span.start))
        cursor = max(cursor, span.end)
    if end > cursor:
        ranges.append(Span(cursor, end))
    return tuple(ranges)


def beats_in_range(beats: np.ndarray, span: Span) -> np.ndarray:
    beats = np.asarray(beats, dtype=np.float64)
    return (beats >= span.start) & (beats <= span.end)


__all__ = [
    "find_runs",
    "runs_to_index_spans",
    "mask_runs",
    "merge_spans",
    "subtract_spans",
    "insert_removed_window",
    "delete_window",
    "spans_overlap",
    "times_in_spans",
    "processing_ranges",
    "beats_in_range",
]
