from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Iterable, List, Sequence, Tuple

import numpy as np


@dataclass(frozen=True, order=True)
class Span:
    """
    Closed time interval ``[start, end]`` in seconds used for artefacts and
    user-declared removed windows.
    """

    start: float
    end: float

    def __post_init__(self) -> None:
        start = float(self.start)
        end = float(self.end)
        if not (math.isfinite(start) and math.isfinite(end)):
            raise ValueError("span bounds must be finite")
        if end < start:
            raise ValueError("span end must not precede its start")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    @property
    def duration(self) -> float:
        return self.end - self.start

    def overlaps(self, other: "Span") -> bool:
        return self.start <= other.end and other.start <= self.end

    def contains(self, time: float) -> bool:
        return self.start <= time <= self.end


def spans_from_pairs(pairs: Iterable[Sequence[float]]) -> Tuple[Span, ...]:
    return tuple(Span(float(pair[0]), float(pair[1])) for pair in pairs)


def spans_to_pairs(spans: Iterable[Span]) -> List[List[float]]:
    return [[span.start, span.end] for span in spans]


def times_in_spans(times: np.ndarray, spans: Iterable[Span], *, extend: float = 0.0) -> np.ndarray:
    """Mask of ``times`` lying inside any span, each span stretched by ``extend`` past its end."""
    times = np.asarray(times, dtype=np.float64)
    mask = np.zeros(times.shape, dtype=bool)
    for span in spans:
        mask |= (times >= span.start) & (times <= span.end + extend)
    return mask


__all__ = ["Span", "spans_from_pairs", "spans_to_pairs", "times_in_spans"]
