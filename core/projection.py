"""Bounded-lookahead correction of ambiguous stretches in a beat sequence.

The projector walks forward from a trusted seed beat through every stretch of
suspicious inter-beat intervals. At each step it predicts the next interval
from the recent history, scores every candidate in the search window by
timing regularity times template correlation, and deletes the candidates it
skips. When no candidate is convincing it scores short continuations of each
alternative recursively (at most ``MAX_DEPTH`` levels) before committing.

All functions are pure: the input arrays are never modified, and the seed
watermark is passed in and returned explicitly.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
import logging
from typing import List, Optional, Sequence

import numpy as np

from analysis.metrics import max_xcorr, position_score
from analysis.models import ProjectionResult
from analysis.settings import ProcessingParameters

from .ranges import find_runs, mask_runs

logger = logging.getLogger(__name__)

SEED_CORRELATION = 0.7
RELAXED_SEED_CORRELATION = 0.5
CORRELATION_RUN = 4
STABLE_RUN = 3
RELAXED_INTERVAL_FACTOR = 1.2
RELAXED_STABILITY_FACTOR = 0.6
SEARCH_FACTOR = 1.4
EXTENDED_SEARCH_FACTOR = 1.8
ACCEPT_SCORE = 0.6
LOOKAHEAD_SCORE = 0.7
MAX_DEPTH = 3
LOOKAHEAD_PERIODS = 5.0
MIN_SPAN_INDEX = 4
HISTORY = 3
WALK_SD_DIVISOR = 5.0
SCORE_SD_DIVISOR = 3.0
SEED_FAILURE = "cannot establish a reliable starting point"


@dataclass(frozen=True)
class ProjectionContext:
    """Read-only inputs shared by every projector call of one run."""

    sample_rate: float
    template: np.ndarray
    max_corr: float
    suspicious_frequency_high: float
    suspicious_frequency_low: float
    stable_index: float
    outlier: float
    discontinue: float

    @classmethod
    def from_parameters(
        cls,
        params: ProcessingParameters,
        sample_rate: float,
        template: np.ndarray,
        max_corr: float,
    ) -> "ProjectionContext":
        template = np.array(template, dtype=np.float64, copy=True)
        template.setflags(write=False)
        return cls(
            sample_rate=float(sample_rate),
            template=template,
            max_corr=float(max_corr),
            suspicious_frequency_high=params.suspicious_frequency_high,
            suspicious_frequency_low=params.suspicious_frequency_low,
            stable_index=params.stable_index,
            outlier=params.outlier,
            discontinue=params.discontinue,
        )

    @property
    def shortest_interval(self) -> float:
        return 1.0 / self.suspicious_frequency_high

    @property
    def longest_interval(self) -> float:
        return 1.0 / self.suspicious_frequency_low

    @property
    def outlier_samples(self) -> float:
        return self.outlier * self.sample_rate / 1000.0

    @property
    def stable_samples(self) -> float:
        return self.stable_index * self.sample_rate / 1000.0

    @property
    def template_apex(self) -> int:
        return int(np.argmax(self.template))

    @property
    def width(self) -> int:
        return int(self.template.size)

    def reversed(self) -> "ProjectionContext":
        template = np.array(self.template[::-1], copy=True)
        template.setflags(write=False)
        return replace(self, template=template)

    def correlation(self, shape: np.ndarray) -> float:
        if self.max_corr <= 0:
            return 0.0
        return max_xcorr(self.template, shape) / self.max_corr


# ----------------------------
# Scoring primitives
# ----------------------------

def suspicious_intervals(beats: np.ndarray, ctx: ProjectionContext) -> np.ndarray:
    """Positions ``i`` whose interval ``beats[i] -> beats[i + 1]`` lies outside the physiological range."""
    intervals = np.diff(np.asarray(beats, dtype=np.float64))
    return np.flatnonzero((intervals < ctx.shortest_interval) | (intervals > ctx.longest_interval))


def expected_interval(positions: Sequence[float], outlier_samples: float) -> float:
    """
    Expected next interval (samples) from the last four beat positions.

    When more than one pair of the three intervals differs by at least
    ``outlier_samples``, only intervals belonging to consistent pairs are
    averaged; with no consistent pair the fallback is ``4 * outlier_samples``.
    """
    intervals = np.diff(np.asarray(positions, dtype=np.float64)[-(HISTORY + 1):])
    pairs = [(0, 1), (0, 2), (1, 2)]
    consistent = [(a, b) for a, b in pairs if abs(intervals[a] - intervals[b]) < outlier_samples]
    if len(pairs) - len(consistent) > 1:
        kept = [intervals[k] for pair in consistent for k in pair]
    else:
        kept = list(intervals)
    if not kept:
        return 4.0 * outlier_samples
    return float(round(float(np.mean(kept))))


def pick_best_candidate(scores: Sequence[float], apex_offsets: Sequence[int], reference: int) -> int:
    """
    Position of the highest score. Ties go to the candidate whose apex offset
    is closest to ``reference`` (the template apex), then to the earliest.
    """
    values = np.asarray(scores, dtype=np.float64)
    best = float(np.max(values))
    tied = np.flatnonzero(np.abs(values - best) <= 1e-12)
    if tied.size == 1:
        return int(tied[0])
    distance = np.abs(np.asarray(apex_offsets, dtype=np.int64)[tied] - int(reference))
    return int(tied[np.argmin(distance)])


def seed_mask(beats: np.ndarray, shapes: np.ndarray, ctx: ProjectionContext, *, relaxed: bool = False) -> np.ndarray:
    """
    Beats trusted as walk seeds: high template correlation within a run of
    correlated beats, regular neighbouring intervals, and a stable rhythm
    (small interval-to-interval change) within a run of stable differences.
    """
    beats = np.asarray(beats, dtype=np.float64)
    n = beats.size
    if n < HISTORY + 1:
        return np.zeros(n, dtype=bool)
    corr_limit = RELAXED_SEED_CORRELATION if relaxed else SEED_CORRELATION
    upper = ctx.longest_interval * (RELAXED_INTERVAL_FACTOR if relaxed else 1.0)
    tolerance = ctx.stable_samples * (RELAXED_STABILITY_FACTOR if relaxed else 1.0)

    corr = np.array([ctx.correlation(shape) for shape in shapes], dtype=np.float64)
    corr_ok = mask_runs(corr >= corr_limit, CORRELATION_RUN)

    intervals = np.diff(beats)
    normal = (intervals >= ctx.shortest_interval) & (intervals <= upper)
    interval_ok = np.ones(n, dtype=bool)
    interval_ok[:-1] &= normal
    interval_ok[1:] &= normal

    second = np.abs(np.diff(intervals * ctx.sample_rate))
    stable_runs = mask_runs(second <= tolerance, STABLE_RUN)
    stable_ok = np.zeros(n, dtype=bool)
    stable_ok[:-2] |= stable_runs
    stable_ok[1:-1] |= stable_runs
    stable_ok[2:] |= stable_runs

    return corr_ok & interval_ok & stable_ok


def sequence_score(beats: Sequence[float], shapes: Sequence[np.ndarray], ctx: ProjectionContext) -> Optional[float]:
    """Mean timing-times-correlation score of every beat from the fourth onward."""
    positions = np.asarray(beats, dtype=np.float64) * ctx.sample_rate
    if positions.size < HISTORY + 1:
        return None
    expected = expected_interval(positions[: HISTORY + 1], ctx.outlier_samples)
    products = []
    for i in range(HISTORY, positions.size):
        offset = positions[i] - positions[i - 1] - expected
        timing = position_score(offset, expected, sd_divisor=SCORE_SD_DIVISOR, support=expected)
        products.append(timing * ctx.correlation(shapes[i]))
    return float(np.mean(products))


# ----------------------------
# Walk
# ----------------------------

class _BeatWalk:
    """Working copy of one beat sequence, edited in place while walking."""

    def __init__(
        self,
        beats: Sequence[float],
        shapes: Sequence[np.ndarray],
        ctx: ProjectionContext,
        depth: int,
        suited: Optional[np.ndarray] = None,
    ) -> None:
        self.beats: List[float] = [float(b) for b in beats]
        self.shapes: List[np.ndarray] = [np.asarray(s, dtype=np.float64) for s in shapes]
        self.suited: List[bool] = [bool(s) for s in suited] if suited is not None else [False] * len(self.beats)
        self.ctx = ctx
        self.depth = depth

    def position(self, index: int) -> float:
        return self.beats[index] * self.ctx.sample_rate

    def expected(self, cur: int) -> float:
        history = [self.position(i) for i in range(cur - HISTORY, cur + 1)]
        return expected_interval(history, self.ctx.outlier_samples)

    def window(self, cur: int, factor: float, expected: float) -> List[int]:
        limit = self.position(cur) + factor * expected
        found = []
        j = cur + 1
        while j < len(self.beats) and self.position(j) <= limit:
            found.append(j)
            j += 1
        return found

    def score(self, cur: int, candidate: int, expected: float) -> float:
        offset = self.position(candidate) - self.position(cur) - expected
        timing = position_score(offset, expected, sd_divisor=WALK_SD_DIVISOR, support=expected / 2.0)
        return timing * self.ctx.correlation(self.shapes[candidate])

    def best_local(self, cur: int, candidates: List[int], expected: float) -> int:
        scores = [self.score(cur, j, expected) for j in candidates]
        apexes = [int(np.argmax(self.shapes[j])) for j in candidates]
        return candidates[pick_best_candidate(scores, apexes, self.ctx.template_apex)]

    def drop_between(self, cur: int, chosen: int) -> None:
        """Delete the candidates strictly between ``cur`` and ``chosen``."""
        del self.beats[cur + 1 : chosen]
        del self.shapes[cur + 1 : chosen]
        del self.suited[cur + 1 : chosen]

    def truncate_after(self, cur: int) -> None:
        del self.beats[cur + 1 :]
        del self.shapes[cur + 1 :]
        del self.suited[cur + 1 :]

    def step(self, cur: int) -> Optional[int]:
        """Resolve the beat following ``cur``; return the new current index or None to stop."""
        expected = self.expected(cur)
        candidates = self.window(cur, SEARCH_FACTOR, expected)
        if not candidates:
            candidates = self.window(cur, EXTENDED_SEARCH_FACTOR, expected)

        if not candidates:
            if cur + 1 >= len(self.beats):
                return None
            gap = self.beats[cur + 1] - self.beats[cur]
            if gap < self.ctx.discontinue:
                # A missed beat that no detected peak can fill.
                if self.depth > 0:
                    self.truncate_after(cur)
                return None
            return cur + 1

        if len(candidates) == 1:
            return candidates[0]

        scores = [self.score(cur, j, expected) for j in candidates]
        if max(scores) >= ACCEPT_SCORE:
            apexes = [int(np.argmax(self.shapes[j])) for j in candidates]
            chosen = candidates[pick_best_candidate(scores, apexes, self.ctx.template_apex)]
        else:
            chosen = self.lookahead(cur, self.window(cur, EXTENDED_SEARCH_FACTOR, expected), expected)
        self.drop_between(cur, chosen)
        self.suited[cur + 1] = True
        return cur + 1

    def lookahead(self, cur: int, candidates: List[int], expected: float) -> int:
        fallback = self.best_local(cur, candidates, expected)
        if self.depth + 1 > MAX_DEPTH:
            logger.debug("Lookahead depth exhausted at %.6f s; keeping best local candidate", self.beats[cur])
            return fallback
        horizon = self.beats[cur] + LOOKAHEAD_PERIODS / self.ctx.suspicious_frequency_low
        history = list(range(cur - HISTORY, cur + 1))
        for j in candidates:
            stop = j
            while stop < len(self.beats) - 1 and self.beats[stop] <= horizon:
                stop += 1
            picked = history + list(range(j, stop + 1))
            score = score_continuation(
                [self.beats[k] for k in picked],
                [self.shapes[k] for k in picked],
                self.ctx,
                depth=self.depth + 1,
            )
            if score is not None and score > LOOKAHEAD_SCORE:
                return j
        logger.debug("No continuation above %.2f at %.6f s; keeping best local candidate", LOOKAHEAD_SCORE, self.beats[cur])
        return fallback

    def index_from(self, time: float) -> Optional[int]:
        idx = int(np.searchsorted(np.asarray(self.beats), time, side="left"))
        return idx if idx < len(self.beats) else None

    def seed_before(self, index: int, watermark: float) -> Optional[int]:
        for i in range(index - 1, HISTORY - 1, -1):
            if self.beats[i] <= watermark:
                return None
            if self.suited[i]:
                return i
        return None

    def result(self, **kwargs) -> ProjectionResult:
        shapes = np.array(self.shapes, dtype=np.float64).reshape(len(self.beats), self.ctx.width)
        return ProjectionResult(beats=np.asarray(self.beats, dtype=np.float64), shapes=shapes, **kwargs)


# ----------------------------
# Entry points
# ----------------------------

def score_continuation(
    beats: Sequence[float],
    shapes: Sequence[np.ndarray],
    ctx: ProjectionContext,
    depth: int,
) -> Optional[float]:
    """
    Confidence in a short candidate continuation: the sequence is resolved
    with the same walk (branching one level deeper at most) and then scored.
    Returns None beyond ``MAX_DEPTH`` or for sequences too short to score.
    """
    if depth > MAX_DEPTH or len(beats) < HISTORY + 1:
        return None
    walk = _BeatWalk(beats, shapes, ctx, depth)
    cur: Optional[int] = HISTORY
    while cur is not None and cur < len(walk.beats) - 1:
        cur = walk.step(cur)
    return sequence_score(walk.beats, walk.shapes, ctx)


def project(
    beats: np.ndarray,
    shapes: np.ndarray,
    ctx: ProjectionContext,
    *,
    watermark: float = float("-inf"),
) -> ProjectionResult:
    """
    Resolve every suspicious span of ``beats`` walking forward in time.

    ``shapes`` holds one waveform window per beat. Spans whose start lies
    within the first few beats are left for a backward pass. Returns the
    edited sequence together with the updated watermark.
    """
    beats = np.asarray(beats, dtype=np.float64)
    shapes = np.asarray(shapes, dtype=np.float64).reshape(beats.size, ctx.width)
    unchanged = ProjectionResult(beats=beats, shapes=shapes, watermark=watermark)
    if beats.size < HISTORY + 2:
        return unchanged
    flagged = suspicious_intervals(beats, ctx)
    if flagged.size == 0:
        return unchanged
    spans = [(float(beats[flagged[s]]), float(beats[flagged[e]])) for s, e, _ in find_runs(flagged)]

    suited = seed_mask(beats, shapes, ctx)
    if not np.any(suited):
        suited = seed_mask(beats, shapes, ctx, relaxed=True)
    if not np.any(suited):
        logger.warning("Projection skipped for %d suspicious span(s): %s", len(spans), SEED_FAILURE)
        return ProjectionResult(
            beats=beats,
            shapes=shapes,
            watermark=watermark,
            unresolved=tuple(start for start, _ in spans),
            failure=SEED_FAILURE,
        )

    walk = _BeatWalk(beats, shapes, ctx, depth=0, suited=suited)
    unresolved: List[float] = []
    for start, end in spans:
        index = walk.index_from(start)
        if index is None or index <= MIN_SPAN_INDEX:
            continue
        seed = walk.seed_before(index, watermark)
        if seed is None:
            logger.debug("No trusted seed before %.6f s; span left unresolved", start)
            unresolved.append(start)
            watermark = start
            continue
        cur: Optional[int] = seed
        while cur is not None and cur < len(walk.beats) and walk.beats[cur] <= end:
            cur = walk.step(cur)
    return walk.result(watermark=watermark, unresolved=tuple(unresolved))


def project_bidirectional(beats: np.ndarray, shapes: np.ndarray, ctx: ProjectionContext) -> ProjectionResult:
    """One forward pass followed by the same walk on the time-reflected result."""
    forward = project(beats, shapes, ctx)
    mirrored = project(-forward.beats[::-1], forward.shapes[::-1, ::-1], ctx.reversed())
    unresolved = forward.unresolved + tuple(sorted(-t for t in mirrored.unresolved))
    return ProjectionResult(
        beats=-mirrored.beats[::-1],
        shapes=mirrored.shapes[::-1, ::-1],
        unresolved=unresolved,
        failure=forward.failure or mirrored.failure,
    )


def finalize_beats(beats: np.ndarray) -> np.ndarray:
    """Round to 1e-6 s, then sort and drop duplicates."""
    return np.unique(np.round(np.asarray(beats, dtype=np.float64), 6))


__all__ = [
    "ProjectionContext",
    "expected_interval",
    "finalize_beats",
    "pick_best_candidate",
    "project",
    "project_bidirectional",
    "score_continuation",
    "seed_mask",
    "sequence_score",
    "suspicious_intervals",
]
