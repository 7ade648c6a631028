from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np

from shared.errors import DetectionDegenerateError

from .base import ConfirmCallback, in_bounds

logger = logging.getLogger(__name__)

MIN_CANDIDATES = 2
FALLBACK_PERCENTILE = 20.0


def select_candidates(
    indices: np.ndarray,
    heights: np.ndarray,
    threshold: float,
    n_samples: int,
    low: int,
    high: int,
) -> np.ndarray:
    """Local maxima above ``threshold`` whose waveform window fits inside the signal."""
    idx = np.asarray(indices, dtype=np.int64)
    keep = (np.asarray(heights, dtype=np.float64) > threshold) & in_bounds(idx, n_samples, low, high)
    return idx[keep]


def fallback_threshold(heights: np.ndarray) -> Optional[float]:
    values = np.asarray(heights, dtype=np.float64)
    values = values[np.isfinite(values)]
    if values.size == 0:
        return None
    return float(np.percentile(values, FALLBACK_PERCENTILE))


def resolve_candidates(
    indices: np.ndarray,
    heights: np.ndarray,
    threshold: float,
    n_samples: int,
    low: int,
    high: int,
    *,
    confirm: Optional[ConfirmCallback] = None,
    min_candidates: int = MIN_CANDIDATES,
) -> Tuple[np.ndarray, float]:
    """
    Candidate indices and the threshold that produced them.

    When fewer than ``min_candidates`` survive, ``confirm`` is asked whether
    the percentile fallback may be used; the selection is retried once with
    it. Declining (or no callback) raises ``DetectionDegenerateError``.
    """
    candidates = select_candidates(indices, heights, threshold, n_samples, low, high)
    if candidates.size >= min_candidates:
        return candidates, float(threshold)

    suggested = fallback_threshold(heights)
    message = (
        f"threshold {threshold:g} leaves {candidates.size} candidate beat(s); "
        f"at least {min_candidates} are required"
    )
    if suggested is None or suggested >= threshold:
        raise DetectionDegenerateError(message, candidates=int(candidates.size), suggested_threshold=None)
    if confirm is None or not confirm(suggested):
        raise DetectionDegenerateError(message, candidates=int(candidates.size), suggested_threshold=suggested)

    logger.info("Lowering detection threshold from %g to %g", threshold, suggested)
    candidates = select_candidates(indices, heights, suggested, n_samples, low, high)
    if candidates.size < min_candidates:
        raise DetectionDegenerateError(
            f"fallback threshold {suggested:g} still leaves {candidates.size} candidate beat(s)",
            candidates=int(candidates.size),
            suggested_threshold=None,
        )
    return candidates, suggested


__all__ = ["FALLBACK_PERCENTILE", "MIN_CANDIDATES", "fallback_threshold", "resolve_candidates", "select_candidates"]
