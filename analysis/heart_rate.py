"""Sliding-window heart rate from curated beat times."""
from __future__ import annotations

import logging
from typing import Iterable, Optional

import numpy as np

from shared.types import Span, times_in_spans

from .models import HeartRateSeries

logger = logging.getLogger(__name__)


def sliding_rate(
    beats: np.ndarray,
    window_s: float,
    *,
    exclusions: Iterable[Span] = (),
    start_time: Optional[float] = None,
) -> HeartRateSeries:
    """
    Rate (beats/s) at each beat from the beats inside the trailing window.

    The rate is ``intervals / span`` when the beats in the window cover more
    than half of it, otherwise ``intervals / window_s``. Beats within
    ``window_s`` of ``start_time`` (default: first beat) and beats inside an
    exclusion span stretched by one window past its end are masked.
    """
    if window_s <= 0:
        raise ValueError("window_s must be positive")
    times = np.asarray(beats, dtype=np.float64)
    if times.size and not np.all(np.diff(times) > 0):
        raise ValueError("beats must be strictly increasing")
    n = times.size
    if n == 0:
        return HeartRateSeries(times=times, rate=times, valid=np.zeros(0, dtype=bool), window_s=window_s)

    origin = times[0] if start_time is None else float(start_time)
    left = np.searchsorted(times, times - window_s, side="left")
    counts = np.arange(n) - left
    spans = times - times[left]
    effective = np.where(spans > window_s / 2.0, spans, window_s)
    rate = counts / effective

    valid = (times - origin) >= window_s
    valid &= ~times_in_spans(times, exclusions, extend=window_s)
    rate = np.where(valid, rate, np.nan)
    logger.debug("Computed heart rate for %d beats (%d masked)", n, int(np.sum(~valid)))
    return HeartRateSeries(times=times, rate=rate, valid=valid, window_s=window_s)


__all__ = ["sliding_rate"]
