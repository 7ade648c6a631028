"""Numeric helpers shared by the detector, the projector and the exporters.

This module provides:
- gaussian_smooth: Gaussian-weighted moving average over a window given in samples
- zscore / zscore_rows: Population z-scoring that maps flat windows to zeros
- max_xcorr / correlation_scores: Peak of the full cross-correlation against a template
- position_score: Gaussian timing score around an expected beat position
- apex_offset: Maximum inside a search range with ties resolved towards a reference offset
"""
import math
from typing import Optional

import numpy as np
from scipy import ndimage


def gaussian_smooth(x: np.ndarray, width: float) -> np.ndarray:
    """Gaussian moving average whose window spans ``width`` samples (sigma = width / 5)."""
    arr = np.asarray(x, dtype=np.float64)
    if arr.size == 0 or width <= 1:
        return arr.copy()
    sigma = float(width) / 5.0
    return ndimage.gaussian_filter1d(arr, sigma, mode="nearest", truncate=2.5)


def zscore(x: np.ndarray) -> np.ndarray:
    arr = np.asarray(x, dtype=np.float64)
    if arr.size == 0:
        return arr.copy()
    std = float(np.std(arr))
    if std <= 0 or not math.isfinite(std):
        return np.zeros_like(arr)
    return (arr - float(np.mean(arr))) / std


def zscore_rows(shapes: np.ndarray) -> np.ndarray:
    arr = np.asarray(shapes, dtype=np.float64)
    if arr.ndim != 2:
        raise ValueError("shapes must be a 2D array")
    if arr.size == 0:
        return arr.copy()
    mean = arr.mean(axis=1, keepdims=True)
    std = arr.std(axis=1, keepdims=True)
    flat = std <= 0
    std = np.where(flat, 1.0, std)
    out = (arr - mean) / std
    out[np.broadcast_to(flat, out.shape)] = 0.0
    return out


def max_xcorr(template: np.ndarray, shape: np.ndarray) -> float:
    """Maximum of the full (all-lag) cross-correlation of ``template`` with z-scored ``shape``."""
    ref = np.asarray(template, dtype=np.float64)
    sig = zscore(shape)
    if ref.size == 0 or sig.size == 0:
        return 0.0
    return float(np.max(np.correlate(sig, ref, mode="full")))


def correlation_scores(shapes: np.ndarray, template: np.ndarray) -> np.ndarray:
    arr = np.asarray(shapes, dtype=np.float64)
    if arr.ndim != 2:
        raise ValueError("shapes must be a 2D array")
    return np.array([max_xcorr(template, row) for row in arr], dtype=np.float64)


def position_score(offset: float, expected: float, *, sd_divisor: float, support: float, floor: float = 0.1) -> float:
    """
    Gaussian timing score for a candidate ``offset`` samples away from the
    expected position, normalised to 1 at the centre.

    Offsets beyond ``support`` samples return ``floor``.
    """
    if expected <= 0:
        return floor
    if abs(offset) > support:
        return floor
    sd = expected / sd_divisor
    return float(math.exp(-0.5 * (offset / sd) ** 2))


def apex_offset(
    window: np.ndarray,
    reference: int,
    half_range: int,
    valid: Optional[np.ndarray] = None,
) -> int:
    """
    Index of the maximum of ``window`` within ``reference ± half_range``.

    Samples flagged invalid are ignored; ties go to the index closest to
    ``reference`` (then the earlier one). Returns -1 when no valid sample
    is available in the search range.
    """
    arr = np.asarray(window, dtype=np.float64)
    lo = max(0, int(reference) - int(half_range))
    hi = min(arr.size - 1, int(reference) + int(half_range))
    if hi < lo:
        return -1
    idx = np.arange(lo, hi + 1)
    usable = np.isfinite(arr[idx])
    if valid is not None:
        usable &= np.asarray(valid, dtype=bool)[idx]
    if not np.any(usable):
        return -1
    idx = idx[usable]
    values = arr[idx]
    best = idx[values == values.max()]
    distance = np.abs(best - reference)
    return int(best[np.argmin(distance)])
