from __future__ import annotations

from typing import Callable, Dict, Optional, Protocol, Tuple, Type

import numpy as np
from scipy import signal as sp_signal

from analysis.metrics import gaussian_smooth
from shared.models import DetectionResult, PreprocessedSignal

# Called with the suggested fallback threshold; returns True to accept it.
ConfirmCallback = Callable[[float], bool]


class BeatDetector(Protocol):
    name: str

    def detect(
        self,
        conditioned: PreprocessedSignal,
        params,
        *,
        prior_template: Optional[np.ndarray] = None,
        reuse_template: bool = False,
        confirm: Optional[ConfirmCallback] = None,
    ) -> DetectionResult:
        """Return every candidate beat of ``conditioned``."""
        ...


DETECTOR_REGISTRY: Dict[str, Type[BeatDetector]] = {}


def register_detector(cls: Type[BeatDetector]) -> Type[BeatDetector]:
    if not hasattr(cls, "name"):
        raise ValueError(f"Detector {cls} must have a 'name' attribute")
    DETECTOR_REGISTRY[cls.name] = cls
    return cls


# ----------------------------
# Envelope helpers
# ----------------------------

def compute_envelope(values: np.ndarray, power: float, smooth_detection: float) -> np.ndarray:
    """``smooth(|x| ** power) ** 2`` with a Gaussian window of ``4 * smooth_detection`` samples."""
    data = np.abs(np.asarray(values, dtype=np.float64)) ** power
    return gaussian_smooth(data, 4.0 * smooth_detection) ** 2


def local_maxima(envelope: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    env = np.asarray(envelope, dtype=np.float64)
    if env.size < 3:
        return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.float64)
    peaks, _ = sp_signal.find_peaks(env)
    peaks = peaks.astype(np.int64)
    return peaks, env[peaks]


def in_bounds(indices: np.ndarray, n_samples: int, low: int, high: int) -> np.ndarray:
    """Mask of indices whose ``[low, high]`` window lies fully inside the signal."""
    idx = np.asarray(indices, dtype=np.int64)
    return (idx + low >= 0) & (idx + high <= n_samples - 1)


def extract_windows(values: np.ndarray, indices: np.ndarray, low: int, high: int) -> np.ndarray:
    data = np.asarray(values)
    idx = np.asarray(indices, dtype=np.int64)
    offsets = np.arange(low, high + 1)
    if idx.size == 0:
        return np.zeros((0, offsets.size), dtype=data.dtype)
    return data[idx[:, None] + offsets[None, :]]


__all__ = [
    "BeatDetector",
    "ConfirmCallback",
    "DETECTOR_REGISTRY",
    "compute_envelope",
    "extract_windows",
    "in_bounds",
    "local_maxima",
    "register_detector",
]
