# analysis/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np

from shared.models import _freeze_array

RATE_SCALE = {"Hz": 1.0, "BPM": 60.0}


@dataclass(frozen=True)
class HeartRateSeries:
    """
    Sliding-window heart rate sampled at every beat.

    ``rate`` is stored in beats per second; masked entries (warm-up,
    artefacts, removed windows) are NaN in ``rate`` and False in ``valid``.
    """

    times: np.ndarray
    rate: np.ndarray = field(repr=False)
    valid: np.ndarray = field(repr=False)
    window_s: float

    def __post_init__(self) -> None:
        times = _freeze_array(self.times, ndim=1, dtype=np.float64)
        rate = np.array(self.rate, dtype=np.float64, copy=True)
        valid = np.asarray(self.valid, dtype=bool)
        if not (times.shape == rate.shape == valid.shape):
            raise ValueError("times, rate and valid must share one length")
        if np.any(~np.isfinite(rate[valid])):
            raise ValueError("valid rate entries must be finite")
        rate[~valid] = np.nan
        object.__setattr__(self, "times", times)
        object.__setattr__(self, "rate", _freeze_array(rate))
        object.__setattr__(self, "valid", _freeze_array(valid))

    def __len__(self) -> int:
        return int(self.times.size)

    def in_unit(self, unit: str) -> np.ndarray:
        """Rate expressed in ``unit`` ("BPM" or "Hz"), always derived from the stored beats/second."""
        try:
            scale = RATE_SCALE[unit]
        except KeyError:
            raise ValueError(f"unknown rate unit: {unit!r}") from None
        return self.rate * scale

    def mean(self) -> Optional[float]:
        if not np.any(self.valid):
            return None
        return float(np.mean(self.rate[self.valid]))


@dataclass(frozen=True)
class ProjectionResult:
    """
    Outcome of one projector call over a beat sequence.

    ``watermark`` is the last seed boundary that could not be resolved;
    ``unresolved`` lists the start times of suspicious spans that were
    skipped; ``failure`` carries a reason when no seed could be found.
    """

    beats: np.ndarray
    shapes: np.ndarray = field(repr=False)
    watermark: float = float("-inf")
    unresolved: Tuple[float, ...] = ()
    failure: Optional[str] = None

    def __post_init__(self) -> None:
        beats = _freeze_array(self.beats, ndim=1, dtype=np.float64)
        shapes = _freeze_array(self.shapes, ndim=2, dtype=np.float64)
        if shapes.shape[0] != beats.size:
            raise ValueError("one shape per beat is required")
        object.__setattr__(self, "beats", beats)
        object.__setattr__(self, "shapes", shapes)
        object.__setattr__(self, "unresolved", tuple(float(t) for t in self.unresolved))

    @property
    def ok(self) -> bool:
        return self.failure is None


__all__ = ["HeartRateSeries", "ProjectionResult", "RATE_SCALE"]
