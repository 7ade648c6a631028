from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np

from .types import Span


def _freeze_array(array: np.ndarray, *, ndim: int | None = None, dtype=None) -> np.ndarray:
    """Return a read-only, C-contiguous copy of `array`, validating dimensions."""
    arr = np.array(array, dtype=dtype, copy=True, order="C")
    if ndim is not None and arr.ndim != ndim:
        raise ValueError(f"array must be {ndim}D, got {arr.ndim}D")
    arr.setflags(write=False)
    return arr


def _check_increasing(times: np.ndarray, name: str) -> None:
    if times.size > 1 and not np.all(np.diff(times) > 0):
        raise ValueError(f"{name} must be strictly increasing")


# ----------------------------
# Raw input
# ----------------------------

@dataclass(frozen=True)
class Recording:
    """
    A single-channel raw recording.

    Either ``sample_rate`` or explicit per-sample ``times`` must be provided.
    When only a rate is given, times start at ``offset`` (the fragment start).
    """

    values: np.ndarray = field(repr=False)
    sample_rate: Optional[float] = None
    times: Optional[np.ndarray] = field(default=None, repr=False)
    channel: str = "Ch0"
    offset: float = 0.0
    source_path: Optional[str] = None
    source_type: Optional[str] = None

    def __post_init__(self) -> None:
        values = _freeze_array(self.values, ndim=1, dtype=np.float64)
        if values.size < 2:
            raise ValueError("recording must contain at least two samples")
        if not np.all(np.isfinite(values)):
            raise ValueError("recording values must be finite")
        object.__setattr__(self, "values", values)

        if self.times is None:
            if self.sample_rate is None or self.sample_rate <= 0:
                raise ValueError("sample_rate must be positive when times are not given")
            times = float(self.offset) + np.arange(values.size, dtype=np.float64) / float(self.sample_rate)
        else:
            times = np.asarray(self.times, dtype=np.float64)
            if times.shape != values.shape:
                raise ValueError("times must match values in length")
            _check_increasing(times, "times")
            if self.sample_rate is None:
                object.__setattr__(self, "sample_rate", float(1.0 / np.median(np.diff(times))))
            elif self.sample_rate <= 0:
                raise ValueError("sample_rate must be positive")
        object.__setattr__(self, "times", _freeze_array(times, ndim=1))
        object.__setattr__(self, "sample_rate", float(self.sample_rate))

    @property
    def n_samples(self) -> int:
        return int(self.values.size)

    @property
    def start_time(self) -> float:
        return float(self.times[0])

    @property
    def end_time(self) -> float:
        return float(self.times[-1])

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


# ----------------------------
# Stage outputs
# ----------------------------

@dataclass(frozen=True)
class PreprocessedSignal:
    """
    Conditioned signal at the processing rate.

    ``valid`` is a parallel mask: False marks samples inside artefact spans.
    Masked samples hold 0.0 in ``values`` so that arithmetic on the array
    stays finite; use :meth:`masked` for a NaN view.
    """

    times: np.ndarray = field(repr=False)
    values: np.ndarray = field(repr=False)
    valid: np.ndarray = field(repr=False)
    sample_rate: float
    decimation: int = 1
    artefacts: Tuple[Span, ...] = ()

    def __post_init__(self) -> None:
        times = _freeze_array(self.times, ndim=1, dtype=np.float64)
        values = _freeze_array(self.values, ndim=1, dtype=np.float64)
        valid = _freeze_array(self.valid, ndim=1, dtype=bool)
        if not (times.shape == values.shape == valid.shape):
            raise ValueError("times, values and valid must share one length")
        _check_increasing(times, "times")
        if not np.all(np.isfinite(values)):
            raise ValueError("values must be finite; mark missing samples through valid")
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if self.decimation < 1:
            raise ValueError("decimation must be >= 1")
        object.__setattr__(self, "times", times)
        object.__setattr__(self, "values", values)
        object.__setattr__(self, "valid", valid)
        object.__setattr__(self, "sample_rate", float(self.sample_rate))
        object.__setattr__(self, "artefacts", tuple(self.artefacts))

    def __len__(self) -> int:
        return int(self.values.size)

    def masked(self) -> np.ndarray:
        out = np.array(self.values, dtype=np.float64, copy=True)
        out[~self.valid] = np.nan
        return out

    def nearest_index(self, time: float) -> int:
        idx = int(np.searchsorted(self.times, time))
        if idx <= 0:
            return 0
        if idx >= self.times.size:
            return int(self.times.size - 1)
        before = self.times[idx - 1]
        after = self.times[idx]
        return idx - 1 if (time - before) <= (after - time) else idx


@dataclass(frozen=True)
class DetectionResult:
    """
    Snapshot of one detector run: envelope, template and every candidate peak
    with its waveform window and refined apex ("beat peak").
    """

    envelope: np.ndarray = field(repr=False)
    peak_indices: np.ndarray
    peak_times: np.ndarray
    shapes: np.ndarray = field(repr=False)
    template: np.ndarray = field(repr=False)
    max_corr: float
    correlations: np.ndarray = field(repr=False)
    beat_peak_times: np.ndarray = field(repr=False)
    beat_peak_values: np.ndarray = field(repr=False)
    threshold: float
    window: Tuple[int, int]
    sample_rate: float

    def __post_init__(self) -> None:
        low, high = (int(self.window[0]), int(self.window[1]))
        if low >= high:
            raise ValueError("window low bound must be below the high bound")
        width = high - low + 1
        indices = _freeze_array(self.peak_indices, ndim=1, dtype=np.int64)
        n = indices.size
        shapes = np.asarray(self.shapes, dtype=np.float64).reshape(n, width)
        template = _freeze_array(self.template, ndim=1, dtype=np.float64)
        if template.size != width:
            raise ValueError("template length must match the waveform window")
        for name in ("peak_times", "correlations", "beat_peak_times", "beat_peak_values"):
            arr = _freeze_array(getattr(self, name), ndim=1, dtype=np.float64)
            if arr.size != n:
                raise ValueError(f"{name} must have one entry per peak")
            object.__setattr__(self, name, arr)
        _check_increasing(self.peak_times, "peak_times")
        object.__setattr__(self, "peak_indices", indices)
        object.__setattr__(self, "shapes", _freeze_array(shapes, ndim=2))
        object.__setattr__(self, "template", template)
        object.__setattr__(self, "envelope", _freeze_array(self.envelope, ndim=1, dtype=np.float64))
        object.__setattr__(self, "window", (low, high))
        object.__setattr__(self, "max_corr", float(self.max_corr))
        object.__setattr__(self, "threshold", float(self.threshold))
        object.__setattr__(self, "sample_rate", float(self.sample_rate))

    def __len__(self) -> int:
        return int(self.peak_indices.size)

    @property
    def template_apex(self) -> int:
        return int(np.argmax(self.template))

    def lookup(self, times: np.ndarray, *, tolerance: float | None = None) -> np.ndarray:
        """
        Return the peak position for each entry of ``times`` or -1 when no
        detected peak lies within ``tolerance`` (half a sample by default).
        """
        times = np.asarray(times, dtype=np.float64)
        if tolerance is None:
            tolerance = 0.5 / self.sample_rate
        if self.peak_times.size == 0 or times.size == 0:
            return np.full(times.shape, -1, dtype=np.int64)
        last = self.peak_times.size - 1
        pos = np.searchsorted(self.peak_times, times)
        right = np.clip(pos, 0, last)
        left = np.clip(pos - 1, 0, last)
        choose_left = np.abs(times - self.peak_times[left]) <= np.abs(self.peak_times[right] - times)
        nearest = np.where(choose_left, left, right)
        hit = np.abs(self.peak_times[nearest] - times) <= tolerance
        return np.where(hit, nearest, -1).astype(np.int64)


__all__ = ["Recording", "PreprocessedSignal", "DetectionResult"]
