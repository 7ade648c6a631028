from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy import signal

from analysis.metrics import apex_offset, gaussian_smooth
from analysis.settings import NOTCH_HALF_WIDTH_HZ, ProcessingParameters
from shared.errors import ConfigurationError
from shared.models import PreprocessedSignal
from shared.types import Span

from .ranges import find_runs

logger = logging.getLogger(__name__)

ARTEFACT_SMOOTH_SAMPLES = 4
ARTEFACT_PERCENTILE = 92.0
ARTEFACT_FACTOR = 100.0
ARTEFACT_MERGE_S = 0.2
ARTEFACT_PAD_S = 0.05


@dataclass(frozen=True)
class ConditioningSettings:
    """Filter chain applied at the processing rate (and again at the raw rate on export)."""

    de_drift_enable: bool = True
    de_drift_kernel_s: float = 1.0
    bp_enable: bool = True
    bp_low_hz: float = 60.0
    bp_high_hz: float = 180.0
    bp_order: int = 4
    notch_enabled: bool = False
    notch_freq_hz: float = 50.0
    notch_half_width_hz: float = NOTCH_HALF_WIDTH_HZ
    notch_order: int = 2

    @classmethod
    def from_parameters(cls, params: ProcessingParameters) -> "ConditioningSettings":
        return cls(
            de_drift_enable=params.de_drift_enable,
            de_drift_kernel_s=params.de_drift_kernel,
            bp_enable=params.bp_enable,
            bp_low_hz=params.bp_low,
            bp_high_hz=params.bp_high,
            notch_enabled=params.notch_filter,
            notch_freq_hz=params.power_grid,
        )

    def any_enabled(self) -> bool:
        return self.de_drift_enable or self.bp_enable or self.notch_enabled

    def validate(self, sample_rate: float) -> None:
        if not (math.isfinite(sample_rate) and sample_rate > 0):
            raise ConfigurationError("sample_rate must be positive")
        nyquist = sample_rate / 2.0
        if self.de_drift_enable and self.de_drift_kernel_s <= 0:
            raise ConfigurationError("de_drift_kernel must be positive")
        if self.bp_enable:
            if not (0 < self.bp_low_hz < self.bp_high_hz):
                raise ConfigurationError("bp_low must be positive and below bp_high")
            if self.bp_high_hz >= nyquist:
                raise ConfigurationError(
                    f"bp_high ({self.bp_high_hz:g} Hz) must be below Nyquist ({nyquist:g} Hz)"
                )
            if self.bp_order <= 0:
                raise ConfigurationError("bp_order must be positive")
        if self.notch_enabled:
            low = self.notch_freq_hz - self.notch_half_width_hz
            high = self.notch_freq_hz + self.notch_half_width_hz
            if not (0 < low < high < nyquist):
                raise ConfigurationError("notch band must lie between 0 and Nyquist")


class _BaseFilter:
    """Interface for whole-signal (offline) filters."""

    def apply(self, samples: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class _ZeroPhaseFilter(_BaseFilter):
    def __init__(self, sos: np.ndarray) -> None:
        self._sos = np.asarray(sos, dtype=np.float64)

    def apply(self, samples: np.ndarray) -> np.ndarray:
        row = np.asarray(samples, dtype=np.float64)
        if row.size < 2:
            return row.copy()
        padlen = min(3 * (2 * self._sos.shape[0] + 1), row.size - 1)
        return signal.sosfiltfilt(self._sos, row, padlen=padlen)


class _BandpassFilter(_ZeroPhaseFilter):
    def __init__(self, sample_rate: float, low_hz: float, high_hz: float, *, order: int) -> None:
        sos = signal.butter(order, [low_hz, high_hz], btype="bandpass", fs=sample_rate, output="sos")
        super().__init__(sos)


class _BandstopFilter(_ZeroPhaseFilter):
    def __init__(self, sample_rate: float, center_hz: float, half_width_hz: float, *, order: int) -> None:
        band = [center_hz - half_width_hz, center_hz + half_width_hz]
        sos = signal.butter(order, band, btype="bandstop", fs=sample_rate, output="sos")
        super().__init__(sos)


class _DriftRemover(_BaseFilter):
    """Subtracts a wide Gaussian-weighted moving average."""

    def __init__(self, sample_rate: float, kernel_s: float) -> None:
        self._width = max(1.0, kernel_s * sample_rate)

    def apply(self, samples: np.ndarray) -> np.ndarray:
        row = np.asarray(samples, dtype=np.float64)
        return row - gaussian_smooth(row, self._width)


class SignalConditioner:
    """Builds the drift/band-pass/notch chain for one sample rate and applies it."""

    def __init__(self, settings: Optional[ConditioningSettings] = None) -> None:
        self._settings = settings or ConditioningSettings()
        self._sample_rate: Optional[float] = None
        self._chain: List[_BaseFilter] = []

    def _ensure_chain(self, sample_rate: float) -> None:
        if self._sample_rate == sample_rate:
            return
        settings = self._settings
        settings.validate(sample_rate)
        chain: List[_BaseFilter] = []
        if settings.de_drift_enable:
            chain.append(_DriftRemover(sample_rate, settings.de_drift_kernel_s))
        if settings.bp_enable:
            chain.append(_BandpassFilter(sample_rate, settings.bp_low_hz, settings.bp_high_hz, order=settings.bp_order))
        if settings.notch_enabled:
            chain.append(
                _BandstopFilter(
                    sample_rate,
                    settings.notch_freq_hz,
                    settings.notch_half_width_hz,
                    order=settings.notch_order,
                )
            )
        self._chain = chain
        self._sample_rate = sample_rate

    def process(self, samples: np.ndarray, sample_rate: float) -> np.ndarray:
        filtered = np.array(samples, dtype=np.float64, copy=True)
        if not self._settings.any_enabled():
            return filtered
        self._ensure_chain(float(sample_rate))
        for filt in self._chain:
            filtered = filt.apply(filtered)
        return filtered


# ----------------------------
# Decimation
# ----------------------------

def decimation_factor(raw_rate: float, target_rate: float) -> int:
    if raw_rate <= target_rate:
        return 1
    return int(math.ceil(raw_rate / target_rate))


def _decimation_stages(factor: int) -> List[int]:
    # Single IIR stages above ~13 are numerically poor, so split the factor.
    stages: List[int] = []
    remaining = factor
    while remaining > 1:
        for step in range(min(remaining, 12), 1, -1):
            if remaining % step == 0:
                break
        else:
            step = remaining
        stages.append(step)
        remaining //= step
    return stages


def decimate(values: np.ndarray, times: np.ndarray, factor: int) -> Tuple[np.ndarray, np.ndarray]:
    """Anti-aliased integer downsampling; times keep every ``factor``-th raw sample."""
    data = np.asarray(values, dtype=np.float64)
    stamps = np.asarray(times, dtype=np.float64)
    if factor <= 1:
        return data.copy(), stamps.copy()
    for step in _decimation_stages(factor):
        ftype = "iir" if step <= 12 else "fir"
        data = signal.decimate(data, step, ftype=ftype, zero_phase=True)
    stamps = stamps[::factor]
    n = min(data.size, stamps.size)
    return data[:n], stamps[:n]


# ----------------------------
# Artefacts
# ----------------------------

def detect_artefacts(values: np.ndarray, sample_rate: float, power: float) -> List[Tuple[int, int]]:
    """
    Sample index spans (inclusive) of gross artefacts.

    The envelope ``smooth(|x|**power)**2`` is compared against 100 times the
    92nd percentile of its local-maximum heights; flagged runs closer than
    200 ms are merged and every span is padded by 50 ms on both sides.
    """
    data = np.asarray(values, dtype=np.float64)
    if data.size < 3:
        return []
    envelope = gaussian_smooth(np.abs(data) ** power, ARTEFACT_SMOOTH_SAMPLES) ** 2
    peaks, _ = signal.find_peaks(envelope)
    if peaks.size == 0:
        return []
    limit = ARTEFACT_FACTOR * float(np.percentile(envelope[peaks], ARTEFACT_PERCENTILE))
    flagged = np.flatnonzero(envelope > limit)
    if flagged.size == 0:
        return []

    merge_gap = ARTEFACT_MERGE_S * sample_rate
    pad = int(round(ARTEFACT_PAD_S * sample_rate))
    spans: List[Tuple[int, int]] = []
    for start, end, _ in find_runs(flagged):
        first, last = int(flagged[start]), int(flagged[end])
        if spans and first - spans[-1][1] < merge_gap:
            spans[-1] = (spans[-1][0], last)
        else:
            spans.append((first, last))
    last_index = data.size - 1
    padded: List[Tuple[int, int]] = []
    for first, last in spans:
        first = max(0, first - pad)
        last = min(last_index, last + pad)
        if padded and first <= padded[-1][1]:
            padded[-1] = (padded[-1][0], last)
        else:
            padded.append((first, last))
    return padded


def locate_raw_beat_peaks(
    values: np.ndarray,
    times: np.ndarray,
    raw_rate: float,
    processing_rate: float,
    approximate: np.ndarray,
    params: ProcessingParameters,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Re-locate beat apexes on the raw signal.

    The raw samples are conditioned at their own rate (no decimation) and
    each apex is searched within ``ceil(1 + raw_rate / processing_rate)``
    raw samples of its processing-rate estimate; ties go to the centre.
    Returns ``(apex_times, apex_values)``.
    """
    approx = np.asarray(approximate, dtype=np.float64)
    stamps = np.asarray(times, dtype=np.float64)
    if approx.size == 0:
        return approx.copy(), approx.copy()
    conditioned = SignalConditioner(ConditioningSettings.from_parameters(params)).process(values, raw_rate)
    half = int(math.ceil(1.0 + raw_rate / processing_rate))
    centres = np.clip(np.searchsorted(stamps, approx), 0, stamps.size - 1)
    left = np.clip(centres - 1, 0, stamps.size - 1)
    centres = np.where(np.abs(stamps[left] - approx) <= np.abs(stamps[centres] - approx), left, centres)

    apex_index = np.empty(approx.size, dtype=np.int64)
    for k, centre in enumerate(centres):
        lo = max(0, int(centre) - half)
        hi = min(stamps.size - 1, int(centre) + half)
        offset = apex_offset(conditioned[lo : hi + 1], int(centre) - lo, half)
        apex_index[k] = lo + offset if offset >= 0 else int(centre)
    return stamps[apex_index], conditioned[apex_index]


# ----------------------------
# Stage entry point
# ----------------------------

def preprocess(
    values: np.ndarray,
    raw_rate: float,
    params: ProcessingParameters,
    *,
    times: Optional[np.ndarray] = None,
    offset: float = 0.0,
) -> PreprocessedSignal:
    """
    Decimate, condition and artefact-mask a raw recording.

    Raises ``ConfigurationError`` when the filter cutoffs do not fit the
    processing rate; nothing is computed in that case.
    """
    raw = np.asarray(values, dtype=np.float64)
    if times is None:
        times = offset + np.arange(raw.size, dtype=np.float64) / raw_rate
    factor = decimation_factor(raw_rate, params.processing_sampling_rate)
    rate = raw_rate / factor
    settings = ConditioningSettings.from_parameters(params)
    settings.validate(rate)

    data, stamps = decimate(raw, times, factor)
    data = SignalConditioner(settings).process(data, rate)

    valid = np.ones(data.size, dtype=bool)
    artefacts: List[Span] = []
    if params.auto_artefacts_removal:
        for first, last in detect_artefacts(data, rate, params.power):
            valid[first : last + 1] = False
            artefacts.append(Span(float(stamps[first]), float(stamps[last])))
        data[~valid] = 0.0
        if artefacts:
            logger.info("Masked %d artefact span(s)", len(artefacts))

    logger.info(
        "Preprocessed %d samples at %.1f Hz into %d samples at %.1f Hz",
        raw.size,
        raw_rate,
        data.size,
        rate,
    )
    return PreprocessedSignal(
        times=stamps,
        values=data,
        valid=valid,
        sample_rate=rate,
        decimation=factor,
        artefacts=tuple(artefacts),
    )


__all__ = [
    "ConditioningSettings",
    "SignalConditioner",
    "decimation_factor",
    "decimate",
    "detect_artefacts",
    "locate_raw_beat_peaks",
    "preprocess",
]
