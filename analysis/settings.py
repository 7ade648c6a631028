from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
import logging
import math
import threading
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional

from shared.errors import ConfigurationError, SessionFormatError

logger = logging.getLogger(__name__)

PARAMETERS_SCHEMA_VERSION = 2
NOTCH_HALF_WIDTH_HZ = 5.0
RATE_UNITS = ("BPM", "Hz")


@dataclass(frozen=True)
class ProcessingParameters:
    """
    Every tunable of the pipeline. Frequencies are in Hz, durations in
    seconds, waveform bounds and peak ranges in processing-rate samples,
    ``stable_index`` and ``outlier`` in milliseconds.
    """

    species: str = "Mouse"
    processing_sampling_rate: float = 1000.0
    de_drift_enable: bool = True
    de_drift_kernel: float = 1.0
    bp_enable: bool = True
    bp_low: float = 60.0
    bp_high: float = 180.0
    notch_filter: bool = False
    power_grid: float = 50.0
    auto_artefacts_removal: bool = True
    power: float = 4.0
    threshold: float = 1e9
    smooth_detection: float = 10.0
    waveform_window_low: int = -15
    waveform_window_high: int = 15
    peak_range: int = 4
    sliding_window_size: float = 1.0
    suspicious_frequency_high: float = 15.0
    suspicious_frequency_low: float = 8.0
    stable_index: float = 5.0
    outlier: float = 30.0
    pass_number: int = 2
    discontinue: float = 1.0
    unit: str = "BPM"

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)

    @classmethod
    def for_species(cls, species: str) -> "ProcessingParameters":
        try:
            return SPECIES_PRESETS[species]
        except KeyError:
            raise ConfigurationError(f"unknown species preset: {species!r}") from None

    @property
    def window_width(self) -> int:
        return int(self.waveform_window_high - self.waveform_window_low + 1)

    def validate(self, sample_rate: Optional[float] = None) -> None:
        def positive(name: str) -> None:
            try:
                value = float(getattr(self, name))
            except (TypeError, ValueError):
                raise ConfigurationError(f"{name} must be a number") from None
            if not (math.isfinite(value) and value > 0):
                raise ConfigurationError(f"{name} must be positive")

        for name in (
            "processing_sampling_rate",
            "de_drift_kernel",
            "threshold",
            "smooth_detection",
            "sliding_window_size",
            "stable_index",
            "outlier",
            "discontinue",
            "power_grid",
        ):
            positive(name)
        for name in ("waveform_window_low", "waveform_window_high", "peak_range", "pass_number"):
            try:
                integral = float(getattr(self, name)).is_integer()
            except (TypeError, ValueError):
                integral = False
            if not integral:
                raise ConfigurationError(f"{name} must be an integer")
        if not (0 < self.bp_low < self.bp_high):
            raise ConfigurationError("bp_low must be positive and below bp_high")
        if not (0 < self.power < 10):
            raise ConfigurationError("power must be between 0 and 10")
        if self.waveform_window_low >= self.waveform_window_high:
            raise ConfigurationError("waveform_window_low must be below waveform_window_high")
        if self.peak_range < 0:
            raise ConfigurationError("peak_range must be non-negative")
        if not (0 < self.suspicious_frequency_low < self.suspicious_frequency_high):
            raise ConfigurationError(
                "suspicious_frequency_low must be positive and below suspicious_frequency_high"
            )
        if self.pass_number < 1:
            raise ConfigurationError("pass_number must be at least 1")
        if self.unit not in RATE_UNITS:
            raise ConfigurationError(f"unit must be one of {RATE_UNITS}")
        if sample_rate is not None:
            if not (math.isfinite(sample_rate) and sample_rate > 0):
                raise ConfigurationError("sample_rate must be positive")
            nyquist = sample_rate / 2.0
            if self.bp_enable and self.bp_high >= nyquist:
                raise ConfigurationError("bp_high must be between bp_low and Nyquist")
            if self.notch_filter and not (
                NOTCH_HALF_WIDTH_HZ < self.power_grid < nyquist - NOTCH_HALF_WIDTH_HZ
            ):
                raise ConfigurationError("power_grid notch band must lie between 0 and Nyquist")


SPECIES_PRESETS: Dict[str, ProcessingParameters] = {
    "Mouse": ProcessingParameters(),
    "Human": ProcessingParameters(
        species="Human",
        bp_low=1.0,
        notch_filter=True,
        auto_artefacts_removal=False,
        threshold=1e36,
        smooth_detection=20.0,
        waveform_window_low=-150,
        waveform_window_high=250,
        peak_range=20,
        sliding_window_size=5.0,
        suspicious_frequency_high=2.0,
        suspicious_frequency_low=1.0,
        stable_index=50.0,
        outlier=240.0,
        discontinue=4.0,
    ),
}


# ----------------------------
# Stage gating
# ----------------------------

STAGES = ("preprocess", "detect", "project", "rate")

STAGE_FIELDS: Dict[str, FrozenSet[str]] = {
    "preprocess": frozenset(
        {
            "processing_sampling_rate",
            "de_drift_enable",
            "de_drift_kernel",
            "bp_enable",
            "bp_low",
            "bp_high",
            "notch_filter",
            "power_grid",
            "auto_artefacts_removal",
        }
    ),
    "detect": frozenset(
        {"power", "threshold", "smooth_detection", "waveform_window_low", "waveform_window_high", "peak_range"}
    ),
    "project": frozenset(
        {
            "suspicious_frequency_high",
            "suspicious_frequency_low",
            "stable_index",
            "outlier",
            "pass_number",
            "discontinue",
        }
    ),
    "rate": frozenset({"sliding_window_size"}),
}


def changed_fields(previous: Optional[ProcessingParameters], current: ProcessingParameters) -> FrozenSet[str]:
    if previous is None:
        return frozenset(f.name for f in fields(ProcessingParameters))
    return frozenset(
        f.name for f in fields(ProcessingParameters) if getattr(previous, f.name) != getattr(current, f.name)
    )


def stages_to_rerun(
    previous: Optional[ProcessingParameters], current: ProcessingParameters
) -> FrozenSet[str]:
    """
    Stages whose parameter snapshot differs between ``previous`` and
    ``current``. Any upstream change marks every downstream stage as well;
    ``previous=None`` (nothing computed yet) marks all stages.
    """
    changed = changed_fields(previous, current)
    rerun = set()
    upstream_dirty = False
    for stage in STAGES:
        if upstream_dirty or changed & STAGE_FIELDS[stage]:
            rerun.add(stage)
            upstream_dirty = True
    return frozenset(rerun)


def threshold_only_change(previous: Optional[ProcessingParameters], current: ProcessingParameters) -> bool:
    """True when the only detection-affecting edit is the threshold, so the template can be kept."""
    if previous is None:
        return False
    changed = changed_fields(previous, current)
    others = (STAGE_FIELDS["preprocess"] | STAGE_FIELDS["detect"]) - {"threshold"}
    return "threshold" in changed and not (changed & others)


# ----------------------------
# Schema versioning
# ----------------------------

_LEGACY_NAMES: Dict[str, str] = {
    "Species": "species",
    "ProcessingSamplingRate": "processing_sampling_rate",
    "DeDriftEnable": "de_drift_enable",
    "BPEnable": "bp_enable",
    "BPLow": "bp_low",
    "BPHigh": "bp_high",
    "NotchFilter": "notch_filter",
    "PowerGrid": "power_grid",
    "AutoArtefactsRemoval": "auto_artefacts_removal",
    "Power": "power",
    "Threshold": "threshold",
    "SmoothDetection": "smooth_detection",
    "WaveformWindowLow": "waveform_window_low",
    "WaveformWindowHigh": "waveform_window_high",
    "RPeakRange": "peak_range",
    "PeakRange": "peak_range",
    "SlidingWindowSize": "sliding_window_size",
    "SuspiciousFrequencyHigh": "suspicious_frequency_high",
    "SuspiciousFrequencyLow": "suspicious_frequency_low",
    "StableIndex": "stable_index",
    "Outlier": "outlier",
    "PassNumber": "pass_number",
    "Discontinue": "discontinue",
    "Unit": "unit",
}

# Version 1 stored the drift kernel in processing-rate samples.
_LEGACY_SAMPLE_KERNELS = ("SmoothKernel", "DeDriftKernel")

_INT_FIELDS = frozenset({"waveform_window_low", "waveform_window_high", "peak_range", "pass_number"})
_BOOL_FIELDS = frozenset(
    {"de_drift_enable", "bp_enable", "notch_filter", "auto_artefacts_removal"}
)


def parameters_to_dict(params: ProcessingParameters) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"version": PARAMETERS_SCHEMA_VERSION}
    payload.update(params.to_dict())
    return payload


_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0"}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise ValueError(f"not a boolean: {value!r}")
    if isinstance(value, (bool, int, float)):
        # Legacy files store flags as 0/1 numbers.
        if value in (0, 1):
            return bool(value)
    raise ValueError(f"not a boolean: {value!r}")


def _coerce(name: str, value: Any, default: Any) -> Any:
    if name in _BOOL_FIELDS:
        return _parse_bool(value)
    if name in _INT_FIELDS:
        return int(round(float(value)))
    if isinstance(default, float):
        return float(value)
    return str(value)


def _migrate_v1(payload: Mapping[str, Any]) -> Dict[str, Any]:
    migrated: Dict[str, Any] = {}
    rate = float(payload.get("ProcessingSamplingRate", 1000.0) or 1000.0)
    for key, value in payload.items():
        if key in _LEGACY_NAMES:
            migrated[_LEGACY_NAMES[key]] = value
        elif key in _LEGACY_SAMPLE_KERNELS:
            migrated["de_drift_kernel"] = float(value) / rate
        else:
            migrated[key] = value
    return migrated


def parameters_from_dict(
    payload: Mapping[str, Any], base: Optional[ProcessingParameters] = None
) -> ProcessingParameters:
    """
    Rebuild parameters field by field. Missing fields come from ``base`` (or
    the species preset named in the payload), unknown keys are ignored and
    fields that cannot be coerced keep their default.
    """
    if not isinstance(payload, Mapping):
        raise SessionFormatError("parameters must be a mapping")
    try:
        version = int(payload.get("version", 1))
    except (TypeError, ValueError) as exc:
        raise SessionFormatError(f"invalid parameters version: {exc}") from exc
    if version > PARAMETERS_SCHEMA_VERSION:
        raise SessionFormatError(f"unsupported parameters version: {version}")
    data = _migrate_v1(payload) if version < 2 else dict(payload)

    if base is None:
        species = str(data.get("species", "Mouse"))
        base = SPECIES_PRESETS.get(species, SPECIES_PRESETS["Mouse"])
    known = {f.name for f in fields(ProcessingParameters)}
    changes: Dict[str, Any] = {}
    for name, value in data.items():
        if name not in known:
            if name != "version":
                logger.debug("Ignoring unknown parameter field %s", name)
            continue
        default = getattr(base, name)
        try:
            changes[name] = _coerce(name, value, default)
        except (TypeError, ValueError, OverflowError) as exc:
            logger.debug("Keeping default for parameter %s: %s", name, exc)
    params = replace(base, **changes)
    params.validate()
    return params


# ----------------------------
# Validating store
# ----------------------------

class ParametersStore:
    """
    Thread-safe parameter container. Edits are validated before they are
    committed; a rejected edit raises and leaves the previous snapshot in
    place. Subscribers are notified with every committed snapshot.
    """

    def __init__(self, initial: Optional[ProcessingParameters] = None, *, sample_rate: Optional[float] = None) -> None:
        params = initial or ProcessingParameters()
        params.validate(sample_rate)
        self._params = params
        self._sample_rate = sample_rate
        self._lock = threading.Lock()
        self._subscribers: Dict[int, Callable[[ProcessingParameters], None]] = {}
        self._next_token = 0

    def get(self) -> ProcessingParameters:
        with self._lock:
            return self._params

    def update(self, **kwargs) -> ProcessingParameters:
        with self._lock:
            try:
                candidate = replace(self._params, **kwargs)
            except TypeError as exc:
                raise ConfigurationError(str(exc)) from exc
            candidate.validate(self._sample_rate)
            self._params = candidate
            callbacks = list(self._subscribers.values())
        self._notify(candidate, callbacks)
        return candidate

    def replace_all(self, params: ProcessingParameters) -> ProcessingParameters:
        with self._lock:
            params.validate(self._sample_rate)
            self._params = params
            callbacks = list(self._subscribers.values())
        self._notify(params, callbacks)
        return params

    def _notify(self, params: ProcessingParameters, callbacks) -> None:
        for callback in callbacks:
            try:
                callback(params)
            except Exception as exc:
                # A bad subscriber should not undo a committed edit.
                logger.debug("Parameter subscriber failed: %s", exc)

    def subscribe(self, callback: Callable[[ProcessingParameters], None], *, replay: bool = True) -> Callable[[], None]:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = callback
            snapshot = self._params
        if replay:
            callback(snapshot)

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe


__all__ = [
    "PARAMETERS_SCHEMA_VERSION",
    "ProcessingParameters",
    "ParametersStore",
    "SPECIES_PRESETS",
    "STAGES",
    "STAGE_FIELDS",
    "changed_fields",
    "parameters_from_dict",
    "parameters_to_dict",
    "stages_to_rerun",
    "threshold_only_change",
]
