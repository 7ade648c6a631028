from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
import getpass
import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np

from analysis.settings import ProcessingParameters, parameters_from_dict, parameters_to_dict
from shared.errors import SessionFormatError
from shared.types import Span, spans_from_pairs, spans_to_pairs

logger = logging.getLogger(__name__)

SESSION_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class Provenance:
    source_path: Optional[str] = None
    source_type: Optional[str] = None
    channel: Optional[str] = None
    saved_at: Optional[str] = None
    user: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "source_path": self.source_path,
            "source_type": self.source_type,
            "channel": self.channel,
            "saved_at": self.saved_at,
            "user": self.user,
        }


@dataclass(frozen=True)
class SessionRecord:
    """Everything needed to resume curation of one recording channel."""

    heart_beats: np.ndarray
    beat_peak_times: np.ndarray = field(default_factory=lambda: np.zeros(0))
    beat_peak_values: np.ndarray = field(default_factory=lambda: np.zeros(0))
    artefacts: Tuple[Span, ...] = ()
    removed_windows: Tuple[Span, ...] = ()
    parameters: ProcessingParameters = field(default_factory=ProcessingParameters)
    provenance: Provenance = field(default_factory=Provenance)
    history: Tuple[Tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        beats = np.asarray(self.heart_beats, dtype=np.float64).ravel()
        if beats.size > 1 and not np.all(np.diff(beats) > 0):
            raise ValueError("heart_beats must be strictly increasing")
        object.__setattr__(self, "heart_beats", beats)
        object.__setattr__(self, "beat_peak_times", np.asarray(self.beat_peak_times, dtype=np.float64).ravel())
        object.__setattr__(self, "beat_peak_values", np.asarray(self.beat_peak_values, dtype=np.float64).ravel())
        object.__setattr__(self, "artefacts", tuple(self.artefacts))
        object.__setattr__(self, "removed_windows", tuple(self.removed_windows))
        object.__setattr__(self, "history", tuple(tuple(entry) for entry in self.history))


def stamp(record: SessionRecord, *, user: Optional[str] = None, when: Optional[datetime] = None) -> SessionRecord:
    """Return ``record`` with save time and user filled in and appended to its history."""
    saved_at = (when or datetime.now()).isoformat(timespec="seconds")
    if user is None:
        try:
            user = getpass.getuser()
        except (KeyError, OSError) as exc:
            logger.debug("Could not determine user name: %s", exc)
            user = "unknown"
    provenance = replace(record.provenance, saved_at=saved_at, user=user)
    return replace(record, provenance=provenance, history=record.history + ((saved_at, user),))


def session_to_dict(record: SessionRecord) -> Dict[str, Any]:
    return {
        "version": SESSION_SCHEMA_VERSION,
        "heart_beats": [float(t) for t in record.heart_beats],
        "beat_peaks": {
            "times": [float(t) for t in record.beat_peak_times],
            "values": [float(v) for v in record.beat_peak_values],
        },
        "artefacts": spans_to_pairs(record.artefacts),
        "removed_windows": spans_to_pairs(record.removed_windows),
        "parameters": parameters_to_dict(record.parameters),
        "provenance": record.provenance.to_dict(),
        "history": [list(entry) for entry in record.history],
    }


def _spans(data: Mapping[str, Any], key: str) -> Tuple[Span, ...]:
    try:
        return spans_from_pairs(data.get(key) or [])
    except (TypeError, ValueError, IndexError) as exc:
        raise SessionFormatError(f"invalid {key}: {exc}") from exc


def session_from_dict(data: Mapping[str, Any], *, base: Optional[ProcessingParameters] = None) -> SessionRecord:
    if not isinstance(data, Mapping):
        raise SessionFormatError("session document must be a JSON object")
    try:
        version = int(data.get("version", 1) or 1)
    except (TypeError, ValueError) as exc:
        raise SessionFormatError(f"invalid session version: {exc}") from exc
    if version > SESSION_SCHEMA_VERSION:
        raise SessionFormatError(f"unsupported session version: {version}")

    try:
        beats = np.asarray(data.get("heart_beats") or [], dtype=np.float64)
        # Older sessions kept manually added beats separately.
        added = np.asarray(data.get("added_beats") or [], dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise SessionFormatError(f"invalid heart_beats: {exc}") from exc
    beats = np.unique(np.round(np.concatenate((beats.ravel(), added.ravel())), 6))

    removed = _spans(data, "removed_windows") + _spans(data, "interpolated_windows")
    peaks = data.get("beat_peaks") or {}
    if not isinstance(peaks, Mapping):
        peaks = {}
    provenance_data = data.get("provenance") or {}
    provenance = Provenance(
        **{key: provenance_data.get(key) for key in Provenance.__dataclass_fields__}
    )
    history = tuple(
        (str(entry[0]), str(entry[1])) for entry in (data.get("history") or []) if len(entry) >= 2
    )
    return SessionRecord(
        heart_beats=beats,
        beat_peak_times=np.asarray(peaks.get("times") or [], dtype=np.float64),
        beat_peak_values=np.asarray(peaks.get("values") or [], dtype=np.float64),
        artefacts=_spans(data, "artefacts"),
        removed_windows=tuple(sorted(removed)),
        parameters=parameters_from_dict(data.get("parameters") or {}, base=base),
        provenance=provenance,
        history=history,
    )


def save_session(path: Path | str, record: SessionRecord, *, user: Optional[str] = None) -> SessionRecord:
    """Write ``record`` as JSON (``.json`` suffix enforced) and return the stamped record."""
    path = Path(path)
    if path.suffix.lower() != ".json":
        path = path.with_suffix(".json")
    stamped = stamp(record, user=user)
    path.write_text(json.dumps(session_to_dict(stamped), indent=2))
    logger.info("Saved session with %d beats to %s", stamped.heart_beats.size, path)
    return stamped


def load_session(path: Path | str, *, base: Optional[ProcessingParameters] = None) -> SessionRecord:
    path = Path(path)
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise SessionFormatError(f"{path.name} is not valid JSON: {exc}") from exc
    record = session_from_dict(data, base=base)
    logger.info("Loaded session with %d beats from %s", record.heart_beats.size, path)
    return record


__all__ = [
    "Provenance",
    "SESSION_SCHEMA_VERSION",
    "SessionRecord",
    "load_session",
    "save_session",
    "session_from_dict",
    "session_to_dict",
    "stamp",
]
