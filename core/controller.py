from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
import logging
from pathlib import Path
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from analysis.heart_rate import sliding_rate
from analysis.metrics import apex_offset
from analysis.models import RATE_SCALE, HeartRateSeries, ProjectionResult
from analysis.settings import ParametersStore, ProcessingParameters, stages_to_rerun, threshold_only_change
from recording import session as session_io
from shared.errors import ConfigurationError, DetectionDegenerateError, PipelineError, SessionFormatError
from shared.models import DetectionResult, PreprocessedSignal, Recording
from shared.types import Span

from .conditioning import decimation_factor, locate_raw_beat_peaks, preprocess
from .detection import DETECTOR_REGISTRY, ConfirmCallback
from .projection import ProjectionContext, finalize_beats, project_bidirectional
from .ranges import beats_in_range, delete_window, insert_removed_window, processing_ranges

logger = logging.getLogger(__name__)

StopSignal = Union[threading.Event, Callable[[], bool]]

_RECOVERABLE = (PipelineError, ValueError, IndexError, OSError)


@dataclass(frozen=True)
class PipelineFailure:
    """Structured reason a stage did not complete."""

    stage: str
    kind: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StageOutcome:
    stage: str
    ran: bool
    failure: Optional[PipelineFailure] = None
    info: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.failure is None


def _failure(stage: str, exc: BaseException) -> PipelineFailure:
    details: Dict[str, Any] = {}
    if isinstance(exc, ConfigurationError):
        kind = "configuration"
    elif isinstance(exc, DetectionDegenerateError):
        kind = "degenerate"
        details = {"candidates": exc.candidates, "suggested_threshold": exc.suggested_threshold}
    elif isinstance(exc, SessionFormatError):
        kind = "session"
    elif isinstance(exc, OSError):
        kind = "io"
    else:
        kind = "invalid"
    return PipelineFailure(stage=stage, kind=kind, message=str(exc), details=details)


def _stop_requested(stop: Optional[StopSignal]) -> bool:
    if stop is None:
        return False
    if isinstance(stop, threading.Event):
        return stop.is_set()
    return bool(stop())


class PipelineController:
    """
    Owns one recording channel and every derived state: the conditioned
    signal, the detection snapshot, the curated beats, removed windows and
    the heart rate. Stage methods return ``StageOutcome`` values and never
    raise for recoverable problems; state is replaced only after a stage
    completes.
    """

    def __init__(
        self,
        *,
        params: Optional[ProcessingParameters] = None,
        max_workers: int = 1,
        detector: str = "template",
    ) -> None:
        if detector not in DETECTOR_REGISTRY:
            raise ValueError(f"unknown detector {detector!r}; available: {sorted(DETECTOR_REGISTRY)}")
        self._store = ParametersStore(params)
        self._detector = DETECTOR_REGISTRY[detector]()
        self._max_workers = max(1, int(max_workers))
        self._lock = threading.RLock()

        self._recording: Optional[Recording] = None
        self._signal: Optional[PreprocessedSignal] = None
        self._detection: Optional[DetectionResult] = None
        self._heart_beats = np.zeros(0, dtype=np.float64)
        self._removed: Tuple[Span, ...] = ()
        self._heart_rate: Optional[HeartRateSeries] = None
        self._snapshots: Dict[str, ProcessingParameters] = {}
        self._keep_beats = False
        self._restored: Optional[ProcessingParameters] = None
        self._rate_dirty = True
        self._unresolved: Tuple[float, ...] = ()

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def parameters(self) -> ProcessingParameters:
        return self._store.get()

    @property
    def parameters_store(self) -> ParametersStore:
        return self._store

    @property
    def recording(self) -> Optional[Recording]:
        return self._recording

    @property
    def signal(self) -> Optional[PreprocessedSignal]:
        return self._signal

    @property
    def detection(self) -> Optional[DetectionResult]:
        return self._detection

    @property
    def heart_beats(self) -> np.ndarray:
        with self._lock:
            return self._heart_beats.copy()

    @property
    def removed_windows(self) -> Tuple[Span, ...]:
        return self._removed

    @property
    def artefacts(self) -> Tuple[Span, ...]:
        signal = self._signal
        return signal.artefacts if signal is not None else ()

    @property
    def exclusions(self) -> Tuple[Span, ...]:
        return tuple(sorted(self.artefacts + self._removed))

    @property
    def heart_rate(self) -> Optional[HeartRateSeries]:
        return self._heart_rate

    @property
    def unresolved(self) -> Tuple[float, ...]:
        """Start times of suspicious spans the last projection could not seed."""
        return self._unresolved

    # ------------------------------------------------------------------
    # Loading and parameters
    # ------------------------------------------------------------------

    def load_recording(
        self,
        recording: Recording,
        *,
        heart_beats: Optional[Sequence[float]] = None,
        removed_windows: Iterable[Span] = (),
        parameters: Optional[ProcessingParameters] = None,
    ) -> StageOutcome:
        """
        Replace the current recording and drop every derived result.

        ``heart_beats`` (e.g. from a saved session) survive the next
        detection instead of being reset to the detected peaks.
        """
        try:
            if parameters is not None:
                self._store.replace_all(parameters)
            beats = self._check_beats(heart_beats if heart_beats is not None else ())
        except _RECOVERABLE as exc:
            return StageOutcome("load", False, _failure("load", exc))
        with self._lock:
            self._recording = recording
            self._signal = None
            self._detection = None
            self._heart_beats = beats
            self._removed = tuple(sorted(removed_windows))
            self._heart_rate = None
            self._snapshots.clear()
            self._keep_beats = heart_beats is not None
            # Restored beats count as projected with the parameters they were saved with.
            self._restored = self._store.get() if heart_beats is not None else None
            self._rate_dirty = True
            self._unresolved = ()
        logger.info(
            "Loaded recording %s (%d samples at %.1f Hz)",
            recording.channel,
            recording.n_samples,
            recording.sample_rate,
        )
        return StageOutcome("load", True)

    def processing_rate(self, params: Optional[ProcessingParameters] = None) -> Optional[float]:
        recording = self._recording
        if recording is None:
            return None
        params = params or self.parameters
        return recording.sample_rate / decimation_factor(recording.sample_rate, params.processing_sampling_rate)

    def update_parameters(self, **changes) -> StageOutcome:
        """
        Validate and commit a parameter edit; an invalid edit leaves the
        previous parameters in place. Stages are re-run by ``run()``.
        """
        current = self.parameters
        try:
            try:
                candidate = replace(current, **changes)
            except TypeError as exc:
                raise ConfigurationError(str(exc)) from exc
            candidate.validate(self.processing_rate(candidate))
            self._store.replace_all(candidate)
        except ConfigurationError as exc:
            logger.info("Rejected parameter edit %s: %s", sorted(changes), exc)
            return StageOutcome("parameters", False, _failure("parameters", exc))
        dirty = sorted(stages_to_rerun(current, candidate))
        logger.debug("Parameters changed; stale stages: %s", dirty)
        return StageOutcome("parameters", True, info={"stale": dirty})

    def stale_stages(self) -> List[str]:
        params = self.parameters
        stale = []
        for stage in ("preprocess", "detect", "project", "rate"):
            snapshot = self._snapshots.get(stage)
            if snapshot is None and stage == "project":
                snapshot = self._restored
            if stage in stages_to_rerun(snapshot, params):
                stale.append(stage)
        if self._rate_dirty and "rate" not in stale:
            stale.append("rate")
        return stale

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def run(self, confirm: Optional[ConfirmCallback] = None, *, stop_event: Optional[StopSignal] = None) -> List[StageOutcome]:
        """Run every stale stage in order, stopping at the first failure."""
        outcomes = [self.preprocess()]
        if outcomes[-1].ok:
            outcomes.append(self.detect(confirm=confirm))
        if outcomes[-1].ok and "project" in self.stale_stages():
            outcomes.append(self.project(stop_event=stop_event))
        if outcomes[-1].ok:
            outcomes.append(self.update_heart_rate())
        return outcomes

    def preprocess(self, force: bool = False) -> StageOutcome:
        recording = self._recording
        if recording is None:
            return self._missing("preprocess", "no recording loaded")
        params = self.parameters
        if not force and self._signal is not None and "preprocess" not in self.stale_stages():
            logger.debug("Preprocessing unchanged; skipped")
            return StageOutcome("preprocess", False)
        try:
            conditioned = preprocess(recording.values, recording.sample_rate, params, times=recording.times)
        except _RECOVERABLE as exc:
            logger.warning("Preprocessing failed: %s", exc)
            return StageOutcome("preprocess", False, _failure("preprocess", exc))
        with self._lock:
            self._signal = conditioned
            self._snapshots = {"preprocess": params}
            self._rate_dirty = True
        return StageOutcome("preprocess", True, info={"artefacts": len(conditioned.artefacts)})

    def detect(self, confirm: Optional[ConfirmCallback] = None, force: bool = False) -> StageOutcome:
        """
        Detect candidate beats. A threshold-only edit keeps the current
        template; a threshold lowered after confirmation is written back to
        the parameters. Curated beats are reset to the detected peaks unless
        they were restored from a session.
        """
        conditioned = self._signal
        if conditioned is None:
            return self._missing("detect", "signal has not been preprocessed")
        params = self.parameters
        previous = self._snapshots.get("detect")
        if not force and self._detection is not None and "detect" not in self.stale_stages():
            logger.debug("Detection unchanged; skipped")
            return StageOutcome("detect", False)
        reuse = self._detection is not None and threshold_only_change(previous, params)
        prior = self._detection.template if self._detection is not None else None
        try:
            result = self._detector.detect(
                conditioned,
                params,
                prior_template=prior,
                reuse_template=reuse,
                confirm=confirm,
            )
        except _RECOVERABLE as exc:
            logger.warning("Detection failed: %s", exc)
            return StageOutcome("detect", False, _failure("detect", exc))

        if result.threshold != params.threshold:
            params = self._store.update(threshold=result.threshold)
            logger.info("Detection threshold lowered to %g", result.threshold)
        with self._lock:
            self._detection = result
            if self._keep_beats:
                self._keep_beats = False
            else:
                self._heart_beats = finalize_beats(result.peak_times)
                self._restored = None
            self._snapshots["detect"] = params
            self._snapshots.pop("project", None)
            self._rate_dirty = True
            count = self._heart_beats.size
        return StageOutcome(
            "detect",
            True,
            info={"peaks": len(result), "beats": count, "threshold": result.threshold, "reused_template": reuse},
        )

    def update_heart_rate(self) -> StageOutcome:
        recording = self._recording
        if recording is None:
            return self._missing("rate", "no recording loaded")
        params = self.parameters
        with self._lock:
            beats = self._heart_beats.copy()
            exclusions = self.exclusions
        try:
            series = sliding_rate(
                beats,
                params.sliding_window_size,
                exclusions=exclusions,
                start_time=recording.start_time,
            )
        except _RECOVERABLE as exc:
            return StageOutcome("rate", False, _failure("rate", exc))
        with self._lock:
            self._heart_rate = series
            self._snapshots["rate"] = params
            self._rate_dirty = False
        mean = series.mean()
        if mean is not None:
            logger.info("Mean heart rate %.2f %s", mean * RATE_SCALE[params.unit], params.unit)
        return StageOutcome("rate", True, info={"beats": len(series), "masked": int(np.sum(~series.valid))})

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def range_plan(self) -> Tuple[Span, ...]:
        """Independent ranges the next projection pass would process."""
        recording = self._recording
        if recording is None:
            return ()
        params = self.parameters
        with self._lock:
            beats = self._heart_beats.copy()
            exclusions = self.exclusions
        return processing_ranges(
            beats,
            exclusions,
            start=recording.start_time,
            end=recording.end_time,
            discontinue=params.discontinue,
            merge_gap=params.sliding_window_size,
        )

    def shapes_for(self, beats: np.ndarray) -> np.ndarray:
        """
        Waveform window for each beat: the detected shape when the beat is a
        detected peak, otherwise a window cut from the conditioned signal
        (clipped at the signal edges).
        """
        detection, conditioned = self._detection, self._signal
        if detection is None or conditioned is None:
            raise ValueError("beat shapes need a detection result")
        beats = np.asarray(beats, dtype=np.float64)
        low, high = detection.window
        shapes = np.zeros((beats.size, high - low + 1), dtype=np.float64)
        found = detection.lookup(beats)
        hit = found >= 0
        shapes[hit] = detection.shapes[found[hit]]
        if np.any(~hit):
            centres = np.array([conditioned.nearest_index(t) for t in beats[~hit]], dtype=np.int64)
            idx = np.clip(centres[:, None] + np.arange(low, high + 1)[None, :], 0, len(conditioned) - 1)
            shapes[~hit] = conditioned.values[idx]
        return shapes

    def project(self, max_workers: Optional[int] = None, stop_event: Optional[StopSignal] = None) -> StageOutcome:
        """
        Run ``pass_number`` projection passes over the curated beats.

        Each pass splits the beats into independent ranges, resolves each
        range forward then backward (concurrently when ``max_workers > 1``)
        and commits the joined result. A stop request is honoured between
        passes and ranges; completed passes stay committed.
        """
        recording, detection = self._recording, self._detection
        if recording is None or detection is None or self._signal is None:
            return self._missing("project", "beats have not been detected")
        params = self.parameters
        ctx = ProjectionContext.from_parameters(params, self._signal.sample_rate, detection.template, detection.max_corr)
        workers = self._max_workers if max_workers is None else max(1, int(max_workers))

        unresolved: List[float] = []
        for number in range(1, int(params.pass_number) + 1):
            if _stop_requested(stop_event):
                return self._cancelled(number - 1, unresolved)
            with self._lock:
                beats = self._heart_beats.copy()
            try:
                shapes = self.shapes_for(beats)
            except _RECOVERABLE as exc:
                return StageOutcome("project", False, _failure("project", exc))
            ranges = self.range_plan()

            jobs: List[np.ndarray] = []
            assigned = np.zeros(beats.size, dtype=bool)
            for span in ranges:
                mask = beats_in_range(beats, span) & ~assigned
                assigned |= mask
                jobs.append(mask)

            def run_range(mask: np.ndarray) -> Optional[ProjectionResult]:
                if _stop_requested(stop_event):
                    return None
                return project_bidirectional(beats[mask], shapes[mask], ctx)

            if workers > 1 and len(jobs) > 1:
                with ThreadPoolExecutor(max_workers=workers) as pool:
                    results = list(pool.map(run_range, jobs))
            else:
                results = []
                for mask in jobs:
                    results.append(run_range(mask))
                    if results[-1] is None:
                        break
            if any(result is None for result in results):
                return self._cancelled(number - 1, unresolved)

            pieces = [beats[~assigned]] + [result.beats for result in results]
            for result in results:
                unresolved.extend(result.unresolved)
                if not result.ok:
                    logger.warning("Projection range left unresolved: %s", result.failure)
            updated = finalize_beats(np.concatenate(pieces))
            with self._lock:
                self._heart_beats = updated
                self._rate_dirty = True
            logger.info(
                "Projection pass %d/%d over %d range(s): %d -> %d beats",
                number,
                params.pass_number,
                len(ranges),
                beats.size,
                updated.size,
            )

        with self._lock:
            self._unresolved = tuple(sorted(set(unresolved)))
            self._snapshots["project"] = params
        return StageOutcome(
            "project",
            True,
            info={"passes": int(params.pass_number), "beats": self._heart_beats.size, "unresolved": len(self._unresolved)},
        )

    # ------------------------------------------------------------------
    # Manual correction
    # ------------------------------------------------------------------

    def toggle_beat(self, time: float) -> StageOutcome:
        """
        Toggle a beat near ``time``. A curated beat closer to ``time`` than
        every detected peak is removed; otherwise the nearest detected peak
        is toggled in or out of the curated beats.
        """
        detection = self._detection
        click = float(time)
        tolerance = 0.5 / self._signal.sample_rate if self._signal is not None else 1e-6
        with self._lock:
            beats = self._heart_beats
            target = click
            if detection is not None and len(detection):
                target = float(detection.peak_times[np.argmin(np.abs(detection.peak_times - click))])
            if beats.size:
                nearest = float(beats[np.argmin(np.abs(beats - click))])
                if abs(nearest - click) < abs(target - click):
                    target = nearest
            present = np.abs(beats - target) <= tolerance
            if np.any(present):
                self._heart_beats = beats[~present]
                action = "removed"
            else:
                self._heart_beats = finalize_beats(np.append(beats, target))
                action = "added"
            self._rate_dirty = True
        logger.debug("Beat at %.6f s %s", target, action)
        outcome = self.update_heart_rate()
        return StageOutcome("toggle", True, outcome.failure, info={"time": target, "action": action})

    def add_beat(self, time: float) -> StageOutcome:
        """Insert a beat at the processed sample nearest to ``time``."""
        conditioned = self._signal
        if conditioned is None:
            return self._missing("add", "signal has not been preprocessed")
        target = float(conditioned.times[conditioned.nearest_index(float(time))])
        with self._lock:
            beats = self._heart_beats
            if np.any(np.abs(beats - target) <= 0.5 / conditioned.sample_rate):
                return StageOutcome("add", False, info={"time": target})
            self._heart_beats = finalize_beats(np.append(beats, target))
            self._rate_dirty = True
        outcome = self.update_heart_rate()
        return StageOutcome("add", True, outcome.failure, info={"time": target})

    def add_removed_window(self, start: float, end: float) -> StageOutcome:
        try:
            window = Span(float(min(start, end)), float(max(start, end)))
        except ValueError as exc:
            return StageOutcome("removed_windows", False, _failure("removed_windows", exc))
        with self._lock:
            self._removed = insert_removed_window(self._removed, self.artefacts, window)
            self._rate_dirty = True
            count = len(self._removed)
        outcome = self.update_heart_rate() if self._recording is not None else StageOutcome("rate", False)
        return StageOutcome("removed_windows", True, outcome.failure, info={"windows": count})

    def delete_removed_window(self, index: int) -> StageOutcome:
        with self._lock:
            try:
                self._removed = delete_window(self._removed, index)
            except IndexError as exc:
                return StageOutcome("removed_windows", False, _failure("removed_windows", exc))
            self._rate_dirty = True
            count = len(self._removed)
        outcome = self.update_heart_rate() if self._recording is not None else StageOutcome("rate", False)
        return StageOutcome("removed_windows", True, outcome.failure, info={"windows": count})

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _apex_estimates(self, beats: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Apex time and value of each beat on the conditioned signal: the
        detector's apex for detected peaks, otherwise the maximum near the
        template apex in the window around the beat.
        """
        detection, conditioned = self._detection, self._signal
        low, high = detection.window
        half_range = int(self.parameters.peak_range)
        times = np.empty(beats.size, dtype=np.float64)
        values = np.empty(beats.size, dtype=np.float64)
        found = detection.lookup(beats)
        hit = found >= 0
        times[hit] = detection.beat_peak_times[found[hit]]
        values[hit] = detection.beat_peak_values[found[hit]]
        last = len(conditioned) - 1
        for k in np.flatnonzero(~hit):
            centre = conditioned.nearest_index(float(beats[k]))
            lo, hi = max(0, centre + low), min(last, centre + high)
            offset = apex_offset(
                conditioned.values[lo : hi + 1],
                centre + low + detection.template_apex - lo,
                half_range,
                conditioned.valid[lo : hi + 1],
            )
            index = lo + offset if offset >= 0 else centre
            times[k] = conditioned.times[index]
            values[k] = conditioned.values[index]
        return times, values

    def build_session_record(self) -> session_io.SessionRecord:
        """
        Current curation state. Beat apexes start from the processed apex of
        each beat and are re-located at the raw rate when the signal was
        decimated.
        """
        recording, conditioned, detection = self._recording, self._signal, self._detection
        if recording is None:
            raise ValueError("no recording loaded")
        params = self.parameters
        with self._lock:
            beats = self._heart_beats.copy()
            removed = self._removed
        if conditioned is None or not beats.size:
            peak_times = peak_values = np.zeros(0)
        elif detection is not None and conditioned.decimation == 1:
            peak_times, peak_values = self._apex_estimates(beats)
        else:
            approx = self._apex_estimates(beats)[0] if detection is not None else beats
            peak_times, peak_values = locate_raw_beat_peaks(
                recording.values,
                recording.times,
                recording.sample_rate,
                conditioned.sample_rate,
                approx,
                params,
            )
        return session_io.SessionRecord(
            heart_beats=beats,
            beat_peak_times=peak_times,
            beat_peak_values=peak_values,
            artefacts=self.artefacts,
            removed_windows=removed,
            parameters=params,
            provenance=session_io.Provenance(
                source_path=recording.source_path,
                source_type=recording.source_type,
                channel=recording.channel,
            ),
        )

    def save_session(self, path: Union[str, Path], user: Optional[str] = None) -> StageOutcome:
        try:
            record = session_io.save_session(path, self.build_session_record(), user=user)
        except _RECOVERABLE as exc:
            logger.warning("Saving session failed: %s", exc)
            return StageOutcome("save", False, _failure("save", exc))
        return StageOutcome("save", True, info={"beats": record.heart_beats.size, "saved_at": record.provenance.saved_at})

    def load_session(self, path: Union[str, Path]) -> StageOutcome:
        """
        Restore beats, removed windows and parameters (field by field over
        the current ones) for the loaded recording. Artefacts are recomputed
        by the next preprocessing run.
        """
        recording = self._recording
        if recording is None:
            return self._missing("load_session", "no recording loaded")
        try:
            record = session_io.load_session(path, base=self.parameters)
            record.parameters.validate(self.processing_rate(record.parameters))
        except _RECOVERABLE as exc:
            logger.warning("Loading session failed: %s", exc)
            return StageOutcome("load_session", False, _failure("load_session", exc))
        outcome = self.load_recording(
            recording,
            heart_beats=record.heart_beats,
            removed_windows=record.removed_windows,
            parameters=record.parameters,
        )
        if not outcome.ok:
            return replace(outcome, stage="load_session")
        return StageOutcome(
            "load_session",
            True,
            info={"beats": record.heart_beats.size, "removed_windows": len(record.removed_windows)},
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_beats(self, beats: Sequence[float]) -> np.ndarray:
        values = np.asarray(beats, dtype=np.float64).ravel()
        if not np.all(np.isfinite(values)):
            raise ValueError("heart beats must be finite")
        return finalize_beats(values)

    def _missing(self, stage: str, message: str) -> StageOutcome:
        return StageOutcome(stage, False, PipelineFailure(stage=stage, kind="state", message=message))

    def _cancelled(self, passes: int, unresolved: List[float]) -> StageOutcome:
        with self._lock:
            self._unresolved = tuple(sorted(set(unresolved)))
        logger.info("Projection stopped after %d completed pass(es)", passes)
        return StageOutcome(
            "project",
            False,
            PipelineFailure(stage="project", kind="cancelled", message="projection stopped", details={"passes": passes}),
            info={"passes": passes},
        )


__all__ = ["PipelineController", "PipelineFailure", "StageOutcome", "StopSignal"]
