from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from analysis.metrics import apex_offset, correlation_scores, zscore_rows
from analysis.settings import ProcessingParameters
from shared.errors import DetectionDegenerateError
from shared.models import DetectionResult, PreprocessedSignal

from .base import (
    ConfirmCallback,
    compute_envelope,
    extract_windows,
    in_bounds,
    local_maxima,
    register_detector,
)
from .threshold import resolve_candidates

logger = logging.getLogger(__name__)

TEMPLATE_PERCENTILES = (70.0, 90.0)


def build_template(
    values: np.ndarray,
    indices: np.ndarray,
    heights: np.ndarray,
    low: int,
    high: int,
) -> Optional[np.ndarray]:
    """
    Median of z-scored windows around maxima whose height lies strictly
    between the 70th and 90th percentile. Returns None when no maximum
    qualifies.
    """
    idx = np.asarray(indices, dtype=np.int64)
    h = np.asarray(heights, dtype=np.float64)
    if idx.size == 0:
        return None
    lower, upper = np.percentile(h, TEMPLATE_PERCENTILES)
    chosen = idx[(h > lower) & (h < upper) & in_bounds(idx, values.size, low, high)]
    if chosen.size == 0:
        return None
    shapes = zscore_rows(extract_windows(values, chosen, low, high))
    return np.median(shapes, axis=0)


@register_detector
class TemplateDetector:
    """Envelope peaks matched against a median waveform template."""

    name = "template"

    def detect(
        self,
        conditioned: PreprocessedSignal,
        params: ProcessingParameters,
        *,
        prior_template: Optional[np.ndarray] = None,
        reuse_template: bool = False,
        confirm: Optional[ConfirmCallback] = None,
    ) -> DetectionResult:
        low, high = int(params.waveform_window_low), int(params.waveform_window_high)
        width = high - low + 1
        values = conditioned.values
        n = values.size

        envelope = compute_envelope(values, params.power, params.smooth_detection)
        maxima, heights = local_maxima(envelope)

        usable_prior = prior_template is not None and np.asarray(prior_template).size == width
        if reuse_template and usable_prior:
            template = np.asarray(prior_template, dtype=np.float64)
        else:
            template = build_template(values, maxima, heights, low, high)
        candidates, threshold = resolve_candidates(
            maxima, heights, params.threshold, n, low, high, confirm=confirm
        )
        if template is None:
            if usable_prior:
                template = np.asarray(prior_template, dtype=np.float64)
            else:
                # Too few maxima for the percentile band: use the candidates themselves.
                template = np.median(zscore_rows(extract_windows(values, candidates, low, high)), axis=0)
            logger.debug("Template band was empty; using fallback template")

        shapes = extract_windows(values, candidates, low, high)
        valid_windows = extract_windows(conditioned.valid, candidates, low, high)

        apex = int(np.argmax(template))
        offsets = np.array(
            [apex_offset(shape, apex, params.peak_range, ok) for shape, ok in zip(shapes, valid_windows)],
            dtype=np.int64,
        )
        keep = offsets >= 0
        if not np.all(keep):
            logger.debug("Dropping %d candidate(s) with fully masked apex windows", int(np.sum(~keep)))
        candidates, shapes, offsets = candidates[keep], shapes[keep], offsets[keep]
        if candidates.size == 0:
            raise DetectionDegenerateError(
                "every candidate beat lies inside masked samples", candidates=0, suggested_threshold=None
            )

        raw_scores = correlation_scores(shapes, template)
        max_corr = float(np.max(raw_scores)) if raw_scores.size else 0.0
        correlations = raw_scores / max_corr if max_corr > 0 else np.zeros_like(raw_scores)

        apex_samples = candidates + low + offsets
        result = DetectionResult(
            envelope=envelope,
            peak_indices=candidates,
            peak_times=conditioned.times[candidates],
            shapes=shapes,
            template=template,
            max_corr=max_corr,
            correlations=correlations,
            beat_peak_times=conditioned.times[apex_samples],
            beat_peak_values=values[apex_samples],
            threshold=threshold,
            window=(low, high),
            sample_rate=conditioned.sample_rate,
        )
        logger.info(
            "Detected %d candidate beat(s) from %d envelope maxima (threshold %g)",
            len(result),
            maxima.size,
            threshold,
        )
        return result


def detect(
    conditioned: PreprocessedSignal,
    params: ProcessingParameters,
    *,
    prior_template: Optional[np.ndarray] = None,
    reuse_template: bool = False,
    confirm: Optional[ConfirmCallback] = None,
) -> DetectionResult:
    return TemplateDetector().detect(
        conditioned,
        params,
        prior_template=prior_template,
        reuse_template=reuse_template,
        confirm=confirm,
    )


__all__ = ["TEMPLATE_PERCENTILES", "TemplateDetector", "build_template", "detect"]
