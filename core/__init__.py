"""Signal processing core: ranges, conditioning, detection, projection and the pipeline controller."""

from .conditioning import ConditioningSettings, SignalConditioner, preprocess
from .controller import PipelineController, PipelineFailure, StageOutcome
from .detection import DETECTOR_REGISTRY, TemplateDetector, detect
from .projection import ProjectionContext, project, project_bidirectional
from .ranges import find_runs, insert_removed_window, processing_ranges
from shared.models import DetectionResult, PreprocessedSignal, Recording
from shared.types import Span

__all__ = [
    "ConditioningSettings",
    "DETECTOR_REGISTRY",
    "DetectionResult",
    "PipelineController",
    "PipelineFailure",
    "PreprocessedSignal",
    "ProjectionContext",
    "Recording",
    "SignalConditioner",
    "Span",
    "StageOutcome",
    "TemplateDetector",
    "detect",
    "find_runs",
    "insert_removed_window",
    "preprocess",
    "processing_ranges",
    "project",
    "project_bidirectional",
]
