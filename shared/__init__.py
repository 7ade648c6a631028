"""
Shared data structures exchanged between the processing core, the analysis
helpers and the persistence layer.
"""

from .errors import (
    ConfigurationError,
    DetectionDegenerateError,
    PipelineError,
    SessionFormatError,
)
from .models import DetectionResult, PreprocessedSignal, Recording
from .types import Span

__all__ = [
    "ConfigurationError",
    "DetectionDegenerateError",
    "DetectionResult",
    "PipelineError",
    "PreprocessedSignal",
    "Recording",
    "SessionFormatError",
    "Span",
]
