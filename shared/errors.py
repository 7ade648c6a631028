from __future__ import annotations

from typing import Optional

class PipelineError(Exception):
    """Base class for recoverable failures raised by the processing stages."""

class ConfigurationError(PipelineError, ValueError):
    """A parameter edit or a parameter/rate combination was rejected."""

class DetectionDegenerateError(PipelineError):
    """
    The detection threshold left too few candidate beats.

    ``suggested_threshold`` is the percentile-based fallback a caller may
    confirm to retry the detection once.
    """

    def __init__(self, message: str, *, candidates: int, suggested_threshold: Optional[float]) -> None:
        super().__init__(message)
        self.candidates = candidates
        self.suggested_threshold = suggested_threshold

class SessionFormatError(PipelineError, ValueError):
    """A session or parameter document could not be interpreted."""

__all__ = [
    "PipelineError",
    "ConfigurationError",
    "DetectionDegenerateError",
    "SessionFormatError",
]
