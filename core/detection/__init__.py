from .base import (
    DETECTOR_REGISTRY,
    BeatDetector,
    ConfirmCallback,
    register_detector,
)
from .template import TemplateDetector, detect

__all__ = [
    "BeatDetector",
    "ConfirmCallback",
    "DETECTOR_REGISTRY",
    "register_detector",
    "TemplateDetector",
    "detect",
]
