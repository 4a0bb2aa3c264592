from .fallback import FallbackCalculator
from .processor import RecognitionProcessor, RecognitionProvider
from .types import (
    BOUNDARIES,
    DOMAINS,
    BoundaryState,
    BoundaryStatus,
    RecognitionDiagnostics,
    RecognitionOutput,
    RecognitionStats,
    status_for_permeability,
)
from .validation import parse_recognition_output, validate_recognition_payload

__all__ = [
    "BOUNDARIES",
    "DOMAINS",
    "BoundaryState",
    "BoundaryStatus",
    "FallbackCalculator",
    "RecognitionDiagnostics",
    "RecognitionOutput",
    "RecognitionProcessor",
    "RecognitionProvider",
    "RecognitionStats",
    "parse_recognition_output",
    "status_for_permeability",
    "validate_recognition_payload",
]
