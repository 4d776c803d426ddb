"""
Mathscan

Batch recognition of math exercise images into structured, sanitized exercises.
"""

from .models import AnalysisOptions, ExerciseResult, Progress, TaskSnapshot, TaskStatus
from .normalizer import normalize_content
from .recognition import CredentialError, MalformedResponseError, RecognitionClient, RecognitionError
from .session import BatchSession

__all__ = [
    # Models
    "AnalysisOptions",
    "ExerciseResult",
    "Progress",
    "TaskSnapshot",
    "TaskStatus",
    # Pipeline
    "BatchSession",
    "RecognitionClient",
    "normalize_content",
    # Errors
    "CredentialError",
    "MalformedResponseError",
    "RecognitionError",
]
