"""
Mathscan Data Models

Data structures for image tasks, recognition results and batch progress.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_KEYWORDS = 5

SUPPORTED_MEDIA_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")


class InvalidTransitionError(Exception):
    """Raised when a task is moved along an edge the state machine forbids."""
    pass


class TaskStatus(str, Enum):
    """Lifecycle of an image task."""

    WAITING = "waiting"
    ANALYZING = "analyzing"
    SUCCESS = "success"
    ERROR = "error"


ALLOWED_TRANSITIONS = {
    TaskStatus.WAITING: {TaskStatus.ANALYZING},
    TaskStatus.ANALYZING: {TaskStatus.SUCCESS, TaskStatus.ERROR},
    TaskStatus.ERROR: {TaskStatus.ANALYZING},
    TaskStatus.SUCCESS: set(),
}

# Statuses picked up by a run
DISPATCHABLE_STATUSES = (TaskStatus.WAITING, TaskStatus.ERROR)


class AnalysisOptions(BaseModel):
    """
    Instructions shared by every task of one run.

    Only changes what is asked of the recognition service.
    """

    model_config = ConfigDict(frozen=True)

    revise_text: bool = False
    bold_keywords: bool = True
    suggest_hints: bool = False


class ImagePayload(BaseModel):
    """Binary image content with its declared media type."""

    model_config = ConfigDict(frozen=True)

    data: bytes = Field(repr=False)
    media_type: str
    filename: Optional[str] = None

    @property
    def size_bytes(self) -> int:
        return len(self.data)


class ExerciseResult(BaseModel):
    """
    Structured exercise extracted from one image.

    Parsing is lenient on the fields the service tends to get slightly wrong
    (difficulty range, keyword count) and strict on title and content.
    """

    title: str
    difficulty: int = Field(ge=1, le=5)
    keywords: List[str] = Field(default_factory=list)
    content: str

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        return value.strip()

    @field_validator("difficulty", mode="before")
    @classmethod
    def _clamp_difficulty(cls, value):
        if isinstance(value, bool):
            raise ValueError("difficulty must be a number")
        try:
            difficulty = int(round(float(value)))
        except (TypeError, ValueError):
            raise ValueError(f"difficulty must be a number, got {value!r}")
        return min(5, max(1, difficulty))

    @field_validator("keywords", mode="before")
    @classmethod
    def _clean_keywords(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        keywords = [str(k).strip() for k in value if str(k).strip()]
        return keywords[:MAX_KEYWORDS]


class Progress(BaseModel):
    """Completion counters of the current (or last) run."""

    completed: int = 0
    total: int = 0

    @property
    def percent(self) -> int:
        if not self.total:
            return 0
        return round(self.completed / self.total * 100)


class TaskSnapshot(BaseModel):
    """Read-only view of a task handed to callers. Never carries image bytes."""

    model_config = ConfigDict(frozen=True)

    id: str
    filename: Optional[str] = None
    media_type: str
    status: TaskStatus
    result: Optional[ExerciseResult] = None
    error: Optional[str] = None
    attempts: int = 0


class ImageTask(BaseModel):
    """
    One image awaiting or having undergone recognition.

    Owned by a BatchSession; all mutation goes through the session lock.
    """

    id: str = Field(default_factory=lambda: f"task_{uuid4().hex}")
    payload: Optional[ImagePayload] = None
    media_type: str
    filename: Optional[str] = None
    status: TaskStatus = TaskStatus.WAITING
    result: Optional[ExerciseResult] = None
    error: Optional[str] = None
    added_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    attempts: int = 0

    @property
    def released(self) -> bool:
        return self.payload is None

    def transition(self, status: TaskStatus) -> None:
        """Move to a new status, keeping result/error consistent with it."""
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"{self.id}: {self.status.value} -> {status.value} is not allowed"
            )
        self.status = status
        if status == TaskStatus.ANALYZING:
            self.result = None
            self.error = None
            self.started_at = datetime.utcnow()
            self.completed_at = None
            self.attempts += 1
        else:
            self.completed_at = datetime.utcnow()

    def mark_success(self, result: ExerciseResult) -> None:
        self.transition(TaskStatus.SUCCESS)
        self.result = result

    def mark_error(self, message: str) -> None:
        self.transition(TaskStatus.ERROR)
        self.error = message

    def release(self) -> None:
        """Drop the image bytes."""
        self.payload = None

    def snapshot(self) -> TaskSnapshot:
        return TaskSnapshot(
            id=self.id,
            filename=self.filename,
            media_type=self.media_type,
            status=self.status,
            result=self.result,
            error=self.error,
            attempts=self.attempts,
        )
