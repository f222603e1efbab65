"""Pydantic models for job records and pipeline outcomes.

This module defines the typed job record read from the status store and the
result types produced by one pipeline execution.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_DETAIL = "reduced"
DEFAULT_ORDERING = "unordered"
DEFAULT_FEATURE = "normal"


class JobStatus(str, Enum):
    """Job lifecycle states as persisted in the status store.

    State transitions:
        pending → processing     (pipeline starts)
        processing → done        (artifacts published)
        processing → error       (fatal stage failure)
        pending → error          (job rejected before processing, e.g. no files)
        error → processing       (re-delivery or operator resubmission)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class PipelineState(str, Enum):
    """In-memory states of a single pipeline execution."""

    LOADED = "loaded"
    PROCESSING = "processing"
    STAGED = "staged"
    BUILT = "built"
    CLEANED = "cleaned"
    CONVERTED = "converted"
    PUBLISHED = "published"
    NOTIFIED = "notified"
    DONE = "done"
    ERROR = "error"


class Job(BaseModel):
    """One reconstruction request as stored in the status store."""

    id: str = Field(..., description="Opaque job identifier")
    status: JobStatus = Field(default=JobStatus.PENDING, description="Current job state")
    files: List[str] = Field(
        default_factory=list, description="Object names (storage) or URLs (telegram)"
    )
    detail: str = Field(default=DEFAULT_DETAIL, description="Reconstruction detail level")
    ordering: str = Field(default=DEFAULT_ORDERING, description="Sample ordering hint")
    feature: str = Field(default=DEFAULT_FEATURE, description="Feature sensitivity")
    telegram_user: Optional[str] = Field(
        default=None, description="Telegram user reference; selects telegram mode"
    )
    process_start: Optional[datetime] = Field(default=None, description="Processing start")
    process_end: Optional[datetime] = Field(default=None, description="Terminal state time")
    model_urls: List[str] = Field(
        default_factory=list, description="Stored artifact keys, set on success"
    )

    @field_validator("id", "telegram_user", mode="before")
    @classmethod
    def coerce_identifier(cls, v: Any) -> Any:
        """Accept integer identifiers from the store."""
        if isinstance(v, int):
            return str(v)
        return v

    @field_validator("detail", "ordering", "feature", mode="before")
    @classmethod
    def default_when_blank(cls, v: Any, info) -> Any:
        """Absent or empty build parameters fall back to their defaults."""
        if v is None or v == "":
            return {
                "detail": DEFAULT_DETAIL,
                "ordering": DEFAULT_ORDERING,
                "feature": DEFAULT_FEATURE,
            }[info.field_name]
        return v

    @field_validator("files", "model_urls", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    @property
    def notify_target(self) -> Optional[str]:
        return self.telegram_user

    @property
    def is_telegram(self) -> bool:
        return bool(self.telegram_user)


@dataclass
class StageOutcome:
    """Result of a best-effort stage: either a value or a non-fatal diagnostic."""

    stage: str
    ok: bool
    value: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, stage: str, value: Any = None) -> "StageOutcome":
        return cls(stage=stage, ok=True, value=value)

    @classmethod
    def failure(cls, stage: str, exc: BaseException) -> "StageOutcome":
        return cls(stage=stage, ok=False, error=f"{type(exc).__name__}: {exc}")


class PipelineResult(BaseModel):
    """Outcome of one pipeline execution."""

    job_id: str = Field(..., description="Job identifier")
    status: JobStatus = Field(..., description="Terminal status (done or error)")
    model_urls: List[str] = Field(default_factory=list, description="Published artifact keys")
    states: List[PipelineState] = Field(
        default_factory=list, description="Visited pipeline states in order"
    )
    soft_failures: List[Any] = Field(
        default_factory=list, description="StageOutcome entries for non-fatal failures"
    )
    duration_s: float = Field(default=0.0, ge=0.0, description="Processing time in seconds")
    error_message: Optional[str] = Field(default=None, description="Error details if failed")
