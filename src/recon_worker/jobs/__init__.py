"""Job records, status store and the per-job pipeline."""

from .backends import StatusStore, Notifier
from .models import Job, JobStatus, PipelineState, PipelineResult, StageOutcome
from .sqlite_store import SQLiteStatusStore

__all__ = [
    "StatusStore",
    "Notifier",
    "Job",
    "JobStatus",
    "PipelineState",
    "PipelineResult",
    "StageOutcome",
    "SQLiteStatusStore",
]
