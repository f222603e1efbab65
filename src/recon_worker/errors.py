"""Exception taxonomy for the reconstruction worker.

Fatal errors abort the remaining pipeline stages and force a status=error
write. Non-fatal errors (ConvertError, NotifyError) are only ever logged and
recorded as soft failures on the pipeline result.
"""

from pathlib import Path
from typing import List, Optional


class ReconWorkerError(Exception):
    """Base class for every error raised by the worker."""


class NoSuchJob(ReconWorkerError):
    """Raised when the job record does not exist in the status store."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class NoFilesError(ReconWorkerError):
    """Raised when a job has no input files to process."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"No files to process for job {job_id}")


class StagingFailed(ReconWorkerError):
    """Raised when no input image could be materialized locally."""


class DownloadFailed(ReconWorkerError):
    """Raised when an object download exhausted its retry budget."""

    def __init__(self, key: str, attempts: int, cause: Optional[BaseException] = None):
        self.key = key
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Download failed for {key} after {attempts} attempts: {cause}")


class ToolError(ReconWorkerError):
    """Base class for external tool failures."""

    def __init__(
        self,
        message: str,
        command: Optional[List[str]] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
        artifacts: Optional[List[Path]] = None,
    ):
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr
        self.artifacts = artifacts or []
        super().__init__(message)


class ProcessError(ToolError):
    """Tool exited with a non-zero status. The message is the captured stderr."""


class OutputMissing(ToolError):
    """Tool exited cleanly but the expected output file is absent."""


class ToolTimeout(ProcessError):
    """Tool exceeded its wall-clock ceiling and was killed."""


class ToolCancelled(ToolError):
    """Tool was killed because the worker is shutting down."""


class BuildFailed(ReconWorkerError):
    """Reconstruction stage failed. Chained from the underlying ToolError."""


class ConvertError(ReconWorkerError):
    """Conversion stage failed (non-fatal)."""


class PublishError(ReconWorkerError):
    """Artifacts could not be stored."""


class NotifyError(ReconWorkerError):
    """Out-of-band notification failed (non-fatal)."""


class StatusUpdateError(ReconWorkerError):
    """Status store read or write failed."""
