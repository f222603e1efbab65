"""Abstract interfaces for the pipeline's external collaborators.

The status store and the notifier are external systems; the pipeline only
depends on these interfaces so they can be swapped (SQLite locally, a hosted
relational store in production) or faked in tests.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .models import Job, JobStatus


class StatusStore(ABC):
    """Job record persistence.

    Implementations must provide:
    - Single-row atomic status updates (no cross-row transactions needed since
      exactly one pipeline owns a job at a time)
    - Raise StatusUpdateError when a read or write cannot be completed
    """

    @abstractmethod
    def get_job(self, job_id: str) -> Optional["Job"]:
        """Load a job record.

        Args:
            job_id: Job identifier

        Returns:
            Job if the record exists, None otherwise
        """
        pass

    @abstractmethod
    def update_status(
        self,
        job_id: str,
        status: "JobStatus",
        process_start: Optional[datetime] = None,
        process_end: Optional[datetime] = None,
        model_urls: Optional[List[str]] = None,
    ) -> None:
        """Persist a status change with its timestamps/results.

        Args:
            job_id: Job identifier
            status: New status
            process_start: Set when entering processing
            process_end: Set when entering a terminal state
            model_urls: Artifact keys, only on success

        Implementation notes:
        - Fields passed as None are left untouched
        - Should log the transition for the audit trail
        """
        pass

    @abstractmethod
    def get_telegram_chat_id(self, telegram_user: str) -> Optional[str]:
        """Resolve a notify target reference to a Telegram chat id.

        Args:
            telegram_user: Reference stored on the job record

        Returns:
            Chat id or None if the reference is unknown
        """
        pass

    @abstractmethod
    def save_job(self, job: "Job") -> None:
        """Insert or replace a job record (operator/admin use)."""
        pass

    @abstractmethod
    def reset_job(self, job_id: str) -> None:
        """Put a job back to pending for resubmission.

        Clears process_start, process_end and model_urls.
        """
        pass

    @abstractmethod
    def list_jobs(self, status_filter: Optional[str] = None) -> List["Job"]:
        """Query jobs, optionally by status."""
        pass

    @abstractmethod
    def get_transitions(self, job_id: str) -> List[Dict[str, Any]]:
        """Return the status transition log for a job, oldest first."""
        pass


class Notifier(ABC):
    """Out-of-band delivery of a finished model to its requester."""

    @abstractmethod
    def notify(self, chat_id: str, job_id: str, model_path: Path) -> None:
        """Send the completion message, the viewer link and the model file.

        Raises:
            NotifyError: If any part of the delivery fails
        """
        pass
