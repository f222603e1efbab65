"""Job pipeline: the per-job state machine.

Stages run strictly in order:

    Loaded → Processing → Staged → Built → Cleaned → Converted → Published
    → Notified (optional) → Done

Any fatal stage failure jumps to Error: status=error and process_end are
persisted, then the original exception propagates to the caller. Cleanup,
conversion and notification are best-effort; their failures are recorded as
StageOutcome entries on the result and never change the terminal state.
"""

import logging
import shutil
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from ..errors import (
    BuildFailed,
    ConvertError,
    NoFilesError,
    NoSuchJob,
    NotifyError,
    StagingFailed,
    StatusUpdateError,
    ToolError,
)
from ..fetcher import ObjectFetcher
from ..models import WorkerConfig
from ..notifier import TelegramNotifier
from ..publisher import ArtifactPublisher
from ..stager import AssetStager
from ..tool_runner import USDZ_SUFFIX, ToolRunner
from .backends import Notifier, StatusStore
from .models import Job, JobStatus, PipelineResult, PipelineState, StageOutcome
from .sqlite_store import SQLiteStatusStore

logger = logging.getLogger(__name__)


class JobPipeline:
    """Drive one job from its stored record to a terminal status."""

    def __init__(
        self,
        config: WorkerConfig,
        store: StatusStore,
        stager: AssetStager,
        runner: ToolRunner,
        publisher: ArtifactPublisher,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.store = store
        self.stager = stager
        self.runner = runner
        self.publisher = publisher
        self.notifier = notifier
        self.clock = clock or datetime.now
        self.last_result: Optional[PipelineResult] = None

    @classmethod
    def from_config(
        cls, config: WorkerConfig, cancel_event: Optional[threading.Event] = None
    ) -> "JobPipeline":
        """Wire the production collaborators from configuration."""
        fetcher = ObjectFetcher.from_config(config.storage)
        return cls(
            config=config,
            store=SQLiteStatusStore(config.status_store.db_path),
            stager=AssetStager(
                fetcher,
                max_parallel_downloads=config.staging.max_parallel_downloads,
                http_timeout_s=config.staging.http_timeout_s,
            ),
            runner=ToolRunner.from_config(config.tools, cancel_event=cancel_event),
            publisher=ArtifactPublisher(fetcher),
            notifier=TelegramNotifier.from_config(config.notify),
        )

    def working_dirs(self, job_id: str) -> Tuple[Path, Path]:
        """(image_dir, out_dir) for a job: projects/<id>/images and projects/<id>/model."""
        job_root = Path(self.config.workspace.projects_root) / str(job_id)
        return job_root / "images", job_root / "model"

    def run(self, job_id: str) -> PipelineResult:
        """Execute every stage for one job.

        Args:
            job_id: Identifier taken from the queue message

        Returns:
            PipelineResult with status=done

        Raises:
            NoSuchJob: Record absent (nothing is written)
            NoFilesError, StagingFailed, BuildFailed, PublishError,
            StatusUpdateError: after status=error has been persisted
        """
        job_id = str(job_id)
        started = time.monotonic()
        states: List[PipelineState] = []
        soft_failures: List[StageOutcome] = []
        self.last_result = None

        job = self.store.get_job(job_id)
        if job is None:
            raise NoSuchJob(job_id)
        states.append(PipelineState.LOADED)

        try:
            model_urls = self._execute(job, states, soft_failures)
        except Exception as e:
            states.append(PipelineState.ERROR)
            logger.error("job=%s failed: %s: %s", job_id, type(e).__name__, e)
            self._persist_error(job_id)
            self.last_result = PipelineResult(
                job_id=job_id,
                status=JobStatus.ERROR,
                states=states,
                soft_failures=soft_failures,
                duration_s=time.monotonic() - started,
                error_message=str(e),
            )
            raise

        states.append(PipelineState.DONE)
        self.last_result = PipelineResult(
            job_id=job_id,
            status=JobStatus.DONE,
            model_urls=model_urls,
            states=states,
            soft_failures=soft_failures,
            duration_s=time.monotonic() - started,
        )
        logger.info(
            "job=%s done: %d artifacts, %d soft failures, %.1fs",
            job_id, len(model_urls), len(soft_failures), self.last_result.duration_s,
        )
        return self.last_result

    def _execute(
        self, job: Job, states: List[PipelineState], soft_failures: List[StageOutcome]
    ) -> List[str]:
        # Checked before any directory or status write
        if not job.files:
            raise NoFilesError(job.id)

        self.store.update_status(job.id, JobStatus.PROCESSING, process_start=self.clock())
        states.append(PipelineState.PROCESSING)

        image_dir, out_dir = self.working_dirs(job.id)
        output_base = out_dir / self.config.tools.model_name

        with self._timed(job.id, "stage"):
            self._stage(job, image_dir)
        states.append(PipelineState.STAGED)

        # Output from an earlier run must not satisfy the output check
        if out_dir.exists():
            shutil.rmtree(out_dir)
        out_dir.mkdir(parents=True)
        with self._timed(job.id, "build"):
            try:
                self.runner.build_model(
                    image_dir, output_base, job.detail, job.ordering, job.feature
                )
            except (ToolError, OSError) as e:
                raise BuildFailed(f"Reconstruction failed for job {job.id}: {e}") from e
        states.append(PipelineState.BUILT)

        outcome = self._cleanup(image_dir)
        if not outcome.ok:
            soft_failures.append(outcome)
        states.append(PipelineState.CLEANED)

        with self._timed(job.id, "convert"):
            outcome = self._convert(output_base)
        if not outcome.ok:
            logger.warning("job=%s conversion failed, publishing what exists: %s", job.id, outcome.error)
            soft_failures.append(outcome)
        states.append(PipelineState.CONVERTED)

        with self._timed(job.id, "publish"):
            model_urls = self.publisher.publish(out_dir, job.id)
        states.append(PipelineState.PUBLISHED)

        if job.is_telegram:
            with self._timed(job.id, "notify"):
                outcome = self._notify(job, Path(f"{output_base}{USDZ_SUFFIX}"))
            if outcome.ok:
                states.append(PipelineState.NOTIFIED)
            else:
                logger.warning("job=%s notification failed: %s", job.id, outcome.error)
                soft_failures.append(outcome)

        self.store.update_status(
            job.id, JobStatus.DONE, process_end=self.clock(), model_urls=model_urls
        )
        return model_urls

    def _stage(self, job: Job, image_dir: Path) -> None:
        image_dir.mkdir(parents=True, exist_ok=True)
        try:
            self.stager.stage(job, image_dir)
        except Exception as e:
            if job.is_telegram or not self._staged_files(image_dir):
                raise StagingFailed(f"Staging failed for job {job.id}: {e}") from e
            logger.warning("job=%s staging raised, continuing with partial input: %s", job.id, e)

        staged = self._staged_files(image_dir)
        if not staged:
            raise StagingFailed(f"No input files could be staged for job {job.id}")
        if len(staged) < len(job.files):
            logger.warning("job=%s staged %d of %d files", job.id, len(staged), len(job.files))

    @staticmethod
    def _staged_files(image_dir: Path) -> List[Path]:
        return sorted(p for p in image_dir.iterdir() if p.is_file())

    def _cleanup(self, image_dir: Path) -> StageOutcome:
        try:
            shutil.rmtree(image_dir)
        except OSError as e:
            logger.warning("could not delete %s: %s", image_dir, e)
            return StageOutcome.failure("cleanup", e)
        return StageOutcome.success("cleanup", image_dir)

    def _convert(self, output_base: Path) -> StageOutcome:
        try:
            result = self.runner.convert_model(output_base)
        except (ToolError, OSError) as e:
            return StageOutcome.failure("convert", ConvertError(str(e)))
        return StageOutcome.success("convert", result)

    def _notify(self, job: Job, model_path: Path) -> StageOutcome:
        if self.notifier is None:
            return StageOutcome.failure("notify", NotifyError("no notifier configured"))
        try:
            chat_id = self.store.get_telegram_chat_id(job.notify_target)
            if chat_id is None:
                raise NotifyError(f"no chat registered for {job.notify_target}")
            self.notifier.notify(chat_id, job.id, model_path)
        except (NotifyError, StatusUpdateError) as e:
            return StageOutcome.failure("notify", e)
        return StageOutcome.success("notify", chat_id)

    def _persist_error(self, job_id: str) -> None:
        try:
            self.store.update_status(job_id, JobStatus.ERROR, process_end=self.clock())
        except StatusUpdateError as e:
            logger.error("job=%s could not persist error status: %s", job_id, e)

    @contextmanager
    def _timed(self, job_id: str, stage: str):
        logger.info("job=%s stage=%s started", job_id, stage)
        start = time.monotonic()
        try:
            yield
        except Exception:
            logger.warning(
                "job=%s stage=%s failed elapsed=%.1fs", job_id, stage, time.monotonic() - start
            )
            raise
        logger.info("job=%s stage=%s elapsed=%.1fs", job_id, stage, time.monotonic() - start)
