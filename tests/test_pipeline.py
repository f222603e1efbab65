"""Unit tests for the job pipeline state machine.

Tests cover:
- End-to-end success with in-memory storage and script tools
- Fatal stages (no files, staging, build, publish) ending in status=error
- Best-effort stages (cleanup, convert, notify) never changing the outcome
- Status transitions and timestamps
"""

import logging
from unittest.mock import MagicMock

import pytest

from recon_worker.errors import (
    BuildFailed,
    NoFilesError,
    NoSuchJob,
    NotifyError,
    OutputMissing,
    ProcessError,
    PublishError,
    StagingFailed,
    StatusUpdateError,
)
from recon_worker.jobs.backends import Notifier
from recon_worker.jobs.models import Job, JobStatus, PipelineState

from conftest import write_tool


class RecordingNotifier(Notifier):
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def notify(self, chat_id, job_id, model_path):
        if self.fail:
            raise NotifyError("telegram down")
        self.calls.append((chat_id, job_id, model_path))


@pytest.fixture
def job_42(store, s3):
    s3.objects["42/images/a.jpg"] = b"A"
    s3.objects["42/images/b.jpg"] = b"B"
    job = Job(id="42", files=["a.jpg", "b.jpg"])
    store.save_job(job)
    return job


def _transitions(store, job_id):
    return [(t["from_state"], t["to_state"]) for t in store.get_transitions(job_id)]


class TestSuccessPath:
    def test_job_42_scenario(self, make_pipeline, store, s3, job_42, tmp_path):
        result = make_pipeline().run("42")

        record = store.get_job("42")
        assert record.status == JobStatus.DONE
        assert "42/model/model.usdz" in record.model_urls
        assert record.model_urls == result.model_urls
        assert s3.objects["42/model/model.usdz"].strip() == b"usdz-bytes"
        # Input objects are consumed from the inbox
        assert "42/images/a.jpg" not in s3.objects

    def test_status_transitions_and_timestamps(self, make_pipeline, store, job_42):
        make_pipeline().run("42")

        assert _transitions(store, "42") == [("pending", "processing"), ("processing", "done")]
        record = store.get_job("42")
        assert record.process_end >= record.process_start

    def test_states_visited_in_order(self, make_pipeline, job_42):
        result = make_pipeline().run("42")
        assert result.states == [
            PipelineState.LOADED,
            PipelineState.PROCESSING,
            PipelineState.STAGED,
            PipelineState.BUILT,
            PipelineState.CLEANED,
            PipelineState.CONVERTED,
            PipelineState.PUBLISHED,
            PipelineState.DONE,
        ]
        assert result.soft_failures == []

    def test_image_dir_removed_model_dir_kept(self, make_pipeline, job_42, tmp_path):
        make_pipeline().run("42")
        assert not (tmp_path / "projects" / "42" / "images").exists()
        assert (tmp_path / "projects" / "42" / "model" / "model.usdz").exists()

    def test_rerun_after_error_is_safe(self, make_pipeline, store, s3, job_42):
        store.update_status("42", JobStatus.ERROR)
        first = make_pipeline().run("42")
        s3.objects["42/images/a.jpg"] = b"A"
        second = make_pipeline().run("42")
        assert set(first.model_urls) == set(second.model_urls)


class TestFatalStages:
    def test_missing_job(self, make_pipeline, store):
        with pytest.raises(NoSuchJob):
            make_pipeline().run("404")

    def test_job_7_without_files(self, make_pipeline, store, tmp_path):
        """No directories, never processing, final status error."""
        store.save_job(Job(id="7", files=[]))

        with pytest.raises(NoFilesError):
            make_pipeline().run("7")

        assert store.get_job("7").status == JobStatus.ERROR
        assert _transitions(store, "7") == [("pending", "error")]
        assert not (tmp_path / "projects" / "7").exists()

    def test_build_nonzero_exit(self, make_pipeline, store, lib_dir, job_42):
        write_tool(lib_dir, "HelloPhotogrammetry", "echo 'not enough images' >&2\nexit 1\n")
        pipeline = make_pipeline()

        with pytest.raises(BuildFailed) as exc_info:
            pipeline.run("42")

        assert isinstance(exc_info.value.__cause__, ProcessError)
        record = store.get_job("42")
        assert record.status == JobStatus.ERROR
        assert record.model_urls == []
        assert record.process_end is not None
        assert pipeline.last_result.status == JobStatus.ERROR
        assert pipeline.last_result.states[-1] == PipelineState.ERROR

    def test_build_without_output_is_fatal(self, make_pipeline, store, lib_dir, job_42):
        write_tool(lib_dir, "HelloPhotogrammetry", "exit 0\n")

        with pytest.raises(BuildFailed) as exc_info:
            make_pipeline().run("42")

        assert isinstance(exc_info.value.__cause__, OutputMissing)
        assert store.get_job("42").status == JobStatus.ERROR
        assert store.get_job("42").model_urls == []

    def test_model_from_earlier_run_does_not_count_as_output(
        self, make_pipeline, store, s3, lib_dir, job_42, tmp_path, monkeypatch
    ):
        """A retry whose build writes nothing fails even if the last attempt left a model."""
        def broken_put(**kwargs):
            raise ConnectionError("upload failed")

        monkeypatch.setattr(s3, "put_object", broken_put)
        with pytest.raises(PublishError):
            make_pipeline().run("42")
        assert (tmp_path / "projects" / "42" / "model" / "model.usdz").exists()

        monkeypatch.undo()
        s3.objects["42/images/a.jpg"] = b"A"
        s3.objects["42/images/b.jpg"] = b"B"
        write_tool(lib_dir, "HelloPhotogrammetry", "exit 0\n")

        with pytest.raises(BuildFailed) as exc_info:
            make_pipeline().run("42")

        assert isinstance(exc_info.value.__cause__, OutputMissing)
        assert store.get_job("42").status == JobStatus.ERROR
        assert store.get_job("42").model_urls == []
        assert not any(key.startswith("42/model/") for key in s3.objects)

    def test_failed_stage_is_logged_with_elapsed_time(self, make_pipeline, lib_dir, job_42, caplog):
        write_tool(lib_dir, "HelloPhotogrammetry", "exit 3\n")
        caplog.set_level(logging.INFO, logger="recon_worker")

        with pytest.raises(BuildFailed):
            make_pipeline().run("42")

        messages = [r.getMessage() for r in caplog.records]
        assert any("job=42 stage=build failed elapsed=" in m for m in messages)
        assert any("job=42 stage=stage elapsed=" in m for m in messages)

    def test_nothing_staged(self, make_pipeline, store):
        store.save_job(Job(id="5", files=["gone.jpg"]))
        with pytest.raises(StagingFailed):
            make_pipeline().run("5")
        assert store.get_job("5").status == JobStatus.ERROR

    def test_partial_staging_continues(self, make_pipeline, store, s3):
        s3.objects["6/images/a.jpg"] = b"A"
        store.save_job(Job(id="6", files=["a.jpg", "gone.jpg"]))
        make_pipeline().run("6")
        assert store.get_job("6").status == JobStatus.DONE

    def test_storage_stager_raising_with_files_on_disk_continues(self, make_pipeline, store, job_42):
        def partial_stage(job, image_dir):
            (image_dir / "a.jpg").write_bytes(b"A")
            raise ConnectionError("store went away")

        stager = MagicMock()
        stager.stage.side_effect = partial_stage
        make_pipeline(stager=stager).run("42")
        assert store.get_job("42").status == JobStatus.DONE

    def test_telegram_staging_failure_is_fatal(self, make_pipeline, store):
        store.save_job(Job(id="8", files=["https://t.me/x.jpg"], telegram_user="u1"))

        def partial_stage(job, image_dir):
            (image_dir / "x.jpg").write_bytes(b"X")
            raise ConnectionError("reset")

        stager = MagicMock()
        stager.stage.side_effect = partial_stage
        with pytest.raises(StagingFailed):
            make_pipeline(stager=stager).run("8")
        assert store.get_job("8").status == JobStatus.ERROR

    def test_publish_failure(self, make_pipeline, store, s3, job_42, monkeypatch):
        def broken_put(**kwargs):
            raise ConnectionError("upload failed")

        monkeypatch.setattr(s3, "put_object", broken_put)
        with pytest.raises(PublishError):
            make_pipeline().run("42")
        assert store.get_job("42").status == JobStatus.ERROR

    def test_error_write_failure_keeps_original_error(self, make_pipeline, store, lib_dir, job_42, monkeypatch):
        write_tool(lib_dir, "HelloPhotogrammetry", "exit 1\n")
        original_update = store.update_status

        def failing_error_write(job_id, status, **kwargs):
            if status == JobStatus.ERROR:
                raise StatusUpdateError("database is locked")
            return original_update(job_id, status, **kwargs)

        monkeypatch.setattr(store, "update_status", failing_error_write)
        with pytest.raises(BuildFailed):
            make_pipeline().run("42")


class TestBestEffortStages:
    def test_convert_failure_still_done(self, make_pipeline, store, lib_dir, job_42):
        write_tool(lib_dir, "usdconv", "echo 'bad usdz' >&2\nexit 1\n")

        result = make_pipeline().run("42")

        assert store.get_job("42").status == JobStatus.DONE
        assert result.model_urls == ["42/model/model.usdz"]
        assert [o.stage for o in result.soft_failures] == ["convert"]

    def test_missing_convert_tool_still_done(self, make_pipeline, store, lib_dir, job_42):
        (lib_dir / "usdconv").unlink()
        make_pipeline().run("42")
        assert store.get_job("42").status == JobStatus.DONE

    def test_notify_sends_model(self, make_pipeline, store, tmp_path):
        store.save_job(Job(id="9", files=["a.jpg"], telegram_user="u1"))
        store.save_telegram_user("u1", "555")
        notifier = RecordingNotifier()
        stager = MagicMock()
        stager.stage.side_effect = lambda job, d: [(d / "a.jpg").write_bytes(b"A")]

        result = make_pipeline(notifier=notifier, stager=stager).run("9")

        assert notifier.calls == [
            ("555", "9", tmp_path / "projects" / "9" / "model" / "model.usdz")
        ]
        assert PipelineState.NOTIFIED in result.states

    def test_notify_failure_still_done(self, make_pipeline, store):
        store.save_job(Job(id="9", files=["a.jpg"], telegram_user="u1"))
        store.save_telegram_user("u1", "555")
        stager = MagicMock()
        stager.stage.side_effect = lambda job, d: [(d / "a.jpg").write_bytes(b"A")]

        result = make_pipeline(notifier=RecordingNotifier(fail=True), stager=stager).run("9")

        assert store.get_job("9").status == JobStatus.DONE
        assert [o.stage for o in result.soft_failures] == ["notify"]
        assert PipelineState.NOTIFIED not in result.states

    def test_unknown_recipient_is_soft(self, make_pipeline, store):
        store.save_job(Job(id="9", files=["a.jpg"], telegram_user="ghost"))
        stager = MagicMock()
        stager.stage.side_effect = lambda job, d: [(d / "a.jpg").write_bytes(b"A")]
        notifier = RecordingNotifier()

        result = make_pipeline(notifier=notifier, stager=stager).run("9")

        assert notifier.calls == []
        assert result.status == JobStatus.DONE
        assert "ghost" in result.soft_failures[0].error
