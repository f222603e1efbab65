import io
from pathlib import Path

import pytest
from botocore.exceptions import ClientError

from recon_worker.fetcher import ObjectFetcher
from recon_worker.jobs.pipeline import JobPipeline
from recon_worker.jobs.sqlite_store import SQLiteStatusStore
from recon_worker.models import WorkerConfig
from recon_worker.publisher import ArtifactPublisher
from recon_worker.stager import AssetStager
from recon_worker.tool_runner import ToolRunner

# Writes the model file given as the second argument
BUILD_OK = 'echo "usdz-bytes" > "$2"\n'
# Adds a sibling file next to the model
CONVERT_OK = 'cp "$1" "${1%.usdz}.usdc"\n'


class InMemoryS3:
    """Minimal stand-in for a boto3 S3 client."""

    def __init__(self):
        self.objects = {}
        self.content_types = {}
        self.deleted = []

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError(
                {"Error": {"Code": "NoSuchKey", "Message": "Not Found"}}, "GetObject"
            )
        return {"Body": io.BytesIO(self.objects[Key])}

    def put_object(self, Bucket, Key, Body, ContentType=None):
        self.objects[Key] = Body
        self.content_types[Key] = ContentType

    def delete_object(self, Bucket, Key):
        self.deleted.append(Key)
        self.objects.pop(Key, None)


def write_tool(lib_dir: Path, name: str, body: str) -> Path:
    """Create an executable /bin/sh script standing in for an external tool."""
    lib_dir.mkdir(parents=True, exist_ok=True)
    path = lib_dir / name
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(0o755)
    return path


@pytest.fixture
def s3():
    return InMemoryS3()


@pytest.fixture
def fetcher(s3):
    return ObjectFetcher("test-bucket", client=s3, sleep=lambda s: None)


@pytest.fixture
def store(tmp_path):
    return SQLiteStatusStore(str(tmp_path / "recon.db"))


@pytest.fixture
def lib_dir(tmp_path):
    """Tool directory with a working build and convert tool."""
    lib = tmp_path / "lib"
    write_tool(lib, "HelloPhotogrammetry", BUILD_OK)
    write_tool(lib, "usdconv", CONVERT_OK)
    return lib


@pytest.fixture
def worker_config(tmp_path, lib_dir):
    return WorkerConfig.from_dict(
        {
            "storage": {"bucket": "test-bucket"},
            "status_store": {"db_path": str(tmp_path / "recon.db")},
            "tools": {
                "lib_dir": str(lib_dir),
                "build_timeout_s": 30,
                "convert_timeout_s": 30,
                "artifacts_dir": str(tmp_path / "artifacts"),
            },
            "workspace": {"projects_root": str(tmp_path / "projects")},
        }
    )


@pytest.fixture
def make_pipeline(worker_config, store, fetcher):
    """Factory for a pipeline wired to in-memory storage and script tools."""

    def _make(notifier=None, stager=None):
        return JobPipeline(
            config=worker_config,
            store=store,
            stager=stager or AssetStager(fetcher),
            runner=ToolRunner.from_config(worker_config.tools),
            publisher=ArtifactPublisher(fetcher),
            notifier=notifier,
        )

    return _make
