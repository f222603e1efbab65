"""
Asset Stager: materialize a job's input images into a local directory.

Storage mode downloads job-scoped objects and deletes them from the store once
written locally. Telegram mode fetches every URL concurrently and fails as a
whole if any request fails.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from pathlib import Path
from typing import List, Optional
from urllib.parse import unquote, urlparse

import httpx
from tqdm import tqdm

from .errors import DownloadFailed
from .fetcher import ObjectFetcher
from .jobs.models import Job

logger = logging.getLogger(__name__)


def local_file_name(url: str) -> str:
    """Final path segment of a URL (query and fragment dropped)."""
    path = unquote(urlparse(url).path)
    name = path.rstrip("/").rsplit("/", 1)[-1]
    if not name:
        raise ValueError(f"Cannot derive a file name from {url!r}")
    return name


def unique_file_names(urls: List[str]) -> List[str]:
    """Local names for a list of URLs; a repeated name gets its index as prefix."""
    names: List[str] = []
    seen = set()
    for index, url in enumerate(urls):
        name = local_file_name(url)
        while name in seen:
            name = f"{index}_{name}"
        seen.add(name)
        names.append(name)
    return names


def image_key(job_id: str, file_name: str) -> str:
    return f"{job_id}/images/{file_name}"


class AssetStager:
    """Stage job inputs from the content store or from remote URLs."""

    def __init__(
        self,
        fetcher: ObjectFetcher,
        http_client: Optional[httpx.Client] = None,
        max_parallel_downloads: int = 8,
        http_timeout_s: float = 60.0,
    ):
        self.fetcher = fetcher
        self.http_client = http_client or httpx.Client(
            timeout=http_timeout_s, follow_redirects=True
        )
        self.max_parallel_downloads = max_parallel_downloads

    def stage(self, job: Job, image_dir: Path) -> List[Path]:
        """
        Write the job's images under image_dir.

        Args:
            job: Job record (files are object names or URLs depending on mode)
            image_dir: Existing staging directory

        Returns:
            List of files written, in job order

        Raises:
            httpx.HTTPError / OSError: telegram mode, first failure after all
                requests settle
        """
        image_dir = Path(image_dir)
        if job.is_telegram:
            return self._stage_urls(job, image_dir)
        return self._stage_objects(job, image_dir)

    def _stage_objects(self, job: Job, image_dir: Path) -> List[Path]:
        written: List[Path] = []

        for name in tqdm(job.files, desc=f"Staging job {job.id}", unit="file"):
            key = image_key(job.id, name)
            target = image_dir / name

            try:
                data = self.fetcher.download(key)
                target.write_bytes(data)
            except (DownloadFailed, OSError) as e:
                logger.error("job=%s skipping %s: %s", job.id, name, e)
                continue

            written.append(target)

            try:
                self.fetcher.delete(key)
            except Exception as e:
                logger.warning("job=%s could not delete staged object %s: %s", job.id, key, e)

        logger.info("job=%s staged %d/%d files", job.id, len(written), len(job.files))
        return written

    def _stage_urls(self, job: Job, image_dir: Path) -> List[Path]:
        targets = [image_dir / name for name in unique_file_names(job.files)]

        with ThreadPoolExecutor(max_workers=self.max_parallel_downloads) as pool:
            futures = [
                pool.submit(self._stream_to_file, url, target)
                for url, target in zip(job.files, targets)
            ]
            wait(futures)

        # Re-raise the first failure in job order
        for future in futures:
            future.result()

        logger.info("job=%s fetched %d files", job.id, len(targets))
        return targets

    def _stream_to_file(self, url: str, target: Path) -> Path:
        with self.http_client.stream("GET", url) as response:
            response.raise_for_status()
            with open(target, "wb") as f:
                for chunk in response.iter_bytes():
                    f.write(chunk)
        return target
