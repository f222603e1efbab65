"""Artifact Publisher: upload every file of an output directory."""

import logging
import mimetypes
import os
from pathlib import Path
from typing import List

from .errors import PublishError
from .fetcher import ObjectFetcher

logger = logging.getLogger(__name__)

mimetypes.add_type("model/vnd.usdz+zip", ".usdz")


def artifact_key(prefix: str, file_name: str) -> str:
    return f"{prefix}/model/{file_name}"


def iter_files(root: Path) -> List[Path]:
    """Regular files under root, depth-first in sorted order."""
    found: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            path = Path(dirpath) / name
            if path.is_file():
                found.append(path)
    return found


class ArtifactPublisher:
    def __init__(self, fetcher: ObjectFetcher):
        self.fetcher = fetcher

    def publish(self, root: Path, prefix: str) -> List[str]:
        """
        Upload every regular file under root to `<prefix>/model/<filename>`.

        Returns:
            Keys written, in upload order (empty if root holds no files)

        Raises:
            PublishError: If any upload fails
        """
        keys: List[str] = []
        for path in iter_files(Path(root)):
            key = artifact_key(prefix, path.name)
            content_type, _ = mimetypes.guess_type(path.name)
            try:
                self.fetcher.upload(key, path.read_bytes(), content_type=content_type)
            except Exception as e:
                raise PublishError(f"Failed to upload {path} to {key}: {e}") from e
            logger.debug("uploaded %s -> %s", path, key)
            keys.append(key)

        logger.info("published %d artifacts under %s/model/", len(keys), prefix)
        return keys
