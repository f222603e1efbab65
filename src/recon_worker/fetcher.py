"""
Retry-aware object fetcher for the S3-compatible content store.

Downloads are retried with exponential backoff because input objects are
ephemeral and deleted once staged. Uploads and deletes are single attempts:
the caller still holds the bytes and can re-run the whole stage.

Dependencies: boto3
System role: Leaf I/O component used by the stager and the publisher
"""

import logging
import time
from typing import Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import DownloadFailed
from .models import StorageConfig

logger = logging.getLogger(__name__)

# Errors worth another attempt. Anything else is a programming error.
RETRYABLE_ERRORS = (BotoCoreError, ClientError, OSError, ValueError)


class ObjectFetcher:
    """Get/put/delete single objects in one bucket."""

    def __init__(
        self,
        bucket: str,
        client=None,
        attempts: int = 3,
        backoff_base_s: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Args:
            bucket: Bucket name
            client: boto3 S3 client (built with default credentials if None)
            attempts: Download attempts before DownloadFailed
            backoff_base_s: Delay before the second attempt; doubles afterwards
            sleep: Sleep function (injected by tests)
        """
        self._bucket = bucket
        self._client = client or boto3.client("s3")
        self._attempts = max(1, attempts)
        self._backoff_base_s = backoff_base_s
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: StorageConfig) -> "ObjectFetcher":
        client = boto3.client(
            "s3",
            endpoint_url=config.resolved_endpoint(),
            region_name=config.region,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
        )
        return cls(
            config.bucket,
            client=client,
            attempts=config.download_attempts,
            backoff_base_s=config.backoff_base_s,
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt: 2s, 4s, 8s, ..."""
        return self._backoff_base_s * (2 ** (attempt - 1))

    def download(self, key: str) -> bytes:
        """
        Fetch an object body, retrying with exponential backoff.

        Args:
            key: Object key (e.g., "42/images/a.jpg")

        Returns:
            bytes: Object content

        Raises:
            DownloadFailed: When every attempt failed; carries the last cause
        """
        last_error: Optional[BaseException] = None

        for attempt in range(1, self._attempts + 1):
            try:
                response = self._client.get_object(Bucket=self._bucket, Key=key)
                body = response.get("Body")
                if body is None:
                    raise ValueError(f"Empty response body for {key}")
                return body.read()
            except RETRYABLE_ERRORS as e:
                last_error = e
                if attempt < self._attempts:
                    delay = self.backoff_delay(attempt)
                    logger.warning(
                        "download %s failed (attempt %d/%d): %s; retrying in %.1fs",
                        key, attempt, self._attempts, e, delay,
                    )
                    self._sleep(delay)

        logger.error("download %s failed after %d attempts", key, self._attempts)
        raise DownloadFailed(key, self._attempts, last_error) from last_error

    def upload(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        """
        Store an object. Single attempt.

        Returns:
            str: The key written
        """
        params = {"Bucket": self._bucket, "Key": key, "Body": data}
        if content_type:
            params["ContentType"] = content_type
        self._client.put_object(**params)
        return key

    def delete(self, key: str) -> None:
        """Remove an object. Single attempt."""
        self._client.delete_object(Bucket=self._bucket, Key=key)
