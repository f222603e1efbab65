"""Logging configuration for the worker."""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ("pika", "botocore", "boto3", "urllib3", "httpx", "httpcore")


def configure_logging(level: str = "INFO") -> None:
    """Install the root handler and quiet chatty libraries."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
