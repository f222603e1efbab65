"""Telegram notifier: completion message, viewer link and the model file.

Talks to the Bot API directly over httpx.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from .errors import NotifyError
from .jobs.backends import Notifier
from .models import NotifyConfig

logger = logging.getLogger(__name__)


class TelegramNotifier(Notifier):
    def __init__(
        self,
        bot_token: str,
        viewer_base_url: str,
        api_base: str = "https://api.telegram.org",
        client: Optional[httpx.Client] = None,
        timeout_s: float = 30.0,
    ):
        if not bot_token:
            raise ValueError("bot_token is required")
        self.viewer_base_url = viewer_base_url.rstrip("/")
        self.base_url = f"{api_base.rstrip('/')}/bot{bot_token}"
        self.client = client or httpx.Client(timeout=timeout_s)

    @classmethod
    def from_config(cls, config: NotifyConfig) -> Optional["TelegramNotifier"]:
        """Build a notifier, or None when no bot token is configured."""
        if not config.bot_token:
            return None
        return cls(
            config.bot_token,
            config.viewer_base_url,
            api_base=config.api_base,
            timeout_s=config.request_timeout_s,
        )

    def viewer_link(self, job_id: str) -> str:
        return f"{self.viewer_base_url}/viewer/{job_id}"

    def notify(self, chat_id: str, job_id: str, model_path: Path) -> None:
        self.send_message(chat_id, f"Processing done for process {job_id}")
        self.send_message(
            chat_id, f"You can download the model from this link: {self.viewer_link(job_id)}"
        )
        self.send_document(chat_id, Path(model_path))
        logger.info("job=%s notified chat %s", job_id, chat_id)

    def send_message(self, chat_id: str, text: str) -> Dict[str, Any]:
        return self._call("sendMessage", data={"chat_id": chat_id, "text": text})

    def send_document(self, chat_id: str, path: Path) -> Dict[str, Any]:
        try:
            with open(path, "rb") as f:
                return self._call(
                    "sendDocument",
                    data={"chat_id": chat_id},
                    files={"document": (path.name, f, "application/octet-stream")},
                )
        except OSError as e:
            raise NotifyError(f"Cannot read {path}: {e}") from e

    def _call(self, method: str, data: Dict[str, Any], files=None) -> Dict[str, Any]:
        try:
            response = self.client.post(f"{self.base_url}/{method}", data=data, files=files)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise NotifyError(f"Telegram {method} failed: {e}") from e

        if not payload.get("ok"):
            raise NotifyError(
                f"Telegram {method} rejected: {payload.get('description', 'unknown error')}"
            )
        return payload
