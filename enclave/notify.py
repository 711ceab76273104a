# enclave/notify.py

import logging
import threading
from typing import Any, Dict, Optional

import requests

from enclave.db import isoformat, utcnow

logger = logging.getLogger("enclave.security")


class WebhookError(Exception):
    pass


class WebhookNotifier:
    """Posts security alerts as plain JSON to SECURITY_WEBHOOK_URL."""

    def __init__(self, url: Optional[str], timeout: float = 5.0, environment: str = "production"):
        self.url = url
        self.timeout = timeout
        self.environment = environment

    @property
    def configured(self) -> bool:
        return bool(self.url)

    def build_payload(self, title: str, description: str, level: str = "INFO",
                      fields: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return {
            "title": title,
            "description": description,
            "level": level,
            "source": "Phoenix Industries Security System",
            "environment": self.environment,
            "timestamp": isoformat(utcnow()),
            "fields": fields or {},
        }

    def send(self, payload: Dict[str, Any]) -> int:
        """Deliver synchronously; raises WebhookError on any failure."""
        if not self.url:
            raise WebhookError("Security webhook URL not configured")
        try:
            resp = requests.post(self.url, json=payload,
                                 headers={"Content-Type": "application/json"},
                                 timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise WebhookError(str(e))
        logger.info("Webhook delivered: %s (status %s)", payload.get("title"), resp.status_code)
        return resp.status_code

    def send_async(self, payload: Dict[str, Any]) -> Optional[threading.Thread]:
        if not self.url:
            return None

        def _send():
            try:
                self.send(payload)
            except WebhookError as e:
                logger.warning("Webhook delivery failed: %s", e)

        t = threading.Thread(target=_send, daemon=True)
        t.start()
        return t
