"""webhook_notifier.py

Fire-and-forget webhook delivery for task lifecycle events
(campaign.completed, campaign.failed).

Deliveries run on a small thread pool so the caller never waits on them.
Each POST is signed with HMAC-SHA256 over the JSON body and retried up to
MAX_ATTEMPTS times. Failures are only logged here; they never reach the
launch caller.

Env:
  WEBHOOK_URL      (unset = notifier disabled)
  WEBHOOK_SECRET
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
TIMEOUT_S = 10


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class WebhookNotifier:
    def __init__(
        self,
        url: str,
        secret: str = "",
        *,
        session: requests.Session | None = None,
        executor: ThreadPoolExecutor | None = None,
        backoff_s: float = 1.0,
    ):
        self.url = url
        self.secret = secret
        self.session = session or requests.Session()
        self.executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="webhook")
        self.backoff_s = backoff_s

    @staticmethod
    def from_env() -> Optional["WebhookNotifier"]:
        url = (os.getenv("WEBHOOK_URL") or "").strip()
        if not url:
            return None
        return WebhookNotifier(url, (os.getenv("WEBHOOK_SECRET") or "").strip())

    def notify(self, user_id: str, event: str, payload: Dict[str, Any]) -> Future:
        envelope = {
            "event": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "user_id": user_id,
            "data": payload,
        }
        future = self.executor.submit(self._deliver, envelope)
        future.add_done_callback(self._log_crash)
        return future

    @staticmethod
    def _log_crash(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Webhook delivery crashed: %s", exc, exc_info=exc)

    def _deliver(self, envelope: Dict[str, Any]) -> bool:
        body = json.dumps(envelope, ensure_ascii=False, default=str).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Event": str(envelope["event"]),
            "User-Agent": "AdPilot-Webhooks/1.0",
        }
        if self.secret:
            headers["X-Webhook-Signature"] = sign_payload(body, self.secret)

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                resp = self.session.post(self.url, data=body, headers=headers, timeout=TIMEOUT_S)
                if resp.status_code < 400:
                    logger.info("Webhook %s delivered (attempt %d)", envelope["event"], attempt)
                    return True
                logger.warning("Webhook %s got HTTP %s (attempt %d/%d)", envelope["event"], resp.status_code, attempt, MAX_ATTEMPTS)
            except requests.RequestException as e:
                logger.warning("Webhook %s failed (attempt %d/%d): %s", envelope["event"], attempt, MAX_ATTEMPTS, e)
            if attempt < MAX_ATTEMPTS:
                time.sleep(self.backoff_s * (2 ** (attempt - 1)))

        logger.error("Webhook %s to %s failed after %d attempts", envelope["event"], self.url, MAX_ATTEMPTS)
        return False

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)

