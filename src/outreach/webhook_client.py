"""HTTP delivery of alert events to registered webhooks.

Each event is wrapped in an envelope:

    {"event": ..., "data": ..., "timestamp": ..., "delivery_id": ..., "webhook_id": ...}

and POSTed with the webhook's custom headers plus X-Webhook-Event and
X-Webhook-Delivery. Transient failures are retried with backoff; anything
that still fails is reported as ``False``, never raised.
"""

import uuid
from datetime import datetime, timezone

import requests

from src.monitoring.models import Webhook
from src.utils.config import get_config
from src.utils.logger import setup_logger
from src.utils.retry import retry_with_backoff

logger = setup_logger(__name__)

USER_AGENT = "Campaign-Alerts-Webhooks/1.0"


class WebhookClient:
    """Deliver events to webhooks looked up by id.

    ``webhooks`` must provide ``get_webhook(id) -> Webhook | None``.
    """

    def __init__(self, webhooks, config=None):
        self.cfg = config or get_config()
        self.webhooks = webhooks
        self.session = requests.Session()

    def build_envelope(self, webhook: Webhook, event_name: str, payload: dict) -> dict:
        return {
            "event": event_name,
            "data": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "delivery_id": str(uuid.uuid4()),
            "webhook_id": webhook.id,
        }

    def build_headers(self, webhook: Webhook, envelope: dict) -> dict:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        headers.update(webhook.headers or {})
        headers["X-Webhook-Event"] = envelope["event"]
        headers["X-Webhook-Delivery"] = envelope["delivery_id"]
        return headers

    @retry_with_backoff(max_retries=2)
    def _post(self, url: str, envelope: dict, headers: dict, timeout: float) -> requests.Response:
        resp = self.session.post(url, json=envelope, headers=headers, timeout=timeout)
        resp.raise_for_status()
        return resp

    def send_webhook(self, webhook_id: str, event_name: str, payload: dict) -> bool:
        """POST one event. Returns True on a 2xx response."""
        webhook = self.webhooks.get_webhook(webhook_id)
        if webhook is None:
            logger.warning("Webhook %s not found; cannot deliver %s.", webhook_id, event_name)
            return False
        if not webhook.is_active:
            logger.warning("Webhook %s is inactive; skipping %s.", webhook_id, event_name)
            return False

        envelope = self.build_envelope(webhook, event_name, payload)
        headers = self.build_headers(webhook, envelope)
        timeout = min(
            webhook.timeout_seconds or self.cfg.webhook_timeout_seconds,
            self.cfg.webhook_timeout_seconds,
        )

        try:
            resp = self._post(
                webhook.url, envelope, headers, timeout,
                _max_retries=self.cfg.webhook_max_retries,
            )
        except requests.RequestException as e:
            logger.error(
                "Delivery %s of %s to webhook %s failed: %s",
                envelope["delivery_id"], event_name, webhook_id, e,
            )
            return False

        logger.info(
            "Delivered %s to webhook %s (HTTP %d, delivery %s).",
            event_name, webhook_id, resp.status_code, envelope["delivery_id"],
        )
        return True
