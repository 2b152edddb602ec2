"""Outbound delivery of finished emails to an n8n automation webhook."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from abm_insights.config import settings
from abm_insights.observability.metrics import metrics

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, payload: dict[str, Any]) -> None:
        ...


class WebhookNotifier:
    """Fire-and-forget JSON POST; failures are logged and discarded."""

    def __init__(
        self,
        webhook_url: str,
        *,
        timeout: float | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        if not webhook_url:
            raise ValueError("A webhook URL is required to create a WebhookNotifier.")
        self._webhook_url = webhook_url
        self._timeout = timeout or settings.webhook_timeout_seconds
        self._http = http_client

    def notify(self, payload: dict[str, Any]) -> None:
        try:
            if self._http is not None:
                response = self._http.post(self._webhook_url, json=payload, timeout=self._timeout)
            else:
                with httpx.Client(timeout=self._timeout) as client:
                    response = client.post(self._webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            metrics.increment("notifier.errors", tags={"error": type(exc).__name__})
            logger.error(
                "abm.notifier.failed",
                extra={"run_id": payload.get("run_id"), "error": str(exc)},
            )
            return
        metrics.increment("notifier.delivered")
        logger.info("abm.notifier.delivered", extra={"run_id": payload.get("run_id")})


def build_notifier() -> WebhookNotifier | None:
    if not settings.n8n_webhook_url:
        return None
    return WebhookNotifier(settings.n8n_webhook_url)
