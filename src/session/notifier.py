"""
src/session/notifier.py
========================
Webhook Notifier — SCAI Guard

Posts a JSON snapshot of a session to a configured URL every time the
session changes. Register it with ``SessionService.subscribe``.

Failures are logged and never raised; a broken webhook must not affect
session processing.
"""

import logging

import aiohttp

from src.session.models import Session

logger = logging.getLogger("scai.session.notifier")

WEBHOOK_TIMEOUT_SECONDS: float = 30.0


class WebhookNotifier:
    """Async session listener that POSTs ``session.to_dict()``."""

    def __init__(self, url: str, timeout_seconds: float = WEBHOOK_TIMEOUT_SECONDS):
        if not url:
            raise ValueError("Webhook URL must be non-empty")
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def __call__(self, session: Session) -> int | None:
        """
        Returns:
            HTTP status of the webhook response, or None if the POST failed.
        """
        payload = session.to_dict()
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as client:
                async with client.post(
                    self.url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                ) as resp:
                    logger.info(
                        "Webhook POST to %s for %s v%d: status %d",
                        self.url, session.call_id, payload["version"], resp.status,
                    )
                    return resp.status
        except Exception as exc:
            logger.warning("Webhook POST for %s failed: %s", session.call_id, exc)
            return None
