"""Outbound notifications to the external workflow tool.

Best effort: a failed or slow webhook is logged as a warning and never
interrupts matching or capture.
"""

from typing import Any, Dict, Optional

import aiohttp

from core.observability.logging import get_logger


logger = get_logger(__name__)

EVENT_NEEDS_REVIEW = "invoice-needs-review"
EVENT_TRAINING_CAPTURED = "draw-training-captured"


class WorkflowWebhook:
    """POSTs JSON events to `{base_url}/{event}`.

    Usage:
        webhook = WorkflowWebhook("https://hooks.example.com/draws")
        await webhook.notify(EVENT_NEEDS_REVIEW, {"invoice_id": "INV-1"})
    """

    def __init__(
        self,
        base_url: Optional[str],
        timeout_seconds: float = 5.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout_seconds = timeout_seconds
        self._session = session

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def notify(self, event: str, payload: Dict[str, Any]) -> bool:
        """Send one event. Returns True if the endpoint accepted it."""
        if not self.enabled:
            return False

        url = f"{self.base_url}/{event}"
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        body = {"event": event, **payload}

        try:
            if self._session is not None:
                return await self._post(self._session, url, body, timeout)
            async with aiohttp.ClientSession() as session:
                return await self._post(session, url, body, timeout)
        except Exception as e:
            logger.warning(
                "Workflow webhook failed",
                extra_fields={"event": event, "url": url, "error": f"{type(e).__name__}: {e}"},
            )
            return False

    async def _post(self, session: aiohttp.ClientSession, url: str, body: Dict[str, Any], timeout) -> bool:
        async with session.post(url, json=body, timeout=timeout) as response:
            if response.status >= 400:
                text = await response.text()
                logger.warning(
                    "Workflow webhook rejected event",
                    extra_fields={"url": url, "status": response.status, "body": text[:200]},
                )
                return False
            return True
