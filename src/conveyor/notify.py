"""Pipeline notifications.

Notifiers receive ``(status, metadata)`` once a pipeline reaches a terminal
status. Delivery failures raise :class:`NotificationError`; the controller
logs them and never lets them change the pipeline's status.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from conveyor.errors import NotificationError
from conveyor.models import PipelineStatus

logger = logging.getLogger(__name__)

_STATUS_EMOJI = {
    PipelineStatus.SUCCESS: ":rocket:",
    PipelineStatus.FAILED: ":x:",
    PipelineStatus.CANCELED: ":no_entry_sign:",
}


class Notifier(Protocol):
    async def send(self, status: PipelineStatus, metadata: dict[str, Any]) -> None: ...


def format_message(status: PipelineStatus, metadata: dict[str, Any]) -> str:
    """One-line human summary, e.g. for a chat channel."""
    project = metadata.get("project") or "pipeline"
    ref = metadata.get("ref") or "?"
    emoji = _STATUS_EMOJI.get(status, ":hourglass:")
    pipeline_id = metadata.get("pipeline_id", "")
    text = f"{emoji} Pipeline {pipeline_id} for {project} - {ref}: {status.value}"
    failed = metadata.get("failed_jobs")
    if failed:
        text += f" (failed: {', '.join(failed)})"
    return text


class WebhookNotifier:
    """POSTs a JSON payload to a webhook URL.

    The payload carries a Slack-compatible ``text`` field plus the raw
    status and metadata, so it works both for chat webhooks and for
    generic receivers.
    """

    def __init__(
        self,
        url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.url = url
        self._client = client
        self._timeout = timeout

    async def send(self, status: PipelineStatus, metadata: dict[str, Any]) -> None:
        payload = {
            "text": format_message(status, metadata),
            "status": status.value,
            "pipeline": metadata,
        }
        try:
            if self._client is not None:
                resp = await self._client.post(self.url, json=payload, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(self.url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationError(f"Webhook delivery to {self.url} failed: {e}") from e
        logger.debug("Delivered %s notification to %s", status.value, self.url)


class LoggingNotifier:
    """Writes the notification to the log. Always available."""

    async def send(self, status: PipelineStatus, metadata: dict[str, Any]) -> None:
        level = logging.INFO if status == PipelineStatus.SUCCESS else logging.WARNING
        logger.log(level, "%s", format_message(status, metadata))
