"""Progress reporting for long-running reconciliation steps.

Image pulls and volume activation report status through a ``Progress``
sink. The reconciler only ever writes to it; a sink that cannot deliver
an update logs the problem and moves on.
"""
from __future__ import annotations

import logging
from typing import Any

import httpx

from runtime_agent.config import settings

logger = logging.getLogger(__name__)


class Progress:
    """Progress sink that writes updates to the agent log."""

    def __init__(self, event_id: str = ""):
        self.event_id = event_id

    def update(self, message: str, **fields: Any) -> None:
        logger.info(message, extra={"event_id": self.event_id, **fields})

    def close(self) -> None:
        pass


class ControllerProgress(Progress):
    """Progress sink that forwards updates to the controller.

    Each update is POSTed to ``{controller_url}/events/{event_id}/progress``.
    """

    def __init__(
        self,
        event_id: str,
        controller_url: str | None = None,
        client: httpx.Client | None = None,
    ):
        super().__init__(event_id)
        self.controller_url = controller_url or settings.controller_url
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=settings.progress_timeout)
        return self._client

    def update(self, message: str, **fields: Any) -> None:
        super().update(message, **fields)
        payload = {"event_id": self.event_id, "message": message, **fields}
        try:
            response = self.client.post(
                f"{self.controller_url}/events/{self.event_id}/progress",
                json=payload,
            )
            if response.status_code >= 400:
                logger.warning(f"Progress update rejected: HTTP {response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Failed to forward progress update: {e}")

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def get_progress(event_id: str = "") -> Progress:
    """Progress sink for a reconciliation, per configuration."""
    if settings.progress_enabled and event_id:
        return ControllerProgress(event_id)
    return Progress(event_id)
