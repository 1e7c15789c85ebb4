"""Notification service client.

The engine publishes state-change events; formatting and delivery to
homeowners and contractors belong to the notification service.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

import httpx

from escrowhouse.common.exceptions import ProviderUnavailable
from escrowhouse.config import settings
from escrowhouse.integrations.base import BaseIntegration, is_mock_url


class NotificationClient(BaseIntegration):
    def __init__(self) -> None:
        super().__init__("notifications")
        self.url = settings.NOTIFICATION_WEBHOOK_URL
        self.sent: list[dict[str, Any]] = []

    async def health_check(self) -> bool:
        if is_mock_url(self.url):
            self.logger.info("Notification service health check: OK (mock)")
        return True

    async def publish(self, event: str, data: dict[str, Any]) -> dict[str, Any]:
        envelope = {
            "id": f"evt_{uuid.uuid4().hex[:20]}",
            "type": event,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
            "data": data,
        }

        if not is_mock_url(self.url):
            try:
                async with httpx.AsyncClient(timeout=10) as client:
                    resp = await client.post(
                        self.url,
                        json=envelope,
                        headers={"Authorization": f"Bearer {settings.NOTIFICATION_API_KEY}"},
                    )
                    resp.raise_for_status()
            except httpx.HTTPError as e:
                raise ProviderUnavailable(f"Notification service error: {e}") from e
            self.logger.info("Published %s (%s)", event, envelope["id"])
            return envelope

        self.sent.append(envelope)
        self.logger.info("Mock notification: %s (%s)", event, envelope["id"])
        return envelope

    async def __call__(self, event: str, data: dict[str, Any]) -> None:
        """Lets the client be registered directly as an event subscriber."""
        await self.publish(event, data)
