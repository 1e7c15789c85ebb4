"""Mediator-assignment service client.

Returns a mediator reference for a mediation case, or ``None`` when nobody is
available. Mock mode assigns round-robin from ``MEDIATOR_POOL``.
"""

from __future__ import annotations

import itertools
import uuid
from typing import Any

import httpx

from escrowhouse.common.exceptions import ProviderUnavailable
from escrowhouse.config import settings
from escrowhouse.integrations.base import BaseIntegration, is_mock_url


class MediatorAssignmentClient(BaseIntegration):
    def __init__(self, pool: list[str] | None = None) -> None:
        super().__init__("mediators")
        self.url = settings.MEDIATOR_SERVICE_URL
        if pool is None:
            pool = [m.strip() for m in settings.MEDIATOR_POOL.split(",") if m.strip()]
        self.pool = pool
        self._cycle = itertools.cycle(self.pool) if self.pool else None

    async def health_check(self) -> bool:
        if is_mock_url(self.url):
            self.logger.info("Mediator service health check: OK (mock, %d mediators)", len(self.pool))
            return bool(self.pool)
        try:
            async with httpx.AsyncClient(timeout=10) as client:
                resp = await client.get(f"{self.url}/health")
                return resp.status_code == 200
        except httpx.HTTPError as e:
            self.logger.error("Mediator service health check failed: %s", e)
            return False

    async def assign(self, case_id: uuid.UUID, summary: dict[str, Any]) -> str | None:
        if not is_mock_url(self.url):
            try:
                async with httpx.AsyncClient(timeout=30) as client:
                    resp = await client.post(
                        f"{self.url}/assignments",
                        json={"case_id": str(case_id), **summary},
                    )
            except httpx.HTTPError as e:
                raise ProviderUnavailable(f"Mediator service unreachable: {e}") from e
            if resp.status_code == 409:
                return None
            if resp.status_code >= 400:
                raise ProviderUnavailable(f"Mediator service returned {resp.status_code}")
            return resp.json().get("mediator_ref")

        if self._cycle is None:
            self.logger.warning("Mock mediator pool is empty; case %s unassigned", case_id)
            return None
        mediator = next(self._cycle)
        self.logger.info("Mock mediator %s assigned to case %s", mediator, case_id)
        return mediator
