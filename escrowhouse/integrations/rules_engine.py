"""Resolution-rules engine client.

The business rules for settling a dispute automatically live in an external
service. Mock mode applies the evidence-precedence rule locally.
"""

from __future__ import annotations

import httpx

from escrowhouse.common.exceptions import ProviderUnavailable
from escrowhouse.config import settings
from escrowhouse.core.disputes.policy import EvidencePrecedencePolicy, ResolutionPolicy
from escrowhouse.core.disputes.schemas import DisputeSnapshot, ProposedResolution
from escrowhouse.integrations.base import BaseIntegration, is_mock_url


class RulesEngineClient(BaseIntegration, ResolutionPolicy):
    def __init__(self) -> None:
        super().__init__("rules_engine")
        self.url = settings.RULES_ENGINE_URL
        self._local_policy = EvidencePrecedencePolicy()

    async def health_check(self) -> bool:
        if is_mock_url(self.url):
            self.logger.info("Rules engine health check: OK (mock)")
            return True
        try:
            async with httpx.AsyncClient(timeout=10) as client:
                resp = await client.get(f"{self.url}/health")
                return resp.status_code == 200
        except httpx.HTTPError as e:
            self.logger.error("Rules engine health check failed: %s", e)
            return False

    async def evaluate(self, snapshot: DisputeSnapshot) -> ProposedResolution | None:
        if is_mock_url(self.url):
            proposal = await self._local_policy.evaluate(snapshot)
            self.logger.info(
                "Mock rules engine on dispute %s: %s",
                snapshot.dispute_id,
                proposal.rule if proposal else "unresolvable",
            )
            return proposal

        try:
            async with httpx.AsyncClient(timeout=30) as client:
                resp = await client.post(
                    f"{self.url}/evaluate", json=snapshot.model_dump(mode="json")
                )
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"Rules engine error: {e}") from e

        body = resp.json()
        if not body.get("resolvable"):
            return None
        return ProposedResolution(
            contractor_percent=body["contractor_percent"],
            rationale=body.get("rationale", ""),
            rule=body.get("rule", "external"),
        )
