from abc import ABC, abstractmethod
from decimal import Decimal

from escrowhouse.common.enums import PartyRole
from escrowhouse.core.disputes.schemas import DisputeSnapshot, ProposedResolution


class ResolutionPolicy(ABC):
    """Automatic resolution attempt for a dispute whose evidence window closed."""

    @abstractmethod
    async def evaluate(self, snapshot: DisputeSnapshot) -> ProposedResolution | None:
        """Return a proposed split, or ``None`` when the dispute is unresolvable."""
        ...


class EvidencePrecedencePolicy(ResolutionPolicy):
    """If only one party backed its position with evidence, side with that party.

    Evidence from both parties, or from neither, is ambiguous and is never
    settled automatically.
    """

    async def evaluate(self, snapshot: DisputeSnapshot) -> ProposedResolution | None:
        submitters = snapshot.submitters
        if len(submitters) != 1:
            return None

        party = next(iter(submitters))
        if party == PartyRole.HOMEOWNER:
            return ProposedResolution(
                contractor_percent=Decimal("0"),
                rationale="Only the homeowner submitted evidence before the window closed",
                rule="uncontested_homeowner_evidence",
            )
        return ProposedResolution(
            contractor_percent=Decimal("100"),
            rationale="Only the contractor submitted evidence before the window closed",
            rule="uncontested_contractor_evidence",
        )
