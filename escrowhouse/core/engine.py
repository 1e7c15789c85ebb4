"""Wires the engine components together.

The API, the Celery tasks and the tests all go through one ``EscrowEngine``
so every caller shares the same lock manager and provider clients.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrowhouse.common.locks import LockManager
from escrowhouse.core.disputes.policy import ResolutionPolicy
from escrowhouse.core.disputes.service import DisputeCoordinator
from escrowhouse.core.escrow.hold_manager import EscrowHoldManager
from escrowhouse.core.ledger.store import LedgerStore
from escrowhouse.core.mediation.service import MediationWorkflow
from escrowhouse.core.milestones.service import MilestoneService
from escrowhouse.core.payouts.distributor import PayoutDistributor
from escrowhouse.core.reconciliation.sweeper import ReconciliationSweeper
from escrowhouse.integrations import EscrowProviderClient, MediatorAssignmentClient, RulesEngineClient


class EscrowEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        lock_manager: LockManager | None = None,
        provider: EscrowProviderClient | None = None,
        policy: ResolutionPolicy | None = None,
        assigner: MediatorAssignmentClient | None = None,
    ):
        self.store = LedgerStore(session_factory, lock_manager)
        self.provider = provider or EscrowProviderClient()
        self.policy = policy or RulesEngineClient()
        self.assigner = assigner or MediatorAssignmentClient()

        self.holds = EscrowHoldManager(self.store, self.provider)
        self.payouts = PayoutDistributor(self.store, self.holds)
        self.mediation = MediationWorkflow(self.store, self.payouts, self.assigner)
        self.disputes = DisputeCoordinator(self.store, self.holds, self.payouts, self.mediation, self.policy)
        self.milestones = MilestoneService(self.store, self.holds, self.payouts)
        self.reconciliation = ReconciliationSweeper(self.store, self.provider, self.holds, self.payouts)


_engine: EscrowEngine | None = None


def get_engine() -> EscrowEngine:
    global _engine
    if _engine is None:
        _engine = EscrowEngine()
    return _engine
