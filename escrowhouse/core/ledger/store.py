"""Ledger Store: the single source of truth for milestones and money.

Every mutation happens inside ``transaction()``. Commands that touch a
milestone graph first take ``locked(milestone_id)`` so two operations on the
same milestone never interleave; rows are additionally loaded
``SELECT ... FOR UPDATE`` on databases that support it.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrowhouse.common.exceptions import EntityNotFound
from escrowhouse.common.locks import LockManager, get_lock_manager
from escrowhouse.common.logging import get_logger
from escrowhouse.db.models import (
    AuditLog,
    Dispute,
    EscrowHold,
    MediationCase,
    Milestone,
    MilestoneTransition,
    Payment,
    Resolution,
)

logger = get_logger("ledger.store")


class LedgerStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        lock_manager: LockManager | None = None,
    ):
        if session_factory is None:
            from escrowhouse.db.session import async_session_factory

            session_factory = async_session_factory
        self.session_factory = session_factory
        self.locks = lock_manager or get_lock_manager()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as db:
            async with db.begin():
                yield db

    def locked(self, milestone_id: uuid.UUID):
        return self.locks.lock(f"milestone:{milestone_id}")

    # ------------------------------------------------------------------
    # Loaders
    # ------------------------------------------------------------------

    async def _get(self, db: AsyncSession, model: Any, entity_id: uuid.UUID, for_update: bool) -> Any:
        query = select(model).where(model.id == entity_id)
        if for_update:
            query = query.with_for_update()
        entity = (await db.execute(query)).scalar_one_or_none()
        if entity is None:
            raise EntityNotFound(model.__name__, entity_id)
        return entity

    async def get_milestone(self, db: AsyncSession, milestone_id: uuid.UUID, for_update: bool = False) -> Milestone:
        return await self._get(db, Milestone, milestone_id, for_update)

    async def get_hold(self, db: AsyncSession, hold_id: uuid.UUID, for_update: bool = False) -> EscrowHold:
        return await self._get(db, EscrowHold, hold_id, for_update)

    async def get_dispute(self, db: AsyncSession, dispute_id: uuid.UUID, for_update: bool = False) -> Dispute:
        return await self._get(db, Dispute, dispute_id, for_update)

    async def get_case(self, db: AsyncSession, case_id: uuid.UUID, for_update: bool = False) -> MediationCase:
        return await self._get(db, MediationCase, case_id, for_update)

    async def get_resolution(self, db: AsyncSession, resolution_id: uuid.UUID) -> Resolution:
        return await self._get(db, Resolution, resolution_id, False)

    async def find_hold_for_milestone(
        self, db: AsyncSession, milestone_id: uuid.UUID, for_update: bool = False
    ) -> EscrowHold | None:
        query = select(EscrowHold).where(EscrowHold.milestone_id == milestone_id)
        if for_update:
            query = query.with_for_update()
        return (await db.execute(query)).scalar_one_or_none()

    async def find_case_for_dispute(self, db: AsyncSession, dispute_id: uuid.UUID) -> MediationCase | None:
        result = await db.execute(select(MediationCase).where(MediationCase.dispute_id == dispute_id))
        return result.scalar_one_or_none()

    async def find_resolution_for_milestone(self, db: AsyncSession, milestone_id: uuid.UUID) -> Resolution | None:
        result = await db.execute(select(Resolution).where(Resolution.milestone_id == milestone_id))
        return result.scalar_one_or_none()

    async def payments_for_hold(self, db: AsyncSession, hold_id: uuid.UUID) -> list[Payment]:
        result = await db.execute(
            select(Payment).where(Payment.hold_id == hold_id).order_by(Payment.created_at)
        )
        return list(result.scalars().all())

    async def payments_for_resolution(self, db: AsyncSession, resolution_id: uuid.UUID) -> list[Payment]:
        result = await db.execute(
            select(Payment).where(Payment.resolution_id == resolution_id).order_by(Payment.created_at)
        )
        return list(result.scalars().all())

    async def transitions_for_milestone(self, db: AsyncSession, milestone_id: uuid.UUID) -> list[MilestoneTransition]:
        result = await db.execute(
            select(MilestoneTransition)
            .where(MilestoneTransition.milestone_id == milestone_id)
            .order_by(MilestoneTransition.position)
        )
        return list(result.scalars().all())

    async def milestone_id_for_dispute(self, dispute_id: uuid.UUID) -> uuid.UUID:
        async with self.transaction() as db:
            return (await self.get_dispute(db, dispute_id)).milestone_id

    async def milestone_id_for_case(self, case_id: uuid.UUID) -> uuid.UUID:
        async with self.transaction() as db:
            return (await self.get_case(db, case_id)).milestone_id

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def audit(
        self,
        db: AsyncSession,
        entity_type: str,
        entity_id: uuid.UUID,
        action: str,
        actor: str = "system",
        diff: dict[str, Any] | None = None,
    ) -> AuditLog:
        entry = AuditLog(entity_type=entity_type, entity_id=entity_id, action=action, actor=actor, diff=diff)
        db.add(entry)
        return entry
