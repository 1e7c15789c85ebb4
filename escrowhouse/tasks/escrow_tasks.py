"""Celery Beat sweeps that drive every timer-based transition.

Each task runs its sweep in a fresh event loop with a fresh engine, and
disposes of the database pool afterwards so no connection outlives its loop.
"""

import asyncio

from escrowhouse.common.logging import get_logger
from escrowhouse.tasks.celery_app import app

logger = get_logger("tasks.escrow")


def _run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _with_engine(sweep):
    from escrowhouse.core.engine import EscrowEngine
    from escrowhouse.db.session import engine as db_engine

    try:
        return await sweep(EscrowEngine())
    finally:
        await db_engine.dispose()


@app.task(name="escrowhouse.tasks.escrow_tasks.check_milestone_deadlines")
def check_milestone_deadlines():
    """Auto-approve submitted milestones whose approval window elapsed."""
    logger.info("Checking milestone deadlines")

    async def _check(engine):
        approved = await engine.milestones.check_deadlines()
        return [str(m) for m in approved]

    try:
        return _run_async(_with_engine(_check))
    except Exception as e:
        logger.error("Milestone deadline check failed: %s", e)
        raise


@app.task(name="escrowhouse.tasks.escrow_tasks.check_dispute_deadlines")
def check_dispute_deadlines():
    logger.info("Checking dispute deadlines")

    async def _check(engine):
        acted = await engine.disputes.check_deadlines()
        return {action: [str(d) for d in ids] for action, ids in acted.items()}

    try:
        return _run_async(_with_engine(_check))
    except Exception as e:
        logger.error("Dispute deadline check failed: %s", e)
        raise


@app.task(name="escrowhouse.tasks.escrow_tasks.retry_mediator_assignments")
def retry_mediator_assignments():
    logger.info("Retrying mediator assignments")

    async def _retry(engine):
        assigned = await engine.mediation.retry_unassigned()
        if assigned:
            logger.info("Assigned mediators to %d case(s)", len(assigned))
        return [str(c) for c in assigned]

    try:
        return _run_async(_with_engine(_retry))
    except Exception as e:
        logger.error("Mediator assignment retry failed: %s", e)
        raise


@app.task(name="escrowhouse.tasks.escrow_tasks.reconcile_ledger")
def reconcile_ledger():
    """Compare in-flight holds and payments with the escrow provider."""
    logger.info("Reconciling ledger against escrow provider")

    async def _reconcile(engine):
        return await engine.reconciliation.sweep()

    try:
        return _run_async(_with_engine(_reconcile))
    except Exception as e:
        logger.error("Ledger reconciliation failed: %s", e)
        raise
