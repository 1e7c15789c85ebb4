import uuid
from types import SimpleNamespace

import pytest

from escrowhouse.tasks import escrow_tasks
from escrowhouse.tasks.celery_app import app

MILESTONE_ID = uuid.uuid4()
DISPUTE_ID = uuid.uuid4()


class StubSweeps:
    async def check_milestones(self):
        return [MILESTONE_ID]

    async def check_disputes(self):
        return {"reviewed": [DISPUTE_ID], "escalated": []}

    async def retry_unassigned(self):
        return []

    async def reconcile(self):
        return {"repaired": 2}


@pytest.fixture
def stub_engine(monkeypatch):
    sweeps = StubSweeps()
    engine = SimpleNamespace(
        milestones=SimpleNamespace(check_deadlines=sweeps.check_milestones),
        disputes=SimpleNamespace(check_deadlines=sweeps.check_disputes),
        mediation=SimpleNamespace(retry_unassigned=sweeps.retry_unassigned),
        reconciliation=SimpleNamespace(sweep=sweeps.reconcile),
    )

    async def with_engine(sweep):
        return await sweep(engine)

    monkeypatch.setattr(escrow_tasks, "_with_engine", with_engine)
    return engine


def test_beat_schedule_covers_every_sweep():
    tasks = {entry["task"] for entry in app.conf.beat_schedule.values()}
    assert tasks == {
        "escrowhouse.tasks.escrow_tasks.check_milestone_deadlines",
        "escrowhouse.tasks.escrow_tasks.check_dispute_deadlines",
        "escrowhouse.tasks.escrow_tasks.retry_mediator_assignments",
        "escrowhouse.tasks.escrow_tasks.reconcile_ledger",
    }


def test_sweep_results_are_json_friendly(stub_engine):
    assert escrow_tasks.check_milestone_deadlines() == [str(MILESTONE_ID)]
    assert escrow_tasks.check_dispute_deadlines() == {"reviewed": [str(DISPUTE_ID)], "escalated": []}
    assert escrow_tasks.retry_mediator_assignments() == []
    assert escrow_tasks.reconcile_ledger() == {"repaired": 2}


def test_sweep_failure_propagates(stub_engine):
    async def broken():
        raise RuntimeError("database unavailable")

    stub_engine.reconciliation.sweep = broken

    with pytest.raises(RuntimeError):
        escrow_tasks.reconcile_ledger()
