import uuid
from decimal import Decimal

import pytest


def milestone_payload(**overrides):
    payload = {
        "project_id": str(uuid.uuid4()),
        "sequence": 1,
        "title": "Bathroom tile",
        "amount": "3000.00",
        "homeowner_ref": "acct_homeowner_1",
        "contractor_ref": "acct_contractor_1",
        "payer_ref": "pm_card_visa",
    }
    payload.update(overrides)
    return payload


async def create_milestone(client, system_headers, **overrides):
    response = await client.post("/api/v1/milestones", headers=system_headers, json=milestone_payload(**overrides))
    assert response.status_code == 201
    return response.json()


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["service"] == "escrowhouse"
    assert response.json()["integrations"] == {"escrow_provider": "ok", "rules_engine": "ok", "mediators": "ok"}
    assert response.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    response = await client.get("/health", headers={"X-Request-ID": "req-42"})
    assert response.headers["X-Request-ID"] == "req-42"


@pytest.mark.asyncio
async def test_milestone_lifecycle_over_http(client, system_headers, homeowner_headers, contractor_headers):
    milestone = await create_milestone(client, system_headers)
    assert milestone["status"] == "draft"
    milestone_id = milestone["id"]

    response = await client.post(f"/api/v1/milestones/{milestone_id}/fund", headers=homeowner_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "funded"

    response = await client.post(f"/api/v1/milestones/{milestone_id}/mark-complete", headers=contractor_headers)
    assert response.status_code == 200
    assert response.json()["auto_approval_deadline"] is not None

    response = await client.post(f"/api/v1/milestones/{milestone_id}/approve", headers=homeowner_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    response = await client.get(f"/api/v1/milestones/{milestone_id}/resolution", headers=homeowner_headers)
    body = response.json()
    assert body["outcome"] == "full_release"
    assert [(p["payee_ref"], Decimal(p["amount"])) for p in body["payments"]] == [
        ("acct_contractor_1", Decimal("3000.00"))
    ]

    response = await client.get(f"/api/v1/milestones/{milestone_id}/history", headers=contractor_headers)
    assert [t["to_status"] for t in response.json()] == ["funded", "pending_verification", "verified", "completed"]


@pytest.mark.asyncio
async def test_resolution_is_null_before_any_decision(client, system_headers, homeowner_headers):
    milestone = await create_milestone(client, system_headers)
    response = await client.get(f"/api/v1/milestones/{milestone['id']}/resolution", headers=homeowner_headers)
    assert response.status_code == 200
    assert response.json() is None


@pytest.mark.asyncio
async def test_actor_headers_are_required(client, system_headers):
    milestone = await create_milestone(client, system_headers)
    response = await client.get(f"/api/v1/milestones/{milestone['id']}")
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_only_the_named_homeowner_can_fund(client, system_headers):
    milestone = await create_milestone(client, system_headers)
    response = await client.post(
        f"/api/v1/milestones/{milestone['id']}/fund",
        headers={"X-Actor-Ref": "acct_someone_else", "X-Actor-Role": "homeowner"},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_contractor_cannot_approve(client, system_headers, contractor_headers):
    milestone = await create_milestone(client, system_headers)
    response = await client.post(f"/api/v1/milestones/{milestone['id']}/approve", headers=contractor_headers)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_engine_errors_carry_code_and_next_action(client, system_headers, contractor_headers):
    milestone = await create_milestone(client, system_headers)

    response = await client.post(f"/api/v1/milestones/{milestone['id']}/mark-complete", headers=contractor_headers)

    assert response.status_code == 409
    assert response.json()["code"] == "illegal_transition"
    assert response.json()["next_action"] == "refresh_status"


@pytest.mark.asyncio
async def test_unknown_milestone_is_404(client, homeowner_headers):
    response = await client.get(f"/api/v1/milestones/{uuid.uuid4()}", headers=homeowner_headers)
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


@pytest.mark.asyncio
async def test_declined_funding_is_402(client, system_headers, homeowner_headers):
    milestone = await create_milestone(client, system_headers)
    response = await client.post(
        f"/api/v1/milestones/{milestone['id']}/fund",
        headers=homeowner_headers,
        json={"payer_ref": "pm_card_chargeDeclinedInsufficientFunds"},
    )
    assert response.status_code == 402
    assert response.json()["code"] == "insufficient_funds"
    assert response.json()["next_action"] == "retry_funding"


@pytest.mark.asyncio
async def test_invalid_group_payees_are_rejected(client, system_headers):
    response = await client.post(
        "/api/v1/milestones",
        headers=system_headers,
        json=milestone_payload(payees=[{"payee_ref": "acct_a", "share_percent": "70"}]),
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_create_from_contract(client, system_headers):
    response = await client.post(
        "/api/v1/milestones/from-contract",
        headers=system_headers,
        json={
            "project_id": str(uuid.uuid4()),
            "contract_id": str(uuid.uuid4()),
            "homeowner_ref": "acct_homeowner_1",
            "contractor_ref": "acct_contractor_1",
            "milestones": [
                {"sequence": 1, "title": "Demo", "amount": "1500.00"},
                {"sequence": 2, "title": "Framing", "amount": "4500.00"},
            ],
        },
    )
    assert response.status_code == 201
    assert [m["title"] for m in response.json()] == ["Demo", "Framing"]


@pytest.mark.asyncio
async def test_dispute_settled_over_http(client, system_headers, homeowner_headers, contractor_headers):
    milestone = await create_milestone(client, system_headers)
    milestone_id = milestone["id"]
    await client.post(f"/api/v1/milestones/{milestone_id}/fund", headers=homeowner_headers)
    await client.post(f"/api/v1/milestones/{milestone_id}/mark-complete", headers=contractor_headers)

    response = await client.post(
        f"/api/v1/milestones/{milestone_id}/disputes",
        headers=homeowner_headers,
        json={"reason": "Grout is cracking", "dispute_type": "quality_issue", "evidence_refs": ["photo-1"]},
    )
    assert response.status_code == 201
    dispute_id = response.json()["id"]
    assert response.json()["status"] == "evidence_collection"

    response = await client.post(
        f"/api/v1/disputes/{dispute_id}/messages",
        headers=contractor_headers,
        json={"body": "I will regrout the shower wall"},
    )
    assert response.status_code == 201

    response = await client.post(
        f"/api/v1/disputes/{dispute_id}/settlement",
        headers=contractor_headers,
        json={"contractor_percent": "90", "rationale": "Regrout at my cost"},
    )
    assert response.json()["status"] == "direct_resolution"

    response = await client.post(f"/api/v1/disputes/{dispute_id}/settlement/accept", headers=homeowner_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "resolved"

    response = await client.get(f"/api/v1/milestones/{milestone_id}/resolution", headers=homeowner_headers)
    amounts = {p["payee_ref"]: Decimal(p["amount"]) for p in response.json()["payments"]}
    assert amounts == {"acct_contractor_1": Decimal("2700.00"), "acct_homeowner_1": Decimal("300.00")}

    response = await client.get(f"/api/v1/disputes/{dispute_id}/messages", headers=homeowner_headers)
    assert [m["body"] for m in response.json()] == ["I will regrout the shower wall"]


@pytest.mark.asyncio
async def test_mediation_over_http(client, escrow, system_headers, homeowner_headers, contractor_headers, mediator_headers):
    milestone = await create_milestone(client, system_headers, amount="5000.00")
    milestone_id = milestone["id"]
    await client.post(f"/api/v1/milestones/{milestone_id}/fund", headers=homeowner_headers)
    response = await client.post(
        f"/api/v1/milestones/{milestone_id}/disputes",
        headers=contractor_headers,
        json={"reason": "Homeowner changed the layout mid-job"},
    )
    dispute_id = response.json()["id"]

    response = await client.post(f"/api/v1/disputes/{dispute_id}/escalate", headers=contractor_headers)
    assert response.json()["status"] == "mediation"

    async with escrow.store.transaction() as db:
        case = await escrow.store.find_case_for_dispute(db, uuid.UUID(dispute_id))

    response = await client.post(f"/api/v1/mediation/{case.id}/review", headers=contractor_headers)
    assert response.status_code == 403

    response = await client.post(f"/api/v1/mediation/{case.id}/review", headers=mediator_headers)
    assert response.json()["status"] == "in_review"

    response = await client.post(
        f"/api/v1/mediation/{case.id}/decision",
        headers=mediator_headers,
        json={"outcome": "partial_release", "contractor_percent": "60"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "decided"

    response = await client.get(f"/api/v1/milestones/{milestone_id}", headers=homeowner_headers)
    assert response.json()["status"] == "completed"


@pytest.mark.asyncio
async def test_hold_summary(client, escrow, system_headers, homeowner_headers):
    milestone = await create_milestone(client, system_headers)
    await client.post(f"/api/v1/milestones/{milestone['id']}/fund", headers=homeowner_headers)
    async with escrow.store.transaction() as db:
        hold = await escrow.store.find_hold_for_milestone(db, uuid.UUID(milestone["id"]))

    response = await client.get(f"/api/v1/holds/{hold.id}", headers=homeowner_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "active"
    assert Decimal(body["remaining_amount"]) == Decimal("3000.00")
    assert body["frozen"] is False


@pytest.mark.asyncio
async def test_admin_sweeps(client, system_headers, homeowner_headers, contractor_headers, admin_headers):
    milestone = await create_milestone(client, system_headers)
    await client.post(f"/api/v1/milestones/{milestone['id']}/fund", headers=homeowner_headers)
    await client.post(f"/api/v1/milestones/{milestone['id']}/mark-complete", headers=contractor_headers)
    response = await client.post("/api/v1/admin/sweeps/milestone-deadlines", headers=admin_headers)
    assert response.json() == {"sweep": "milestone-deadlines", "result": []}

    response = await client.post("/api/v1/admin/sweeps/reconciliation", headers=system_headers)
    assert response.status_code == 200
    assert response.json()["sweep"] == "reconciliation"

    response = await client.post("/api/v1/admin/sweeps/nightly-backup", headers=admin_headers)
    assert response.status_code == 400

    response = await client.post("/api/v1/admin/sweeps/reconciliation", headers=homeowner_headers)
    assert response.status_code == 403

    response = await client.get("/api/v1/admin/reconciliation-issues", headers=admin_headers)
    assert response.json() == []


@pytest.mark.asyncio
async def test_admin_retry_payout_over_http(client, system_headers, homeowner_headers, admin_headers):
    milestone = await create_milestone(client, system_headers, contractor_ref="acct_invalid")
    milestone_id = milestone["id"]
    await client.post(f"/api/v1/milestones/{milestone_id}/fund", headers=homeowner_headers)
    await client.post(
        f"/api/v1/milestones/{milestone_id}/mark-complete",
        headers={"X-Actor-Ref": "acct_invalid", "X-Actor-Role": "contractor"},
    )
    response = await client.post(f"/api/v1/milestones/{milestone_id}/approve", headers=homeowner_headers)
    assert response.json()["status"] == "payout_failed"

    response = await client.post(f"/api/v1/milestones/{milestone_id}/approve", headers=homeowner_headers)
    assert response.status_code == 409
    assert response.json()["code"] == "manual_intervention_required"

    response = await client.post(f"/api/v1/admin/milestones/{milestone_id}/retry-payout", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "payout_failed"
