"""Escrow provider integration client.

Funds are custodied with a Stripe-compatible provider using separate charges
and transfers: a hold is a captured PaymentIntent sitting on the platform
balance, a payout is a Transfer to the contractor's connected account and a
refund is a Refund against the original PaymentIntent. Every mutating call
carries an ``Idempotency-Key`` so a resubmitted request is applied once.

Uses the real API when a valid key is configured, otherwise falls back to an
in-memory mock that honours idempotency keys the way the provider does.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import httpx

from escrowhouse.common.clock import to_cents, to_money
from escrowhouse.common.enums import PaymentDirection
from escrowhouse.common.exceptions import (
    InsufficientFunds,
    PayerMethodInvalid,
    PayoutDestinationInvalid,
    ProviderRejected,
    ProviderTimeout,
    ProviderUnavailable,
)
from escrowhouse.config import settings
from escrowhouse.integrations.base import BaseIntegration

# Funding sources and destinations the mock treats the way the provider's
# test-mode tokens behave.
MOCK_PAYER_INSUFFICIENT_FUNDS = "pm_card_chargeDeclinedInsufficientFunds"
MOCK_PAYER_INVALID = "pm_card_chargeDeclinedExpiredCard"
MOCK_PAYEE_INVALID = "acct_invalid"


def _is_mock() -> bool:
    key = getattr(settings, "ESCROW_PROVIDER_SECRET_KEY", "mock_stripe_key")
    return key.startswith("mock_")


@dataclass
class _MockEscrowState:
    holds: dict[str, dict[str, Any]] = field(default_factory=dict)
    hold_keys: dict[str, str] = field(default_factory=dict)
    transfers: dict[str, dict[str, Any]] = field(default_factory=dict)
    releases: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    charge_count: int = 0


class EscrowProviderClient(BaseIntegration):
    """Escrow custody client with real provider API and mock fallback."""

    def __init__(self) -> None:
        super().__init__("escrow_provider")
        self.base_url = settings.ESCROW_PROVIDER_BASE_URL
        self.mock_state = _MockEscrowState()

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {settings.ESCROW_PROVIDER_SECRET_KEY}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def health_check(self) -> bool:
        if _is_mock():
            self.logger.info("Escrow provider health check: OK (mock)")
            return True
        try:
            await self._request("GET", "/balance")
            return True
        except Exception as e:
            self.logger.error("Escrow provider health check failed: %s", e)
            return False

    async def _request(
        self,
        method: str,
        path: str,
        *,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        operation: str = "hold",
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=settings.ESCROW_PROVIDER_TIMEOUT_SECONDS) as client:
                resp = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    headers=self._headers(idempotency_key),
                    data=data,
                    params=params,
                )
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"Escrow provider timed out on {method} {path}") from e
        except httpx.TransportError as e:
            raise ProviderUnavailable(f"Escrow provider unreachable: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise ProviderUnavailable(f"Escrow provider returned {resp.status_code}")
        if resp.status_code >= 400:
            raise _map_provider_error(resp, operation)
        return resp.json()

    # ------------------------------------------------------------------
    # Holds
    # ------------------------------------------------------------------

    async def hold(
        self,
        amount: Decimal,
        payer_ref: str,
        idempotency_key: str,
        currency: str = "usd",
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        if not _is_mock():
            payload: dict[str, Any] = {
                "amount": to_cents(amount),
                "currency": currency,
                "payment_method": payer_ref,
                "confirm": "true",
                "metadata[idempotency_key]": idempotency_key,
            }
            for k, v in (metadata or {}).items():
                payload[f"metadata[{k}]"] = v
            data = await self._request(
                "POST", "/payment_intents", data=payload, idempotency_key=idempotency_key
            )
            self.logger.info("Created escrow hold %s ($%.2f)", data["id"], amount)
            return _hold_view(data)

        state = self.mock_state
        if idempotency_key in state.hold_keys:
            return dict(state.holds[state.hold_keys[idempotency_key]])
        if payer_ref == MOCK_PAYER_INSUFFICIENT_FUNDS:
            raise InsufficientFunds("The payer's funding source has insufficient funds")
        if payer_ref == MOCK_PAYER_INVALID:
            raise PayerMethodInvalid("The payer's funding source was declined")

        hold_id = f"pi_{uuid.uuid4().hex[:24]}"
        state.holds[hold_id] = {
            "id": hold_id,
            "status": "active",
            "amount": to_money(amount),
            "amount_released": Decimal("0.00"),
            "currency": currency,
            "payer_ref": payer_ref,
            "created": int(datetime.now(timezone.utc).timestamp()),
        }
        state.hold_keys[idempotency_key] = hold_id
        state.charge_count += 1
        self.logger.info("Mock escrow hold: %s (%.2f %s)", hold_id, amount, currency)
        return dict(state.holds[hold_id])

    async def get_hold(self, hold_ref: str) -> dict[str, Any] | None:
        if not _is_mock():
            try:
                data = await self._request("GET", f"/payment_intents/{hold_ref}")
            except ProviderRejected:
                return None
            return _hold_view(data)
        hold = self.mock_state.holds.get(hold_ref)
        return dict(hold) if hold else None

    async def lookup_hold(self, idempotency_key: str) -> dict[str, Any] | None:
        """Find the hold created under ``idempotency_key``, if the provider has one."""
        if not _is_mock():
            data = await self._request(
                "GET",
                "/payment_intents/search",
                params={"query": f"metadata['idempotency_key']:'{idempotency_key}'"},
            )
            matches = data.get("data", [])
            return _hold_view(matches[0]) if matches else None
        hold_id = self.mock_state.hold_keys.get(idempotency_key)
        return dict(self.mock_state.holds[hold_id]) if hold_id else None

    # ------------------------------------------------------------------
    # Releases
    # ------------------------------------------------------------------

    async def release(
        self, hold_ref: str, transfers: list[dict[str, Any]], idempotency_key: str
    ) -> list[dict[str, Any]]:
        """Move funds out of a hold.

        Each transfer is ``{"payee_ref", "amount", "direction", "idempotency_key"}``.
        Returns ``{"idempotency_key", "id", "status"}`` per transfer.
        """
        if not _is_mock():
            results = []
            for transfer in transfers:
                results.append(await self._submit_transfer(hold_ref, transfer))
            return results

        state = self.mock_state
        if idempotency_key in state.releases:
            return [dict(r) for r in state.releases[idempotency_key]]

        hold = state.holds.get(hold_ref)
        if hold is None:
            raise ProviderRejected(f"Unknown hold {hold_ref}")
        for transfer in transfers:
            if transfer["payee_ref"] == MOCK_PAYEE_INVALID:
                raise PayoutDestinationInvalid(
                    "Payout destination rejected by provider",
                    context={"payee_ref": transfer["payee_ref"]},
                )
        new_total = sum(
            (to_money(t["amount"]) for t in transfers if t["idempotency_key"] not in state.transfers),
            Decimal("0.00"),
        )
        if hold["amount_released"] + new_total > hold["amount"]:
            raise ProviderRejected("Release exceeds the funds held")

        results = []
        for transfer in transfers:
            key = transfer["idempotency_key"]
            if key not in state.transfers:
                prefix = "tr" if transfer["direction"] == PaymentDirection.PAYOUT.value else "re"
                state.transfers[key] = {
                    "idempotency_key": key,
                    "id": f"{prefix}_{uuid.uuid4().hex[:24]}",
                    "status": "completed",
                    "amount": to_money(transfer["amount"]),
                    "payee_ref": transfer["payee_ref"],
                    "hold_ref": hold_ref,
                }
                hold["amount_released"] += to_money(transfer["amount"])
            results.append(
                {"idempotency_key": key, "id": state.transfers[key]["id"], "status": "completed"}
            )
        state.releases[idempotency_key] = results
        self.logger.info("Mock release from %s: %d transfer(s)", hold_ref, len(results))
        return [dict(r) for r in results]

    async def _submit_transfer(self, hold_ref: str, transfer: dict[str, Any]) -> dict[str, Any]:
        key = transfer["idempotency_key"]
        if transfer["direction"] == PaymentDirection.REFUND.value:
            data = await self._request(
                "POST",
                "/refunds",
                data={
                    "payment_intent": hold_ref,
                    "amount": to_cents(transfer["amount"]),
                    "metadata[idempotency_key]": key,
                },
                idempotency_key=key,
                operation="refund",
            )
            self.logger.info("Created refund %s", data["id"])
            return {"idempotency_key": key, "id": data["id"], "status": _refund_status(data)}

        data = await self._request(
            "POST",
            "/transfers",
            data={
                "amount": to_cents(transfer["amount"]),
                "currency": transfer.get("currency", settings.ESCROW_CURRENCY),
                "destination": transfer["payee_ref"],
                "transfer_group": hold_ref,
                "metadata[idempotency_key]": key,
            },
            idempotency_key=key,
            operation="transfer",
        )
        self.logger.info("Created transfer %s", data["id"])
        return {"idempotency_key": key, "id": data["id"], "status": "completed"}

    async def lookup_transfer(
        self, hold_ref: str, idempotency_key: str, direction: str
    ) -> dict[str, Any] | None:
        """Find the transfer or refund submitted under ``idempotency_key``."""
        if not _is_mock():
            if direction == PaymentDirection.REFUND.value:
                data = await self._request(
                    "GET", "/refunds", params={"payment_intent": hold_ref, "limit": 100}
                )
                status_of = _refund_status
            else:
                data = await self._request(
                    "GET", "/transfers", params={"transfer_group": hold_ref, "limit": 100}
                )
                status_of = _transfer_status
            for item in data.get("data", []):
                if item.get("metadata", {}).get("idempotency_key") == idempotency_key:
                    return {"idempotency_key": idempotency_key, "id": item["id"], "status": status_of(item)}
            return None

        transfer = self.mock_state.transfers.get(idempotency_key)
        if transfer is None:
            return None
        return {"idempotency_key": idempotency_key, "id": transfer["id"], "status": transfer["status"]}


def _hold_view(data: dict[str, Any]) -> dict[str, Any]:
    status_map = {
        "succeeded": "active",
        "processing": "pending",
        "requires_capture": "pending",
        "canceled": "failed",
        "requires_payment_method": "failed",
    }
    return {
        "id": data["id"],
        "status": status_map.get(data.get("status", ""), "pending"),
        "amount": Decimal(data.get("amount", 0)) / 100,
        "amount_released": None,
    }


def _refund_status(data: dict[str, Any]) -> str:
    return {"succeeded": "completed", "pending": "pending"}.get(data.get("status", ""), "failed")


def _transfer_status(data: dict[str, Any]) -> str:
    return "failed" if data.get("reversed") else "completed"


def _map_provider_error(resp: httpx.Response, operation: str) -> ProviderRejected:
    try:
        error = resp.json().get("error", {})
    except ValueError:
        error = {}
    code = error.get("decline_code") or error.get("code") or ""
    message = error.get("message") or f"Escrow provider rejected the {operation} ({resp.status_code})"

    if operation == "transfer":
        return PayoutDestinationInvalid(message, context={"provider_code": code})
    if code == "insufficient_funds":
        return InsufficientFunds(message)
    if error.get("type") == "card_error" or error.get("param") == "payment_method":
        return PayerMethodInvalid(message, context={"provider_code": code})
    return ProviderRejected(message, context={"provider_code": code})
