"""Turning a resolution percentage into exact cent amounts."""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal

from pydantic import BaseModel

from escrowhouse.common.clock import CENT, to_money
from escrowhouse.common.enums import PartyRole, ResolutionOutcome
from escrowhouse.common.exceptions import InvalidSplit

HUNDRED = Decimal("100")


class Share(BaseModel):
    payee_ref: str
    role: PartyRole
    amount: Decimal


def split_amount(held: Decimal, contractor_percent: Decimal | int | str) -> tuple[Decimal, Decimal]:
    """Return ``(homeowner_share, contractor_share)`` for ``held``.

    The contractor share is rounded down to the cent and the homeowner gets
    the remainder, so the two always add up to ``held`` exactly.
    """
    held = to_money(held)
    percent = Decimal(str(contractor_percent))
    if percent < 0 or percent > HUNDRED:
        raise InvalidSplit(f"Contractor percentage must be between 0 and 100, got {percent}")
    contractor = (held * percent / HUNDRED).quantize(CENT, rounding=ROUND_DOWN)
    return held - contractor, contractor


def outcome_for(contractor_percent: Decimal | int | str) -> ResolutionOutcome:
    percent = Decimal(str(contractor_percent))
    if percent == HUNDRED:
        return ResolutionOutcome.FULL_RELEASE
    if percent == 0:
        return ResolutionOutcome.FULL_REFUND
    return ResolutionOutcome.PARTIAL_RELEASE


def contractor_payees(contractor_ref: str, payees: list[dict] | None) -> list[tuple[str, Decimal]]:
    """Payees sharing the contractor side, as ``(payee_ref, percent)``.

    Group bids list several payees whose percentages add up to 100; an
    ordinary milestone pays the contractor alone.
    """
    if not payees:
        return [(contractor_ref, HUNDRED)]
    entries = [(p["payee_ref"], Decimal(str(p["share_percent"]))) for p in payees]
    if any(percent <= 0 for _, percent in entries):
        raise InvalidSplit("Every group payee needs a positive share")
    if sum(percent for _, percent in entries) != HUNDRED:
        raise InvalidSplit("Group payee shares must add up to 100")
    return entries


def allocate(total: Decimal, entries: list[tuple[str, Decimal]]) -> list[tuple[str, Decimal]]:
    """Split ``total`` across weighted payees; leftover cents go to the first payee."""
    total = to_money(total)
    amounts = [
        (ref, (total * percent / HUNDRED).quantize(CENT, rounding=ROUND_DOWN)) for ref, percent in entries
    ]
    remainder = total - sum((amount for _, amount in amounts), Decimal("0.00"))
    if amounts and remainder:
        ref, amount = amounts[0]
        amounts[0] = (ref, amount + remainder)
    return amounts


def build_shares(
    held: Decimal,
    contractor_percent: Decimal | int | str,
    *,
    homeowner_ref: str,
    contractor_ref: str,
    payees: list[dict] | None = None,
) -> tuple[Decimal, Decimal, list[Share]]:
    homeowner_share, contractor_share = split_amount(held, contractor_percent)
    shares = []
    if homeowner_share > 0:
        shares.append(Share(payee_ref=homeowner_ref, role=PartyRole.HOMEOWNER, amount=homeowner_share))
    if contractor_share > 0:
        for ref, amount in allocate(contractor_share, contractor_payees(contractor_ref, payees)):
            if amount > 0:
                shares.append(Share(payee_ref=ref, role=PartyRole.CONTRACTOR, amount=amount))
    refs = [s.payee_ref for s in shares]
    if len(set(refs)) != len(refs):
        raise InvalidSplit("A payee may receive only one share of a resolution")
    return homeowner_share, contractor_share, shares
