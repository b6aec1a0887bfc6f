from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Sequence

from pydantic import BaseModel

ZERO = Decimal("0")
EPSILON = Decimal("0.01")


class Participant(BaseModel):
    id: str
    name: str
    weight: Decimal = Decimal("1")
    amount_paid: Decimal = ZERO
    is_payer: bool = False


@dataclass(frozen=True)
class SplitCalculation:
    participant_id: str
    name: str
    weight: Decimal
    amount_paid: Decimal
    share: Decimal
    balance: Decimal


@dataclass(frozen=True)
class SettlementTransaction:
    from_participant: str
    to_participant: str
    amount: Decimal
    from_participant_id: str
    to_participant_id: str


@dataclass
class _Party:
    participant_id: str
    name: str
    remaining: Decimal


def calculate_splits(
    participants: Sequence[Participant], total_amount: Decimal
) -> List[SplitCalculation]:
    """Each participant's weighted share of ``total_amount`` and their balance.

    A positive balance means the participant is owed money. With nothing to
    split, shares are zero and balances equal what each already paid.
    """
    total = _coerce_amount(total_amount)
    if not participants or total == ZERO:
        return [
            SplitCalculation(
                participant_id=p.id,
                name=p.name,
                weight=p.weight,
                amount_paid=p.amount_paid,
                share=ZERO,
                balance=p.amount_paid,
            )
            for p in participants
        ]

    total_weights = sum((p.weight for p in participants), ZERO)
    if total_weights <= ZERO:
        raise ValueError("Participant weights must sum to a positive value.")
    base_share = total / total_weights

    calculations = []
    for p in participants:
        share = base_share * p.weight
        calculations.append(
            SplitCalculation(
                participant_id=p.id,
                name=p.name,
                weight=p.weight,
                amount_paid=p.amount_paid,
                share=share,
                balance=p.amount_paid - share,
            )
        )
    return calculations


def calculate_settlements(
    calculations: Iterable[SplitCalculation],
) -> List[SettlementTransaction]:
    """Greedy debt netting: largest debtor pays largest creditor first.

    Produces at most min(creditors, debtors) transfers and leaves every
    balance within EPSILON of zero.
    """
    calculations = list(calculations)
    creditors = sorted(
        (_Party(c.participant_id, c.name, c.balance) for c in calculations if c.balance > EPSILON),
        key=lambda party: party.remaining,
        reverse=True,
    )
    debtors = sorted(
        (_Party(c.participant_id, c.name, -c.balance) for c in calculations if c.balance < -EPSILON),
        key=lambda party: party.remaining,
        reverse=True,
    )

    settlements: List[SettlementTransaction] = []
    creditor_index = 0
    debtor_index = 0
    while creditor_index < len(creditors) and debtor_index < len(debtors):
        creditor = creditors[creditor_index]
        debtor = debtors[debtor_index]
        amount = min(creditor.remaining, debtor.remaining)

        if amount > EPSILON:
            settlements.append(
                SettlementTransaction(
                    from_participant=debtor.name,
                    to_participant=creditor.name,
                    amount=amount,
                    from_participant_id=debtor.participant_id,
                    to_participant_id=creditor.participant_id,
                )
            )

        creditor.remaining -= amount
        debtor.remaining -= amount
        if creditor.remaining < EPSILON:
            creditor_index += 1
        if debtor.remaining < EPSILON:
            debtor_index += 1

    return settlements


def validate_participants(
    participants: Sequence[Participant], require_payer: bool = True
) -> None:
    """Rules the event editing form enforces; the math itself needs none."""
    if not participants:
        raise ValueError("At least one participant is required.")
    seen = set()
    for participant in participants:
        if not participant.name.strip():
            raise ValueError("Participant name required.")
        if participant.weight <= ZERO:
            raise ValueError("Participant weight must be greater than zero.")
        if participant.amount_paid < ZERO:
            raise ValueError("Amount paid cannot be negative.")
        if participant.id in seen:
            raise ValueError(f"Duplicate participant id: {participant.id}")
        seen.add(participant.id)
    if not require_payer:
        return
    payers = sum(1 for participant in participants if participant.is_payer)
    if payers != 1:
        raise ValueError("Exactly one participant must be the payer.")


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
