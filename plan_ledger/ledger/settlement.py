"""
Settlement Planner

Greedy debt netting: repeatedly match the largest creditor with the
most indebted debtor and emit a transfer for the smaller of the two
amounts. Every step settles at least one participant, so `n`
unsettled participants never need more than `n - 1` transfers.

Ties are broken by participant ID so the same balances always produce
the same proposal list.
"""

import hashlib
import heapq
from decimal import Decimal
from typing import Mapping, Optional
from uuid import UUID

from plan_ledger.ledger.balances import DEFAULT_TOLERANCE
from plan_ledger.models.plan import PlanSnapshot, SettlementProposal


def compute_basis(snapshot: PlanSnapshot) -> str:
    """
    Digest of everything a plan's balances depend on.

    Two snapshots with the same basis produce the same proposals, so a
    proposal confirmed twice from the same view is recognised as one.
    """
    plan = snapshot.plan
    parts = [
        plan.distribution.value,
        ",".join(
            f"{pid}={share}"
            for pid, share in sorted(plan.custom_shares.items(), key=lambda kv: str(kv[0]))
        ),
    ]
    parts.extend(sorted(str(p.id) for p in snapshot.participants))
    parts.extend(sorted(
        f"{c.id}:{c.payer_id}:{c.amount}" for c in snapshot.contributions
    ))
    parts.extend(sorted(str(s.id) for s in snapshot.settlements))
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:16]


def plan_settlements(
    net: Mapping[UUID, Decimal],
    tolerance: Decimal = DEFAULT_TOLERANCE,
    basis: Optional[str] = None,
) -> list[SettlementProposal]:
    """
    Reduce net positions to a short list of debtor -> creditor transfers.

    Args:
        net: Net position per participant (positive = is owed money)
        tolerance: Positions this close to zero count as settled
        basis: Digest of the ledger state, copied onto every proposal

    Returns:
        Proposals in the order they were matched
    """
    # Heap entries: (-abs(remaining), tie-break, participant_id)
    creditors: list[tuple[Decimal, str, UUID]] = []
    debtors: list[tuple[Decimal, str, UUID]] = []

    for participant_id, value in net.items():
        if value > tolerance:
            heapq.heappush(creditors, (-value, str(participant_id), participant_id))
        elif value < -tolerance:
            heapq.heappush(debtors, (value, str(participant_id), participant_id))

    proposals: list[SettlementProposal] = []
    while creditors and debtors:
        neg_credit, credit_key, creditor_id = heapq.heappop(creditors)
        neg_debt, debt_key, debtor_id = heapq.heappop(debtors)
        credit = -neg_credit
        debt = -neg_debt

        amount = min(credit, debt)
        proposals.append(SettlementProposal(
            from_participant_id=debtor_id,
            to_participant_id=creditor_id,
            amount=amount,
            basis=basis,
        ))

        credit -= amount
        debt -= amount
        if credit > tolerance:
            heapq.heappush(creditors, (-credit, credit_key, creditor_id))
        if debt > tolerance:
            heapq.heappush(debtors, (-debt, debt_key, debtor_id))

    return proposals


def apply_proposals(
    net: Mapping[UUID, Decimal],
    proposals: list[SettlementProposal],
) -> dict[UUID, Decimal]:
    """Balances after every proposal was paid. Useful for previews."""
    result = dict(net)
    for proposal in proposals:
        result[proposal.from_participant_id] = (
            result.get(proposal.from_participant_id, Decimal("0")) + proposal.amount
        )
        result[proposal.to_participant_id] = (
            result.get(proposal.to_participant_id, Decimal("0")) - proposal.amount
        )
    return result
