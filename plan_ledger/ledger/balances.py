"""
Balance Calculator

Turns a plan's raw ledger into one net position per participant:

    net(p) = paid(p) - fair_share(p) + settled(p)

where `settled` is the effect of confirmed settlements (paying a debt
moves the payer up and the payee down by the same amount, so the pool
total is unchanged).

DESIGN DECISION: This is a pure function of a snapshot. It is never
cached; every read recomputes from scratch so a mutation can never
leave a stale balance behind.
"""

from decimal import Decimal
from typing import Iterable

from plan_ledger.errors import InvariantViolation
from plan_ledger.models.plan import (
    BalanceSheet,
    Contribution,
    DistributionRule,
    NetPosition,
    Participant,
    Plan,
    SettlementRecord,
    SettlementStatus,
)


DEFAULT_TOLERANCE = Decimal("0.000001")
ZERO = Decimal("0")


def order_participants(participants: Iterable[Participant]) -> list[Participant]:
    """Stable participant order: creation time, then ID."""
    return sorted(participants, key=lambda p: (p.created_at, str(p.id)))


def calculate_balances(
    plan: Plan,
    participants: Iterable[Participant],
    contributions: Iterable[Contribution],
    settlements: Iterable[SettlementRecord] = (),
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> BalanceSheet:
    """
    Compute every participant's net position.

    Entries pointing at participants that don't exist are left out and
    reported on the sheet instead of failing the whole calculation.

    Raises:
        InvariantViolation: If the net positions don't sum to zero
            within tolerance. The exception carries the sheet anyway.
    """
    ordered = order_participants(participants)
    known = {p.id for p in ordered}

    notes: list[str] = []
    orphaned = []

    paid = {p.id: ZERO for p in ordered}
    for contribution in contributions:
        if contribution.payer_id not in known:
            orphaned.append(contribution.id)
            continue
        paid[contribution.payer_id] += contribution.amount

    if orphaned:
        notes.append(
            f"{len(orphaned)} entries reference participants that no longer exist "
            "and were left out"
        )

    total = sum(paid.values(), ZERO)

    fair_share = {p.id: ZERO for p in ordered}
    if ordered:
        if plan.distribution == DistributionRule.CUSTOM:
            for p in ordered:
                fair_share[p.id] = plan.custom_shares.get(p.id, ZERO)

            unknown_shares = [pid for pid in plan.custom_shares if pid not in known]
            if unknown_shares:
                notes.append(
                    f"Custom shares for {len(unknown_shares)} former participants were ignored"
                )

            mismatch = total - sum(fair_share.values(), ZERO)
            if abs(mismatch) > tolerance:
                # Documented policy: the last participant absorbs the difference
                last = ordered[-1]
                fair_share[last.id] += mismatch
                notes.append(
                    f"Custom shares don't add up to the total (off by {mismatch}); "
                    f"the difference was assigned to {last.name}"
                )
        else:
            share = total / len(ordered)
            for p in ordered:
                fair_share[p.id] = share

    settled = {p.id: ZERO for p in ordered}
    skipped_settlements = 0
    for record in settlements:
        if record.status != SettlementStatus.CONFIRMED:
            continue
        if record.from_participant_id not in known or record.to_participant_id not in known:
            skipped_settlements += 1
            continue
        settled[record.from_participant_id] += record.amount
        settled[record.to_participant_id] -= record.amount

    if skipped_settlements:
        notes.append(
            f"{skipped_settlements} settlements reference participants that no longer "
            "exist and were left out"
        )

    positions = [
        NetPosition(
            participant_id=p.id,
            name=p.name,
            paid=paid[p.id],
            fair_share=fair_share[p.id],
            settled=settled[p.id],
            net=paid[p.id] - fair_share[p.id] + settled[p.id],
        )
        for p in ordered
    ]

    sheet = BalanceSheet(
        plan_id=plan.id,
        distribution=plan.distribution,
        total=total,
        positions=positions,
        needs_attention=bool(notes),
        notes=notes,
        orphaned_contribution_ids=orphaned,
    )

    discrepancy = sheet.net_sum
    if abs(discrepancy) > tolerance:
        sheet.needs_attention = True
        sheet.notes.append(f"Net positions are off by {discrepancy}")
        raise InvariantViolation(
            f"Net positions of plan {plan.id} sum to {discrepancy}, not zero",
            balance_sheet=sheet,
            discrepancy=discrepancy,
        )

    return sheet
