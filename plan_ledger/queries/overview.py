"""
Plan Overview Read Model

DESIGN DECISION: The overview is DERIVED, never stored.
Every call reads one snapshot and recomputes balances, proposals and
the contribution ranking from it, so the three always agree with each
other and with the ledger.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog

from plan_ledger.config import LedgerSettings, get_settings
from plan_ledger.errors import InvariantViolation
from plan_ledger.ledger.balances import calculate_balances
from plan_ledger.ledger.settlement import compute_basis, plan_settlements
from plan_ledger.models.plan import (
    BalanceSheet,
    DistributionRule,
    PlanOverview,
    PlanSnapshot,
    RankingEntry,
)
from plan_ledger.services.storage import PlanStorageInterface


logger = structlog.get_logger(__name__)


def rank_contributions(snapshot: PlanSnapshot, sheet: BalanceSheet) -> list[RankingEntry]:
    """
    Effective contribution per participant, largest first.

    Effective means what they paid in plus what they paid out to settle
    debts.
    """
    colors = {p.id: p.color for p in snapshot.participants}
    ranking = [
        RankingEntry(
            participant_id=position.participant_id,
            name=position.name,
            color=colors[position.participant_id],
            amount=position.paid + position.settled,
        )
        for position in sheet.positions
    ]
    ranking.sort(key=lambda r: (-r.amount, r.name.lower(), str(r.participant_id)))
    return ranking


def build_overview(snapshot: PlanSnapshot, tolerance: Decimal) -> PlanOverview:
    """
    Compute the overview of one snapshot.

    A sheet that fails the zero-sum check is still shown (flagged as
    needing attention) but gets no settlement proposals.
    """
    try:
        sheet = calculate_balances(
            snapshot.plan,
            snapshot.participants,
            snapshot.contributions,
            snapshot.settlements,
            tolerance,
        )
        proposals = plan_settlements(
            sheet.net_by_participant(),
            tolerance,
            basis=compute_basis(snapshot),
        )
    except InvariantViolation as e:
        logger.error(
            "overview_balance_invariant_violated",
            plan_id=str(snapshot.plan.id),
            discrepancy=str(e.discrepancy),
        )
        sheet = e.balance_sheet
        proposals = []

    per_head = None
    if snapshot.plan.distribution == DistributionRule.EQUITABLE and snapshot.participants:
        per_head = sheet.total / len(snapshot.participants)

    return PlanOverview(
        plan=snapshot.plan,
        balance_sheet=sheet,
        proposals=proposals,
        ranking=rank_contributions(snapshot, sheet),
        per_head=per_head,
    )


class OverviewQuery:
    """
    Loads plans and builds their overview.

    GUARANTEES:
    - Only returns what is actually stored
    - Never caches a result across calls
    """

    def __init__(
        self,
        storage: PlanStorageInterface,
        settings: Optional[LedgerSettings] = None,
    ):
        self._storage = storage
        self._settings = settings or get_settings().ledger

    async def execute(self, plan_id: UUID) -> PlanOverview:
        snapshot = await self._storage.load_snapshot(plan_id)
        return self.from_snapshot(snapshot)

    def from_snapshot(self, snapshot: PlanSnapshot) -> PlanOverview:
        return build_overview(snapshot, self._settings.balance_tolerance)
