"""
Ledger Package

The shared-plan ledger: who belongs to a plan, who paid what, who owes
whom, and how debts get settled.

The two calculators (calculate_balances, plan_settlements) are pure
functions; everything else goes through the plan storage.
"""

from plan_ledger.ledger.balances import DEFAULT_TOLERANCE, calculate_balances
from plan_ledger.ledger.confirmation import SettlementConfirmer
from plan_ledger.ledger.contributions import ContributionLedger
from plan_ledger.ledger.registry import ParticipantRegistry, assign_color
from plan_ledger.ledger.removal import (
    RemovalCoordinator,
    build_delete_all_batch,
    build_transfer_batch,
)
from plan_ledger.ledger.settlement import (
    apply_proposals,
    compute_basis,
    plan_settlements,
)

__all__ = [
    "DEFAULT_TOLERANCE",
    "calculate_balances",
    "SettlementConfirmer",
    "ContributionLedger",
    "ParticipantRegistry",
    "assign_color",
    "RemovalCoordinator",
    "build_delete_all_batch",
    "build_transfer_batch",
    "apply_proposals",
    "compute_basis",
    "plan_settlements",
]
