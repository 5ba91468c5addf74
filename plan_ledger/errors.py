"""
Domain Exceptions

Storage-level failures (NotFoundError, DuplicateError, ...) live in
plan_ledger.services.storage.interface next to the storage contract.
The exceptions here describe what went wrong in ledger terms.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from decimal import Decimal

    from plan_ledger.models.plan import BalanceSheet


class PlanLedgerError(Exception):
    """Base exception for ledger operations."""
    pass


class ValidationError(PlanLedgerError):
    """
    Bad input. The message is meant to be actionable for the user.

    Not to be confused with pydantic.ValidationError, which signals a
    malformed model rather than a rejected user action.
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        suggested_fix: Optional[str] = None,
    ):
        self.field = field
        self.suggested_fix = suggested_fix
        super().__init__(message)


class PermissionDeniedError(PlanLedgerError):
    """The acting account is not allowed to perform this action."""
    pass


class InvariantViolation(PlanLedgerError):
    """
    Net positions do not sum to zero.

    Carries the best-effort balance sheet so the caller can still show
    the plan in a "needs reconciliation" state.
    """

    def __init__(
        self,
        message: str,
        balance_sheet: "BalanceSheet",
        discrepancy: "Decimal",
    ):
        self.balance_sheet = balance_sheet
        self.discrepancy = discrepancy
        super().__init__(message)


class ExternalServiceError(PlanLedgerError):
    """A collaborator (transactions, invites) failed."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")
