"""Personal transaction services package."""

from plan_ledger.services.transactions.interface import TransactionServiceInterface

__all__ = ["TransactionServiceInterface"]
