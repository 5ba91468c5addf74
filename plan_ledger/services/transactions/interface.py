"""
Personal Transaction Service Interface

The card/transaction subsystem of the surrounding app is not part of
this package. The ledger only needs two things from it: post a
transaction into one account's own history, and take one back.

Implementations raise plan_ledger.errors.ExternalServiceError on
failure so callers can offer a retry.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional
from uuid import UUID


class TransactionServiceInterface(ABC):
    """Capability contract of the external transaction subsystem."""

    @abstractmethod
    async def post_personal_transaction(
        self,
        account_id: str,
        card_id: Optional[str],
        amount: Decimal,
        description: str,
        category: Optional[str],
        linked_plan_id: UUID,
        linked_contribution_id: Optional[UUID],
    ) -> str:
        """
        Post a signed transaction into an account's personal history.

        Args:
            account_id: Account that owns the transaction
            card_id: Card to post to. None queues the transaction so the
                owner can categorize it later.
            amount: Signed amount (negative = money left the account)
            description: Shown in the owner's transaction list
            category: Optional category name
            linked_plan_id: Plan the transaction belongs to
            linked_contribution_id: Ledger entry it mirrors, if any

        Returns:
            The external transaction ID

        Raises:
            ExternalServiceError: If the transaction could not be posted
        """
        pass

    @abstractmethod
    async def retract_personal_transaction(self, transaction_id: str) -> None:
        """
        Remove a previously posted transaction.

        Raises:
            ExternalServiceError: If the transaction could not be removed
        """
        pass
