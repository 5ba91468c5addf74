"""
Contribution Ledger

Records who paid for what inside a plan. Entries are signed: positive
means the payer put money into the pool, negative means the payer took
money out of it.

The ledger stores the link to a personal transaction but never posts or
retracts one. That is the caller's job (see PlanLedgerService).
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Union
from uuid import UUID, uuid4

import structlog

from plan_ledger.audit import AuditLogger
from plan_ledger.errors import ValidationError
from plan_ledger.models.plan import (
    Contribution,
    Participant,
    PersonalTransactionLink,
    Plan,
)
from plan_ledger.services.storage import LedgerBatch, PlanStorageInterface


logger = structlog.get_logger(__name__)


def to_amount(value: Union[Decimal, int, float, str], field: str = "amount") -> Decimal:
    """Coerce user input to a finite Decimal."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(
            f"'{value}' is not a valid amount",
            field=field,
            suggested_fix="Enter a number like 12.50",
        )
    if not amount.is_finite():
        raise ValidationError(
            f"'{value}' is not a valid amount",
            field=field,
            suggested_fix="Enter a number like 12.50",
        )
    return amount


class ContributionLedger:
    """Append and delete ledger entries of a plan."""

    def __init__(
        self,
        storage: PlanStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._audit_logger = audit_logger

    async def record(
        self,
        plan: Plan,
        payer: Participant,
        description: str,
        amount: Union[Decimal, int, float, str],
        entry_date: Optional[date] = None,
        created_by: Optional[str] = None,
        category: Optional[str] = None,
        personal_transaction: Optional[PersonalTransactionLink] = None,
        contribution_id: Optional[UUID] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Contribution:
        """
        Record a new entry.

        Raises:
            ValidationError: Empty description, zero amount, or a payer
                from another plan
            NotFoundError: The payer was removed in the meantime
        """
        amount = to_amount(amount)
        if amount == 0:
            raise ValidationError(
                "Amount can't be zero",
                field="amount",
                suggested_fix="Enter a positive amount for money paid in, negative for money taken out",
            )

        description = (description or "").strip()
        if not description:
            raise ValidationError(
                "Description is required",
                field="description",
                suggested_fix="Describe what the money was for",
            )

        if payer.plan_id != plan.id:
            raise ValidationError(
                f"{payer.name} is not a participant of this plan",
                field="payer",
            )

        now = datetime.utcnow()
        contribution = Contribution(
            id=contribution_id or uuid4(),
            plan_id=plan.id,
            payer_id=payer.id,
            description=description,
            amount=amount,
            entry_date=entry_date or date.today(),
            created_by=created_by,
            category=category,
            personal_transaction=personal_transaction,
            created_at=now,
            updated_at=now,
        )

        batch = LedgerBatch(plan.id).require_participant(payer.id).put_contribution(contribution)
        await self._storage.commit(batch)

        logger.info(
            "contribution_recorded",
            plan_id=str(plan.id),
            contribution_id=str(contribution.id),
            amount=str(amount),
        )
        if self._audit_logger:
            await self._audit_logger.log_contribution_recorded(
                plan_id=plan.id,
                contribution_id=contribution.id,
                payer_id=payer.id,
                amount=amount,
                actor_id=created_by,
                correlation_id=correlation_id,
            )

        return contribution

    async def for_plan(self, plan: Plan) -> list[Contribution]:
        """All entries of a plan, ordered by date then creation time."""
        snapshot = await self._storage.load_snapshot(plan.id)
        return snapshot.contributions

    async def for_participant(self, plan: Plan, participant: Participant) -> list[Contribution]:
        snapshot = await self._storage.load_snapshot(plan.id)
        return snapshot.contributions_of(participant.id)

    async def delete(
        self,
        contribution: Contribution,
        actor_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """
        Delete one entry.

        Raises:
            NotFoundError: Someone else already deleted it
        """
        batch = (
            LedgerBatch(contribution.plan_id)
            .require_contribution(contribution.id)
            .delete_contribution(contribution.id)
        )
        await self._storage.commit(batch)

        logger.info(
            "contribution_deleted",
            plan_id=str(contribution.plan_id),
            contribution_id=str(contribution.id),
        )
        if self._audit_logger:
            await self._audit_logger.log_contribution_deleted(
                plan_id=contribution.plan_id,
                contribution_id=contribution.id,
                amount=contribution.amount,
                actor_id=actor_id,
                correlation_id=correlation_id,
            )

    async def restore(
        self,
        contribution: Contribution,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """
        Put a deleted entry back unchanged.

        Raises:
            NotFoundError: The payer was removed in the meantime
        """
        batch = (
            LedgerBatch(contribution.plan_id)
            .require_participant(contribution.payer_id)
            .put_contribution(contribution)
        )
        await self._storage.commit(batch)

        logger.info(
            "contribution_restored",
            plan_id=str(contribution.plan_id),
            contribution_id=str(contribution.id),
        )
        if self._audit_logger:
            await self._audit_logger.log_contribution_recorded(
                plan_id=contribution.plan_id,
                contribution_id=contribution.id,
                payer_id=contribution.payer_id,
                amount=contribution.amount,
                actor_id=contribution.created_by,
                correlation_id=correlation_id,
            )
