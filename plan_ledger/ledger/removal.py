"""
Participant Removal Coordinator

Retires a participant who still has ledger entries without breaking
the zero-sum property of the plan. Two strategies:

- transfer: hand the entries (or part of their value) to another
  participant
- delete all: drop the entries together with the participant

DESIGN DECISION: Every removal is ONE guarded batch. The batch only
commits if the participant still exists and still has exactly the
entries we planned with. If another device added an entry in the
meantime, the batch is rejected, we re-read and try again. A removal
therefore either happens completely or not at all, and never leaves an
entry pointing at a participant that no longer exists.
"""

from datetime import datetime
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Optional, Union
from uuid import UUID

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from plan_ledger.audit import AuditLogger, create_correlation_id
from plan_ledger.config import LedgerSettings, get_settings
from plan_ledger.errors import ValidationError
from plan_ledger.ledger.contributions import to_amount
from plan_ledger.models.plan import (
    Contribution,
    ContributionPreview,
    Participant,
    Plan,
    PlanSnapshot,
    RemovalStrategy,
)
from plan_ledger.services.storage import (
    ConcurrentModificationError,
    LedgerBatch,
    NotFoundError,
    PlanStorageInterface,
    StorageError,
)


logger = structlog.get_logger(__name__)

ZERO = Decimal("0")


def _start_batch(snapshot: PlanSnapshot, participant_id: UUID) -> tuple[LedgerBatch, list[Contribution]]:
    contributions = snapshot.contributions_of(participant_id)
    batch = (
        LedgerBatch(snapshot.plan.id)
        .require_participant(participant_id)
        .expect_contributions(participant_id, {c.id for c in contributions})
    )
    return batch, contributions


def build_transfer_batch(
    snapshot: PlanSnapshot,
    participant_id: UUID,
    target_id: UUID,
    amount: Optional[Decimal] = None,
    quantum: Decimal = Decimal("0.01"),
) -> LedgerBatch:
    """
    Plan a transfer-and-remove against one snapshot.

    Without an amount (or with one covering everything) every entry is
    reassigned to the target. Otherwise the target gets one new entry
    for `amount` and the participant's entries are scaled down by
    (total - amount) / total before being reassigned as well. Scaled
    amounts are rounded to `quantum`; entries that round to zero are
    dropped, and the rounding remainder is added to the last surviving
    entry so the total stays exactly the same.

    Entries can't outlive their payer, so the scaled entries end up on
    the target too: the target's paid total grows by the participant's
    whole total either way, and `amount` only decides how much of it
    is carried by the one transfer entry.
    """
    participant = snapshot.participant(participant_id)
    batch, contributions = _start_batch(snapshot, participant_id)
    batch.require_participant(target_id)
    now = datetime.utcnow()

    total = sum((c.amount for c in contributions), ZERO)

    if amount is None or amount >= total:
        for contribution in contributions:
            batch.put_contribution(contribution.model_copy(
                update={"payer_id": target_id, "updated_at": now}
            ))
    else:
        transfer = Contribution(
            plan_id=snapshot.plan.id,
            payer_id=target_id,
            description=f"Transfer from {participant.name if participant else 'removed participant'}",
            amount=amount,
            created_at=now,
            updated_at=now,
        )

        ratio = (total - amount) / total
        survivors: list[Contribution] = []
        for contribution in contributions:
            scaled = (contribution.amount * ratio).quantize(quantum, rounding=ROUND_HALF_EVEN)
            if scaled == 0:
                batch.delete_contribution(contribution.id)
                continue
            survivors.append(contribution.model_copy(
                update={"payer_id": target_id, "amount": scaled, "updated_at": now}
            ))

        remainder = total - amount - sum((c.amount for c in survivors), ZERO)
        if remainder != 0:
            if survivors:
                last = survivors[-1]
                adjusted = last.amount + remainder
                if adjusted == 0:
                    survivors.pop()
                    batch.delete_contribution(last.id)
                else:
                    survivors[-1] = last.model_copy(update={"amount": adjusted})
            else:
                transfer = transfer.model_copy(update={"amount": transfer.amount + remainder})

        batch.put_contribution(transfer)
        for contribution in survivors:
            batch.put_contribution(contribution)

    for record in snapshot.settlements_involving(participant_id):
        from_id = target_id if record.from_participant_id == participant_id else record.from_participant_id
        to_id = target_id if record.to_participant_id == participant_id else record.to_participant_id
        if from_id == to_id:
            batch.delete_settlement(record.id)
        else:
            batch.put_settlement(record.model_copy(
                update={"from_participant_id": from_id, "to_participant_id": to_id}
            ))

    return batch.delete_participant(participant_id)


def build_delete_all_batch(snapshot: PlanSnapshot, participant_id: UUID) -> LedgerBatch:
    """Plan a delete-all-and-remove against one snapshot."""
    batch, contributions = _start_batch(snapshot, participant_id)
    for contribution in contributions:
        batch.delete_contribution(contribution.id)
    for record in snapshot.settlements_involving(participant_id):
        batch.delete_settlement(record.id)
    return batch.delete_participant(participant_id)


class RemovalCoordinator:
    """Atomic participant removal with retry on concurrent changes."""

    def __init__(
        self,
        storage: PlanStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._storage = storage
        self._audit_logger = audit_logger
        self._settings = settings or get_settings().ledger

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._settings.removal_retry_attempts),
            wait=wait_exponential(multiplier=0.1, max=2),
            retry=retry_if_exception_type(ConcurrentModificationError),
            reraise=True,
        )

    async def _load(self, plan: Plan, participant: Participant) -> PlanSnapshot:
        snapshot = await self._storage.load_snapshot(plan.id)
        if snapshot.participant(participant.id) is None:
            raise NotFoundError(f"Participant not found: {participant.id}")
        return snapshot

    @staticmethod
    def _check_removable(participant: Participant) -> None:
        if participant.is_owner:
            raise ValidationError(
                "The plan owner can't be removed",
                field="participant",
                suggested_fix="Delete the plan instead",
            )

    async def preview_contributions(
        self,
        plan: Plan,
        participant: Participant,
    ) -> ContributionPreview:
        """A participant's entries and their sum. Read-only."""
        snapshot = await self._load(plan, participant)
        contributions = snapshot.contributions_of(participant.id)
        return ContributionPreview(
            participant_id=participant.id,
            contributions=contributions,
            total=sum((c.amount for c in contributions), ZERO),
        )

    async def transfer_and_remove(
        self,
        plan: Plan,
        participant: Participant,
        target: Participant,
        amount: Optional[Union[Decimal, int, float, str]] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """
        Hand a participant's entries to `target`, then remove the participant.

        Raises:
            ValidationError: Target is the participant itself or not a
                member, non-positive amount, or removing the owner
            NotFoundError: The participant is already gone
            ConcurrentModificationError: The ledger kept changing; the
                participant was left untouched
        """
        self._check_removable(participant)
        if target.id == participant.id:
            raise ValidationError(
                "Contributions can't be transferred to the participant being removed",
                field="target",
                suggested_fix="Pick another participant",
            )
        if amount is not None:
            amount = to_amount(amount)
            if amount <= 0:
                raise ValidationError(
                    "Transfer amount must be greater than zero",
                    field="amount",
                    suggested_fix="Leave the amount empty to transfer everything",
                )

        correlation_id = correlation_id or create_correlation_id()
        moved = ZERO

        try:
            async for attempt in self._retrying():
                with attempt:
                    snapshot = await self._load(plan, participant)
                    if snapshot.participant(target.id) is None:
                        raise ValidationError(
                            f"{target.name} is no longer a participant of this plan",
                            field="target",
                            suggested_fix="Pick another participant",
                        )
                    moved = sum(
                        (c.amount for c in snapshot.contributions_of(participant.id)),
                        ZERO,
                    )
                    batch = build_transfer_batch(
                        snapshot,
                        participant.id,
                        target.id,
                        amount,
                        quantum=self._settings.money_quantum,
                    )
                    await self._storage.commit(batch)
        except NotFoundError:
            raise
        except StorageError as e:
            await self._report_failure(plan, participant, e, correlation_id)
            raise

        partial = amount is not None and amount < moved
        logger.info(
            "participant_removed",
            plan_id=str(plan.id),
            participant_id=str(participant.id),
            strategy=RemovalStrategy.TRANSFER.value,
            partial=partial,
        )
        if self._audit_logger:
            await self._audit_logger.log_contributions_transferred(
                plan_id=plan.id,
                from_participant_id=participant.id,
                to_participant_id=target.id,
                amount=amount if partial else moved,
                partial=partial,
                correlation_id=correlation_id,
            )
            await self._audit_logger.log_participant_removed(
                plan_id=plan.id,
                participant_id=participant.id,
                strategy=RemovalStrategy.TRANSFER.value,
                details={"target_id": str(target.id)},
                correlation_id=correlation_id,
            )

    async def delete_all_and_remove(
        self,
        plan: Plan,
        participant: Participant,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """
        Delete every entry and settlement of a participant, then the participant.

        Raises:
            ValidationError: Removing the owner
            NotFoundError: The participant is already gone
            ConcurrentModificationError: The ledger kept changing; the
                participant was left untouched
        """
        self._check_removable(participant)
        correlation_id = correlation_id or create_correlation_id()
        deleted = 0

        try:
            async for attempt in self._retrying():
                with attempt:
                    snapshot = await self._load(plan, participant)
                    batch = build_delete_all_batch(snapshot, participant.id)
                    deleted = len(batch.contribution_deletes)
                    await self._storage.commit(batch)
        except NotFoundError:
            raise
        except StorageError as e:
            await self._report_failure(plan, participant, e, correlation_id)
            raise

        logger.info(
            "participant_removed",
            plan_id=str(plan.id),
            participant_id=str(participant.id),
            strategy=RemovalStrategy.DELETE_ALL.value,
            deleted_contributions=deleted,
        )
        if self._audit_logger:
            await self._audit_logger.log_participant_removed(
                plan_id=plan.id,
                participant_id=participant.id,
                strategy=RemovalStrategy.DELETE_ALL.value,
                details={"deleted_contributions": deleted},
                correlation_id=correlation_id,
            )

    async def _report_failure(
        self,
        plan: Plan,
        participant: Participant,
        error: Exception,
        correlation_id: UUID,
    ) -> None:
        logger.warning(
            "participant_removal_failed",
            plan_id=str(plan.id),
            participant_id=str(participant.id),
            error=str(error),
        )
        if self._audit_logger:
            await self._audit_logger.log_removal_failed(
                plan_id=plan.id,
                participant_id=participant.id,
                error_message=str(error),
                correlation_id=correlation_id,
            )
