"""
Settlement Confirmation

A proposal only exists in memory until somebody confirms that the
money changed hands. Confirming persists a SettlementRecord, which from
then on shifts the two participants' balances.

DESIGN DECISION: Confirmation is a bookkeeping acknowledgment. Money
moves outside the system (cash, bank transfer). Mirroring the payment
into both participants' personal transaction histories is optional,
and a failure there never fails the confirmation.
"""

from typing import Optional
from uuid import UUID

import structlog

from plan_ledger.audit import AuditLogger, create_correlation_id
from plan_ledger.config import LedgerSettings, get_settings
from plan_ledger.errors import PermissionDeniedError
from plan_ledger.models.audit import AuditEventBuilder
from plan_ledger.models.plan import (
    Participant,
    Plan,
    PlanSnapshot,
    SettlementProposal,
    SettlementRecord,
)
from plan_ledger.services.storage import (
    DuplicateError,
    LedgerBatch,
    NotFoundError,
    PlanStorageInterface,
    StorageError,
)
from plan_ledger.services.transactions import TransactionServiceInterface


logger = structlog.get_logger(__name__)


def _find_record(snapshot: PlanSnapshot, idempotency_key: str) -> Optional[SettlementRecord]:
    for record in snapshot.settlements:
        if record.idempotency_key == idempotency_key:
            return record
    return None


class SettlementConfirmer:
    """proposed -> confirmed, exactly once per proposal."""

    def __init__(
        self,
        storage: PlanStorageInterface,
        transaction_service: Optional[TransactionServiceInterface] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._storage = storage
        self._transactions = transaction_service
        self._audit_logger = audit_logger
        self._settings = settings or get_settings().ledger

    async def confirm(
        self,
        plan: Plan,
        proposal: SettlementProposal,
        confirming_account_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> SettlementRecord:
        """
        Confirm that a proposed transfer was paid.

        Any participant of the plan may confirm, not only the two
        parties. Confirming the same proposal again returns the record
        created the first time.

        Raises:
            PermissionDeniedError: The account isn't a participant
            NotFoundError: One of the parties no longer exists
        """
        correlation_id = correlation_id or create_correlation_id()
        snapshot = await self._storage.load_snapshot(plan.id)

        if not snapshot.participants_for_account(confirming_account_id):
            raise PermissionDeniedError("Only participants of the plan can confirm settlements")

        payer = snapshot.participant(proposal.from_participant_id)
        payee = snapshot.participant(proposal.to_participant_id)
        if payer is None or payee is None:
            raise NotFoundError("A participant of this settlement no longer exists")

        key = proposal.idempotency_key
        existing = _find_record(snapshot, key)
        if existing is not None:
            logger.info("settlement_already_confirmed", plan_id=str(plan.id), settlement_id=str(existing.id))
            return existing

        record = SettlementRecord(
            plan_id=plan.id,
            from_participant_id=payer.id,
            to_participant_id=payee.id,
            amount=proposal.amount,
            idempotency_key=key,
            basis=proposal.basis,
            confirmed_by=confirming_account_id,
        )
        batch = (
            LedgerBatch(plan.id)
            .require_participant(payer.id)
            .require_participant(payee.id)
            .require_settlement_absent(key)
            .put_settlement(record)
        )
        try:
            await self._storage.commit(batch)
        except DuplicateError:
            # Confirmed concurrently from another session
            snapshot = await self._storage.load_snapshot(plan.id)
            existing = _find_record(snapshot, key)
            if existing is None:
                raise
            return existing

        logger.info(
            "settlement_confirmed",
            plan_id=str(plan.id),
            settlement_id=str(record.id),
            amount=str(record.amount),
        )
        if self._audit_logger:
            await self._audit_logger.log_settlement_confirmed(
                plan_id=plan.id,
                settlement_id=record.id,
                from_participant_id=payer.id,
                to_participant_id=payee.id,
                amount=record.amount,
                actor_id=confirming_account_id,
                correlation_id=correlation_id,
            )

        if self._settings.mirror_settlements and self._transactions is not None:
            record = await self._mirror(plan, record, payer, payee, correlation_id)

        return record

    async def _post(
        self,
        plan: Plan,
        record: SettlementRecord,
        participant: Participant,
        amount,
        description: str,
        correlation_id: UUID,
    ) -> Optional[str]:
        if participant.account_id is None:
            return None
        try:
            return await self._transactions.post_personal_transaction(
                account_id=participant.account_id,
                card_id=None,
                amount=amount,
                description=description,
                category=None,
                linked_plan_id=plan.id,
                linked_contribution_id=None,
            )
        except Exception as e:
            await self._report_mirror_failure(plan, record, e, correlation_id)
            return None

    async def _mirror(
        self,
        plan: Plan,
        record: SettlementRecord,
        payer: Participant,
        payee: Participant,
        correlation_id: UUID,
    ) -> SettlementRecord:
        """Post debit and credit transactions. Never raises."""
        from_transaction_id = await self._post(
            plan, record, payer, -record.amount,
            f"{plan.title}: paid {payee.name}", correlation_id,
        )
        to_transaction_id = await self._post(
            plan, record, payee, record.amount,
            f"{plan.title}: received from {payer.name}", correlation_id,
        )
        if from_transaction_id is None and to_transaction_id is None:
            return record

        mirrored = record.model_copy(update={
            "from_transaction_id": from_transaction_id,
            "to_transaction_id": to_transaction_id,
        })
        try:
            await self._storage.commit(LedgerBatch(plan.id).put_settlement(mirrored))
        except StorageError as e:
            await self._report_mirror_failure(plan, record, e, correlation_id)
            return record
        return mirrored

    async def _report_mirror_failure(
        self,
        plan: Plan,
        record: SettlementRecord,
        error: Exception,
        correlation_id: UUID,
    ) -> None:
        logger.warning(
            "settlement_mirror_failed",
            plan_id=str(plan.id),
            settlement_id=str(record.id),
            error=str(error),
        )
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.settlement_mirror_failed(
                plan_id=plan.id,
                settlement_id=record.id,
                error_message=str(error),
                correlation_id=correlation_id,
            ))
