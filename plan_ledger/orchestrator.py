"""
Main Orchestrator for Plan Ledger

This module ties together all the components and defines the
end-to-end flows the surrounding app calls:
1. Plan lifecycle (create -> invite -> join -> delete)
2. Ledger (record / delete entries, with personal transactions)
3. Reading (balances -> proposals -> overview, live via watch_plan)
4. Settling (confirm a proposal)
5. Removal (preview -> transfer or delete all)

DESIGN DECISION: The orchestrator enforces the boundaries:
- Only participants act on a plan, only the owner changes or deletes it
- A personal transaction never outlives the ledger entry it mirrors
- Every step is audited

This is the "glue" that ensures the system works correctly
even when individual components might behave unexpectedly.
"""

import inspect
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional, Union
from uuid import UUID, uuid4

import structlog

from plan_ledger.audit import AuditLogger, create_correlation_id
from plan_ledger.config import LedgerSettings, get_settings
from plan_ledger.errors import (
    ExternalServiceError,
    InvariantViolation,
    PermissionDeniedError,
    ValidationError,
)
from plan_ledger.ledger import (
    ContributionLedger,
    ParticipantRegistry,
    RemovalCoordinator,
    SettlementConfirmer,
    calculate_balances,
    compute_basis,
    plan_settlements,
)
from plan_ledger.ledger.contributions import to_amount
from plan_ledger.models.audit import AuditEventBuilder
from plan_ledger.models.health import ValidationResult
from plan_ledger.models.plan import (
    BalanceSheet,
    Contribution,
    ContributionPreview,
    DistributionRule,
    Participant,
    PersonalTransactionLink,
    Plan,
    PlanOverview,
    PlanSnapshot,
    RemovalStrategy,
    SettlementProposal,
    SettlementRecord,
)
from plan_ledger.queries import OverviewQuery
from plan_ledger.services.invites import InviteServiceInterface, StoredInviteService
from plan_ledger.services.storage import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsPlanStorage,
    InMemoryPlanStorage,
    NotFoundError,
    PlanStorageInterface,
    StorageError,
)
from plan_ledger.services.storage.interface import Unsubscribe
from plan_ledger.services.transactions import TransactionServiceInterface
from plan_ledger.validation import PlanHealthChecker


logger = structlog.get_logger(__name__)

OverviewCallback = Callable[[PlanOverview], Union[None, Awaitable[None]]]


class PlanLedgerService:
    """
    Facade over the shared-plan ledger.

    Every method takes IDs plus the acting account and re-reads the plan,
    so callers never hand in stale objects.
    """

    def __init__(
        self,
        storage: PlanStorageInterface,
        transaction_service: Optional[TransactionServiceInterface] = None,
        invite_service: Optional[InviteServiceInterface] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._storage = storage
        self._transactions = transaction_service
        self._audit_logger = audit_logger
        self._settings = settings or get_settings().ledger
        self._invites = invite_service or StoredInviteService(storage, self._settings)

        self._removal = RemovalCoordinator(storage, audit_logger, self._settings)
        self._registry = ParticipantRegistry(
            storage, audit_logger, self._settings, removal_coordinator=self._removal
        )
        self._ledger = ContributionLedger(storage, audit_logger)
        self._confirmer = SettlementConfirmer(
            storage, transaction_service, audit_logger, self._settings
        )
        self._overview = OverviewQuery(storage, self._settings)
        self._health = PlanHealthChecker(storage, self._settings)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_plan(self, plan_id: UUID) -> Plan:
        plan = await self._storage.get_plan(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan not found: {plan_id}")
        return plan

    @staticmethod
    def _require_owner(plan: Plan, account_id: str) -> None:
        if plan.owner_id != account_id:
            raise PermissionDeniedError("Only the plan owner can do this")

    @staticmethod
    def _require_member(snapshot: PlanSnapshot, account_id: str) -> Participant:
        rows = snapshot.participants_for_account(account_id)
        if not rows:
            raise PermissionDeniedError("Only participants of the plan can do this")
        return rows[0]

    @staticmethod
    def _require_participant(snapshot: PlanSnapshot, participant_id: UUID) -> Participant:
        participant = snapshot.participant(participant_id)
        if participant is None:
            raise NotFoundError(f"Participant not found: {participant_id}")
        return participant

    def _validate_custom_shares(
        self,
        snapshot: Optional[PlanSnapshot],
        custom_shares: dict[UUID, Any],
    ) -> dict[UUID, Decimal]:
        shares = {pid: to_amount(v, field="custom_shares") for pid, v in custom_shares.items()}
        if snapshot is not None:
            unknown = [pid for pid in shares if snapshot.participant(pid) is None]
            if unknown:
                raise ValidationError(
                    f"{len(unknown)} custom shares belong to unknown participants",
                    field="custom_shares",
                    suggested_fix="Set shares for current participants only",
                )
        return shares

    # ------------------------------------------------------------------
    # Plan lifecycle
    # ------------------------------------------------------------------

    async def create_plan(
        self,
        title: str,
        owner_account_id: str,
        owner_name: str,
        distribution: DistributionRule = DistributionRule.EQUITABLE,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[Plan, Participant]:
        """
        Create a plan; the owner joins it as its first participant.

        Custom shares reference participant IDs, so they can only be
        set with update_plan once the participants exist.
        """
        correlation_id = correlation_id or create_correlation_id()
        title = (title or "").strip()
        if not title:
            raise ValidationError(
                "Title is required",
                field="title",
                suggested_fix="Give the plan a name",
            )
        owner_name = (owner_name or "").strip()
        if not owner_name:
            raise ValidationError("Name is required", field="owner_name")

        plan = Plan(title=title, owner_id=owner_account_id, distribution=distribution)
        owner = Participant(
            plan_id=plan.id,
            name=owner_name,
            account_id=owner_account_id,
            color=self._settings.palette[0],
            is_owner=True,
        )
        await self._storage.create_plan(plan, owner)

        logger.info("plan_created", plan_id=str(plan.id))
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.plan_created(
                plan_id=plan.id,
                title=plan.title,
                owner_id=owner_account_id,
                correlation_id=correlation_id,
            ))
            await self._audit_logger.log(AuditEventBuilder.participant_added(
                plan_id=plan.id,
                participant_id=owner.id,
                name=owner.name,
                color=owner.color,
                account_backed=True,
                correlation_id=correlation_id,
            ))

        return plan, owner

    async def update_plan(
        self,
        plan_id: UUID,
        account_id: str,
        title: Optional[str] = None,
        distribution: Optional[DistributionRule] = None,
        custom_shares: Optional[dict[UUID, Any]] = None,
    ) -> Plan:
        """Change title, distribution rule or custom shares (owner only)."""
        plan = await self._load_plan(plan_id)
        self._require_owner(plan, account_id)

        changes: dict[str, Any] = {}
        if title is not None:
            title = title.strip()
            if not title:
                raise ValidationError("Title is required", field="title")
            plan.title = title
            changes["title"] = title
        if distribution is not None:
            plan.distribution = distribution
            changes["distribution"] = distribution.value
        if custom_shares is not None:
            snapshot = await self._storage.load_snapshot(plan_id)
            plan.custom_shares = self._validate_custom_shares(snapshot, custom_shares)
            changes["custom_shares"] = {str(k): str(v) for k, v in plan.custom_shares.items()}

        if not changes:
            return plan

        plan.updated_at = datetime.utcnow()
        await self._storage.save_plan(plan)

        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.plan_updated(
                plan_id=plan.id,
                changes=changes,
                actor_id=account_id,
            ))
        return plan

    async def delete_plan(self, plan_id: UUID, account_id: str) -> None:
        """Delete a plan with everything in it (owner only)."""
        plan = await self._load_plan(plan_id)
        self._require_owner(plan, account_id)

        await self._storage.delete_plan(plan_id)

        logger.info("plan_deleted", plan_id=str(plan_id))
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.plan_deleted(
                plan_id=plan_id,
                actor_id=account_id,
            ))

    async def list_plans(self, account_id: str) -> list[Plan]:
        return await self._storage.list_plans_for_account(account_id)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def issue_invite(self, plan_id: UUID, account_id: str) -> str:
        """Get the plan's invite code, creating it if needed (owner only)."""
        code = await self._invites.issue_invite_code(plan_id, account_id)
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.invite_issued(
                plan_id=plan_id,
                actor_id=account_id,
            ))
        return code

    async def join_with_invite(
        self,
        code: str,
        account_id: str,
        display_name: str,
    ) -> tuple[Plan, Participant]:
        """Redeem an invite code. Joining twice returns the existing membership."""
        plan_id = await self._invites.resolve_invite_code(code)
        plan = await self._load_plan(plan_id)
        participant = await self._registry.ensure_self_participant(
            plan, account_id, display_name
        )
        return plan, participant

    async def ensure_self_participant(
        self,
        plan_id: UUID,
        account_id: str,
        display_name: str,
    ) -> Participant:
        plan = await self._load_plan(plan_id)
        return await self._registry.ensure_self_participant(plan, account_id, display_name)

    async def add_participant(
        self,
        plan_id: UUID,
        acting_account_id: str,
        name: str,
        requested_color: Optional[str] = None,
    ) -> Participant:
        """Add a name-only participant (any participant may do this)."""
        plan = await self._load_plan(plan_id)
        snapshot = await self._storage.load_snapshot(plan_id)
        self._require_member(snapshot, acting_account_id)
        return await self._registry.add_participant(
            plan, name, requested_color=requested_color
        )

    async def remove_participant(
        self,
        plan_id: UUID,
        acting_account_id: str,
        participant_id: UUID,
        strategy: Optional[RemovalStrategy] = None,
        target_id: Optional[UUID] = None,
        amount: Optional[Union[Decimal, int, float, str]] = None,
    ) -> None:
        """
        Remove a participant.

        Without a strategy this only succeeds for participants with an
        empty ledger; otherwise the ValidationError asks for one.
        """
        plan = await self._load_plan(plan_id)
        snapshot = await self._storage.load_snapshot(plan_id)
        self._require_member(snapshot, acting_account_id)
        participant = self._require_participant(snapshot, participant_id)
        target = None
        if target_id is not None:
            target = snapshot.participant(target_id)
            if target is None:
                raise ValidationError(
                    "The receiving participant is not a member of this plan",
                    field="target",
                    suggested_fix="Pick another participant",
                )
        await self._registry.remove_participant(
            plan,
            participant,
            strategy=strategy,
            target=target,
            amount=amount,
            correlation_id=create_correlation_id(),
        )

    async def preview_removal(
        self,
        plan_id: UUID,
        participant_id: UUID,
    ) -> ContributionPreview:
        plan = await self._load_plan(plan_id)
        snapshot = await self._storage.load_snapshot(plan_id)
        participant = self._require_participant(snapshot, participant_id)
        return await self._removal.preview_contributions(plan, participant)

    async def transfer_and_remove(
        self,
        plan_id: UUID,
        acting_account_id: str,
        participant_id: UUID,
        target_id: UUID,
        amount: Optional[Union[Decimal, int, float, str]] = None,
    ) -> None:
        await self.remove_participant(
            plan_id,
            acting_account_id,
            participant_id,
            strategy=RemovalStrategy.TRANSFER,
            target_id=target_id,
            amount=amount,
        )

    async def delete_all_and_remove(
        self,
        plan_id: UUID,
        acting_account_id: str,
        participant_id: UUID,
    ) -> None:
        await self.remove_participant(
            plan_id,
            acting_account_id,
            participant_id,
            strategy=RemovalStrategy.DELETE_ALL,
        )

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    async def record_contribution(
        self,
        plan_id: UUID,
        acting_account_id: str,
        payer_id: UUID,
        description: str,
        amount: Union[Decimal, int, float, str],
        entry_date: Optional[date] = None,
        category: Optional[str] = None,
        card_id: Optional[str] = None,
        post_personal_transaction: bool = True,
    ) -> Contribution:
        """
        Record an entry.

        When the payer is the acting user, a matching personal transaction
        is posted first (money into the pool leaves their own account).
        If the ledger write then fails, the transaction is retracted again.
        """
        correlation_id = create_correlation_id()
        plan = await self._load_plan(plan_id)
        snapshot = await self._storage.load_snapshot(plan_id)
        self._require_member(snapshot, acting_account_id)
        payer = self._require_participant(snapshot, payer_id)
        amount = to_amount(amount)

        link = None
        contribution_id = uuid4()
        if (
            post_personal_transaction
            and self._transactions is not None
            and payer.account_id == acting_account_id
            and amount != 0
        ):
            try:
                transaction_id = await self._transactions.post_personal_transaction(
                    account_id=acting_account_id,
                    card_id=card_id,
                    amount=-amount,
                    description=f"{plan.title}: {description}",
                    category=category,
                    linked_plan_id=plan.id,
                    linked_contribution_id=contribution_id,
                )
            except ExternalServiceError as e:
                if self._audit_logger:
                    await self._audit_logger.log_external_service_error(
                        service=e.service,
                        error_message=str(e),
                        correlation_id=correlation_id,
                    )
                raise
            link = PersonalTransactionLink(card_id=card_id, transaction_id=transaction_id)

        try:
            return await self._ledger.record(
                plan,
                payer,
                description,
                amount,
                entry_date=entry_date,
                created_by=acting_account_id,
                category=category,
                personal_transaction=link,
                contribution_id=contribution_id,
                correlation_id=correlation_id,
            )
        except Exception:
            if link is not None:
                await self._retract_after_failure(link.transaction_id, correlation_id)
            raise

    async def _retract_after_failure(self, transaction_id: str, correlation_id: UUID) -> None:
        try:
            await self._transactions.retract_personal_transaction(transaction_id)
        except ExternalServiceError as e:
            # The original error is the one the caller needs to see
            logger.error(
                "compensating_retraction_failed",
                transaction_id=transaction_id,
                error=str(e),
            )
            if self._audit_logger:
                await self._audit_logger.log_external_service_error(
                    service=e.service,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )

    async def delete_contribution(
        self,
        plan_id: UUID,
        acting_account_id: str,
        contribution_id: UUID,
    ) -> None:
        """
        Delete an entry, then retract its personal transaction.

        Only the session whose guarded delete commits retracts, so a
        transaction is never retracted twice. If the retraction fails,
        the entry is put back so the user can retry.

        Raises:
            NotFoundError: Unknown entry, or another session deleted it first
            ExternalServiceError: The retraction failed; the entry is back
        """
        correlation_id = create_correlation_id()
        snapshot = await self._storage.load_snapshot(plan_id)
        self._require_member(snapshot, acting_account_id)
        contribution = next(
            (c for c in snapshot.contributions if c.id == contribution_id),
            None,
        )
        if contribution is None:
            raise NotFoundError(f"Contribution not found: {contribution_id}")

        await self._ledger.delete(
            contribution,
            actor_id=acting_account_id,
            correlation_id=correlation_id,
        )

        if contribution.personal_transaction is None or self._transactions is None:
            return
        try:
            await self._transactions.retract_personal_transaction(
                contribution.personal_transaction.transaction_id
            )
        except ExternalServiceError as e:
            if self._audit_logger:
                await self._audit_logger.log_external_service_error(
                    service=e.service,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
            try:
                await self._ledger.restore(contribution, correlation_id=correlation_id)
            except StorageError as restore_error:
                # The retraction error is the one the caller needs to see
                logger.critical(
                    "contribution_restore_failed",
                    contribution_id=str(contribution.id),
                    transaction_id=contribution.personal_transaction.transaction_id,
                    error=str(restore_error),
                )
                if self._audit_logger:
                    await self._audit_logger.log_error(
                        error_type="contribution_restore_failed",
                        error_message=str(restore_error),
                        details={
                            "contribution_id": str(contribution.id),
                            "transaction_id": contribution.personal_transaction.transaction_id,
                        },
                        correlation_id=correlation_id,
                    )
            raise

    async def list_contributions(self, plan_id: UUID) -> list[Contribution]:
        plan = await self._load_plan(plan_id)
        return await self._ledger.for_plan(plan)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    async def _checked_sheet(self, plan_id: UUID) -> tuple[PlanSnapshot, BalanceSheet]:
        snapshot = await self._storage.load_snapshot(plan_id)
        try:
            sheet = calculate_balances(
                snapshot.plan,
                snapshot.participants,
                snapshot.contributions,
                snapshot.settlements,
                self._settings.balance_tolerance,
            )
        except InvariantViolation as e:
            if self._audit_logger:
                await self._audit_logger.log_invariant_violated(
                    plan_id=plan_id,
                    discrepancy=e.discrepancy,
                )
            raise
        return snapshot, sheet

    async def get_balances(self, plan_id: UUID) -> BalanceSheet:
        """
        Current net positions.

        Raises:
            InvariantViolation: Carries the best-effort sheet
        """
        _, sheet = await self._checked_sheet(plan_id)
        return sheet

    async def get_settlements(self, plan_id: UUID) -> list[SettlementProposal]:
        """Transfers that would settle the plan, largest creditor first."""
        snapshot, sheet = await self._checked_sheet(plan_id)
        return plan_settlements(
            sheet.net_by_participant(),
            self._settings.balance_tolerance,
            basis=compute_basis(snapshot),
        )

    async def get_overview(self, plan_id: UUID) -> PlanOverview:
        """Balances, proposals and ranking; never raises on a broken sheet."""
        return await self._overview.execute(plan_id)

    async def confirm_settlement(
        self,
        plan_id: UUID,
        proposal: SettlementProposal,
        account_id: str,
    ) -> SettlementRecord:
        plan = await self._load_plan(plan_id)
        return await self._confirmer.confirm(plan, proposal, account_id)

    async def list_settlement_records(self, plan_id: UUID) -> list[SettlementRecord]:
        snapshot = await self._storage.load_snapshot(plan_id)
        return snapshot.settlements

    async def health_check(self, plan_id: UUID) -> tuple[ValidationResult, str]:
        """
        Returns:
            (result, user_message)
        """
        result = await self._health.check_plan(plan_id)
        return result, self._health.get_user_friendly_summary(result)

    # ------------------------------------------------------------------
    # Live updates
    # ------------------------------------------------------------------

    async def watch_plan(
        self,
        plan_id: UUID,
        account_id: str,
        on_overview: OverviewCallback,
    ) -> Unsubscribe:
        """
        Push a fresh overview after every change to the plan.

        Each update also collapses duplicate self-memberships of the
        watching account; the overview of such an update is skipped
        because the merge triggers another one.
        """
        plan = await self._load_plan(plan_id)

        async def emit(overview: PlanOverview) -> None:
            result = on_overview(overview)
            if inspect.isawaitable(result):
                await result

        async def on_change(snapshot: PlanSnapshot) -> None:
            if len(snapshot.participants_for_account(account_id)) > 1:
                await self._registry.deduplicate_self(plan, account_id)
                return
            await emit(self._overview.from_snapshot(snapshot))

        unsubscribe = self._storage.subscribe(plan_id, on_change)
        snapshot = await self._storage.load_snapshot(plan_id)
        await on_change(snapshot)
        return unsubscribe


def create_app_components(
    use_storage: bool = True,
    transaction_service: Optional[TransactionServiceInterface] = None,
) -> tuple[PlanLedgerService, Optional[GoogleSheetsClient]]:
    """
    Factory function to create all application components.

    Args:
        use_storage: Whether to initialize Google Sheets storage.
                    Set to False to keep everything in memory.
        transaction_service: The app's personal transaction subsystem

    Returns:
        (service, sheets_client)
    """
    sheets_client = None

    if use_storage:
        try:
            sheets_client = GoogleSheetsClient()
            sheets_client.connect()
            storage = GoogleSheetsPlanStorage(sheets_client)
            audit_logger = AuditLogger(GoogleSheetsAuditStorage(sheets_client))
        except Exception as e:
            # Storage not configured - continue without it
            logger.warning("storage_not_configured", error=str(e))
            sheets_client = None
            storage = InMemoryPlanStorage()
            audit_logger = AuditLogger()  # Local-only logging
    else:
        storage = InMemoryPlanStorage()
        audit_logger = AuditLogger()  # Local-only logging

    service = PlanLedgerService(
        storage=storage,
        transaction_service=transaction_service,
        audit_logger=audit_logger,
    )
    return service, sheets_client
