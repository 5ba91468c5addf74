"""
Participant Registry

Owns who belongs to a plan and how they look (every participant gets a
color that is unique within the plan while the palette has free ones).

Self-membership is kept unique per account. Two devices of the same
user can still race each other into creating two rows; whichever
session notices first collapses them again (see deduplicate_self).
"""

import re
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union
from uuid import UUID

import structlog

from plan_ledger.audit import AuditLogger
from plan_ledger.config import LedgerSettings, get_settings
from plan_ledger.errors import ValidationError
from plan_ledger.ledger.removal import RemovalCoordinator
from plan_ledger.models.audit import AuditEventBuilder
from plan_ledger.models.plan import (
    COLOR_PATTERN,
    Participant,
    Plan,
    PlanSnapshot,
    RemovalStrategy,
)
from plan_ledger.services.storage import (
    ConcurrentModificationError,
    DuplicateError,
    LedgerBatch,
    NotFoundError,
    PlanStorageInterface,
)


logger = structlog.get_logger(__name__)

MAX_DEDUPLICATION_ATTEMPTS = 3


def assign_color(participants: list[Participant], palette: list[str]) -> str:
    """
    Pick a color for a new participant.

    The first palette color nobody uses wins. Once every color is taken,
    the one whose most recent assignment is the oldest is reused
    (palette order breaks ties).
    """
    used = {p.color.upper() for p in participants}
    for color in palette:
        if color not in used:
            return color

    last_assigned: dict[str, datetime] = {}
    for participant in participants:
        color = participant.color.upper()
        if color in palette:
            if color not in last_assigned or participant.created_at > last_assigned[color]:
                last_assigned[color] = participant.created_at

    return min(
        palette,
        key=lambda c: (last_assigned.get(c, datetime.min), palette.index(c)),
    )


class ParticipantRegistry:
    """Add, join, de-duplicate and remove plan participants."""

    def __init__(
        self,
        storage: PlanStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
        removal_coordinator: Optional[RemovalCoordinator] = None,
    ):
        self._storage = storage
        self._audit_logger = audit_logger
        self._settings = settings or get_settings().ledger
        self._removal = removal_coordinator or RemovalCoordinator(
            storage, audit_logger, self._settings
        )

    def _pick_color(self, snapshot: PlanSnapshot, requested_color: Optional[str]) -> str:
        if requested_color is None:
            return assign_color(snapshot.participants, self._settings.palette)

        color = requested_color.strip().upper()
        if not re.match(COLOR_PATTERN, color):
            raise ValidationError(
                f"'{requested_color}' is not a color",
                field="color",
                suggested_fix="Use a hex color like #34C759",
            )
        if any(p.color == color for p in snapshot.participants):
            raise ValidationError(
                f"Color {color} is already used in this plan",
                field="color",
                suggested_fix="choose a different color",
            )
        return color

    async def add_participant(
        self,
        plan: Plan,
        name: str,
        account_id: Optional[str] = None,
        requested_color: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
        joined: bool = False,
    ) -> Participant:
        """
        Add a participant to a plan.

        Raises:
            ValidationError: Empty name, color already used, or the
                account is already a member
            NotFoundError: The plan no longer exists
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError(
                "Name is required",
                field="name",
                suggested_fix="Enter the participant's name",
            )

        snapshot = await self._storage.load_snapshot(plan.id)
        if account_id and snapshot.participants_for_account(account_id):
            raise ValidationError(
                "This account is already a participant of the plan",
                field="account_id",
            )

        participant = Participant(
            plan_id=plan.id,
            name=name,
            account_id=account_id,
            color=self._pick_color(snapshot, requested_color),
            is_owner=bool(account_id) and account_id == plan.owner_id,
        )

        batch = LedgerBatch(plan.id).put_participant(participant)
        if account_id:
            batch.require_account_absent(account_id)
        try:
            await self._storage.commit(batch)
        except DuplicateError:
            raise ValidationError(
                "This account is already a participant of the plan",
                field="account_id",
            )

        logger.info(
            "participant_added",
            plan_id=str(plan.id),
            participant_id=str(participant.id),
            color=participant.color,
        )
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.participant_added(
                plan_id=plan.id,
                participant_id=participant.id,
                name=participant.name,
                color=participant.color,
                account_backed=not participant.is_placeholder,
                correlation_id=correlation_id,
                joined=joined,
            ))

        return participant

    async def ensure_self_participant(
        self,
        plan: Plan,
        account_id: str,
        display_name: str,
        correlation_id: Optional[UUID] = None,
    ) -> Participant:
        """
        Make sure the account has exactly one participant row in the plan.

        Safe to call from several sessions at once: a lost race ends up
        in deduplicate_self, which keeps the earliest row.
        """
        snapshot = await self._storage.load_snapshot(plan.id)
        existing = snapshot.participants_for_account(account_id)

        if not existing:
            try:
                return await self.add_participant(
                    plan,
                    display_name,
                    account_id=account_id,
                    correlation_id=correlation_id,
                    joined=account_id != plan.owner_id,
                )
            except ValidationError as e:
                if e.field != "account_id":
                    raise
                # Another session created the row first

        kept = await self.deduplicate_self(plan, account_id)
        if kept is None:
            raise NotFoundError(f"No participant for account {account_id}")
        return kept

    async def deduplicate_self(self, plan: Plan, account_id: str) -> Optional[Participant]:
        """
        Collapse duplicate rows of one account into the earliest one.

        Entries and settlements of the duplicates are moved to the kept
        row in the same batch. Returns the kept row, or None when the
        account isn't a member at all.
        """
        for _ in range(MAX_DEDUPLICATION_ATTEMPTS):
            snapshot = await self._storage.load_snapshot(plan.id)
            rows = snapshot.participants_for_account(account_id)
            if len(rows) <= 1:
                return rows[0] if rows else None

            kept, duplicates = rows[0], rows[1:]
            duplicate_ids = {d.id for d in duplicates}
            now = datetime.utcnow()

            batch = LedgerBatch(plan.id).require_participant(kept.id)
            if any(d.is_owner for d in duplicates) and not kept.is_owner:
                kept = kept.model_copy(update={"is_owner": True})
                batch.put_participant(kept)

            for duplicate in duplicates:
                contributions = snapshot.contributions_of(duplicate.id)
                batch.expect_contributions(duplicate.id, {c.id for c in contributions})
                for contribution in contributions:
                    batch.put_contribution(contribution.model_copy(
                        update={"payer_id": kept.id, "updated_at": now}
                    ))
                batch.delete_participant(duplicate.id)

            for record in snapshot.settlements:
                from_id = kept.id if record.from_participant_id in duplicate_ids else record.from_participant_id
                to_id = kept.id if record.to_participant_id in duplicate_ids else record.to_participant_id
                if (from_id, to_id) == (record.from_participant_id, record.to_participant_id):
                    continue
                if from_id == to_id:
                    batch.delete_settlement(record.id)
                else:
                    batch.put_settlement(record.model_copy(
                        update={"from_participant_id": from_id, "to_participant_id": to_id}
                    ))

            try:
                await self._storage.commit(batch)
            except (ConcurrentModificationError, NotFoundError) as e:
                logger.info(
                    "deduplication_raced",
                    plan_id=str(plan.id),
                    account_id=account_id,
                    error=str(e),
                )
                continue

            logger.warning(
                "duplicate_participants_removed",
                plan_id=str(plan.id),
                kept_id=str(kept.id),
                removed=len(duplicates),
            )
            if self._audit_logger:
                await self._audit_logger.log(AuditEventBuilder.duplicate_participant_removed(
                    plan_id=plan.id,
                    kept_id=kept.id,
                    removed_ids=[d.id for d in duplicates],
                    account_id=account_id,
                ))
            return kept

        raise ConcurrentModificationError(
            f"Could not de-duplicate account {account_id} in plan {plan.id}"
        )

    async def remove_participant(
        self,
        plan: Plan,
        participant: Participant,
        strategy: Optional[RemovalStrategy] = None,
        target: Optional[Participant] = None,
        amount: Optional[Union[Decimal, int, float, str]] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """
        Remove a participant.

        A participant without entries or settlements is deleted right
        away. Otherwise the caller must pick a strategy, which is carried
        out by the removal coordinator.

        Raises:
            ValidationError: Owner removal, or a strategy is needed
            NotFoundError: The participant is already gone
        """
        if participant.is_owner:
            raise ValidationError(
                "The plan owner can't be removed",
                field="participant",
                suggested_fix="Delete the plan instead",
            )

        snapshot = await self._storage.load_snapshot(plan.id)
        if snapshot.participant(participant.id) is None:
            raise NotFoundError(f"Participant not found: {participant.id}")

        contributions = snapshot.contributions_of(participant.id)
        if not contributions and not snapshot.settlements_involving(participant.id):
            batch = (
                LedgerBatch(plan.id)
                .require_participant(participant.id)
                .expect_contributions(participant.id, set())
                .delete_participant(participant.id)
            )
            await self._storage.commit(batch)
            logger.info(
                "participant_removed",
                plan_id=str(plan.id),
                participant_id=str(participant.id),
            )
            if self._audit_logger:
                await self._audit_logger.log_participant_removed(
                    plan_id=plan.id,
                    participant_id=participant.id,
                    strategy="immediate",
                    correlation_id=correlation_id,
                )
            return

        if strategy is None:
            raise ValidationError(
                f"{participant.name} has {len(contributions)} entries in this plan",
                field="strategy",
                suggested_fix="Transfer the entries to another participant or delete them",
            )

        if strategy == RemovalStrategy.TRANSFER:
            if target is None:
                raise ValidationError(
                    "Choose who receives the entries",
                    field="target",
                    suggested_fix="Pick another participant",
                )
            await self._removal.transfer_and_remove(
                plan, participant, target, amount, correlation_id=correlation_id
            )
        else:
            await self._removal.delete_all_and_remove(
                plan, participant, correlation_id=correlation_id
            )
