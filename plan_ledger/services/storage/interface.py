"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Swap Google Sheets for a real document database later
2. Use in-memory storage for testing
3. Keep business logic decoupled from storage implementation

The interface is intentionally small. Reads happen through consistent
snapshots of one plan; multi-document writes happen through a guarded
LedgerBatch that is applied completely or not at all.
"""

import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Union
from uuid import UUID

import structlog

from plan_ledger.models.audit import AuditEvent
from plan_ledger.models.plan import (
    Contribution,
    Participant,
    Plan,
    PlanSnapshot,
    SettlementRecord,
)


SnapshotCallback = Callable[[PlanSnapshot], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], None]

logger = structlog.get_logger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage (often: someone else already deleted it)."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass


class ConcurrentModificationError(StorageError):
    """The data a batch was prepared against changed before it was committed."""
    pass


class LedgerBatch:
    """
    An all-or-nothing write unit for a single plan.

    Besides the writes themselves, a batch carries guards that are checked
    against the stored state at commit time:

    - required participants / contributions must still exist
    - a participant's contribution set must be exactly what the caller saw
    - an account must not already be a member
    - a settlement idempotency key must not already be used

    Whatever the guards say, a committed batch never leaves a contribution
    or settlement pointing at a participant it deleted.
    """

    def __init__(self, plan_id: UUID):
        self.plan_id = plan_id

        self.participant_puts: list[Participant] = []
        self.participant_deletes: list[UUID] = []
        self.contribution_puts: list[Contribution] = []
        self.contribution_deletes: list[UUID] = []
        self.settlement_puts: list[SettlementRecord] = []
        self.settlement_deletes: list[UUID] = []

        self.required_participants: set[UUID] = set()
        self.required_contributions: set[UUID] = set()
        self.expected_contributions: dict[UUID, frozenset[UUID]] = {}
        self.absent_accounts: set[str] = set()
        self.absent_settlement_keys: set[str] = set()

    # Writes

    def put_participant(self, participant: Participant) -> "LedgerBatch":
        self.participant_puts.append(participant)
        return self

    def delete_participant(self, participant_id: UUID) -> "LedgerBatch":
        self.participant_deletes.append(participant_id)
        return self

    def put_contribution(self, contribution: Contribution) -> "LedgerBatch":
        self.contribution_puts.append(contribution)
        return self

    def delete_contribution(self, contribution_id: UUID) -> "LedgerBatch":
        self.contribution_deletes.append(contribution_id)
        return self

    def put_settlement(self, settlement: SettlementRecord) -> "LedgerBatch":
        self.settlement_puts.append(settlement)
        return self

    def delete_settlement(self, settlement_id: UUID) -> "LedgerBatch":
        self.settlement_deletes.append(settlement_id)
        return self

    # Guards

    def require_participant(self, participant_id: UUID) -> "LedgerBatch":
        self.required_participants.add(participant_id)
        return self

    def require_contribution(self, contribution_id: UUID) -> "LedgerBatch":
        self.required_contributions.add(contribution_id)
        return self

    def expect_contributions(
        self,
        participant_id: UUID,
        contribution_ids: set[UUID],
    ) -> "LedgerBatch":
        self.expected_contributions[participant_id] = frozenset(contribution_ids)
        return self

    def require_account_absent(self, account_id: str) -> "LedgerBatch":
        self.absent_accounts.add(account_id)
        return self

    def require_settlement_absent(self, idempotency_key: str) -> "LedgerBatch":
        self.absent_settlement_keys.add(idempotency_key)
        return self

    @property
    def is_empty(self) -> bool:
        return not (
            self.participant_puts
            or self.participant_deletes
            or self.contribution_puts
            or self.contribution_deletes
            or self.settlement_puts
            or self.settlement_deletes
        )


def apply_batch(
    batch: LedgerBatch,
    participants: dict[UUID, Participant],
    contributions: dict[UUID, Contribution],
    settlements: dict[UUID, SettlementRecord],
) -> tuple[
    dict[UUID, Participant],
    dict[UUID, Contribution],
    dict[UUID, SettlementRecord],
]:
    """
    Check a batch's guards and compute the resulting state.

    Pure: the input mappings are not modified. Storage backends call this
    while holding whatever lock or snapshot their backend offers, then
    persist the returned state in one go.

    Raises:
        NotFoundError: A required entity no longer exists
        ConcurrentModificationError: The ledger changed under the caller
        DuplicateError: An absent-guard failed
    """
    for participant_id in batch.required_participants:
        if participant_id not in participants:
            raise NotFoundError(f"Participant not found: {participant_id}")

    for contribution_id in batch.required_contributions:
        if contribution_id not in contributions:
            raise NotFoundError(f"Contribution not found: {contribution_id}")

    for participant_id, expected in batch.expected_contributions.items():
        current = {c.id for c in contributions.values() if c.payer_id == participant_id}
        if current != expected:
            raise ConcurrentModificationError(
                f"Contributions of participant {participant_id} changed"
            )

    for account_id in batch.absent_accounts:
        if any(p.account_id == account_id for p in participants.values()):
            raise DuplicateError(f"Account {account_id} is already a member")

    for key in batch.absent_settlement_keys:
        if any(s.idempotency_key == key for s in settlements.values()):
            raise DuplicateError(f"Settlement already confirmed: {key}")

    new_participants = dict(participants)
    new_contributions = dict(contributions)
    new_settlements = dict(settlements)

    for participant in batch.participant_puts:
        new_participants[participant.id] = participant
    for contribution in batch.contribution_puts:
        new_contributions[contribution.id] = contribution
    for settlement in batch.settlement_puts:
        new_settlements[settlement.id] = settlement

    for contribution_id in batch.contribution_deletes:
        new_contributions.pop(contribution_id, None)
    for settlement_id in batch.settlement_deletes:
        new_settlements.pop(settlement_id, None)
    for participant_id in batch.participant_deletes:
        new_participants.pop(participant_id, None)

    # Referential integrity for everything this batch touched
    for contribution in batch.contribution_puts:
        if contribution.id in new_contributions and contribution.payer_id not in new_participants:
            raise NotFoundError(f"Participant not found: {contribution.payer_id}")
    for settlement in batch.settlement_puts:
        if settlement.id not in new_settlements:
            continue
        for participant_id in (settlement.from_participant_id, settlement.to_participant_id):
            if participant_id not in new_participants:
                raise NotFoundError(f"Participant not found: {participant_id}")

    deleted = set(batch.participant_deletes)
    if deleted:
        if any(c.payer_id in deleted for c in new_contributions.values()):
            raise ConcurrentModificationError(
                "Removing the participant would orphan contributions"
            )
        if any(
            s.from_participant_id in deleted or s.to_participant_id in deleted
            for s in new_settlements.values()
        ):
            raise ConcurrentModificationError(
                "Removing the participant would orphan settlements"
            )

    return new_participants, new_contributions, new_settlements


class ChangeNotifier:
    """
    Fan-out of plan snapshots to live subscribers.

    A failing subscriber is logged and skipped: the write that triggered
    the notification has already been committed.
    """

    def __init__(self):
        self._subscribers: dict[UUID, list[SnapshotCallback]] = {}

    def subscribe(self, plan_id: UUID, on_change: SnapshotCallback) -> Unsubscribe:
        self._subscribers.setdefault(plan_id, []).append(on_change)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(plan_id, [])
            if on_change in callbacks:
                callbacks.remove(on_change)

        return unsubscribe

    def has_subscribers(self, plan_id: UUID) -> bool:
        return bool(self._subscribers.get(plan_id))

    async def notify(self, snapshot: PlanSnapshot) -> None:
        for callback in list(self._subscribers.get(snapshot.plan.id, [])):
            try:
                result = callback(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "subscriber_failed",
                    plan_id=str(snapshot.plan.id),
                    error=str(e),
                )


class PlanStorageInterface(ABC):
    """
    Abstract interface for the shared plan document store.

    Any storage implementation (Google Sheets, Firestore, SQL, ...)
    must implement these methods.
    """

    @abstractmethod
    async def save_plan(self, plan: Plan) -> bool:
        """
        Create or overwrite a plan document.

        Raises:
            StorageError: If save fails
        """
        pass

    @abstractmethod
    async def create_plan(self, plan: Plan, owner: Participant) -> bool:
        """
        Create a plan together with its owner participant, atomically.

        Raises:
            DuplicateError: If the plan already exists
            StorageError: If save fails
        """
        pass

    @abstractmethod
    async def get_plan(self, plan_id: UUID) -> Optional[Plan]:
        """
        Retrieve a plan by its ID.

        Returns:
            The plan if found, None otherwise
        """
        pass

    @abstractmethod
    async def find_plan_by_invite_code(self, code: str) -> Optional[Plan]:
        """Retrieve the plan that currently carries this invite code."""
        pass

    @abstractmethod
    async def list_plans_for_account(self, account_id: str) -> list[Plan]:
        """List plans in which the account backs a participant."""
        pass

    @abstractmethod
    async def delete_plan(self, plan_id: UUID) -> bool:
        """
        Delete a plan and, with it, its participants, contributions and
        settlement records.

        Returns:
            True if the plan existed
        """
        pass

    @abstractmethod
    async def load_snapshot(self, plan_id: UUID) -> PlanSnapshot:
        """
        Read a plan and everything attached to it in one consistent view.

        Raises:
            NotFoundError: If the plan doesn't exist
        """
        pass

    @abstractmethod
    async def commit(self, batch: LedgerBatch) -> None:
        """
        Apply a batch atomically (see apply_batch for guard semantics).

        Raises:
            NotFoundError, ConcurrentModificationError, DuplicateError:
                A guard failed; nothing was written
            StorageError: The backend failed; nothing was written
        """
        pass

    @abstractmethod
    def subscribe(self, plan_id: UUID, on_change: SnapshotCallback) -> Unsubscribe:
        """
        Register a live-query callback for a plan.

        The callback receives a fresh PlanSnapshot after every committed
        change to the plan. Returns a function that cancels the subscription.
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get all events for a correlation ID, in chronological order."""
        pass

    @abstractmethod
    async def get_events_for_plan(
        self,
        plan_id: UUID,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get the most recent events of one plan (newest first)."""
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get the most recent audit events (newest first)."""
        pass


def describe_batch(batch: LedgerBatch) -> dict[str, Any]:
    """Summarise a batch for structured logs."""
    return {
        "plan_id": str(batch.plan_id),
        "participant_puts": len(batch.participant_puts),
        "participant_deletes": len(batch.participant_deletes),
        "contribution_puts": len(batch.contribution_puts),
        "contribution_deletes": len(batch.contribution_deletes),
        "settlement_puts": len(batch.settlement_puts),
        "settlement_deletes": len(batch.settlement_deletes),
    }
