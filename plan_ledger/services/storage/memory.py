"""
In-Memory Storage Implementation

Used by the test suite and for running the ledger without a backend.
Every read hands out deep copies so callers can never mutate stored
state by accident, and every batch is applied under a single lock, which
gives the same all-or-nothing behaviour a transactional store would.
"""

import asyncio
from typing import Optional
from uuid import UUID

from plan_ledger.models.audit import AuditEvent
from plan_ledger.models.plan import (
    Contribution,
    Participant,
    Plan,
    PlanSnapshot,
    SettlementRecord,
)
from plan_ledger.services.storage.interface import (
    AuditStorageInterface,
    ChangeNotifier,
    DuplicateError,
    LedgerBatch,
    NotFoundError,
    PlanStorageInterface,
    SnapshotCallback,
    Unsubscribe,
    apply_batch,
)


class _PlanDocuments:
    """Everything stored under one plan."""

    def __init__(self, plan: Plan):
        self.plan = plan
        self.participants: dict[UUID, Participant] = {}
        self.contributions: dict[UUID, Contribution] = {}
        self.settlements: dict[UUID, SettlementRecord] = {}

    def snapshot(self) -> PlanSnapshot:
        return PlanSnapshot(
            plan=self.plan.model_copy(deep=True),
            participants=sorted(
                (p.model_copy(deep=True) for p in self.participants.values()),
                key=lambda p: (p.created_at, str(p.id)),
            ),
            contributions=sorted(
                (c.model_copy(deep=True) for c in self.contributions.values()),
                key=lambda c: (c.entry_date, c.created_at, str(c.id)),
            ),
            settlements=sorted(
                (s.model_copy(deep=True) for s in self.settlements.values()),
                key=lambda s: (s.confirmed_at, str(s.id)),
            ),
        )


class InMemoryPlanStorage(PlanStorageInterface):
    """Dictionary-backed implementation of the plan store."""

    def __init__(self):
        self._plans: dict[UUID, _PlanDocuments] = {}
        self._lock = asyncio.Lock()
        self._notifier = ChangeNotifier()

    async def _publish(self, plan_id: UUID) -> None:
        # Called after the lock is released so subscribers may write again
        if not self._notifier.has_subscribers(plan_id):
            return
        docs = self._plans.get(plan_id)
        if docs is not None:
            await self._notifier.notify(docs.snapshot())

    async def save_plan(self, plan: Plan) -> bool:
        async with self._lock:
            docs = self._plans.get(plan.id)
            if docs is None:
                self._plans[plan.id] = _PlanDocuments(plan.model_copy(deep=True))
            else:
                docs.plan = plan.model_copy(deep=True)
        await self._publish(plan.id)
        return True

    async def create_plan(self, plan: Plan, owner: Participant) -> bool:
        async with self._lock:
            if plan.id in self._plans:
                raise DuplicateError(f"Plan already exists: {plan.id}")
            docs = _PlanDocuments(plan.model_copy(deep=True))
            docs.participants[owner.id] = owner.model_copy(deep=True)
            self._plans[plan.id] = docs
        return True

    async def get_plan(self, plan_id: UUID) -> Optional[Plan]:
        docs = self._plans.get(plan_id)
        return docs.plan.model_copy(deep=True) if docs else None

    async def find_plan_by_invite_code(self, code: str) -> Optional[Plan]:
        for docs in self._plans.values():
            if docs.plan.invite_code and docs.plan.invite_code == code:
                return docs.plan.model_copy(deep=True)
        return None

    async def list_plans_for_account(self, account_id: str) -> list[Plan]:
        plans = [
            docs.plan.model_copy(deep=True)
            for docs in self._plans.values()
            if any(p.account_id == account_id for p in docs.participants.values())
        ]
        plans.sort(key=lambda p: p.created_at, reverse=True)
        return plans

    async def delete_plan(self, plan_id: UUID) -> bool:
        async with self._lock:
            return self._plans.pop(plan_id, None) is not None

    async def load_snapshot(self, plan_id: UUID) -> PlanSnapshot:
        async with self._lock:
            docs = self._plans.get(plan_id)
            if docs is None:
                raise NotFoundError(f"Plan not found: {plan_id}")
            return docs.snapshot()

    async def commit(self, batch: LedgerBatch) -> None:
        async with self._lock:
            docs = self._plans.get(batch.plan_id)
            if docs is None:
                raise NotFoundError(f"Plan not found: {batch.plan_id}")

            participants, contributions, settlements = apply_batch(
                batch,
                docs.participants,
                docs.contributions,
                docs.settlements,
            )
            docs.participants = {k: v.model_copy(deep=True) for k, v in participants.items()}
            docs.contributions = {k: v.model_copy(deep=True) for k, v in contributions.items()}
            docs.settlements = {k: v.model_copy(deep=True) for k, v in settlements.items()}

        await self._publish(batch.plan_id)

    def subscribe(self, plan_id: UUID, on_change: SnapshotCallback) -> Unsubscribe:
        return self._notifier.subscribe(plan_id, on_change)


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only list of audit events."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._events if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_events_for_plan(
        self,
        plan_id: UUID,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = [e for e in self._events if e.plan_id == plan_id]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self._events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
