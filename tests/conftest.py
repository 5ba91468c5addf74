"""
Shared fixtures.

Everything runs against the in-memory storage and fake external
services; no test talks to Google or to a real transaction system.
"""

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio

from plan_ledger.audit import AuditLogger
from plan_ledger.config import LedgerSettings
from plan_ledger.errors import ExternalServiceError
from plan_ledger.models.plan import Contribution, Participant, Plan
from plan_ledger.orchestrator import PlanLedgerService
from plan_ledger.services.storage import (
    InMemoryAuditStorage,
    InMemoryPlanStorage,
    LedgerBatch,
)
from plan_ledger.services.transactions import TransactionServiceInterface


BASE_TIME = datetime(2024, 3, 1, 12, 0, 0)


class FakeTransactionService(TransactionServiceInterface):
    """Remembers what was posted; can be told to fail."""

    def __init__(self):
        self.posted: dict[str, dict] = {}
        self.retracted: list[str] = []
        self.fail_post = False
        self.fail_retract = False
        self._counter = 0

    async def post_personal_transaction(
        self,
        account_id,
        card_id,
        amount,
        description,
        category,
        linked_plan_id,
        linked_contribution_id,
    ) -> str:
        if self.fail_post:
            raise ExternalServiceError("transactions", "service unavailable")
        self._counter += 1
        transaction_id = f"txn-{self._counter}"
        self.posted[transaction_id] = {
            "account_id": account_id,
            "card_id": card_id,
            "amount": amount,
            "description": description,
            "linked_plan_id": linked_plan_id,
            "linked_contribution_id": linked_contribution_id,
        }
        return transaction_id

    async def retract_personal_transaction(self, transaction_id: str) -> None:
        # A real service call suspends; let other sessions run meanwhile
        await asyncio.sleep(0)
        if self.fail_retract:
            raise ExternalServiceError("transactions", "service unavailable")
        self.retracted.append(transaction_id)
        self.posted.pop(transaction_id, None)


def make_participant(
    plan: Plan,
    name: str,
    minutes: int,
    account_id: Optional[str] = None,
    color: str = "#123456",
    is_owner: bool = False,
) -> Participant:
    """Participant with a deterministic creation time."""
    return Participant(
        plan_id=plan.id,
        name=name,
        account_id=account_id,
        color=color,
        is_owner=is_owner,
        created_at=BASE_TIME + timedelta(minutes=minutes),
    )


def make_contribution(
    plan: Plan,
    payer: Participant,
    amount,
    description: str = "Groceries",
    minutes: int = 0,
) -> Contribution:
    return Contribution(
        plan_id=plan.id,
        payer_id=payer.id,
        description=description,
        amount=Decimal(str(amount)),
        created_at=BASE_TIME + timedelta(minutes=minutes),
    )


async def seed(storage: InMemoryPlanStorage, plan: Plan, *entities) -> None:
    """Write participants and contributions straight into storage."""
    batch = LedgerBatch(plan.id)
    for entity in entities:
        if isinstance(entity, Participant):
            batch.put_participant(entity)
        else:
            batch.put_contribution(entity)
    await storage.commit(batch)


@pytest.fixture
def settings() -> LedgerSettings:
    return LedgerSettings()


@pytest.fixture
def storage() -> InMemoryPlanStorage:
    return InMemoryPlanStorage()


@pytest.fixture
def audit_storage() -> InMemoryAuditStorage:
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage) -> AuditLogger:
    return AuditLogger(audit_storage)


@pytest.fixture
def transactions() -> FakeTransactionService:
    return FakeTransactionService()


@pytest.fixture
def service(storage, transactions, audit_logger, settings) -> PlanLedgerService:
    return PlanLedgerService(
        storage=storage,
        transaction_service=transactions,
        audit_logger=audit_logger,
        settings=settings,
    )


@pytest.fixture
def trio_factory():
    """
    Equitable plan with owner A (account-backed) and placeholders B and C,
    created one minute apart, written into the given storage.
    """

    async def build(storage):
        plan = Plan(title="Trip", owner_id="acct-a", created_at=BASE_TIME, updated_at=BASE_TIME)
        a = make_participant(plan, "A", 0, account_id="acct-a", color="#007AFF", is_owner=True)
        b = make_participant(plan, "B", 1, color="#FF3B30")
        c = make_participant(plan, "C", 2, color="#34C759")
        await storage.create_plan(plan, a)
        await seed(storage, plan, b, c)
        return plan, a, b, c

    return build


@pytest_asyncio.fixture
async def trio(storage, trio_factory):
    return await trio_factory(storage)
