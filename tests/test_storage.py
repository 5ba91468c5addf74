"""Tests for batch guards and the storage backends."""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from tenacity import wait_none

from plan_ledger.models.audit import AuditEventBuilder
from plan_ledger.models.plan import (
    DistributionRule,
    PersonalTransactionLink,
    Plan,
    SettlementRecord,
)
from plan_ledger.services.storage import (
    ConcurrentModificationError,
    DuplicateError,
    GoogleSheetsAuditStorage,
    GoogleSheetsPlanStorage,
    LedgerBatch,
    NotFoundError,
    StorageError,
    apply_batch,
)
from plan_ledger.services.storage.google_sheets import (
    AUDIT_COLUMNS,
    CONTRIBUTION_COLUMNS,
    PARTICIPANT_COLUMNS,
    PLAN_COLUMNS,
    REVISION_COLUMN,
    SETTLEMENT_COLUMNS,
)

from conftest import BASE_TIME, make_contribution, make_participant, seed


# =============================================================================
# Sheets fakes
# =============================================================================

class FakeWorksheet:
    """Just enough of gspread.Worksheet for the storage code."""

    def __init__(self, title: str, columns: list[str]):
        self.title = title
        self.rows: list[list[str]] = [list(columns)]
        self.write_calls = 0
        self.fail_writes = False
        # Runs once, right before the next row write; stands in for another device
        self.before_write = None

    def _write(self):
        if self.before_write is not None:
            hook, self.before_write = self.before_write, None
            hook()
        if self.fail_writes:
            raise RuntimeError("quota exceeded")
        self.write_calls += 1

    def get_all_values(self):
        return [list(row) for row in self.rows]

    def append_row(self, values, value_input_option=None):
        self.rows.append([str(v) for v in values])

    def append_rows(self, values, value_input_option=None):
        self._write()
        self.rows.extend([str(v) for v in row] for row in values)

    def update(self, range_name="A1", values=None, value_input_option=None):
        self._write()
        start = int(range_name[1:]) - 1
        for offset, row in enumerate(values):
            if start + offset < len(self.rows):
                self.rows[start + offset] = list(row)
            else:
                self.rows.append(list(row))

    def update_cell(self, row, col, value):
        self.rows[row - 1][col - 1] = value

    def delete_rows(self, index):
        self._write()
        del self.rows[index - 1]


class FakeSheetsClient:
    """Stands in for GoogleSheetsClient."""

    def __init__(self):
        self.plans = FakeWorksheet("Plans", PLAN_COLUMNS)
        self.participants = FakeWorksheet("Participants", PARTICIPANT_COLUMNS)
        self.contributions = FakeWorksheet("Contributions", CONTRIBUTION_COLUMNS)
        self.settlements = FakeWorksheet("Settlements", SETTLEMENT_COLUMNS)
        self.audit = FakeWorksheet("AuditLog", AUDIT_COLUMNS)

    def get_plans_sheet(self):
        return self.plans

    def get_participants_sheet(self):
        return self.participants

    def get_contributions_sheet(self):
        return self.contributions

    def get_settlements_sheet(self):
        return self.settlements

    def get_audit_sheet(self):
        return self.audit


def _plan() -> Plan:
    return Plan(title="Trip", owner_id="acct-a", created_at=BASE_TIME, updated_at=BASE_TIME)


def _record(plan, payer, payee, key="key-1") -> SettlementRecord:
    return SettlementRecord(
        plan_id=plan.id,
        from_participant_id=payer.id,
        to_participant_id=payee.id,
        amount=Decimal("5"),
        idempotency_key=key,
        confirmed_by="acct-a",
    )


# =============================================================================
# apply_batch
# =============================================================================

class TestApplyBatch:
    """Tests for the shared guard logic."""

    def setup_method(self):
        self.plan = _plan()
        self.a = make_participant(self.plan, "A", 0, account_id="acct-a")
        self.b = make_participant(self.plan, "B", 1)
        self.entry = make_contribution(self.plan, self.b, 10)
        self.participants = {self.a.id: self.a, self.b.id: self.b}
        self.contributions = {self.entry.id: self.entry}

    def test_inputs_are_not_modified(self):
        """Test purity."""
        batch = LedgerBatch(self.plan.id).delete_contribution(self.entry.id)

        _, contributions, _ = apply_batch(batch, self.participants, self.contributions, {})

        assert contributions == {}
        assert self.entry.id in self.contributions

    def test_required_participant_missing(self):
        batch = LedgerBatch(self.plan.id).require_participant(uuid4())
        with pytest.raises(NotFoundError):
            apply_batch(batch, self.participants, self.contributions, {})

    def test_required_contribution_missing(self):
        batch = LedgerBatch(self.plan.id).require_contribution(uuid4())
        with pytest.raises(NotFoundError):
            apply_batch(batch, self.participants, self.contributions, {})

    def test_expected_contributions_changed(self):
        """Test that an unseen entry rejects the batch."""
        batch = LedgerBatch(self.plan.id).expect_contributions(self.b.id, set())
        with pytest.raises(ConcurrentModificationError):
            apply_batch(batch, self.participants, self.contributions, {})

    def test_account_already_member(self):
        batch = LedgerBatch(self.plan.id).require_account_absent("acct-a")
        with pytest.raises(DuplicateError):
            apply_batch(batch, self.participants, self.contributions, {})

    def test_settlement_key_used(self):
        record = _record(self.plan, self.b, self.a)
        batch = LedgerBatch(self.plan.id).require_settlement_absent("key-1")
        with pytest.raises(DuplicateError):
            apply_batch(batch, self.participants, self.contributions, {record.id: record})

    def test_deleting_a_payer_would_orphan_entries(self):
        """Test that a participant delete must take its entries along."""
        batch = LedgerBatch(self.plan.id).delete_participant(self.b.id)
        with pytest.raises(ConcurrentModificationError):
            apply_batch(batch, self.participants, self.contributions, {})

    def test_entry_for_unknown_payer(self):
        stray = make_contribution(self.plan, make_participant(self.plan, "Ghost", 5), 1)
        batch = LedgerBatch(self.plan.id).put_contribution(stray)
        with pytest.raises(NotFoundError):
            apply_batch(batch, self.participants, self.contributions, {})

    def test_move_and_delete_together(self):
        """Test that re-pointing entries and deleting the payer is one valid step."""
        moved = self.entry.model_copy(update={"payer_id": self.a.id})
        batch = (
            LedgerBatch(self.plan.id)
            .put_contribution(moved)
            .delete_participant(self.b.id)
        )

        participants, contributions, _ = apply_batch(
            batch, self.participants, self.contributions, {}
        )

        assert set(participants) == {self.a.id}
        assert contributions[self.entry.id].payer_id == self.a.id


# =============================================================================
# In-memory backend
# =============================================================================

class TestInMemoryStorage:
    """Tests for InMemoryPlanStorage."""

    @pytest.mark.asyncio
    async def test_snapshot_is_a_copy(self, storage, trio):
        """Test that mutating a snapshot doesn't touch stored state."""
        plan, a, b, c = trio
        snapshot = await storage.load_snapshot(plan.id)
        snapshot.participants.clear()

        again = await storage.load_snapshot(plan.id)
        assert len(again.participants) == 3

    @pytest.mark.asyncio
    async def test_failed_batch_changes_nothing(self, storage, trio):
        """Test all-or-nothing commits."""
        plan, a, b, c = trio
        batch = (
            LedgerBatch(plan.id)
            .put_contribution(make_contribution(plan, a, 10))
            .require_participant(uuid4())
        )

        with pytest.raises(NotFoundError):
            await storage.commit(batch)

        snapshot = await storage.load_snapshot(plan.id)
        assert snapshot.contributions == []

    @pytest.mark.asyncio
    async def test_create_plan_twice(self, storage, trio):
        plan, a, b, c = trio
        with pytest.raises(DuplicateError):
            await storage.create_plan(plan, a)

    @pytest.mark.asyncio
    async def test_missing_plan(self, storage):
        with pytest.raises(NotFoundError):
            await storage.load_snapshot(uuid4())
        with pytest.raises(NotFoundError):
            await storage.commit(LedgerBatch(uuid4()))

    @pytest.mark.asyncio
    async def test_lookups(self, storage, trio):
        """Test invite code and account lookups."""
        plan, a, b, c = trio
        await storage.save_plan(plan.model_copy(update={"invite_code": "ABC123"}))

        found = await storage.find_plan_by_invite_code("ABC123")
        mine = await storage.list_plans_for_account("acct-a")

        assert found.id == plan.id
        assert [p.id for p in mine] == [plan.id]
        assert await storage.list_plans_for_account("acct-nobody") == []

    @pytest.mark.asyncio
    async def test_delete_plan_removes_everything(self, storage, trio):
        plan, a, b, c = trio
        await seed(storage, plan, make_contribution(plan, a, 10))

        assert await storage.delete_plan(plan.id)

        assert await storage.get_plan(plan.id) is None
        with pytest.raises(NotFoundError):
            await storage.load_snapshot(plan.id)

    @pytest.mark.asyncio
    async def test_subscribers_see_commits(self, storage, trio):
        """Test live notifications and unsubscribing."""
        plan, a, b, c = trio
        seen = []
        unsubscribe = storage.subscribe(plan.id, lambda snapshot: seen.append(snapshot))

        await seed(storage, plan, make_contribution(plan, a, 10))
        unsubscribe()
        await seed(storage, plan, make_contribution(plan, a, 20))

        assert len(seen) == 1
        assert len(seen[0].contributions) == 1

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_fail_the_write(self, storage, trio):
        plan, a, b, c = trio
        received = []

        def broken(snapshot):
            raise RuntimeError("boom")

        async def working(snapshot):
            received.append(snapshot)

        storage.subscribe(plan.id, broken)
        storage.subscribe(plan.id, working)

        await seed(storage, plan, make_contribution(plan, a, 10))

        assert len(received) == 1
        snapshot = await storage.load_snapshot(plan.id)
        assert len(snapshot.contributions) == 1


# =============================================================================
# Google Sheets backend
# =============================================================================

@pytest.fixture
def sheets_client() -> FakeSheetsClient:
    return FakeSheetsClient()


@pytest.fixture
def sheets_storage(sheets_client) -> GoogleSheetsPlanStorage:
    return GoogleSheetsPlanStorage(client=sheets_client)


class TestGoogleSheetsPlanStorage:
    """Tests for GoogleSheetsPlanStorage against an in-memory worksheet fake."""

    @pytest.mark.asyncio
    async def test_rows_round_trip(self, sheets_storage):
        """Test that every field survives the trip through the sheet."""
        plan = _plan()
        a = make_participant(plan, "A", 0, account_id="acct-a", is_owner=True)
        b = make_participant(plan, "B", 1, color="#FF3B30")
        plan = plan.model_copy(update={
            "distribution": DistributionRule.CUSTOM,
            "custom_shares": {a.id: Decimal("70.50"), b.id: Decimal("29.50")},
        })
        entry = make_contribution(plan, a, "12.34").model_copy(update={
            "entry_date": date(2024, 3, 2),
            "category": "food",
            "personal_transaction": PersonalTransactionLink(card_id="card-1", transaction_id="txn-9"),
        })

        await sheets_storage.create_plan(plan, a)
        await sheets_storage.commit(
            LedgerBatch(plan.id).put_participant(b).put_contribution(entry).put_settlement(_record(plan, b, a))
        )
        snapshot = await sheets_storage.load_snapshot(plan.id)

        assert snapshot.plan == plan
        assert snapshot.participants == [a, b]
        assert snapshot.contributions == [entry]
        assert snapshot.settlements[0].amount == Decimal("5")

    @pytest.mark.asyncio
    async def test_guard_failures_are_not_retried(self, sheets_storage, sheets_client):
        """Test that a rejected batch writes nothing and fails fast."""
        plan = _plan()
        a = make_participant(plan, "A", 0, account_id="acct-a", is_owner=True)
        await sheets_storage.create_plan(plan, a)

        with pytest.raises(NotFoundError):
            await sheets_storage.commit(
                LedgerBatch(plan.id).require_participant(uuid4()).put_contribution(make_contribution(plan, a, 1))
            )

        assert sheets_client.contributions.write_calls == 0

    @pytest.mark.asyncio
    async def test_only_touched_sheets_are_written(self, sheets_storage, sheets_client):
        plan = _plan()
        a = make_participant(plan, "A", 0, account_id="acct-a", is_owner=True)
        await sheets_storage.create_plan(plan, a)

        await sheets_storage.commit(LedgerBatch(plan.id).put_contribution(make_contribution(plan, a, 1)))

        assert sheets_client.contributions.write_calls == 1
        assert sheets_client.participants.write_calls == 0
        assert sheets_client.settlements.write_calls == 0

    @pytest.mark.asyncio
    async def test_other_plans_are_left_alone(self, sheets_storage):
        """Test that writing one plan keeps other plans' rows."""
        first, second = _plan(), _plan()
        owner_1 = make_participant(first, "A", 0, account_id="acct-a", is_owner=True)
        owner_2 = make_participant(second, "Z", 0, account_id="acct-z", is_owner=True)
        await sheets_storage.create_plan(first, owner_1)
        await sheets_storage.create_plan(second, owner_2)
        kept = make_contribution(second, owner_2, 7)
        await sheets_storage.commit(LedgerBatch(second.id).put_contribution(kept))

        doomed = make_contribution(first, owner_1, 3)
        await sheets_storage.commit(LedgerBatch(first.id).put_contribution(doomed))
        await sheets_storage.commit(LedgerBatch(first.id).delete_contribution(doomed.id))

        assert (await sheets_storage.load_snapshot(first.id)).contributions == []
        assert (await sheets_storage.load_snapshot(second.id)).contributions == [kept]

    @pytest.mark.asyncio
    async def test_failed_write_is_rolled_back(self, sheets_storage, sheets_client, monkeypatch):
        """Test that a half-written batch is undone."""
        monkeypatch.setattr(GoogleSheetsPlanStorage.commit.retry, "wait", wait_none())
        plan = _plan()
        a = make_participant(plan, "A", 0, account_id="acct-a", is_owner=True)
        b = make_participant(plan, "B", 1, color="#FF3B30")
        await sheets_storage.create_plan(plan, a)
        entry = make_contribution(plan, b, 10)
        await sheets_storage.commit(LedgerBatch(plan.id).put_participant(b).put_contribution(entry))

        sheets_client.participants.fail_writes = True
        batch = (
            LedgerBatch(plan.id)
            .put_contribution(entry.model_copy(update={"payer_id": a.id}))
            .delete_participant(b.id)
        )
        with pytest.raises(StorageError):
            await sheets_storage.commit(batch)
        sheets_client.participants.fail_writes = False

        snapshot = await sheets_storage.load_snapshot(plan.id)
        assert snapshot.participant(b.id) is not None
        assert snapshot.contributions_of(b.id) == [entry]

    @pytest.mark.asyncio
    async def test_rows_written_by_another_device_survive(self, sheets_client):
        """Test that a commit never drops rows it didn't read."""
        first_device = GoogleSheetsPlanStorage(client=sheets_client)
        second_device = GoogleSheetsPlanStorage(client=sheets_client)
        first, second = _plan(), _plan()
        owner_1 = make_participant(first, "A", 0, account_id="acct-a", is_owner=True)
        owner_2 = make_participant(second, "Z", 0, account_id="acct-z", is_owner=True)
        await first_device.create_plan(first, owner_1)
        await second_device.create_plan(second, owner_2)

        other_entry = make_contribution(second, owner_2, 7)
        sheets_client.contributions.before_write = lambda: sheets_client.contributions.rows.append(
            second_device._contribution_to_row(other_entry)
        )
        mine = make_contribution(first, owner_1, 3)
        await first_device.commit(LedgerBatch(first.id).put_contribution(mine))

        assert (await second_device.load_snapshot(second.id)).contributions == [other_entry]
        assert (await first_device.load_snapshot(first.id)).contributions == [mine]

    @pytest.mark.asyncio
    async def test_write_to_the_same_plan_meanwhile_is_retried(self, sheets_storage, sheets_client, monkeypatch):
        """Test that a changed revision makes the commit re-read and write again."""
        monkeypatch.setattr(GoogleSheetsPlanStorage.commit.retry, "wait", wait_none())
        plan = _plan()
        a = make_participant(plan, "A", 0, account_id="acct-a", is_owner=True)
        await sheets_storage.create_plan(plan, a)
        other_entry = make_contribution(plan, a, 5, minutes=1)
        applied = []

        def apply_while_another_device_writes(batch, *state):
            if not applied:
                sheets_client.contributions.rows.append(sheets_storage._contribution_to_row(other_entry))
                sheets_client.plans.update_cell(2, REVISION_COLUMN, "another-device")
            applied.append(batch)
            return apply_batch(batch, *state)

        monkeypatch.setattr(
            "plan_ledger.services.storage.google_sheets.apply_batch",
            apply_while_another_device_writes,
        )
        mine = make_contribution(plan, a, 3)
        await sheets_storage.commit(LedgerBatch(plan.id).put_contribution(mine))

        assert len(applied) == 2
        snapshot = await sheets_storage.load_snapshot(plan.id)
        assert snapshot.contributions == [mine, other_entry]

    @pytest.mark.asyncio
    async def test_removal_sees_entries_added_by_another_device(self, sheets_storage, sheets_client, monkeypatch):
        monkeypatch.setattr(GoogleSheetsPlanStorage.commit.retry, "wait", wait_none())
        plan = _plan()
        a = make_participant(plan, "A", 0, account_id="acct-a", is_owner=True)
        b = make_participant(plan, "B", 1, color="#FF3B30")
        await sheets_storage.create_plan(plan, a)
        await sheets_storage.commit(LedgerBatch(plan.id).put_participant(b))
        late = make_contribution(plan, b, 4)

        def apply_while_another_device_writes(batch, *state):
            if not sheets_client.contributions.rows[1:]:
                sheets_client.contributions.rows.append(sheets_storage._contribution_to_row(late))
                sheets_client.plans.update_cell(2, REVISION_COLUMN, "another-device")
            return apply_batch(batch, *state)

        monkeypatch.setattr(
            "plan_ledger.services.storage.google_sheets.apply_batch",
            apply_while_another_device_writes,
        )
        batch = (
            LedgerBatch(plan.id)
            .require_participant(b.id)
            .expect_contributions(b.id, set())
            .delete_participant(b.id)
        )
        with pytest.raises(ConcurrentModificationError):
            await sheets_storage.commit(batch)

        snapshot = await sheets_storage.load_snapshot(plan.id)
        assert snapshot.participant(b.id) is not None
        assert snapshot.contributions_of(b.id) == [late]

    @pytest.mark.asyncio
    async def test_delete_plan_cascades(self, sheets_storage):
        plan = _plan()
        a = make_participant(plan, "A", 0, account_id="acct-a", is_owner=True)
        await sheets_storage.create_plan(plan, a)
        await sheets_storage.commit(LedgerBatch(plan.id).put_contribution(make_contribution(plan, a, 1)))

        assert await sheets_storage.delete_plan(plan.id)

        assert await sheets_storage.get_plan(plan.id) is None
        assert await sheets_storage.list_plans_for_account("acct-a") == []

    @pytest.mark.asyncio
    async def test_invite_code_lookup(self, sheets_storage):
        plan = _plan()
        a = make_participant(plan, "A", 0, account_id="acct-a", is_owner=True)
        await sheets_storage.create_plan(plan, a)
        await sheets_storage.save_plan(plan.model_copy(update={"invite_code": "QWE789"}))

        found = await sheets_storage.find_plan_by_invite_code("QWE789")

        assert found.id == plan.id


class TestGoogleSheetsAuditStorage:
    """Tests for GoogleSheetsAuditStorage."""

    @pytest.mark.asyncio
    async def test_append_and_read(self, sheets_client):
        audit = GoogleSheetsAuditStorage(client=sheets_client)
        plan_id = uuid4()
        event = AuditEventBuilder.contribution_recorded(
            plan_id=plan_id,
            contribution_id=uuid4(),
            payer_id=uuid4(),
            amount=Decimal("12.50"),
            actor_id="acct-a",
        )

        assert await audit.append_event(event)
        events = await audit.get_events_for_plan(plan_id)

        assert [e.event_id for e in events] == [event.event_id]
        assert events[0].actor_id == "acct-a"
        assert events[0].is_user_action == event.is_user_action
