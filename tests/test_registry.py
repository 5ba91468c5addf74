"""Tests for the participant registry."""

import asyncio

import pytest

from plan_ledger.errors import ValidationError
from plan_ledger.ledger.registry import ParticipantRegistry, assign_color
from plan_ledger.models.plan import Plan, RemovalStrategy
from plan_ledger.services.storage import InMemoryPlanStorage, LedgerBatch, NotFoundError

from conftest import make_contribution, make_participant, seed


PALETTE = ["#007AFF", "#FF3B30", "#34C759"]


class YieldingStorage(InMemoryPlanStorage):
    """Suspends before every read and write, like a networked store would."""

    async def load_snapshot(self, plan_id):
        await asyncio.sleep(0)
        return await super().load_snapshot(plan_id)

    async def commit(self, batch):
        await asyncio.sleep(0)
        await super().commit(batch)


@pytest.fixture
def registry(storage, audit_logger, settings) -> ParticipantRegistry:
    return ParticipantRegistry(storage, audit_logger, settings)


class TestColorAssignment:
    """Tests for the palette algorithm."""

    def test_first_unused_color(self):
        """Test that free palette colors are used in order."""
        plan = Plan(title="Trip", owner_id="acct-a")
        taken = [make_participant(plan, "A", 0, color="#007AFF")]
        assert assign_color(taken, PALETTE) == "#FF3B30"

    def test_gap_in_palette_is_filled_first(self):
        """Test that a freed color is reused before wrapping around."""
        plan = Plan(title="Trip", owner_id="acct-a")
        taken = [
            make_participant(plan, "A", 0, color="#007AFF"),
            make_participant(plan, "C", 2, color="#34C759"),
        ]
        assert assign_color(taken, PALETTE) == "#FF3B30"

    def test_exhausted_palette_reuses_least_recently_assigned(self):
        """Test the fallback once every color is taken."""
        plan = Plan(title="Trip", owner_id="acct-a")
        taken = [
            make_participant(plan, "A", 5, color="#007AFF"),
            make_participant(plan, "B", 1, color="#FF3B30"),
            make_participant(plan, "C", 3, color="#34C759"),
            make_participant(plan, "D", 9, color="#FF3B30"),
        ]
        # #FF3B30 was last handed out at minute 9, #34C759 at 3, #007AFF at 5
        assert assign_color(taken, PALETTE) == "#34C759"


class TestAddParticipant:
    """Tests for add_participant."""

    @pytest.mark.asyncio
    async def test_adds_with_next_free_color(self, registry, storage, trio):
        """Test that a new participant gets the next free palette color."""
        plan, *_ = trio

        participant = await registry.add_participant(plan, "Dana")

        assert participant.color == "#FF9500"
        snapshot = await storage.load_snapshot(plan.id)
        assert snapshot.participant(participant.id) is not None

    @pytest.mark.asyncio
    async def test_requested_color_collision(self, registry, trio):
        """Test the actionable color error."""
        plan, *_ = trio

        with pytest.raises(ValidationError) as exc_info:
            await registry.add_participant(plan, "Dana", requested_color="#ff3b30")

        assert exc_info.value.suggested_fix == "choose a different color"

    @pytest.mark.asyncio
    async def test_requested_color_is_used(self, registry, trio):
        """Test that a free requested color is honoured."""
        plan, *_ = trio
        participant = await registry.add_participant(plan, "Dana", requested_color="#abcdef")
        assert participant.color == "#ABCDEF"

    @pytest.mark.asyncio
    async def test_empty_name(self, registry, trio):
        """Test that names are required."""
        plan, *_ = trio
        with pytest.raises(ValidationError):
            await registry.add_participant(plan, "   ")

    @pytest.mark.asyncio
    async def test_duplicate_account(self, registry, trio):
        """Test that an account can only join once."""
        plan, *_ = trio
        with pytest.raises(ValidationError) as exc_info:
            await registry.add_participant(plan, "A again", account_id="acct-a")
        assert exc_info.value.field == "account_id"

    @pytest.mark.asyncio
    async def test_missing_plan(self, registry):
        """Test that a deleted plan is a soft NotFoundError."""
        with pytest.raises(NotFoundError):
            await registry.add_participant(Plan(title="Gone", owner_id="x"), "Dana")


class TestSelfMembership:
    """Tests for ensure_self_participant and deduplicate_self."""

    @pytest.mark.asyncio
    async def test_creates_once(self, registry, storage, trio):
        """Test idempotency."""
        plan, *_ = trio

        first = await registry.ensure_self_participant(plan, "acct-z", "Zoe")
        second = await registry.ensure_self_participant(plan, "acct-z", "Zoe")

        assert first.id == second.id
        assert not first.is_owner
        snapshot = await storage.load_snapshot(plan.id)
        assert len(snapshot.participants_for_account("acct-z")) == 1

    @pytest.mark.asyncio
    async def test_owner_gets_owner_rights(self, registry, storage):
        """Test that the owner's own row is flagged as owner."""
        plan = Plan(title="Solo", owner_id="acct-o")
        placeholder = make_participant(plan, "Placeholder", 0, color="#000000")
        await storage.create_plan(plan, placeholder)

        me = await registry.ensure_self_participant(plan, "acct-o", "Olga")

        assert me.is_owner

    @pytest.mark.asyncio
    async def test_duplicates_collapse_into_earliest(self, registry, storage, trio):
        """Test that concurrent joins end up as one row with all entries."""
        plan, a, b, c = trio
        early = make_participant(plan, "Zoe", 10, account_id="acct-z", color="#AF52DE")
        late = make_participant(plan, "Zoe", 11, account_id="acct-z", color="#FF2D55")
        late_entry = make_contribution(plan, late, 25)
        await seed(storage, plan, early, late, late_entry)

        kept = await registry.ensure_self_participant(plan, "acct-z", "Zoe")

        assert kept.id == early.id
        snapshot = await storage.load_snapshot(plan.id)
        assert snapshot.participants_for_account("acct-z") == [kept]
        assert [c.id for c in snapshot.contributions_of(early.id)] == [late_entry.id]

    @pytest.mark.asyncio
    async def test_concurrent_self_joins_collapse_to_one_row(self, audit_logger, settings, trio_factory):
        """Test that two sessions joining at once both get the same single row."""
        storage = YieldingStorage()
        plan, *_ = await trio_factory(storage)
        registry = ParticipantRegistry(storage, audit_logger, settings)

        first, second = await asyncio.gather(
            registry.ensure_self_participant(plan, "acct-z", "Zoe"),
            registry.ensure_self_participant(plan, "acct-z", "Zoe"),
        )

        assert first.id == second.id
        snapshot = await storage.load_snapshot(plan.id)
        assert [p.id for p in snapshot.participants_for_account("acct-z")] == [first.id]

    @pytest.mark.asyncio
    async def test_deduplicate_without_membership(self, registry, trio):
        """Test that a non-member has nothing to de-duplicate."""
        plan, *_ = trio
        assert await registry.deduplicate_self(plan, "acct-nobody") is None


class TestRemoveParticipant:
    """Tests for remove_participant."""

    @pytest.mark.asyncio
    async def test_owner_cannot_be_removed(self, registry, trio):
        """Test owner protection."""
        plan, a, b, c = trio
        with pytest.raises(ValidationError):
            await registry.remove_participant(plan, a)

    @pytest.mark.asyncio
    async def test_without_entries_is_immediate(self, registry, storage, trio):
        """Test that an empty-ledger participant is deleted right away."""
        plan, a, b, c = trio

        await registry.remove_participant(plan, b)

        snapshot = await storage.load_snapshot(plan.id)
        assert snapshot.participant(b.id) is None

    @pytest.mark.asyncio
    async def test_with_entries_needs_a_strategy(self, registry, storage, trio):
        """Test that entries block a strategy-less removal."""
        plan, a, b, c = trio
        await seed(storage, plan, make_contribution(plan, b, 10))

        with pytest.raises(ValidationError) as exc_info:
            await registry.remove_participant(plan, b)

        assert exc_info.value.field == "strategy"
        snapshot = await storage.load_snapshot(plan.id)
        assert snapshot.participant(b.id) is not None

    @pytest.mark.asyncio
    async def test_delegates_delete_all(self, registry, storage, trio):
        """Test that the delete-all strategy reaches the coordinator."""
        plan, a, b, c = trio
        await seed(storage, plan, make_contribution(plan, b, 10))

        await registry.remove_participant(plan, b, strategy=RemovalStrategy.DELETE_ALL)

        snapshot = await storage.load_snapshot(plan.id)
        assert snapshot.participant(b.id) is None
        assert snapshot.contributions == []

    @pytest.mark.asyncio
    async def test_transfer_requires_target(self, registry, storage, trio):
        """Test that a transfer needs a receiver."""
        plan, a, b, c = trio
        await seed(storage, plan, make_contribution(plan, b, 10))

        with pytest.raises(ValidationError):
            await registry.remove_participant(plan, b, strategy=RemovalStrategy.TRANSFER)

    @pytest.mark.asyncio
    async def test_already_removed(self, registry, storage, trio):
        """Test that a second removal is a soft NotFoundError."""
        plan, a, b, c = trio
        await storage.commit(LedgerBatch(plan.id).delete_participant(b.id))

        with pytest.raises(NotFoundError):
            await registry.remove_participant(plan, b)
