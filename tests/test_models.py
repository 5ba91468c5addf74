"""
Tests for Plan Ledger models

Test strategy:
1. Unit tests for individual components (models, calculators, registry)
2. Integration tests for flows (in-memory storage, fake external services)
3. No real API calls in tests (use fakes)
"""

import pytest
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from plan_ledger.models.plan import (
    BalanceSheet,
    Contribution,
    DistributionRule,
    NetPosition,
    Participant,
    Plan,
    PlanSnapshot,
    SettlementProposal,
    SettlementRecord,
)
from plan_ledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from plan_ledger.models.health import ValidationIssue, ValidationResult


class TestPlanModels:
    """Tests for plan-related Pydantic models."""

    def test_plan_defaults(self):
        """Test Plan model creation with defaults."""
        plan = Plan(title="Holiday", owner_id="acct-1")
        assert plan.distribution == DistributionRule.EQUITABLE
        assert plan.custom_shares == {}
        assert plan.invite_code is None

    def test_plan_strips_whitespace(self):
        """Test that whitespace is stripped from the title."""
        plan = Plan(title="  Holiday  ", owner_id="acct-1")
        assert plan.title == "Holiday"

    def test_plan_rejects_empty_title(self):
        """Test that an empty title is rejected."""
        with pytest.raises(ValueError):
            Plan(title="   ", owner_id="acct-1")

    def test_participant_color_is_normalized(self):
        """Test that colors are stored upper-case."""
        participant = Participant(plan_id=uuid4(), name="Ana", color="#ff9500")
        assert participant.color == "#FF9500"
        assert participant.is_placeholder

    def test_participant_rejects_bad_color(self):
        """Test that a non-hex color is rejected."""
        with pytest.raises(ValueError):
            Participant(plan_id=uuid4(), name="Ana", color="orange")

    def test_contribution_allows_negative_amount(self):
        """Test that entries are signed."""
        contribution = Contribution(
            plan_id=uuid4(),
            payer_id=uuid4(),
            description="Refund",
            amount=Decimal("-12.50"),
        )
        assert contribution.amount == Decimal("-12.50")


class TestSettlementModels:
    """Tests for settlement proposals and records."""

    def test_proposal_requires_positive_amount(self):
        """Test that zero or negative transfers are rejected."""
        with pytest.raises(ValueError):
            SettlementProposal(
                from_participant_id=uuid4(),
                to_participant_id=uuid4(),
                amount=Decimal("0"),
            )

    def test_proposal_rejects_self_transfer(self):
        """Test that a participant can't pay themself."""
        pid = uuid4()
        with pytest.raises(ValueError):
            SettlementProposal(
                from_participant_id=pid,
                to_participant_id=pid,
                amount=Decimal("10"),
            )

    def test_idempotency_key_ignores_trailing_zeros(self):
        """Test that 40 and 40.00 produce the same key."""
        a, b = uuid4(), uuid4()
        first = SettlementProposal(from_participant_id=a, to_participant_id=b, amount=Decimal("40"), basis="x")
        second = SettlementProposal(from_participant_id=a, to_participant_id=b, amount=Decimal("40.00"), basis="x")
        assert first.idempotency_key == second.idempotency_key

    def test_idempotency_key_depends_on_basis(self):
        """Test that the same transfer from another ledger state is a new key."""
        a, b = uuid4(), uuid4()
        first = SettlementProposal(from_participant_id=a, to_participant_id=b, amount=Decimal("40"), basis="x")
        second = SettlementProposal(from_participant_id=a, to_participant_id=b, amount=Decimal("40"), basis="y")
        assert first.idempotency_key != second.idempotency_key

    def test_rounded_amount(self):
        """Test display rounding."""
        proposal = SettlementProposal(
            from_participant_id=uuid4(),
            to_participant_id=uuid4(),
            amount=Decimal("13.3333333"),
        )
        assert proposal.rounded_amount == Decimal("13.33")

    def test_record_rejects_self_transfer(self):
        """Test SettlementRecord party validation."""
        pid = uuid4()
        with pytest.raises(ValueError):
            SettlementRecord(
                plan_id=uuid4(),
                from_participant_id=pid,
                to_participant_id=pid,
                amount=Decimal("5"),
                idempotency_key="k",
                confirmed_by="acct-1",
            )


class TestReadModels:
    """Tests for balance sheets and snapshots."""

    def test_balance_sheet_helpers(self):
        """Test net_by_participant, position_for and net_sum."""
        a, b = uuid4(), uuid4()
        sheet = BalanceSheet(
            plan_id=uuid4(),
            distribution=DistributionRule.EQUITABLE,
            total=Decimal("100"),
            positions=[
                NetPosition(participant_id=a, name="A", paid=Decimal("100"), fair_share=Decimal("50"), net=Decimal("50")),
                NetPosition(participant_id=b, name="B", paid=Decimal("0"), fair_share=Decimal("50"), net=Decimal("-50")),
            ],
        )
        assert sheet.net_by_participant() == {a: Decimal("50"), b: Decimal("-50")}
        assert sheet.position_for(b).paid == Decimal("0")
        assert sheet.position_for(uuid4()) is None
        assert sheet.net_sum == Decimal("0")

    def test_snapshot_orders_account_rows_by_creation(self):
        """Test that the earliest row of an account comes first."""
        plan = Plan(title="Flat", owner_id="acct-1")
        later = Participant(
            plan_id=plan.id, name="Me", account_id="acct-1", color="#000000",
            created_at=datetime(2024, 1, 2),
        )
        earlier = Participant(
            plan_id=plan.id, name="Me", account_id="acct-1", color="#111111",
            created_at=datetime(2024, 1, 1),
        )
        snapshot = PlanSnapshot(plan=plan, participants=[later, earlier])
        assert snapshot.participants_for_account("acct-1") == [earlier, later]
        assert snapshot.participants_for_account("acct-2") == []


class TestAuditModels:
    """Tests for audit-related models."""

    def test_audit_event_creation(self):
        """Test AuditEvent model creation."""
        event = AuditEvent(
            event_type=AuditEventType.PLAN_CREATED,
            description="Plan created",
        )
        assert event.event_id is not None
        assert event.severity == AuditSeverity.INFO

    def test_audit_event_to_log_dict(self):
        """Test conversion to structured log dict."""
        plan_id = uuid4()
        event = AuditEventBuilder.plan_created(plan_id, "Trip", "acct-1")
        log_dict = event.to_log_dict()
        assert log_dict["event_type"] == "plan_created"
        assert log_dict["plan_id"] == str(plan_id)
        assert log_dict["actor_id"] == "acct-1"

    def test_audit_event_to_sheets_row(self):
        """Test conversion to a Google Sheets row."""
        event = AuditEventBuilder.contribution_recorded(
            plan_id=uuid4(),
            contribution_id=uuid4(),
            payer_id=uuid4(),
            amount=Decimal("12.50"),
        )
        row = event.to_sheets_row()
        assert len(row) == 13
        assert row[2] == "contribution_recorded"
        assert row[-1] == "True"

    def test_audit_event_builder_removal_failed(self):
        """Test AuditEventBuilder.removal_failed."""
        event = AuditEventBuilder.removal_failed(uuid4(), uuid4(), "ledger changed")
        assert event.event_type == AuditEventType.REMOVAL_FAILED
        assert event.severity == AuditSeverity.ERROR
        assert event.error_message == "ledger changed"

    def test_invite_event_does_not_leak_code(self):
        """Test that the invite event carries no code."""
        event = AuditEventBuilder.invite_issued(uuid4(), "acct-1")
        assert event.details == {}


class TestValidationResult:
    """Tests for health check result models."""

    def test_validation_result_has_errors(self):
        """Test has_errors property."""
        result = ValidationResult(
            plan_id=uuid4(),
            is_valid=False,
            issues=[
                ValidationIssue(
                    field="balances",
                    issue_type="invariant_violation",
                    message="off",
                    severity="error",
                ),
            ],
        )
        assert result.has_errors
        assert result.error_count == 1

    def test_validation_result_warnings_only(self):
        """Test result with only warnings."""
        result = ValidationResult(
            plan_id=uuid4(),
            is_valid=True,
            issues=[
                ValidationIssue(
                    field="participants",
                    issue_type="duplicate_member",
                    message="twice",
                    severity="warning",
                ),
            ],
        )
        assert not result.has_errors
        assert result.error_count == 0

    def test_validation_issue_rejects_unknown_severity(self):
        """Test the severity pattern."""
        with pytest.raises(ValueError):
            ValidationIssue(field="x", issue_type="y", message="z", severity="fatal")
