"""
Plan Health Check

DESIGN DECISION: The health check runs in two distinct stages:

STAGE 1 - MEMBERSHIP CHECKS:
- Exactly one owner, who is a participant
- No account with two participant rows
- No two participants sharing a color
- No entries or settlements pointing at missing participants

STAGE 2 - LEDGER CHECKS:
- Net positions sum to zero
- Custom shares add up to the pool total
- Zero or absurdly large entries

IMPORTANT: The health check NEVER fixes anything.
It reports issues for a participant to review.
"""

from collections import Counter
from decimal import Decimal
from typing import Optional
from uuid import UUID

from plan_ledger.config import LedgerSettings, get_settings
from plan_ledger.errors import InvariantViolation
from plan_ledger.ledger.balances import calculate_balances
from plan_ledger.models.health import ValidationIssue, ValidationResult
from plan_ledger.models.plan import BalanceSheet, DistributionRule, PlanSnapshot
from plan_ledger.services.storage import PlanStorageInterface


class PlanHealthChecker:
    """
    Reports problems in a plan's membership and ledger.

    Stage 1 works on the snapshot alone; stage 2 runs the balance
    calculation.
    """

    def __init__(
        self,
        storage: Optional[PlanStorageInterface] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        """
        Initialize the checker.

        Args:
            storage: Plan storage for check_plan(). Not needed when
                     snapshots are passed in directly.
        """
        self._storage = storage
        self._settings = settings or get_settings().ledger

    def _check_membership(self, snapshot: PlanSnapshot) -> list[ValidationIssue]:
        """
        Stage 1: membership checks.

        Returns: list of issues
        """
        issues = []
        plan = snapshot.plan
        participants = snapshot.participants

        owners = [p for p in participants if p.is_owner]
        owner_rows = snapshot.participants_for_account(plan.owner_id)
        if not owner_rows:
            issues.append(ValidationIssue(
                field="participants",
                issue_type="missing_owner",
                message="The plan owner is not a participant",
                severity="error",
                suggested_fix="Open the plan as its owner to restore the membership",
            ))
        if len(owners) > 1:
            issues.append(ValidationIssue(
                field="participants",
                issue_type="multiple_owners",
                message=f"{len(owners)} participants are marked as owner",
                severity="error",
            ))

        accounts = Counter(p.account_id for p in participants if p.account_id)
        for account_id, count in accounts.items():
            if count > 1:
                kept = snapshot.participants_for_account(account_id)[0]
                issues.append(ValidationIssue(
                    field="participants",
                    issue_type="duplicate_member",
                    message=f"{kept.name} is a participant {count} times",
                    severity="warning",
                    suggested_fix="Reopening the plan merges the duplicates",
                    entity_id=kept.id,
                ))

        colors = Counter(p.color for p in participants)
        for color, count in colors.items():
            if count > 1:
                issues.append(ValidationIssue(
                    field="participants",
                    issue_type="color_collision",
                    message=f"{count} participants share the color {color}",
                    severity="info",
                    suggested_fix="choose a different color",
                ))

        known = {p.id for p in participants}
        for contribution in snapshot.contributions:
            if contribution.payer_id not in known:
                issues.append(ValidationIssue(
                    field="contributions",
                    issue_type="orphaned_entry",
                    message=f"Entry '{contribution.description}' belongs to a removed participant",
                    severity="error",
                    suggested_fix="Delete the entry or record it again for a current participant",
                    entity_id=contribution.id,
                ))
        for record in snapshot.settlements:
            if record.from_participant_id not in known or record.to_participant_id not in known:
                issues.append(ValidationIssue(
                    field="settlements",
                    issue_type="orphaned_settlement",
                    message="A confirmed settlement involves a removed participant",
                    severity="warning",
                    entity_id=record.id,
                ))

        return issues

    def _check_ledger(self, snapshot: PlanSnapshot) -> tuple[Optional[BalanceSheet], list[ValidationIssue]]:
        """
        Stage 2: ledger checks.

        Returns: (balance sheet or None, list_of_issues)
        """
        issues = []

        try:
            sheet = calculate_balances(
                snapshot.plan,
                snapshot.participants,
                snapshot.contributions,
                snapshot.settlements,
                self._settings.balance_tolerance,
            )
        except InvariantViolation as e:
            sheet = e.balance_sheet
            issues.append(ValidationIssue(
                field="balances",
                issue_type="invariant_violation",
                message=f"Balances don't add up to zero (off by {e.discrepancy})",
                severity="error",
                suggested_fix="Review the most recent entries",
            ))

        plan = snapshot.plan
        if plan.distribution == DistributionRule.CUSTOM:
            share_sum = sum(
                (plan.custom_shares.get(p.id, Decimal("0")) for p in snapshot.participants),
                Decimal("0"),
            )
            if abs(share_sum - sheet.total) > self._settings.balance_tolerance:
                issues.append(ValidationIssue(
                    field="custom_shares",
                    issue_type="share_mismatch",
                    message=f"Custom shares add up to {share_sum}, but the pool holds {sheet.total}",
                    severity="warning",
                    suggested_fix="Adjust the shares so they match the total",
                ))

        limit = self._settings.max_contribution_amount
        for contribution in snapshot.contributions:
            if abs(contribution.amount) > limit:
                issues.append(ValidationIssue(
                    field="contributions",
                    issue_type="absurd_amount",
                    message=f"Entry '{contribution.description}' is unusually large ({contribution.amount})",
                    severity="warning",
                    suggested_fix="Check the amount for a typo",
                    entity_id=contribution.id,
                ))
            elif contribution.amount == 0:
                issues.append(ValidationIssue(
                    field="contributions",
                    issue_type="zero_amount",
                    message=f"Entry '{contribution.description}' has no amount",
                    severity="info",
                    entity_id=contribution.id,
                ))

        return sheet, issues

    def check(self, snapshot: PlanSnapshot) -> ValidationResult:
        """
        Run both stages against one snapshot.

        Args:
            snapshot: A consistent read of the plan

        Returns:
            ValidationResult with all issues found
        """
        all_issues = self._check_membership(snapshot)
        sheet, ledger_issues = self._check_ledger(snapshot)
        all_issues.extend(ledger_issues)

        warnings = [issue.message for issue in all_issues if issue.severity == "warning"]
        has_errors = any(issue.severity == "error" for issue in all_issues)

        return ValidationResult(
            plan_id=snapshot.plan.id,
            is_valid=not has_errors,
            needs_reconciliation=has_errors or bool(sheet and sheet.needs_attention),
            issues=all_issues,
            warnings=warnings,
        )

    async def check_plan(self, plan_id: UUID) -> ValidationResult:
        """Load a plan and check it."""
        if self._storage is None:
            raise RuntimeError("PlanHealthChecker needs storage to load plans")
        snapshot = await self._storage.load_snapshot(plan_id)
        return self.check(snapshot)

    def get_user_friendly_summary(
        self,
        result: ValidationResult,
    ) -> str:
        """
        Generate a user-friendly summary of the health check.

        This is what we show to participants.
        """
        if result.is_valid and not result.warnings:
            return "✅ Everything adds up."

        lines = []

        if result.has_errors:
            lines.append("❌ This plan needs reconciliation:")
            for issue in result.issues:
                if issue.severity == "error":
                    lines.append(f"   • {issue.message}")
                    if issue.suggested_fix:
                        lines.append(f"     💡 {issue.suggested_fix}")

        if result.warnings:
            lines.append("")
            lines.append("⚠️ Please double-check:")
            for warning in result.warnings:
                lines.append(f"   • {warning}")

        return "\n".join(lines).strip()
