"""
Plan Health Check Models

A health check never fixes anything. It reports what a reviewer should
look at before trusting the plan's balances.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class ValidationIssue(BaseModel):
    """A single problem found in a plan."""

    field: str = Field(
        ...,
        description="Area of the plan with the issue (e.g. 'balances', 'participants')"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'invariant_violation', 'duplicate_member')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        ...,
        pattern="^(error|warning|info)$",
        description="Issue severity"
    )
    suggested_fix: Optional[str] = Field(
        default=None,
        description="Suggested fix if available"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="Participant or contribution the issue is about"
    )


class ValidationResult(BaseModel):
    """
    Result of a plan health check.

    `needs_reconciliation` is what the UI keys its warning banner on.
    """

    plan_id: UUID
    checked_at: datetime = Field(
        default_factory=datetime.utcnow
    )
    is_valid: bool = Field(
        ...,
        description="No error-level issues were found"
    )
    needs_reconciliation: bool = Field(
        default=False,
        description="Balances should be reviewed before settling"
    )
    issues: list[ValidationIssue] = Field(
        default_factory=list,
        description="All issues found"
    )
    warnings: list[str] = Field(
        default_factory=list,
        description="Non-blocking warnings"
    )

    @property
    def has_errors(self) -> bool:
        """Check if there are any error-level issues."""
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def error_count(self) -> int:
        """Count error-level issues."""
        return sum(1 for issue in self.issues if issue.severity == "error")
