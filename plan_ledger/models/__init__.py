"""
Data Models Package

This package contains all Pydantic models used by the plan ledger.
All data flowing through the system must conform to these schemas.
"""

from plan_ledger.models.plan import (
    BalanceSheet,
    Contribution,
    ContributionPreview,
    DistributionRule,
    NetPosition,
    Participant,
    PersonalTransactionLink,
    Plan,
    PlanOverview,
    PlanSnapshot,
    RankingEntry,
    RemovalStrategy,
    SettlementProposal,
    SettlementRecord,
    SettlementStatus,
)
from plan_ledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from plan_ledger.models.health import (
    ValidationIssue,
    ValidationResult,
)

__all__ = [
    # Plan models
    "BalanceSheet",
    "Contribution",
    "ContributionPreview",
    "DistributionRule",
    "NetPosition",
    "Participant",
    "PersonalTransactionLink",
    "Plan",
    "PlanOverview",
    "PlanSnapshot",
    "RankingEntry",
    "RemovalStrategy",
    "SettlementProposal",
    "SettlementRecord",
    "SettlementStatus",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
    # Health check models
    "ValidationIssue",
    "ValidationResult",
]
