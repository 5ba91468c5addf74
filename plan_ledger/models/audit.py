"""
Audit Models for Plan Ledger

Every significant action on a shared plan is logged for audit purposes.
This provides:
1. Complete traceability of who changed the ledger and how
2. Debugging information when balances look wrong
3. Accountability between participants
4. Ability to reconstruct history

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every mutation of a plan has its own event type.
    """
    # Plan lifecycle
    PLAN_CREATED = "plan_created"
    PLAN_UPDATED = "plan_updated"
    PLAN_DELETED = "plan_deleted"
    INVITE_ISSUED = "invite_issued"

    # Participants
    PARTICIPANT_ADDED = "participant_added"
    PARTICIPANT_JOINED = "participant_joined"
    DUPLICATE_PARTICIPANT_REMOVED = "duplicate_participant_removed"
    PARTICIPANT_REMOVED = "participant_removed"
    REMOVAL_FAILED = "removal_failed"

    # Ledger
    CONTRIBUTION_RECORDED = "contribution_recorded"
    CONTRIBUTION_DELETED = "contribution_deleted"
    CONTRIBUTIONS_TRANSFERRED = "contributions_transferred"

    # Settlement
    SETTLEMENT_CONFIRMED = "settlement_confirmed"
    SETTLEMENT_MIRROR_FAILED = "settlement_mirror_failed"

    # Balances
    BALANCE_INVARIANT_VIOLATED = "balance_invariant_violated"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'plan', 'participant', 'contribution')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )
    plan_id: Optional[UUID] = Field(
        default=None,
        description="Plan the entity belongs to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events of one removal)"
    )

    # Event details
    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    # Additional data (event-specific)
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    # Who did it
    actor_id: Optional[str] = Field(
        default=None,
        description="Account ID that triggered the event"
    )
    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "plan_id": str(self.plan_id) if self.plan_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "actor_id": self.actor_id,
            "is_user_action": self.is_user_action,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         plan_id, correlation_id, description, details_json, error_message,
         actor_id, is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            str(self.entity_id) if self.entity_id else "",
            str(self.plan_id) if self.plan_id else "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
            self.actor_id or "",
            str(self.is_user_action),
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.plan_created(plan_id, title, owner_id)
        event = AuditEventBuilder.settlement_confirmed(...)
    """

    @staticmethod
    def plan_created(
        plan_id: UUID,
        title: str,
        owner_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PLAN_CREATED,
            entity_type="plan",
            entity_id=plan_id,
            plan_id=plan_id,
            correlation_id=correlation_id,
            description=f"Plan created: {title}",
            details={"title": title},
            actor_id=owner_id,
            is_user_action=True,
        )

    @staticmethod
    def plan_updated(
        plan_id: UUID,
        changes: dict[str, Any],
        actor_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PLAN_UPDATED,
            entity_type="plan",
            entity_id=plan_id,
            plan_id=plan_id,
            correlation_id=correlation_id,
            description=f"Plan updated: {', '.join(sorted(changes))}",
            details={"changes": changes},
            actor_id=actor_id,
            is_user_action=True,
        )

    @staticmethod
    def plan_deleted(
        plan_id: UUID,
        actor_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PLAN_DELETED,
            severity=AuditSeverity.WARNING,
            entity_type="plan",
            entity_id=plan_id,
            plan_id=plan_id,
            correlation_id=correlation_id,
            description="Plan deleted with all participants and entries",
            actor_id=actor_id,
            is_user_action=True,
        )

    @staticmethod
    def invite_issued(
        plan_id: UUID,
        actor_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        # The code itself is a bearer secret, keep it out of the log
        return AuditEvent(
            event_type=AuditEventType.INVITE_ISSUED,
            entity_type="plan",
            entity_id=plan_id,
            plan_id=plan_id,
            correlation_id=correlation_id,
            description="Invite code issued",
            actor_id=actor_id,
            is_user_action=True,
        )

    @staticmethod
    def participant_added(
        plan_id: UUID,
        participant_id: UUID,
        name: str,
        color: str,
        account_backed: bool,
        correlation_id: Optional[UUID] = None,
        joined: bool = False,
    ) -> AuditEvent:
        event_type = (
            AuditEventType.PARTICIPANT_JOINED
            if joined
            else AuditEventType.PARTICIPANT_ADDED
        )
        return AuditEvent(
            event_type=event_type,
            entity_type="participant",
            entity_id=participant_id,
            plan_id=plan_id,
            correlation_id=correlation_id,
            description=f"Participant {'joined' if joined else 'added'}: {name}",
            details={
                "color": color,
                "account_backed": account_backed,
            },
            is_user_action=True,
        )

    @staticmethod
    def duplicate_participant_removed(
        plan_id: UUID,
        kept_id: UUID,
        removed_ids: list[UUID],
        account_id: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DUPLICATE_PARTICIPANT_REMOVED,
            severity=AuditSeverity.WARNING,
            entity_type="participant",
            entity_id=kept_id,
            plan_id=plan_id,
            description=f"Removed {len(removed_ids)} duplicate membership row(s)",
            details={"removed_ids": [str(i) for i in removed_ids]},
            actor_id=account_id,
        )

    @staticmethod
    def participant_removed(
        plan_id: UUID,
        participant_id: UUID,
        strategy: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PARTICIPANT_REMOVED,
            entity_type="participant",
            entity_id=participant_id,
            plan_id=plan_id,
            correlation_id=correlation_id,
            description=f"Participant removed ({strategy})",
            details={"strategy": strategy, **(details or {})},
            is_user_action=True,
        )

    @staticmethod
    def removal_failed(
        plan_id: UUID,
        participant_id: UUID,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REMOVAL_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="participant",
            entity_id=participant_id,
            plan_id=plan_id,
            correlation_id=correlation_id,
            description="Participant removal rolled back",
            error_message=error_message,
        )

    @staticmethod
    def contribution_recorded(
        plan_id: UUID,
        contribution_id: UUID,
        payer_id: UUID,
        amount: Decimal,
        actor_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONTRIBUTION_RECORDED,
            entity_type="contribution",
            entity_id=contribution_id,
            plan_id=plan_id,
            correlation_id=correlation_id,
            description=f"Contribution recorded: {amount}",
            details={
                "payer_id": str(payer_id),
                "amount": str(amount),
            },
            actor_id=actor_id,
            is_user_action=True,
        )

    @staticmethod
    def contribution_deleted(
        plan_id: UUID,
        contribution_id: UUID,
        amount: Decimal,
        actor_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONTRIBUTION_DELETED,
            entity_type="contribution",
            entity_id=contribution_id,
            plan_id=plan_id,
            correlation_id=correlation_id,
            description=f"Contribution deleted: {amount}",
            details={"amount": str(amount)},
            actor_id=actor_id,
            is_user_action=True,
        )

    @staticmethod
    def contributions_transferred(
        plan_id: UUID,
        from_participant_id: UUID,
        to_participant_id: UUID,
        amount: Decimal,
        partial: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONTRIBUTIONS_TRANSFERRED,
            entity_type="participant",
            entity_id=from_participant_id,
            plan_id=plan_id,
            correlation_id=correlation_id,
            description=f"Contributions transferred ({'partial' if partial else 'full'}): {amount}",
            details={
                "to_participant_id": str(to_participant_id),
                "amount": str(amount),
                "partial": partial,
            },
            is_user_action=True,
        )

    @staticmethod
    def settlement_confirmed(
        plan_id: UUID,
        settlement_id: UUID,
        from_participant_id: UUID,
        to_participant_id: UUID,
        amount: Decimal,
        actor_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SETTLEMENT_CONFIRMED,
            entity_type="settlement",
            entity_id=settlement_id,
            plan_id=plan_id,
            correlation_id=correlation_id,
            description=f"Settlement confirmed: {amount}",
            details={
                "from_participant_id": str(from_participant_id),
                "to_participant_id": str(to_participant_id),
                "amount": str(amount),
            },
            actor_id=actor_id,
            is_user_action=True,
        )

    @staticmethod
    def settlement_mirror_failed(
        plan_id: UUID,
        settlement_id: UUID,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SETTLEMENT_MIRROR_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="settlement",
            entity_id=settlement_id,
            plan_id=plan_id,
            correlation_id=correlation_id,
            description="Mirrored personal transaction could not be posted",
            error_message=error_message,
        )

    @staticmethod
    def balance_invariant_violated(
        plan_id: UUID,
        discrepancy: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BALANCE_INVARIANT_VIOLATED,
            severity=AuditSeverity.ERROR,
            entity_type="plan",
            entity_id=plan_id,
            plan_id=plan_id,
            correlation_id=correlation_id,
            description=f"Net positions do not sum to zero (off by {discrepancy})",
            details={"discrepancy": str(discrepancy)},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={
                "service": service,
            },
            correlation_id=correlation_id,
        )
