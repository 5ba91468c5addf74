"""
Audit Logger

DESIGN DECISION: Every mutation of a shared plan is logged.
This provides:
1. Complete traceability of who changed the ledger
2. Debugging capability when balances look wrong
3. Participants can see the history of their plan
4. Compliance readiness

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace related events
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from plan_ledger.models.audit import AuditEvent, AuditEventBuilder
from plan_ledger.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence and participant visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger()

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_contribution_recorded(
        self,
        plan_id: UUID,
        contribution_id: UUID,
        payer_id: UUID,
        amount: Decimal,
        actor_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a new ledger entry."""
        await self.log(AuditEventBuilder.contribution_recorded(
            plan_id=plan_id,
            contribution_id=contribution_id,
            payer_id=payer_id,
            amount=amount,
            actor_id=actor_id,
            correlation_id=correlation_id,
        ))

    async def log_contribution_deleted(
        self,
        plan_id: UUID,
        contribution_id: UUID,
        amount: Decimal,
        actor_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a deleted ledger entry."""
        await self.log(AuditEventBuilder.contribution_deleted(
            plan_id=plan_id,
            contribution_id=contribution_id,
            amount=amount,
            actor_id=actor_id,
            correlation_id=correlation_id,
        ))

    async def log_participant_removed(
        self,
        plan_id: UUID,
        participant_id: UUID,
        strategy: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a completed removal."""
        await self.log(AuditEventBuilder.participant_removed(
            plan_id=plan_id,
            participant_id=participant_id,
            strategy=strategy,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_contributions_transferred(
        self,
        plan_id: UUID,
        from_participant_id: UUID,
        to_participant_id: UUID,
        amount: Decimal,
        partial: bool,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log entries handed over to another participant."""
        await self.log(AuditEventBuilder.contributions_transferred(
            plan_id=plan_id,
            from_participant_id=from_participant_id,
            to_participant_id=to_participant_id,
            amount=amount,
            partial=partial,
            correlation_id=correlation_id,
        ))

    async def log_removal_failed(
        self,
        plan_id: UUID,
        participant_id: UUID,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a removal that was rolled back."""
        await self.log(AuditEventBuilder.removal_failed(
            plan_id=plan_id,
            participant_id=participant_id,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_settlement_confirmed(
        self,
        plan_id: UUID,
        settlement_id: UUID,
        from_participant_id: UUID,
        to_participant_id: UUID,
        amount: Decimal,
        actor_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log settlement confirmation."""
        await self.log(AuditEventBuilder.settlement_confirmed(
            plan_id=plan_id,
            settlement_id=settlement_id,
            from_participant_id=from_participant_id,
            to_participant_id=to_participant_id,
            amount=amount,
            actor_id=actor_id,
            correlation_id=correlation_id,
        ))

    async def log_invariant_violated(
        self,
        plan_id: UUID,
        discrepancy: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a balance sheet whose net positions don't sum to zero."""
        await self.log(AuditEventBuilder.balance_invariant_violated(
            plan_id=plan_id,
            discrepancy=discrepancy,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log external service error."""
        await self.log(AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new user action (e.g., removing a participant).
    Pass it through all subsequent operations.
    """
    return uuid4()
