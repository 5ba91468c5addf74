"""Services package."""

from plan_ledger.services.invites import (
    InviteServiceInterface,
    StoredInviteService,
)
from plan_ledger.services.storage import (
    AuditStorageInterface,
    ConcurrentModificationError,
    ConnectionError,
    DuplicateError,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsPlanStorage,
    InMemoryAuditStorage,
    InMemoryPlanStorage,
    LedgerBatch,
    NotFoundError,
    PlanStorageInterface,
    StorageError,
)
from plan_ledger.services.transactions import TransactionServiceInterface

__all__ = [
    # Invite services
    "InviteServiceInterface",
    "StoredInviteService",
    # Storage services
    "AuditStorageInterface",
    "ConcurrentModificationError",
    "ConnectionError",
    "DuplicateError",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsPlanStorage",
    "InMemoryAuditStorage",
    "InMemoryPlanStorage",
    "LedgerBatch",
    "NotFoundError",
    "PlanStorageInterface",
    "StorageError",
    # Transaction services
    "TransactionServiceInterface",
]
