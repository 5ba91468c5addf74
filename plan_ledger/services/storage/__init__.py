"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
Google Sheets is the persistent backend; the in-memory store backs tests
and local runs. Both apply batches through the same guard logic.
"""

from plan_ledger.services.storage.interface import (
    AuditStorageInterface,
    ChangeNotifier,
    ConcurrentModificationError,
    ConnectionError,
    DuplicateError,
    LedgerBatch,
    NotFoundError,
    PlanStorageInterface,
    StorageError,
    apply_batch,
)
from plan_ledger.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryPlanStorage,
)
from plan_ledger.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsPlanStorage,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "PlanStorageInterface",
    "LedgerBatch",
    "ChangeNotifier",
    "apply_batch",
    # Exceptions
    "ConcurrentModificationError",
    "ConnectionError",
    "DuplicateError",
    "NotFoundError",
    "StorageError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryPlanStorage",
    # Google Sheets implementation
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsPlanStorage",
]
