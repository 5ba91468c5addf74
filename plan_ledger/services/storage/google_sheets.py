"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is offered as a storage backend because:
1. Participants can view the shared ledger directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)
4. Easy to export/migrate later

TRADEOFFS:
- Not suitable for high-volume data (fine for a household's plans)
- No transactions: a batch only touches the rows it owns (append new rows,
  update or delete existing ones located by id), and rows already written
  are put back if a later write fails
- No compare-and-set: each plan row carries a revision token that a commit
  checks, replaces and reads back before writing, so two devices writing
  the same plan at once make one of them re-read and try again
- Limited query capabilities (we filter in Python)
- No live queries: subscribers are only notified of writes made through
  this process

The implementation follows the abstract interface, so we can swap
to a real document store later without changing business logic.
"""

import asyncio
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import gspread
import structlog
from google.oauth2.service_account import Credentials
from tenacity import (
    retry,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from plan_ledger.config import get_settings
from plan_ledger.models.audit import AuditEvent, AuditEventType, AuditSeverity
from plan_ledger.models.plan import (
    Contribution,
    DistributionRule,
    Participant,
    PersonalTransactionLink,
    Plan,
    PlanSnapshot,
    SettlementRecord,
    SettlementStatus,
)
from plan_ledger.services.storage.interface import (
    AuditStorageInterface,
    ChangeNotifier,
    ConcurrentModificationError,
    ConnectionError,
    DuplicateError,
    LedgerBatch,
    NotFoundError,
    PlanStorageInterface,
    SnapshotCallback,
    StorageError,
    Unsubscribe,
    apply_batch,
    describe_batch,
)


logger = structlog.get_logger(__name__)

# Guard failures are answers, not transient errors
_GUARD_ERRORS = (NotFoundError, ConcurrentModificationError, DuplicateError)


class RevisionConflictError(ConcurrentModificationError):
    """Another device wrote the plan between our read and our write."""
    pass


# Guard failures give up at once; a revision conflict re-reads and tries again
_RETRY_COMMIT = retry_if_not_exception_type(_GUARD_ERRORS) | retry_if_exception_type(RevisionConflictError)


# Column mappings for Plans sheet
PLAN_COLUMNS = [
    "id",
    "title",
    "owner_id",
    "distribution",
    "custom_shares_json",
    "invite_code",
    "created_at",
    "updated_at",
    "revision",
]

# 1-based column of the revision token; commits replace it, save_plan never does
REVISION_COLUMN = PLAN_COLUMNS.index("revision") + 1

# Column mappings for Participants sheet
PARTICIPANT_COLUMNS = [
    "id",
    "plan_id",
    "name",
    "account_id",
    "color",
    "is_owner",
    "created_at",
]

# Column mappings for Contributions sheet
CONTRIBUTION_COLUMNS = [
    "id",
    "plan_id",
    "payer_id",
    "description",
    "amount",
    "entry_date",
    "created_by",
    "category",
    "card_id",
    "transaction_id",
    "created_at",
    "updated_at",
]

# Column mappings for Settlements sheet
SETTLEMENT_COLUMNS = [
    "id",
    "plan_id",
    "from_participant_id",
    "to_participant_id",
    "amount",
    "status",
    "idempotency_key",
    "basis",
    "confirmed_by",
    "confirmed_at",
    "from_transaction_id",
    "to_transaction_id",
]

# Column mappings for Audit sheet
AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "plan_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "actor_id",
    "is_user_action",
]


def _safe_get(row: list, index: int, default: str = "") -> str:
    """Read a cell, tolerating short rows."""
    try:
        return row[index] if row[index] else default
    except IndexError:
        return default


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def _get_or_create(self, title: str, columns: list[str], rows: int = 1000) -> gspread.Worksheet:
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            # Create the sheet with headers
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        return sheet

    def get_plans_sheet(self) -> gspread.Worksheet:
        """Get or create the Plans worksheet."""
        return self._get_or_create(self._settings.plans_sheet_name, PLAN_COLUMNS)

    def get_participants_sheet(self) -> gspread.Worksheet:
        """Get or create the Participants worksheet."""
        return self._get_or_create(self._settings.participants_sheet_name, PARTICIPANT_COLUMNS)

    def get_contributions_sheet(self) -> gspread.Worksheet:
        """Get or create the Contributions worksheet."""
        return self._get_or_create(
            self._settings.contributions_sheet_name,
            CONTRIBUTION_COLUMNS,
            rows=5000,
        )

    def get_settlements_sheet(self) -> gspread.Worksheet:
        """Get or create the Settlements worksheet."""
        return self._get_or_create(self._settings.settlements_sheet_name, SETTLEMENT_COLUMNS)

    def get_audit_sheet(self) -> gspread.Worksheet:
        """Get or create the Audit worksheet."""
        return self._get_or_create(
            self._settings.audit_sheet_name,
            AUDIT_COLUMNS,
            rows=5000,  # More rows for audit log
        )


class GoogleSheetsPlanStorage(PlanStorageInterface):
    """
    Google Sheets implementation of the plan store.

    One worksheet per entity type, one entity per row. Batches are
    serialized in-process with a lock. Across processes, a commit only
    writes the rows its batch names, and claims the plan's revision
    token right before writing; if another device claimed it first the
    batch is re-read and retried against the fresh rows.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()
        self._lock = asyncio.Lock()
        self._notifier = ChangeNotifier()

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    def _plan_to_row(self, plan: Plan) -> list:
        """Convert a Plan to a spreadsheet row."""
        return [
            str(plan.id),
            plan.title,
            plan.owner_id,
            plan.distribution.value,
            json.dumps({str(k): str(v) for k, v in plan.custom_shares.items()}),
            plan.invite_code or "",
            plan.created_at.isoformat(),
            plan.updated_at.isoformat(),
        ]

    def _row_to_plan(self, row: list) -> Plan:
        """Convert a spreadsheet row to a Plan."""
        shares_json = _safe_get(row, 4)
        shares = json.loads(shares_json) if shares_json else {}
        return Plan(
            id=UUID(_safe_get(row, 0)),
            title=_safe_get(row, 1),
            owner_id=_safe_get(row, 2),
            distribution=DistributionRule(_safe_get(row, 3, "equitable")),
            custom_shares={UUID(k): Decimal(v) for k, v in shares.items()},
            invite_code=_safe_get(row, 5) or None,
            created_at=datetime.fromisoformat(_safe_get(row, 6)),
            updated_at=datetime.fromisoformat(_safe_get(row, 7)),
        )

    def _participant_to_row(self, participant: Participant) -> list:
        return [
            str(participant.id),
            str(participant.plan_id),
            participant.name,
            participant.account_id or "",
            participant.color,
            str(participant.is_owner),
            participant.created_at.isoformat(),
        ]

    def _row_to_participant(self, row: list) -> Participant:
        return Participant(
            id=UUID(_safe_get(row, 0)),
            plan_id=UUID(_safe_get(row, 1)),
            name=_safe_get(row, 2),
            account_id=_safe_get(row, 3) or None,
            color=_safe_get(row, 4),
            is_owner=_safe_get(row, 5).lower() == "true",
            created_at=datetime.fromisoformat(_safe_get(row, 6)),
        )

    def _contribution_to_row(self, contribution: Contribution) -> list:
        link = contribution.personal_transaction
        return [
            str(contribution.id),
            str(contribution.plan_id),
            str(contribution.payer_id),
            contribution.description,
            str(contribution.amount),
            contribution.entry_date.isoformat(),
            contribution.created_by or "",
            contribution.category or "",
            (link.card_id or "") if link else "",
            link.transaction_id if link else "",
            contribution.created_at.isoformat(),
            contribution.updated_at.isoformat(),
        ]

    def _row_to_contribution(self, row: list) -> Contribution:
        transaction_id = _safe_get(row, 9)
        link = None
        if transaction_id:
            link = PersonalTransactionLink(
                card_id=_safe_get(row, 8) or None,
                transaction_id=transaction_id,
            )
        return Contribution(
            id=UUID(_safe_get(row, 0)),
            plan_id=UUID(_safe_get(row, 1)),
            payer_id=UUID(_safe_get(row, 2)),
            description=_safe_get(row, 3),
            amount=Decimal(_safe_get(row, 4)),
            entry_date=date.fromisoformat(_safe_get(row, 5)),
            created_by=_safe_get(row, 6) or None,
            category=_safe_get(row, 7) or None,
            personal_transaction=link,
            created_at=datetime.fromisoformat(_safe_get(row, 10)),
            updated_at=datetime.fromisoformat(_safe_get(row, 11)),
        )

    def _settlement_to_row(self, settlement: SettlementRecord) -> list:
        return [
            str(settlement.id),
            str(settlement.plan_id),
            str(settlement.from_participant_id),
            str(settlement.to_participant_id),
            str(settlement.amount),
            settlement.status.value,
            settlement.idempotency_key,
            settlement.basis or "",
            settlement.confirmed_by,
            settlement.confirmed_at.isoformat(),
            settlement.from_transaction_id or "",
            settlement.to_transaction_id or "",
        ]

    def _row_to_settlement(self, row: list) -> SettlementRecord:
        return SettlementRecord(
            id=UUID(_safe_get(row, 0)),
            plan_id=UUID(_safe_get(row, 1)),
            from_participant_id=UUID(_safe_get(row, 2)),
            to_participant_id=UUID(_safe_get(row, 3)),
            amount=Decimal(_safe_get(row, 4)),
            status=SettlementStatus(_safe_get(row, 5, "confirmed")),
            idempotency_key=_safe_get(row, 6),
            basis=_safe_get(row, 7) or None,
            confirmed_by=_safe_get(row, 8),
            confirmed_at=datetime.fromisoformat(_safe_get(row, 9)),
            from_transaction_id=_safe_get(row, 10) or None,
            to_transaction_id=_safe_get(row, 11) or None,
        )

    # ------------------------------------------------------------------
    # Worksheet helpers
    # ------------------------------------------------------------------

    def _data_rows(self, sheet: gspread.Worksheet) -> list[list]:
        """All non-empty rows below the header."""
        return [row for row in sheet.get_all_values()[1:] if row and row[0]]

    def _rows_for_plan(self, rows: list[list], plan_id: UUID) -> tuple[list[list], list[list]]:
        """Split rows into (this plan, other plans). Column 1 is always plan_id."""
        mine, others = [], []
        key = str(plan_id)
        for row in rows:
            (mine if _safe_get(row, 1) == key else others).append(row)
        return mine, others

    def _find_row(self, sheet: gspread.Worksheet, row_id: str) -> Optional[int]:
        """1-based sheet row holding `row_id`, read fresh."""
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):  # Row 1 is header
            if row and row[0] == row_id:
                return idx
        return None

    def _write_rows(
        self,
        sheet: gspread.Worksheet,
        puts: dict[str, list],
        deletes: set[str],
    ) -> None:
        """
        Write only the named rows.

        Existing rows are located by id right before each update or
        delete, so rows other writers appended or removed meanwhile are
        neither overwritten nor shifted into our way. New rows go in
        with one append call.
        """
        new_rows = []
        for row_id, row in puts.items():
            idx = self._find_row(sheet, row_id)
            if idx is None:
                new_rows.append(row)
            else:
                sheet.update(range_name=f"A{idx}", values=[row], value_input_option="RAW")
        if new_rows:
            sheet.append_rows(new_rows, value_input_option="RAW")
        for row_id in deletes:
            idx = self._find_row(sheet, row_id)
            if idx is not None:
                sheet.delete_rows(idx)

    def _read_revision(self, plan_id: UUID) -> Optional[str]:
        """The plan's revision token, or None if the plan row is gone."""
        for row in self._data_rows(self._client.get_plans_sheet()):
            if row[0] == str(plan_id):
                return _safe_get(row, REVISION_COLUMN - 1)
        return None

    def _claim_revision(self, plan_id: UUID, expected: str) -> None:
        """
        Replace the revision token we read with a fresh one.

        Raises RevisionConflictError if the token changed since we read
        it, or if another writer replaced ours before we read it back.
        """
        sheet = self._client.get_plans_sheet()
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
            if row and row[0] == str(plan_id):
                break
        else:
            raise NotFoundError(f"Plan not found: {plan_id}")
        if _safe_get(row, REVISION_COLUMN - 1) != expected:
            raise RevisionConflictError(f"Plan {plan_id} was changed by another device")
        token = uuid4().hex
        sheet.update_cell(idx, REVISION_COLUMN, token)
        if self._read_revision(plan_id) != token:
            raise RevisionConflictError(f"Plan {plan_id} was changed by another device")

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_not_exception_type(_GUARD_ERRORS),
        reraise=True,
    )
    async def save_plan(self, plan: Plan) -> bool:
        """Create or overwrite a plan row."""
        try:
            sheet = self._client.get_plans_sheet()
            all_rows = sheet.get_all_values()
            for idx, row in enumerate(all_rows[1:], start=2):  # Row 1 is header
                if row and row[0] == str(plan.id):
                    new_row = self._plan_to_row(plan)
                    for col_idx, value in enumerate(new_row, start=1):
                        sheet.update_cell(idx, col_idx, value)
                    break
            else:
                sheet.append_row(self._plan_to_row(plan) + [uuid4().hex], value_input_option="RAW")
        except Exception as e:
            raise StorageError(f"Failed to save plan: {e}")

        await self._publish(plan.id)
        return True

    async def create_plan(self, plan: Plan, owner: Participant) -> bool:
        """Append the plan row, then the owner row; undo the plan on failure."""
        async with self._lock:
            if await self.get_plan(plan.id) is not None:
                raise DuplicateError(f"Plan already exists: {plan.id}")
            try:
                plans_sheet = self._client.get_plans_sheet()
                plans_sheet.append_row(self._plan_to_row(plan) + [uuid4().hex], value_input_option="RAW")
            except Exception as e:
                raise StorageError(f"Failed to create plan: {e}")
            try:
                participants_sheet = self._client.get_participants_sheet()
                participants_sheet.append_row(
                    self._participant_to_row(owner),
                    value_input_option="RAW",
                )
            except Exception as e:
                await self._delete_plan_row(plan.id)
                raise StorageError(f"Failed to create plan owner: {e}")
        return True

    async def get_plan(self, plan_id: UUID) -> Optional[Plan]:
        """Retrieve a plan by its ID."""
        try:
            sheet = self._client.get_plans_sheet()
            for row in self._data_rows(sheet):
                if row[0] == str(plan_id):
                    return self._row_to_plan(row)
            return None
        except Exception as e:
            raise StorageError(f"Failed to get plan: {e}")

    async def find_plan_by_invite_code(self, code: str) -> Optional[Plan]:
        try:
            sheet = self._client.get_plans_sheet()
            for row in self._data_rows(sheet):
                if _safe_get(row, 5) == code:
                    return self._row_to_plan(row)
            return None
        except Exception as e:
            raise StorageError(f"Failed to look up invite code: {e}")

    async def list_plans_for_account(self, account_id: str) -> list[Plan]:
        try:
            participant_rows = self._data_rows(self._client.get_participants_sheet())
            plan_ids = {
                _safe_get(row, 1)
                for row in participant_rows
                if _safe_get(row, 3) == account_id
            }
            plans = []
            for row in self._data_rows(self._client.get_plans_sheet()):
                if row[0] in plan_ids:
                    try:
                        plans.append(self._row_to_plan(row))
                    except Exception:
                        continue  # Skip malformed rows
            plans.sort(key=lambda p: p.created_at, reverse=True)
            return plans
        except Exception as e:
            raise StorageError(f"Failed to list plans: {e}")

    async def _delete_plan_row(self, plan_id: UUID) -> bool:
        sheet = self._client.get_plans_sheet()
        all_rows = sheet.get_all_values()
        for idx, row in enumerate(all_rows[1:], start=2):
            if row and row[0] == str(plan_id):
                sheet.delete_rows(idx)
                return True
        return False

    async def delete_plan(self, plan_id: UUID) -> bool:
        """Delete the plan's dependent rows first, then the plan row itself."""
        async with self._lock:
            try:
                for sheet in (
                    self._client.get_contributions_sheet(),
                    self._client.get_settlements_sheet(),
                    self._client.get_participants_sheet(),
                ):
                    mine, _ = self._rows_for_plan(self._data_rows(sheet), plan_id)
                    self._write_rows(sheet, {}, {row[0] for row in mine})
                return await self._delete_plan_row(plan_id)
            except Exception as e:
                raise StorageError(f"Failed to delete plan: {e}")

    # ------------------------------------------------------------------
    # Snapshots and batches
    # ------------------------------------------------------------------

    async def load_snapshot(self, plan_id: UUID) -> PlanSnapshot:
        plan = await self.get_plan(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan not found: {plan_id}")
        try:
            participants_rows, _ = self._rows_for_plan(
                self._data_rows(self._client.get_participants_sheet()), plan_id
            )
            contribution_rows, _ = self._rows_for_plan(
                self._data_rows(self._client.get_contributions_sheet()), plan_id
            )
            settlement_rows, _ = self._rows_for_plan(
                self._data_rows(self._client.get_settlements_sheet()), plan_id
            )
            participants = [self._row_to_participant(r) for r in participants_rows]
            contributions = [self._row_to_contribution(r) for r in contribution_rows]
            settlements = [self._row_to_settlement(r) for r in settlement_rows]
        except Exception as e:
            raise StorageError(f"Failed to load plan: {e}")

        participants.sort(key=lambda p: (p.created_at, str(p.id)))
        contributions.sort(key=lambda c: (c.entry_date, c.created_at, str(c.id)))
        settlements.sort(key=lambda s: (s.confirmed_at, str(s.id)))
        return PlanSnapshot(
            plan=plan,
            participants=participants,
            contributions=contributions,
            settlements=settlements,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=_RETRY_COMMIT,
        reraise=True,
    )
    async def commit(self, batch: LedgerBatch) -> None:
        """
        Apply a batch.

        Reads the plan's rows and revision token, checks guards, claims
        the revision, then writes only the rows the batch names. If a
        write fails, the rows already written are put back.
        """
        async with self._lock:
            try:
                revision = self._read_revision(batch.plan_id)
            except Exception as e:
                raise StorageError(f"Failed to read plan for commit: {e}")
            if revision is None:
                raise NotFoundError(f"Plan not found: {batch.plan_id}")

            try:
                sheets = {
                    "participants": self._client.get_participants_sheet(),
                    "contributions": self._client.get_contributions_sheet(),
                    "settlements": self._client.get_settlements_sheet(),
                }
                mine = {
                    name: self._rows_for_plan(self._data_rows(sheet), batch.plan_id)[0]
                    for name, sheet in sheets.items()
                }
                participants = {
                    p.id: p for p in (self._row_to_participant(r) for r in mine["participants"])
                }
                contributions = {
                    c.id: c for c in (self._row_to_contribution(r) for r in mine["contributions"])
                }
                settlements = {
                    s.id: s for s in (self._row_to_settlement(r) for r in mine["settlements"])
                }
            except Exception as e:
                raise StorageError(f"Failed to read plan for commit: {e}")

            new_participants, new_contributions, new_settlements = apply_batch(
                batch, participants, contributions, settlements
            )

            participant_puts, participant_deletes = self._changes(
                {p.id for p in batch.participant_puts} | set(batch.participant_deletes),
                new_participants,
                participants,
                self._participant_to_row,
            )
            contribution_puts, contribution_deletes = self._changes(
                {c.id for c in batch.contribution_puts} | set(batch.contribution_deletes),
                new_contributions,
                contributions,
                self._contribution_to_row,
            )
            settlement_puts, settlement_deletes = self._changes(
                {s.id for s in batch.settlement_puts} | set(batch.settlement_deletes),
                new_settlements,
                settlements,
                self._settlement_to_row,
            )
            before = {
                "participants": {str(i): self._participant_to_row(p) for i, p in participants.items()},
                "contributions": {str(i): self._contribution_to_row(c) for i, c in contributions.items()},
                "settlements": {str(i): self._settlement_to_row(s) for i, s in settlements.items()},
            }

            # New participants first and removed ones last, so no stored entry
            # ever points at a participant row that isn't there
            steps = [
                step for step in (
                    ("participants", participant_puts, set()),
                    ("contributions", contribution_puts, contribution_deletes),
                    ("settlements", settlement_puts, settlement_deletes),
                    ("participants", {}, participant_deletes),
                )
                if step[1] or step[2]
            ]

            if steps:
                try:
                    self._claim_revision(batch.plan_id, revision)
                except _GUARD_ERRORS:
                    raise
                except Exception as e:
                    raise StorageError(f"Failed to claim plan revision: {e}")

            written: list[tuple[str, dict[str, list], set[str]]] = []
            try:
                for name, puts, deletes in steps:
                    written.append((name, puts, deletes))
                    self._write_rows(sheets[name], puts, deletes)
            except Exception as e:
                logger.error(
                    "sheets_commit_failed",
                    error=str(e),
                    rolled_back=[name for name, _, _ in written],
                    **describe_batch(batch),
                )
                for name, puts, deletes in reversed(written):
                    previous = {
                        row_id: before[name][row_id]
                        for row_id in set(puts) | deletes
                        if row_id in before[name]
                    }
                    try:
                        self._write_rows(sheets[name], previous, set(puts) - set(previous))
                    except Exception as restore_error:
                        logger.critical(
                            "sheets_rollback_failed",
                            sheet=name,
                            error=str(restore_error),
                        )
                raise StorageError(f"Failed to commit batch: {e}")

        await self._publish(batch.plan_id)

    @staticmethod
    def _changes(ids, after: dict, before: dict, to_row) -> tuple[dict[str, list], set[str]]:
        """Rows to write and row ids to delete for the entities a batch touched."""
        puts = {str(i): to_row(after[i]) for i in ids if i in after}
        deletes = {str(i) for i in ids if i not in after and i in before}
        return puts, deletes

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, plan_id: UUID, on_change: SnapshotCallback) -> Unsubscribe:
        return self._notifier.subscribe(plan_id, on_change)

    async def _publish(self, plan_id: UUID) -> None:
        if not self._notifier.has_subscribers(plan_id):
            return
        try:
            snapshot = await self.load_snapshot(plan_id)
        except StorageError as e:
            logger.warning("snapshot_for_subscribers_failed", plan_id=str(plan_id), error=str(e))
            return
        await self._notifier.notify(snapshot)


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        return AuditEvent(
            event_id=UUID(_safe_get(row, 0)),
            timestamp=datetime.fromisoformat(_safe_get(row, 1)),
            event_type=AuditEventType(_safe_get(row, 2)),
            severity=AuditSeverity(_safe_get(row, 3)),
            entity_type=_safe_get(row, 4) or None,
            entity_id=UUID(_safe_get(row, 5)) if _safe_get(row, 5) else None,
            plan_id=UUID(_safe_get(row, 6)) if _safe_get(row, 6) else None,
            correlation_id=UUID(_safe_get(row, 7)) if _safe_get(row, 7) else None,
            description=_safe_get(row, 8),
            details=json.loads(_safe_get(row, 9)) if _safe_get(row, 9) else {},
            error_message=_safe_get(row, 10) or None,
            actor_id=_safe_get(row, 11) or None,
            is_user_action=_safe_get(row, 12).lower() == "true",
        )

    def _read_events(self) -> list[AuditEvent]:
        sheet = self._client.get_audit_sheet()
        events = []
        for row in sheet.get_all_values()[1:]:
            if row and row[0]:
                try:
                    events.append(self._row_to_event(row))
                except Exception:
                    continue
        return events

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            sheet = self._client.get_audit_sheet()
            sheet.append_row(event.to_sheets_row(), value_input_option="RAW")
            return True
        except Exception as e:
            # Audit logging should not break the main flow
            logger.warning("audit_append_failed", error=str(e), event_id=str(event.event_id))
            return False

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get events by correlation ID."""
        try:
            events = [e for e in self._read_events() if e.correlation_id == correlation_id]
            # Sort chronologically
            events.sort(key=lambda e: e.timestamp)
            return events
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")

    async def get_events_for_plan(
        self,
        plan_id: UUID,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get events of one plan."""
        try:
            events = [e for e in self._read_events() if e.plan_id == plan_id]
            events.sort(key=lambda e: e.timestamp, reverse=True)
            return events[:limit]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get recent events."""
        try:
            events = self._read_events()
            # Sort newest first
            events.sort(key=lambda e: e.timestamp, reverse=True)
            return events[:limit]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")
