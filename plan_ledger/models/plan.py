"""
Core Data Models for Plan Ledger

These models define the strict schemas for everything the shared-plan
ledger stores or computes. They are designed to:
1. Enforce type safety at runtime
2. Provide clear validation error messages
3. Be serializable for storage and logging
4. Support the audit trail

DESIGN DECISION: Money is always Decimal. Amounts on ledger entries are
SIGNED: positive means the participant put money into the pool, negative
means the participant took money out of it (or benefited from it).
"""

import hashlib
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class DistributionRule(str, Enum):
    """
    How the pool total is divided into fair shares.

    EQUITABLE splits the total evenly. CUSTOM reads one fair share per
    participant from the plan's configuration.
    """
    EQUITABLE = "equitable"
    CUSTOM = "custom"


class SettlementStatus(str, Enum):
    """
    Settlement lifecycle.

    PROPOSED only ever exists in memory. Declining a proposal discards it,
    so there is no REJECTED state. CONFIRMED is terminal.
    """
    PROPOSED = "proposed"
    CONFIRMED = "confirmed"


class RemovalStrategy(str, Enum):
    """What to do with the ledger entries of a participant being removed."""
    TRANSFER = "transfer"
    DELETE_ALL = "delete_all"


# =============================================================================
# PLAN, PARTICIPANTS, CONTRIBUTIONS
# =============================================================================

class Plan(BaseModel):
    """
    A named shared pool.

    Only the owner may change the title, the distribution rule or the
    custom shares, and only the owner may delete the plan.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Unique plan ID"
    )
    title: str = Field(
        ...,
        min_length=1,
        max_length=120,
        description="Plan title"
    )
    owner_id: str = Field(
        ...,
        min_length=1,
        description="Account ID of the plan owner"
    )
    distribution: DistributionRule = Field(
        default=DistributionRule.EQUITABLE,
        description="How fair shares are computed"
    )
    # Only read when distribution == CUSTOM
    custom_shares: dict[UUID, Decimal] = Field(
        default_factory=dict,
        description="Fair share per participant ID under custom distribution"
    )
    invite_code: Optional[str] = Field(
        default=None,
        max_length=16,
        description="Code other users redeem to join the plan"
    )
    created_at: datetime = Field(
        default_factory=datetime.utcnow
    )
    updated_at: datetime = Field(
        default_factory=datetime.utcnow
    )


class Participant(BaseModel):
    """
    A person attached to exactly one plan.

    Either account-backed (account_id set, a signed-in user) or a
    name-only placeholder.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    plan_id: UUID
    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Display name"
    )
    account_id: Optional[str] = Field(
        default=None,
        description="Backing account ID; None for name-only placeholders"
    )
    color: str = Field(
        ...,
        pattern=COLOR_PATTERN,
        description="Display color, unique within the plan"
    )
    is_owner: bool = False
    created_at: datetime = Field(
        default_factory=datetime.utcnow
    )

    @field_validator('color')
    @classmethod
    def normalize_color(cls, v: str) -> str:
        return v.upper()

    @property
    def is_placeholder(self) -> bool:
        return self.account_id is None


class PersonalTransactionLink(BaseModel):
    """Reference to a transaction posted in a participant's own account."""

    card_id: Optional[str] = Field(
        default=None,
        description="Card the transaction was posted to; None if queued for categorization"
    )
    transaction_id: str = Field(..., min_length=1)


class Contribution(BaseModel):
    """
    One signed ledger entry attributed to a participant.

    After creation only the payer reference and the amount may change,
    and only through the removal coordinator.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    plan_id: UUID
    payer_id: UUID
    description: str = Field(
        ...,
        min_length=1,
        max_length=200
    )
    amount: Decimal = Field(
        ...,
        description="Signed amount; positive means money put into the pool"
    )
    entry_date: date = Field(default_factory=date.today)
    created_by: Optional[str] = Field(
        default=None,
        description="Account ID of the user who recorded the entry"
    )
    category: Optional[str] = None
    personal_transaction: Optional[PersonalTransactionLink] = None
    created_at: datetime = Field(
        default_factory=datetime.utcnow
    )
    updated_at: datetime = Field(
        default_factory=datetime.utcnow
    )


# =============================================================================
# SETTLEMENT MODELS
# =============================================================================

class SettlementProposal(BaseModel):
    """
    A computed transfer from a debtor to a creditor.

    Never persisted. `basis` identifies the ledger state the proposal was
    computed from, so a stale or repeated confirmation can be recognised.
    """
    model_config = ConfigDict(frozen=True)

    from_participant_id: UUID
    to_participant_id: UUID
    amount: Decimal = Field(..., gt=0)
    basis: Optional[str] = None

    @model_validator(mode='after')
    def validate_parties(self) -> 'SettlementProposal':
        if self.from_participant_id == self.to_participant_id:
            raise ValueError("A participant cannot settle with themself")
        return self

    @property
    def rounded_amount(self) -> Decimal:
        """Amount rounded to cents for display."""
        return self.amount.quantize(Decimal("0.01"))

    @property
    def idempotency_key(self) -> str:
        raw = "|".join([
            str(self.from_participant_id),
            str(self.to_participant_id),
            format(self.amount.normalize(), "f"),
            self.basis or "",
        ])
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class SettlementRecord(BaseModel):
    """
    A settlement that somebody confirmed.

    Confirmation is a bookkeeping acknowledgment: money moved outside
    the system (cash, bank transfer) and the ledger now reflects it.
    """

    id: UUID = Field(default_factory=uuid4)
    plan_id: UUID
    from_participant_id: UUID
    to_participant_id: UUID
    amount: Decimal = Field(..., gt=0)
    status: SettlementStatus = SettlementStatus.CONFIRMED
    idempotency_key: str = Field(..., min_length=1)
    basis: Optional[str] = None
    confirmed_by: str = Field(
        ...,
        description="Account ID of the participant who confirmed"
    )
    confirmed_at: datetime = Field(
        default_factory=datetime.utcnow
    )

    # Mirrored personal transactions (optional enhancement)
    from_transaction_id: Optional[str] = None
    to_transaction_id: Optional[str] = None

    @model_validator(mode='after')
    def validate_parties(self) -> 'SettlementRecord':
        if self.from_participant_id == self.to_participant_id:
            raise ValueError("A participant cannot settle with themself")
        return self


# =============================================================================
# DERIVED / READ MODELS
# =============================================================================

class NetPosition(BaseModel):
    """One participant's row in a balance sheet."""

    participant_id: UUID
    name: str
    paid: Decimal
    fair_share: Decimal
    settled: Decimal = Decimal("0")
    net: Decimal


class BalanceSheet(BaseModel):
    """
    Result of the balance calculation for one plan.

    `net > 0` means the participant is owed money, `net < 0` means the
    participant owes money.
    """

    plan_id: UUID
    distribution: DistributionRule
    total: Decimal
    positions: list[NetPosition] = Field(default_factory=list)

    # Non-fatal problems the UI should surface
    needs_attention: bool = False
    notes: list[str] = Field(default_factory=list)
    orphaned_contribution_ids: list[UUID] = Field(default_factory=list)

    def net_by_participant(self) -> dict[UUID, Decimal]:
        return {p.participant_id: p.net for p in self.positions}

    def position_for(self, participant_id: UUID) -> Optional[NetPosition]:
        for position in self.positions:
            if position.participant_id == participant_id:
                return position
        return None

    @property
    def net_sum(self) -> Decimal:
        return sum((p.net for p in self.positions), Decimal("0"))


class ContributionPreview(BaseModel):
    """A participant's ledger entries, shown before choosing a removal strategy."""

    participant_id: UUID
    contributions: list[Contribution] = Field(default_factory=list)
    total: Decimal = Decimal("0")

    @property
    def count(self) -> int:
        return len(self.contributions)


class RankingEntry(BaseModel):
    """Effective contribution of one participant, for the ranking view."""

    participant_id: UUID
    name: str
    color: str
    amount: Decimal


class PlanOverview(BaseModel):
    """Everything the plan details screen shows, computed in one pass."""

    plan: Plan
    balance_sheet: BalanceSheet
    proposals: list[SettlementProposal] = Field(default_factory=list)
    ranking: list[RankingEntry] = Field(default_factory=list)
    per_head: Optional[Decimal] = Field(
        default=None,
        description="Equal share per participant (equitable plans only)"
    )


class PlanSnapshot(BaseModel):
    """
    A consistent read of one plan and everything attached to it.

    Calculators only ever run against snapshots, never against a
    partially observed ledger.
    """

    plan: Plan
    participants: list[Participant] = Field(default_factory=list)
    contributions: list[Contribution] = Field(default_factory=list)
    settlements: list[SettlementRecord] = Field(default_factory=list)

    def participant(self, participant_id: UUID) -> Optional[Participant]:
        for participant in self.participants:
            if participant.id == participant_id:
                return participant
        return None

    def participants_for_account(self, account_id: str) -> list[Participant]:
        matches = [p for p in self.participants if p.account_id == account_id]
        return sorted(matches, key=lambda p: (p.created_at, str(p.id)))

    def contributions_of(self, participant_id: UUID) -> list[Contribution]:
        return [c for c in self.contributions if c.payer_id == participant_id]

    def settlements_involving(self, participant_id: UUID) -> list[SettlementRecord]:
        return [
            s for s in self.settlements
            if participant_id in (s.from_participant_id, s.to_participant_id)
        ]
