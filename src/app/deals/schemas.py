"""Pydantic schemas for the deal core -- statuses, terms, escrow, audit.

Defines all structured types for the deal lifecycle:
- Enums: DealStatus, PartyRole, TermsStatus, EscrowState, MilestoneStatus,
  InvoiceStatus, AuditCategory, FileCategory, MarkingState, PlacementType
- Typed terms: VideoTerms / PostTerms / PodcastTerms discriminated on
  placement_type, with migration from the legacy untyped field map
- Read models: DealRead, TermsVersionRead, InvoiceRead, EscrowMilestoneRead,
  AuditEntryRead, DealFileRead, EscrowSummary, CommandResult
- Command payloads: DealProposalCreate
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

# ── Enums ───────────────────────────────────────────────────────────────────


class DealStatus(str, Enum):
    """Lifecycle status of a deal. REJECTED and COMPLETED are terminal."""

    PENDING = "pending"
    NEEDS_CHANGES = "needs_changes"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    INVOICE_NEEDED = "invoice_needed"
    WAITING_PAYMENT = "waiting_payment"
    BRIEFING = "briefing"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    COMPLETED = "completed"
    DISPUTED = "disputed"


class PartyRole(str, Enum):
    """Role of a user relative to one deal."""

    ADVERTISER = "advertiser"  # requester
    CREATOR = "creator"  # fulfiller


class TermsStatus(str, Enum):
    DRAFT = "draft"
    ACCEPTED = "accepted"


class EscrowState(str, Enum):
    """Monetary state of one escrow milestone."""

    WAITING_INVOICE = "WAITING_INVOICE"
    INVOICE_SENT = "INVOICE_SENT"
    FUNDS_RESERVED = "FUNDS_RESERVED"
    ACTIVE_PERIOD = "ACTIVE_PERIOD"
    PAYOUT_READY = "PAYOUT_READY"
    PAID_OUT = "PAID_OUT"
    DISPUTE_LOCKED = "DISPUTE_LOCKED"
    REFUNDED = "REFUNDED"


class MilestoneStatus(str, Enum):
    """Work-facing status of one escrow milestone."""

    RESERVED = "reserved"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    RELEASED = "released"


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class AuditCategory(str, Enum):
    """Partitions audit entries for downstream consumers."""

    TERMS = "terms"
    PAYMENTS = "payments"
    FILES = "files"
    GENERAL = "general"
    ORD = "ord"


class FileCategory(str, Enum):
    BRIEF = "brief"
    DRAFT = "draft"
    FINAL = "final"
    LEGAL = "legal"


class MarkingState(str, Enum):
    """Advertising-marking (ORD registration) progress, in order."""

    NOT_STARTED = "NOT_STARTED"
    READY_TO_SUBMIT = "READY_TO_SUBMIT"
    SUBMITTED_TO_ORD = "SUBMITTED_TO_ORD"
    ERID_RECEIVED = "ERID_RECEIVED"
    APPLIED = "APPLIED"
    VERIFIED = "VERIFIED"


MARKING_ORDER: list[MarkingState] = list(MarkingState)


class MarkingResponsibility(str, Enum):
    PLATFORM = "platform"
    ADVERTISER = "advertiser"
    CREATOR = "creator"


class PlacementType(str, Enum):
    VIDEO = "video"
    POST = "post"
    PODCAST = "podcast"


# Escrow states whose amount counts as reserved money.
RESERVED_ESCROW_STATES: frozenset[EscrowState] = frozenset({
    EscrowState.FUNDS_RESERVED,
    EscrowState.ACTIVE_PERIOD,
    EscrowState.PAYOUT_READY,
    EscrowState.DISPUTE_LOCKED,
})

# Escrow states that are planned but not yet funded.
UNFUNDED_ESCROW_STATES: frozenset[EscrowState] = frozenset({
    EscrowState.WAITING_INVOICE,
    EscrowState.INVOICE_SENT,
})


# ── Typed Terms ─────────────────────────────────────────────────────────────

TERMS_SCHEMA_VERSION = 2


class PaymentScheduleItem(BaseModel):
    """One planned payment portion of the agreed price."""

    label: str = Field(min_length=1)
    amount: int = Field(gt=0, description="Minor currency units")


class BaseTerms(BaseModel):
    """Fields shared by every placement type.

    Extra keys are kept so versions written by newer clients survive a
    round trip through older code.
    """

    model_config = ConfigDict(extra="allow")

    price: int | None = Field(default=None, ge=0, description="Minor currency units")
    deadline: date | None = None
    platform: str | None = None
    brief: str | None = None
    revisions: int | None = Field(default=None, ge=0)
    acceptance_criteria: str | None = None
    marking_responsibility: MarkingResponsibility = MarkingResponsibility.PLATFORM
    payment_schedule: list[PaymentScheduleItem] = Field(default_factory=list)
    placement_duration_days: int | None = Field(default=None, ge=1)
    rationale: str | None = None

    @property
    def scheduled_total(self) -> int:
        return sum(item.amount for item in self.payment_schedule)


class VideoTerms(BaseTerms):
    placement_type: Literal["video"] = "video"
    duration_seconds: int | None = Field(default=None, gt=0)
    integration_format: str | None = None


class PostTerms(BaseTerms):
    placement_type: Literal["post"] = "post"
    post_format: str | None = None
    stories_count: int | None = Field(default=None, ge=0)


class PodcastTerms(BaseTerms):
    placement_type: Literal["podcast"] = "podcast"
    episode_count: int | None = Field(default=None, gt=0)
    read_type: str | None = None


TermsFields = Annotated[
    Union[VideoTerms, PostTerms, PodcastTerms],
    Field(discriminator="placement_type"),
]

_terms_adapter: TypeAdapter[BaseTerms] = TypeAdapter(TermsFields)

# Legacy (schema v1) camelCase keys -> current names.
_LEGACY_KEY_MAP: dict[str, str] = {
    "placementType": "placement_type",
    "budget": "price",
    "acceptanceCriteria": "acceptance_criteria",
    "markingResponsibility": "marking_responsibility",
    "eridResponsibility": "marking_responsibility",
    "counterMessage": "rationale",
    "paymentMilestones": "payment_schedule_note",
    "placementDurationDays": "placement_duration_days",
}

# Legacy human-readable placement labels -> PlacementType values.
_LEGACY_PLACEMENT_LABELS: dict[str, str] = {
    "видео-интеграция": "video",
    "видео": "video",
    "video integration": "video",
    "пост": "post",
    "подкаст": "podcast",
}

_LEGACY_RESPONSIBILITY_LABELS: dict[str, str] = {
    "платформа": "platform",
    "рекламодатель": "advertiser",
    "автор": "creator",
}

_PLACEHOLDER_VALUES = {"", "—", "Не указано"}


def migrate_terms_fields(raw: dict[str, Any]) -> dict[str, Any]:
    """Upgrade a stored terms map of any schema version to the current one.

    Renames legacy keys, normalizes placement and responsibility labels,
    drops placeholder values, and converts numeric strings. Unknown keys
    pass through untouched.
    """
    migrated: dict[str, Any] = {}
    for key, value in raw.items():
        if key == "schema_version":
            continue
        new_key = _LEGACY_KEY_MAP.get(key, key)
        if isinstance(value, str) and value.strip() in _PLACEHOLDER_VALUES:
            continue
        migrated[new_key] = value

    placement = migrated.get("placement_type")
    if isinstance(placement, str):
        migrated["placement_type"] = _LEGACY_PLACEMENT_LABELS.get(
            placement.strip().lower(), placement.strip().lower()
        )

    responsibility = migrated.get("marking_responsibility")
    if isinstance(responsibility, str):
        migrated["marking_responsibility"] = _LEGACY_RESPONSIBILITY_LABELS.get(
            responsibility.strip().lower(), responsibility.strip().lower()
        )

    for int_key in ("price", "revisions", "placement_duration_days"):
        value = migrated.get(int_key)
        if isinstance(value, str):
            digits = "".join(ch for ch in value if ch.isdigit())
            if digits:
                migrated[int_key] = int(digits)
            else:
                migrated.pop(int_key)

    deadline = migrated.get("deadline")
    if isinstance(deadline, str) and deadline.count(".") == 2:
        # dd.MM.yyyy from the legacy proposal form
        day, month, year = deadline.split(".")
        migrated["deadline"] = f"{year}-{month}-{day}"

    return migrated


def parse_terms_fields(raw: dict[str, Any]) -> BaseTerms:
    """Migrate and validate a raw terms map into its typed model.

    Raises:
        pydantic.ValidationError: If the map does not describe valid terms.
    """
    return _terms_adapter.validate_python(migrate_terms_fields(raw))


def dump_terms_fields(terms: BaseTerms) -> dict[str, Any]:
    """Serialize typed terms to the JSON map stored on a version row."""
    return terms.model_dump(mode="json", exclude_none=True)


def diff_terms(
    previous: dict[str, Any] | None, current: dict[str, Any]
) -> set[str]:
    """Return the field keys whose values differ between two terms maps."""
    previous = previous or {}
    keys = set(previous) | set(current)
    return {k for k in keys if previous.get(k) != current.get(k)}


# ── Read Models ─────────────────────────────────────────────────────────────


class DealRead(BaseModel):
    """Snapshot of a deal aggregate."""

    id: str
    advertiser_id: str
    creator_id: str
    title: str
    budget: int
    status: DealStatus
    deadline: date | None = None
    description: str | None = None
    rejection_reason: str | None = None
    rejected_at: datetime | None = None
    marking_required: bool = False
    escrow_required: bool = False
    marking_state: MarkingState = MarkingState.NOT_STARTED
    erid: str | None = None
    row_version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (DealStatus.REJECTED, DealStatus.COMPLETED)


class TermsAcceptanceRead(BaseModel):
    terms_id: str
    user_id: str
    accepted_at: datetime | None = None


class TermsVersionRead(BaseModel):
    """One entry of a deal's linear terms history."""

    id: str
    deal_id: str
    version: int
    created_by: str
    status: TermsStatus
    fields: dict[str, Any] = Field(default_factory=dict)
    schema_version: int = TERMS_SCHEMA_VERSION
    created_at: datetime | None = None
    acceptances: list[TermsAcceptanceRead] = Field(default_factory=list)
    changed_fields: list[str] = Field(
        default_factory=list,
        description="Keys that differ from the previous version",
    )

    def typed(self) -> BaseTerms:
        return parse_terms_fields(self.fields)


class InvoiceRead(BaseModel):
    id: str
    deal_id: str
    invoice_number: str
    amount: int
    status: InvoiceStatus
    due_date: date | None = None
    comment: str | None = None
    milestone_id: str | None = None
    created_by: str
    paid_by: str | None = None
    paid_at: datetime | None = None
    created_at: datetime | None = None


class EscrowMilestoneRead(BaseModel):
    id: str
    deal_id: str
    label: str
    amount: int
    position: int
    status: MilestoneStatus
    escrow_state: EscrowState
    reserved_at: datetime | None = None
    publication_url: str | None = None
    active_started_at: datetime | None = None
    active_ends_at: datetime | None = None
    released_at: datetime | None = None
    released_by: str | None = None
    platform_fee: int | None = None
    payout_amount: int | None = None


class AuditEntryRead(BaseModel):
    id: int
    deal_id: str
    user_id: str
    action: str
    category: AuditCategory
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class DealFileRead(BaseModel):
    id: str
    deal_id: str
    user_id: str
    file_name: str
    category: FileCategory
    storage_path: str | None = None
    file_size: int | None = None
    created_at: datetime | None = None


class EscrowSummary(BaseModel):
    """Money buckets for one deal.

    reserved + released + unallocated == total always holds; scheduled is
    the planned-but-unfunded part of unallocated. Refunded money returns to
    unallocated.
    """

    deal_id: str
    total: int
    reserved: int = 0
    released: int = 0
    unallocated: int = 0
    scheduled: int = 0
    refunded: int = 0
    commission_percent: int = 10
    commission: int = 0
    settled: bool = False
    milestones: list[EscrowMilestoneRead] = Field(default_factory=list)
    invoices: list[InvoiceRead] = Field(default_factory=list)


class TurnInfo(BaseModel):
    """Who may respond to the latest terms version right now."""

    deal_id: str
    status: DealStatus
    latest_version: int | None = None
    latest_author: str | None = None
    awaiting: str | None = None


class CommandResult(BaseModel):
    """Outcome of a mutating command: the new snapshot and its audit trail."""

    deal: DealRead
    audit_entries: list[AuditEntryRead] = Field(default_factory=list)

    @property
    def audit_entry(self) -> AuditEntryRead | None:
        return self.audit_entries[-1] if self.audit_entries else None


# ── Command Payloads ────────────────────────────────────────────────────────


class DealProposalCreate(BaseModel):
    """Input for opening a new deal with its first terms version."""

    advertiser_id: str = Field(min_length=1)
    creator_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=300)
    budget: int = Field(gt=0, description="Minor currency units")
    deadline: date | None = None
    description: str | None = None
    marking_required: bool = False
    escrow_required: bool = False
    terms: dict[str, Any] = Field(default_factory=dict)

    @field_validator("creator_id")
    @classmethod
    def _distinct_parties(cls, v: str, info: Any) -> str:
        if info.data.get("advertiser_id") == v:
            raise ValueError("advertiser and creator must be different users")
        return v
