"""Deal core persistence models.

Seven SQLAlchemy models:
- DealModel: The deal aggregate root (status, parties, budget, marking)
- TermsVersionModel: Versioned proposal records, unique per (deal_id, version)
- TermsAcceptanceModel: A party's endorsement of one terms version
- InvoiceModel: Payment request issued by the creator
- EscrowMilestoneModel: A portion of the agreed price, reserved and released independently
- AuditLogModel: Append-only deal journal
- DealFileModel: Attachment metadata (bytes live in external storage)

Column types are dialect-neutral (Uuid, JSON) so the same models run on
PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round trip)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class DealModel(Base):
    """Negotiated engagement between an advertiser and a creator.

    ``row_version`` is the optimistic-concurrency counter: SQLAlchemy adds
    ``WHERE row_version = :old`` to every UPDATE and raises StaleDataError
    when another writer got there first.
    """

    __tablename__ = "deals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    advertiser_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    creator_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    budget: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    deadline: Mapped[date | None] = mapped_column(Date, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    marking_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escrow_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    marking_state: Mapped[str] = mapped_column(
        String(32), nullable=False, default="NOT_STARTED"
    )
    marking_state_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    erid: Mapped[str | None] = mapped_column(String(100), nullable=True)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __mapper_args__ = {"version_id_col": row_version}


class TermsVersionModel(Base):
    """One proposed set of terms. Versions form a linear history per deal."""

    __tablename__ = "deal_terms"
    __table_args__ = (
        UniqueConstraint("deal_id", "version", name="uq_deal_terms_deal_version"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("deals.id"), nullable=False, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    fields: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class TermsAcceptanceModel(Base):
    """Records that a specific party endorsed a specific terms version."""

    __tablename__ = "deal_terms_acceptance"
    __table_args__ = (
        UniqueConstraint("terms_id", "user_id", name="uq_deal_terms_acceptance_terms_user"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    terms_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("deal_terms.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    accepted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class InvoiceModel(Base):
    """Bridges a creator's payment request and the advertiser's reservation."""

    __tablename__ = "deal_invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("deals.id"), nullable=False, index=True
    )
    invoice_number: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    paid_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __mapper_args__ = {"version_id_col": row_version}


class EscrowMilestoneModel(Base):
    """A portion of the agreed price with its own money and work state."""

    __tablename__ = "deal_escrow"
    __table_args__ = (
        Index("ix_deal_escrow_deal_position", "deal_id", "position"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("deals.id"), nullable=False
    )
    label: Mapped[str] = mapped_column(String(300), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="reserved")
    escrow_state: Mapped[str] = mapped_column(
        String(32), nullable=False, default="WAITING_INVOICE"
    )
    reserved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    publication_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    active_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    active_ends_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    platform_fee: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    payout_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # A second concurrent release of the same milestone fails on flush.
    __mapper_args__ = {"version_id_col": row_version}


class AuditLogModel(Base):
    """Append-only journal entry. Never updated or deleted.

    The integer primary key gives a total order of entries within a deal,
    even for entries written in the same transaction.
    """

    __tablename__ = "deal_audit_log"
    __table_args__ = (
        Index("ix_deal_audit_log_deal_id_id", "deal_id", "id"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("deals.id"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(16), nullable=False)
    metadata_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class DealFileModel(Base):
    """Attachment metadata; the core only needs category counts for gating."""

    __tablename__ = "deal_files"
    __table_args__ = (
        Index("ix_deal_files_deal_category", "deal_id", "category"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("deals.id"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    category: Mapped[str] = mapped_column(String(16), nullable=False)
    storage_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
