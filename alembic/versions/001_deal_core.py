"""Create the deal core tables.

Revision ID: 001_deal_core
Revises:
Create Date: 2026-10-18

Creates seven tables:
- deals: Deal aggregate root with optimistic row_version
- deal_terms: Versioned terms, unique per (deal_id, version)
- deal_terms_acceptance: Party endorsements of a terms version
- deal_invoices: Creator payment requests
- deal_escrow: Escrow milestones (money + work state per portion of the price)
- deal_audit_log: Append-only journal with a bigint identity for total order
- deal_files: Attachment metadata
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_deal_core"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def upgrade() -> None:
    # ── deals table ─────────────────────────────────────────────────────

    op.create_table(
        "deals",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("advertiser_id", sa.String(64), nullable=False),
        sa.Column("creator_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("budget", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("deadline", sa.Date(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("marking_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("escrow_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("marking_state", sa.String(32), nullable=False, server_default="NOT_STARTED"),
        sa.Column("marking_state_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("erid", sa.String(100), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_deals"),
    )
    op.create_index("ix_deals_advertiser_id", "deals", ["advertiser_id"])
    op.create_index("ix_deals_creator_id", "deals", ["creator_id"])

    # ── deal_terms table ────────────────────────────────────────────────

    op.create_table(
        "deal_terms",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
        sa.Column("fields", sa.JSON(), nullable=False),
        sa.Column("schema_version", sa.Integer(), nullable=False, server_default="2"),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_deal_terms"),
        sa.ForeignKeyConstraint(["deal_id"], ["deals.id"], name="fk_deal_terms_deal_id_deals"),
        sa.UniqueConstraint("deal_id", "version", name="uq_deal_terms_deal_version"),
    )
    op.create_index("ix_deal_terms_deal_id", "deal_terms", ["deal_id"])

    # ── deal_terms_acceptance table ─────────────────────────────────────

    op.create_table(
        "deal_terms_acceptance",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("terms_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column(
            "accepted_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id", name="pk_deal_terms_acceptance"),
        sa.ForeignKeyConstraint(
            ["terms_id"],
            ["deal_terms.id"],
            name="fk_deal_terms_acceptance_terms_id_deal_terms",
        ),
        sa.UniqueConstraint("terms_id", "user_id", name="uq_deal_terms_acceptance_terms_user"),
    )
    op.create_index(
        "ix_deal_terms_acceptance_terms_id", "deal_terms_acceptance", ["terms_id"]
    )

    # ── deal_invoices table ─────────────────────────────────────────────

    op.create_table(
        "deal_invoices",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("invoice_number", sa.String(40), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("milestone_id", sa.Uuid(), nullable=True),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("paid_by", sa.String(64), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_deal_invoices"),
        sa.ForeignKeyConstraint(
            ["deal_id"], ["deals.id"], name="fk_deal_invoices_deal_id_deals"
        ),
        sa.UniqueConstraint("invoice_number", name="uq_deal_invoices_invoice_number"),
    )
    op.create_index("ix_deal_invoices_deal_id", "deal_invoices", ["deal_id"])

    # ── deal_escrow table ───────────────────────────────────────────────

    op.create_table(
        "deal_escrow",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("label", sa.String(300), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(16), nullable=False, server_default="reserved"),
        sa.Column(
            "escrow_state", sa.String(32), nullable=False, server_default="WAITING_INVOICE"
        ),
        sa.Column("reserved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("publication_url", sa.String(1000), nullable=True),
        sa.Column("active_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_by", sa.String(64), nullable=True),
        sa.Column("platform_fee", sa.BigInteger(), nullable=True),
        sa.Column("payout_amount", sa.BigInteger(), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_deal_escrow"),
        sa.ForeignKeyConstraint(["deal_id"], ["deals.id"], name="fk_deal_escrow_deal_id_deals"),
    )
    op.create_index("ix_deal_escrow_deal_position", "deal_escrow", ["deal_id", "position"])

    # ── deal_audit_log table ────────────────────────────────────────────

    op.create_table(
        "deal_audit_log",
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("category", sa.String(16), nullable=False),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_deal_audit_log"),
        sa.ForeignKeyConstraint(
            ["deal_id"], ["deals.id"], name="fk_deal_audit_log_deal_id_deals"
        ),
    )
    op.create_index("ix_deal_audit_log_deal_id_id", "deal_audit_log", ["deal_id", "id"])

    # ── deal_files table ────────────────────────────────────────────────

    op.create_table(
        "deal_files",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("file_name", sa.String(500), nullable=False),
        sa.Column("category", sa.String(16), nullable=False),
        sa.Column("storage_path", sa.String(1000), nullable=True),
        sa.Column("file_size", sa.BigInteger(), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_deal_files"),
        sa.ForeignKeyConstraint(["deal_id"], ["deals.id"], name="fk_deal_files_deal_id_deals"),
    )
    op.create_index("ix_deal_files_deal_category", "deal_files", ["deal_id", "category"])


def downgrade() -> None:
    # Drop tables in reverse dependency order
    op.drop_table("deal_files")
    op.drop_table("deal_audit_log")
    op.drop_table("deal_escrow")
    op.drop_table("deal_invoices")
    op.drop_table("deal_terms_acceptance")
    op.drop_table("deal_terms")
    op.drop_table("deals")
