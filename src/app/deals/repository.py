"""Deal core repository -- unit of work, per-deal locks, and row access.

Provides DealRepository with the session_factory callable pattern used
across the app. Unlike plain CRUD repositories, every mutating command
runs inside ``transaction(deal_id)``:

1. Acquire the per-deal asyncio.Lock (serializes writers in this process)
2. Open a session and begin a transaction
3. Yield the session to the command, which reads rows ``FOR UPDATE``
4. Commit on success, roll back on any exception

Cross-process races are caught by the database: the ``row_version``
compare-and-set raises StaleDataError (-> StaleStateConflict) and the
unique (deal_id, version) constraint raises IntegrityError.
"""

from __future__ import annotations

import asyncio
import uuid
import weakref
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import aclosing, asynccontextmanager, nullcontext

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from src.app.deals.errors import DealNotFound, StaleStateConflict
from src.app.deals.models import (
    AuditLogModel,
    DealFileModel,
    DealModel,
    EscrowMilestoneModel,
    InvoiceModel,
    TermsAcceptanceModel,
    TermsVersionModel,
    ensure_utc,
)
from src.app.deals.schemas import (
    AuditCategory,
    AuditEntryRead,
    DealFileRead,
    DealRead,
    DealStatus,
    EscrowMilestoneRead,
    EscrowState,
    FileCategory,
    InvoiceRead,
    InvoiceStatus,
    MarkingState,
    MilestoneStatus,
    TermsAcceptanceRead,
    TermsStatus,
    TermsVersionRead,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncGenerator[AsyncSession, None]]


def parse_id(value: str | uuid.UUID, what: str = "Deal") -> uuid.UUID:
    """Parse an identifier; malformed ids cannot exist, so they are not found.

    Raises:
        DealNotFound: If ``value`` is not a valid UUID.
    """
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise DealNotFound(f"{what} not found", id=str(value)) from None


# ── Serialization Helpers ───────────────────────────────────────────────────


def to_deal_read(model: DealModel) -> DealRead:
    """Convert DealModel to DealRead schema."""
    return DealRead(
        id=str(model.id),
        advertiser_id=model.advertiser_id,
        creator_id=model.creator_id,
        title=model.title,
        budget=model.budget,
        status=DealStatus(model.status),
        deadline=model.deadline,
        description=model.description,
        rejection_reason=model.rejection_reason,
        rejected_at=ensure_utc(model.rejected_at),
        marking_required=model.marking_required,
        escrow_required=model.escrow_required,
        marking_state=MarkingState(model.marking_state),
        erid=model.erid,
        row_version=model.row_version,
        created_at=ensure_utc(model.created_at),
        updated_at=ensure_utc(model.updated_at),
    )


def to_terms_read(
    model: TermsVersionModel,
    acceptances: list[TermsAcceptanceModel] | None = None,
) -> TermsVersionRead:
    """Convert TermsVersionModel (plus its acceptances) to TermsVersionRead."""
    return TermsVersionRead(
        id=str(model.id),
        deal_id=str(model.deal_id),
        version=model.version,
        created_by=model.created_by,
        status=TermsStatus(model.status),
        fields=dict(model.fields or {}),
        schema_version=model.schema_version,
        created_at=ensure_utc(model.created_at),
        acceptances=[
            TermsAcceptanceRead(
                terms_id=str(a.terms_id),
                user_id=a.user_id,
                accepted_at=ensure_utc(a.accepted_at),
            )
            for a in (acceptances or [])
        ],
    )


def to_invoice_read(model: InvoiceModel) -> InvoiceRead:
    return InvoiceRead(
        id=str(model.id),
        deal_id=str(model.deal_id),
        invoice_number=model.invoice_number,
        amount=model.amount,
        status=InvoiceStatus(model.status),
        due_date=model.due_date,
        comment=model.comment,
        milestone_id=str(model.milestone_id) if model.milestone_id else None,
        created_by=model.created_by,
        paid_by=model.paid_by,
        paid_at=ensure_utc(model.paid_at),
        created_at=ensure_utc(model.created_at),
    )


def to_milestone_read(model: EscrowMilestoneModel) -> EscrowMilestoneRead:
    return EscrowMilestoneRead(
        id=str(model.id),
        deal_id=str(model.deal_id),
        label=model.label,
        amount=model.amount,
        position=model.position,
        status=MilestoneStatus(model.status),
        escrow_state=EscrowState(model.escrow_state),
        reserved_at=ensure_utc(model.reserved_at),
        publication_url=model.publication_url,
        active_started_at=ensure_utc(model.active_started_at),
        active_ends_at=ensure_utc(model.active_ends_at),
        released_at=ensure_utc(model.released_at),
        released_by=model.released_by,
        platform_fee=model.platform_fee,
        payout_amount=model.payout_amount,
    )


def to_audit_read(model: AuditLogModel) -> AuditEntryRead:
    return AuditEntryRead(
        id=model.id,
        deal_id=str(model.deal_id),
        user_id=model.user_id,
        action=model.action,
        category=AuditCategory(model.category),
        metadata=dict(model.metadata_json or {}),
        created_at=ensure_utc(model.created_at),
    )


def to_file_read(model: DealFileModel) -> DealFileRead:
    return DealFileRead(
        id=str(model.id),
        deal_id=str(model.deal_id),
        user_id=model.user_id,
        file_name=model.file_name,
        category=FileCategory(model.category),
        storage_path=model.storage_path,
        file_size=model.file_size,
        created_at=ensure_utc(model.created_at),
    )


# ── Per-Deal Locks ──────────────────────────────────────────────────────────


class DealLocks:
    """Lazily created asyncio.Lock per deal id.

    Entries vanish once no coroutine holds or awaits the lock.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def get(self, deal_id: str) -> asyncio.Lock:
        lock = self._locks.get(deal_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[deal_id] = lock
        return lock


# ── Repository ──────────────────────────────────────────────────────────────


class DealRepository:
    """Async data access for the deal aggregate.

    Args:
        session_factory: Async callable that yields AsyncSession instances
            (e.g., ``src.app.core.database.get_session``).
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory
        self._locks = DealLocks()

    # ── Sessions ────────────────────────────────────────────────────────────

    @asynccontextmanager
    async def transaction(self, deal_id: str | None = None) -> AsyncIterator[AsyncSession]:
        """Run one command atomically, serialized per deal.

        Args:
            deal_id: Deal being mutated. None for commands that create a deal.

        Raises:
            DealNotFound: If ``deal_id`` is malformed.
            StaleStateConflict: If a concurrent writer changed the rows first.
        """
        lock = self._locks.get(str(parse_id(deal_id))) if deal_id else nullcontext()
        async with lock:
            async with aclosing(self._session_factory()) as sessions:
                async for session in sessions:
                    try:
                        async with session.begin():
                            yield session
                    except StaleDataError as exc:
                        logger.info("deal_write_stale", deal_id=deal_id)
                        raise StaleStateConflict(
                            "Deal changed concurrently; re-read and retry",
                            deal_id=deal_id,
                        ) from exc
                    except IntegrityError as exc:
                        logger.info("deal_write_conflict", deal_id=deal_id)
                        raise StaleStateConflict(
                            "Concurrent write violated a uniqueness rule; re-read and retry",
                            deal_id=deal_id,
                        ) from exc
                    return

    @asynccontextmanager
    async def read_session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session for read-only queries (no lock, no explicit transaction)."""
        async with aclosing(self._session_factory()) as sessions:
            async for session in sessions:
                yield session
                return

    async def flush(self, session: AsyncSession) -> None:
        """Flush pending changes, surfacing lost optimistic races.

        Raises:
            StaleStateConflict: If a versioned row changed since it was read.
        """
        try:
            await session.flush()
        except StaleDataError as exc:
            raise StaleStateConflict(
                "Deal changed concurrently; re-read and retry"
            ) from exc

    # ── Deals ───────────────────────────────────────────────────────────────

    async def get_deal(
        self,
        session: AsyncSession,
        deal_id: str | uuid.UUID,
        *,
        for_update: bool = False,
    ) -> DealModel:
        """Load a deal row.

        Args:
            session: Open session.
            deal_id: Deal UUID (string or UUID).
            for_update: Take a row lock (no-op on SQLite).

        Raises:
            DealNotFound: If no such deal exists.
        """
        stmt = select(DealModel).where(DealModel.id == parse_id(deal_id))
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is None:
            raise DealNotFound("Deal not found", deal_id=str(deal_id))
        return model

    async def list_deals_for_user(
        self,
        session: AsyncSession,
        user_id: str,
        status: DealStatus | None = None,
    ) -> list[DealModel]:
        """Deals where the user is either party, newest first."""
        stmt = select(DealModel).where(
            or_(DealModel.advertiser_id == user_id, DealModel.creator_id == user_id)
        )
        if status is not None:
            stmt = stmt.where(DealModel.status == status.value)
        stmt = stmt.order_by(DealModel.created_at.desc())
        result = await session.execute(stmt)
        return list(result.scalars().all())

    # ── Terms ───────────────────────────────────────────────────────────────

    async def latest_terms(
        self, session: AsyncSession, deal_id: uuid.UUID
    ) -> TermsVersionModel | None:
        stmt = (
            select(TermsVersionModel)
            .where(TermsVersionModel.deal_id == deal_id)
            .order_by(TermsVersionModel.version.desc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def latest_accepted_terms(
        self, session: AsyncSession, deal_id: uuid.UUID
    ) -> TermsVersionModel | None:
        stmt = (
            select(TermsVersionModel)
            .where(
                TermsVersionModel.deal_id == deal_id,
                TermsVersionModel.status == TermsStatus.ACCEPTED.value,
            )
            .order_by(TermsVersionModel.version.desc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_terms(
        self, session: AsyncSession, deal_id: uuid.UUID
    ) -> list[TermsVersionModel]:
        stmt = (
            select(TermsVersionModel)
            .where(TermsVersionModel.deal_id == deal_id)
            .order_by(TermsVersionModel.version.asc())
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def acceptances_for(
        self, session: AsyncSession, terms_ids: list[uuid.UUID]
    ) -> dict[uuid.UUID, list[TermsAcceptanceModel]]:
        """Acceptances grouped by terms version id."""
        grouped: dict[uuid.UUID, list[TermsAcceptanceModel]] = {t: [] for t in terms_ids}
        if not terms_ids:
            return grouped
        stmt = (
            select(TermsAcceptanceModel)
            .where(TermsAcceptanceModel.terms_id.in_(terms_ids))
            .order_by(TermsAcceptanceModel.accepted_at.asc())
        )
        result = await session.execute(stmt)
        for row in result.scalars().all():
            grouped.setdefault(row.terms_id, []).append(row)
        return grouped

    # ── Escrow ──────────────────────────────────────────────────────────────

    async def list_milestones(
        self, session: AsyncSession, deal_id: uuid.UUID, *, for_update: bool = False
    ) -> list[EscrowMilestoneModel]:
        stmt = (
            select(EscrowMilestoneModel)
            .where(EscrowMilestoneModel.deal_id == deal_id)
            .order_by(EscrowMilestoneModel.position.asc(), EscrowMilestoneModel.created_at.asc())
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def get_milestone(
        self, session: AsyncSession, deal_id: uuid.UUID, milestone_id: str | uuid.UUID
    ) -> EscrowMilestoneModel:
        """Load one milestone of a deal with a row lock.

        Raises:
            DealNotFound: If the milestone does not exist on this deal.
        """
        stmt = (
            select(EscrowMilestoneModel)
            .where(
                EscrowMilestoneModel.deal_id == deal_id,
                EscrowMilestoneModel.id == parse_id(milestone_id, "Milestone"),
            )
            .with_for_update()
        )
        result = await session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is None:
            raise DealNotFound("Milestone not found", milestone_id=str(milestone_id))
        return model

    async def list_invoices(
        self, session: AsyncSession, deal_id: uuid.UUID
    ) -> list[InvoiceModel]:
        stmt = (
            select(InvoiceModel)
            .where(InvoiceModel.deal_id == deal_id)
            .order_by(InvoiceModel.created_at.asc())
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def get_invoice(
        self, session: AsyncSession, deal_id: uuid.UUID, invoice_id: str | uuid.UUID
    ) -> InvoiceModel:
        """Load one invoice of a deal with a row lock.

        Raises:
            DealNotFound: If the invoice does not exist on this deal.
        """
        stmt = (
            select(InvoiceModel)
            .where(
                InvoiceModel.deal_id == deal_id,
                InvoiceModel.id == parse_id(invoice_id, "Invoice"),
            )
            .with_for_update()
        )
        result = await session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is None:
            raise DealNotFound("Invoice not found", invoice_id=str(invoice_id))
        return model

    # ── Files ───────────────────────────────────────────────────────────────

    async def count_files(
        self, session: AsyncSession, deal_id: uuid.UUID, category: FileCategory
    ) -> int:
        stmt = select(func.count(DealFileModel.id)).where(
            DealFileModel.deal_id == deal_id,
            DealFileModel.category == category.value,
        )
        result = await session.execute(stmt)
        return int(result.scalar_one())

    async def list_files(
        self, session: AsyncSession, deal_id: uuid.UUID
    ) -> list[DealFileModel]:
        stmt = (
            select(DealFileModel)
            .where(DealFileModel.deal_id == deal_id)
            .order_by(DealFileModel.created_at.asc())
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
