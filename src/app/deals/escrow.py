"""Escrow / payment controller -- invoices, reservations, milestone release.

Tracks the monetary lifecycle of a deal independent of, but triggered by,
its negotiation status. Every method runs inside the caller's transaction
on rows the caller already locked; status transitions and audit entries
are the lifecycle manager's job.

Money buckets (minor currency units):
- reserved: FUNDS_RESERVED + ACTIVE_PERIOD + PAYOUT_READY + DISPUTE_LOCKED
- released: PAID_OUT (monotonically non-decreasing)
- unallocated: total - reserved - released (never negative)

Escrow state per milestone:
    WAITING_INVOICE -> INVOICE_SENT -> FUNDS_RESERVED -> ACTIVE_PERIOD
        -> PAYOUT_READY -> PAID_OUT
with DISPUTE_LOCKED and REFUNDED as exits for disputes and rejections.
Reserve and release are idempotent on their own end states.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable
from datetime import date, datetime, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.deals.errors import DealValidationError, IllegalOperation
from src.app.deals.models import (
    DealModel,
    EscrowMilestoneModel,
    InvoiceModel,
    ensure_utc,
    utcnow,
)
from src.app.deals.repository import (
    DealRepository,
    to_invoice_read,
    to_milestone_read,
)
from src.app.deals.schemas import (
    RESERVED_ESCROW_STATES,
    UNFUNDED_ESCROW_STATES,
    BaseTerms,
    EscrowState,
    EscrowSummary,
    InvoiceStatus,
    MilestoneStatus,
)

logger = structlog.get_logger(__name__)

# States a milestone can be released from (ACTIVE_PERIOD only once expired).
_RELEASABLE_STATES = frozenset({
    EscrowState.FUNDS_RESERVED,
    EscrowState.ACTIVE_PERIOD,
    EscrowState.PAYOUT_READY,
})

# Milestones in these states no longer take part in the work cycle.
_CLOSED_STATES = frozenset({EscrowState.PAID_OUT, EscrowState.REFUNDED})


def platform_fee(amount: int, percent: int) -> int:
    """Commission on ``amount``, rounded half up to whole minor units."""
    return (amount * percent + 50) // 100


def generate_invoice_number() -> str:
    return f"INV-{secrets.token_hex(4).upper()}"


def is_funded(milestones: list[EscrowMilestoneModel]) -> bool:
    return any(EscrowState(m.escrow_state) in RESERVED_ESCROW_STATES for m in milestones)


class EscrowController:
    """Monetary state machine for deal milestones.

    Args:
        repository: DealRepository used for row access.
        fee_percent: Platform commission percentage.
        invoice_due_days: Due date offset when the caller omits one.
        clock: Returns the current UTC time (injectable for tests).
    """

    def __init__(
        self,
        repository: DealRepository,
        fee_percent: int = 10,
        invoice_due_days: int = 7,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repository
        self._fee_percent = fee_percent
        self._invoice_due_days = invoice_due_days
        self._clock = clock

    @property
    def fee_percent(self) -> int:
        return self._fee_percent

    # ── Buckets ─────────────────────────────────────────────────────────────

    @staticmethod
    def committed(milestones: list[EscrowMilestoneModel]) -> int:
        """reserved + released."""
        return sum(
            m.amount
            for m in milestones
            if EscrowState(m.escrow_state) in RESERVED_ESCROW_STATES
            or m.escrow_state == EscrowState.PAID_OUT.value
        )

    def _ensure_capacity(
        self, deal: DealModel, milestones: list[EscrowMilestoneModel], amount: int
    ) -> None:
        available = deal.budget - self.committed(milestones)
        if amount > available:
            raise IllegalOperation(
                f"Reserving {amount} would exceed the agreed budget",
                amount=amount,
                unallocated=available,
                total=deal.budget,
            )

    async def ensure_total_covers(self, session: AsyncSession, deal: DealModel, total: int) -> None:
        """Refuse a new agreed total below money already committed.

        Raises:
            IllegalOperation: If reserved + released exceeds ``total``.
        """
        milestones = await self._repo.list_milestones(session, deal.id)
        committed = self.committed(milestones)
        if total < committed:
            raise IllegalOperation(
                f"Agreed price {total} is below the {committed} already committed to escrow",
                total=total,
                committed=committed,
            )

    # ── Schedule ────────────────────────────────────────────────────────────

    async def schedule_from_terms(
        self, session: AsyncSession, deal: DealModel, terms: BaseTerms
    ) -> list[EscrowMilestoneModel]:
        """Derive WAITING_INVOICE milestones from accepted terms.

        Only applies to a deal that has no milestones yet; a renegotiated
        schedule does not rewrite money already in motion.

        Raises:
            IllegalOperation: If the schedule exceeds the agreed total.
        """
        if not terms.payment_schedule:
            return []
        if await self._repo.list_milestones(session, deal.id):
            return []
        if terms.scheduled_total > deal.budget:
            raise IllegalOperation(
                "Payment schedule exceeds the agreed price",
                scheduled=terms.scheduled_total,
                total=deal.budget,
            )
        created = []
        for position, item in enumerate(terms.payment_schedule):
            milestone = EscrowMilestoneModel(
                deal_id=deal.id,
                label=item.label,
                amount=item.amount,
                position=position,
                status=MilestoneStatus.RESERVED.value,
                escrow_state=EscrowState.WAITING_INVOICE.value,
            )
            session.add(milestone)
            created.append(milestone)
        await self._repo.flush(session)
        logger.info("escrow_scheduled", deal_id=str(deal.id), milestones=len(created))
        return created

    # ── Invoices ────────────────────────────────────────────────────────────

    async def request_invoice(
        self,
        session: AsyncSession,
        deal: DealModel,
        actor_id: str,
        amount: int | None,
        due_date: date | None = None,
        comment: str | None = None,
        milestone_id: str | None = None,
    ) -> InvoiceModel:
        """Issue a pending invoice, optionally against a scheduled milestone.

        Without ``milestone_id`` the first unfunded scheduled milestone is
        used; with no schedule the invoice funds a new milestone on payment.

        Raises:
            DealValidationError: Missing/invalid amount or past due date.
            IllegalOperation: Milestone not awaiting an invoice, or amount
                exceeds the unallocated budget.
        """
        milestones = await self._repo.list_milestones(session, deal.id, for_update=True)
        milestone = None
        if milestone_id is not None:
            milestone = await self._repo.get_milestone(session, deal.id, milestone_id)
        else:
            milestone = next(
                (m for m in milestones if m.escrow_state == EscrowState.WAITING_INVOICE.value),
                None,
            )

        if milestone is not None:
            if milestone.escrow_state != EscrowState.WAITING_INVOICE.value:
                raise IllegalOperation(
                    f"Milestone is {milestone.escrow_state}, not awaiting an invoice",
                    milestone_id=str(milestone.id),
                )
            if amount is None:
                amount = milestone.amount
            elif amount != milestone.amount:
                raise DealValidationError(
                    "Invoice amount must match the milestone amount",
                    amount=amount,
                    milestone_amount=milestone.amount,
                )

        if amount is None:
            raise DealValidationError("An invoice requires an amount")
        if amount <= 0:
            raise DealValidationError("Invoice amount must be positive", amount=amount)
        self._ensure_capacity(deal, milestones, amount)

        today = self._clock().date()
        if due_date is None:
            due_date = today + timedelta(days=self._invoice_due_days)
        elif due_date < today:
            raise DealValidationError("Due date is in the past", due_date=due_date.isoformat())

        invoice = InvoiceModel(
            deal_id=deal.id,
            invoice_number=generate_invoice_number(),
            amount=amount,
            status=InvoiceStatus.PENDING.value,
            due_date=due_date,
            comment=comment,
            milestone_id=milestone.id if milestone is not None else None,
            created_by=actor_id,
        )
        session.add(invoice)
        if milestone is not None:
            milestone.escrow_state = EscrowState.INVOICE_SENT.value
        await self._repo.flush(session)
        logger.info(
            "invoice_issued",
            deal_id=str(deal.id),
            invoice_number=invoice.invoice_number,
            amount=amount,
        )
        return invoice

    async def pay_invoice(
        self,
        session: AsyncSession,
        deal: DealModel,
        actor_id: str,
        invoice_id: str,
    ) -> tuple[InvoiceModel, EscrowMilestoneModel]:
        """Mark an invoice paid and reserve its funds.

        Returns:
            The paid invoice and the milestone now holding the funds.

        Raises:
            IllegalOperation: Invoice already paid, or budget overdraw.
        """
        invoice = await self._repo.get_invoice(session, deal.id, invoice_id)
        if invoice.status == InvoiceStatus.PAID.value:
            raise IllegalOperation(
                f"Invoice {invoice.invoice_number} is already paid",
                invoice_id=str(invoice.id),
            )
        milestones = await self._repo.list_milestones(session, deal.id, for_update=True)
        now = self._clock()

        if invoice.milestone_id is not None:
            milestone = await self._repo.get_milestone(session, deal.id, invoice.milestone_id)
            if EscrowState(milestone.escrow_state) in UNFUNDED_ESCROW_STATES:
                self._ensure_capacity(deal, milestones, milestone.amount)
                self._fund(milestone, now)
        else:
            self._ensure_capacity(deal, milestones, invoice.amount)
            milestone = EscrowMilestoneModel(
                deal_id=deal.id,
                label=f"Invoice {invoice.invoice_number}",
                amount=invoice.amount,
                position=len(milestones),
                status=MilestoneStatus.RESERVED.value,
            )
            self._fund(milestone, now)
            session.add(milestone)
            await self._repo.flush(session)
            invoice.milestone_id = milestone.id

        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_by = actor_id
        invoice.paid_at = now
        await self._repo.flush(session)
        logger.info(
            "invoice_paid",
            deal_id=str(deal.id),
            invoice_number=invoice.invoice_number,
            milestone_id=str(milestone.id),
        )
        return invoice, milestone

    # ── Reserve / Release ───────────────────────────────────────────────────

    async def reserve(
        self, session: AsyncSession, deal: DealModel, milestone_id: str
    ) -> tuple[EscrowMilestoneModel, bool]:
        """Reserve funds for one milestone.

        Returns:
            (milestone, changed). ``changed`` is False when the milestone was
            already reserved or paid out (idempotent retry).

        Raises:
            IllegalOperation: Milestone is dispute-locked/refunded, or budget overdraw.
        """
        milestone = await self._repo.get_milestone(session, deal.id, milestone_id)
        state = EscrowState(milestone.escrow_state)
        if state in (RESERVED_ESCROW_STATES - {EscrowState.DISPUTE_LOCKED}) or state == EscrowState.PAID_OUT:
            return milestone, False
        if state not in UNFUNDED_ESCROW_STATES:
            raise IllegalOperation(
                f"Cannot reserve a milestone in state {state.value}",
                milestone_id=str(milestone.id),
            )
        milestones = await self._repo.list_milestones(session, deal.id)
        self._ensure_capacity(deal, milestones, milestone.amount)
        self._fund(milestone, self._clock())
        await self._repo.flush(session)
        logger.info("escrow_reserved", deal_id=str(deal.id), milestone_id=str(milestone.id))
        return milestone, True

    async def submit_publication_proof(
        self,
        session: AsyncSession,
        deal: DealModel,
        milestone_id: str,
        publication_url: str,
        placement_duration_days: int | None,
    ) -> EscrowMilestoneModel:
        """Record the published placement and start its holding period.

        With a placement duration the milestone enters ACTIVE_PERIOD until
        ``now + days``; without one it is immediately PAYOUT_READY.

        Raises:
            DealValidationError: Empty URL.
            IllegalOperation: Milestone funds are not reserved.
        """
        if not publication_url or not publication_url.strip():
            raise DealValidationError("A publication URL is required")
        milestone = await self._repo.get_milestone(session, deal.id, milestone_id)
        if milestone.escrow_state != EscrowState.FUNDS_RESERVED.value:
            raise IllegalOperation(
                f"Cannot submit proof for a milestone in state {milestone.escrow_state}",
                milestone_id=str(milestone.id),
            )
        now = self._clock()
        milestone.publication_url = publication_url.strip()
        if placement_duration_days:
            milestone.escrow_state = EscrowState.ACTIVE_PERIOD.value
            milestone.active_started_at = now
            milestone.active_ends_at = now + timedelta(days=placement_duration_days)
        else:
            milestone.escrow_state = EscrowState.PAYOUT_READY.value
        await self._repo.flush(session)
        return milestone

    async def release(
        self,
        session: AsyncSession,
        deal: DealModel,
        actor_id: str,
        milestone_id: str,
    ) -> tuple[EscrowMilestoneModel, bool]:
        """Pay out one milestone.

        Returns:
            (milestone, changed). ``changed`` is False for an already
            paid-out milestone: a retried release never pays twice.

        Raises:
            IllegalOperation: Milestone is unreserved, locked, or still in
                its placement period.
        """
        milestone = await self._repo.get_milestone(session, deal.id, milestone_id)
        if milestone.escrow_state == EscrowState.PAID_OUT.value:
            logger.info(
                "escrow_release_noop",
                deal_id=str(deal.id),
                milestone_id=str(milestone.id),
            )
            return milestone, False
        self._check_releasable(milestone)
        self._pay_out(milestone, actor_id, self._clock())
        await self._repo.flush(session)
        logger.info(
            "escrow_released",
            deal_id=str(deal.id),
            milestone_id=str(milestone.id),
            amount=milestone.amount,
            platform_fee=milestone.platform_fee,
        )
        return milestone, True

    def _check_releasable(self, milestone: EscrowMilestoneModel) -> None:
        state = EscrowState(milestone.escrow_state)
        if state not in _RELEASABLE_STATES:
            raise IllegalOperation(
                f"Cannot release a milestone in state {state.value}",
                milestone_id=str(milestone.id),
                escrow_state=state.value,
            )
        if self._placement_running(milestone, self._clock()):
            raise IllegalOperation(
                "Placement period has not ended yet",
                milestone_id=str(milestone.id),
                active_ends_at=ensure_utc(milestone.active_ends_at).isoformat(),
            )

    @staticmethod
    def _placement_running(milestone: EscrowMilestoneModel, now: datetime) -> bool:
        if milestone.escrow_state != EscrowState.ACTIVE_PERIOD.value:
            return False
        ends_at = ensure_utc(milestone.active_ends_at)
        return ends_at is not None and now < ends_at

    # ── Deal-Wide Moves ─────────────────────────────────────────────────────

    async def settle_remaining(
        self, session: AsyncSession, deal: DealModel, actor_id: str
    ) -> list[EscrowMilestoneModel]:
        """Final settlement on completion: pay out every reserved milestone.

        Milestones still inside their placement period stay held; the
        advertiser releases them once the period ends.
        """
        now = self._clock()
        settled = []
        for milestone in await self._repo.list_milestones(session, deal.id, for_update=True):
            if EscrowState(milestone.escrow_state) not in _RELEASABLE_STATES:
                continue
            if self._placement_running(milestone, now):
                logger.info(
                    "escrow_settlement_deferred",
                    deal_id=str(deal.id),
                    milestone_id=str(milestone.id),
                    active_ends_at=ensure_utc(milestone.active_ends_at).isoformat(),
                )
            else:
                self._pay_out(milestone, actor_id, now)
                settled.append(milestone)
        await self._repo.flush(session)
        return settled

    async def lock_for_dispute(
        self, session: AsyncSession, deal: DealModel
    ) -> list[EscrowMilestoneModel]:
        """Freeze every reserved milestone; locked money still counts as reserved."""
        locked = []
        for milestone in await self._repo.list_milestones(session, deal.id, for_update=True):
            if EscrowState(milestone.escrow_state) in _RELEASABLE_STATES:
                milestone.escrow_state = EscrowState.DISPUTE_LOCKED.value
                locked.append(milestone)
        await self._repo.flush(session)
        return locked

    async def refund_reserved(
        self, session: AsyncSession, deal: DealModel
    ) -> list[EscrowMilestoneModel]:
        """Return reserved money to the advertiser when a deal is rejected."""
        refunded = []
        for milestone in await self._repo.list_milestones(session, deal.id, for_update=True):
            if EscrowState(milestone.escrow_state) in _RELEASABLE_STATES:
                milestone.escrow_state = EscrowState.REFUNDED.value
                refunded.append(milestone)
        await self._repo.flush(session)
        return refunded

    async def move_work(
        self,
        session: AsyncSession,
        deal: DealModel,
        from_status: MilestoneStatus,
        to_status: MilestoneStatus,
    ) -> EscrowMilestoneModel | None:
        """Advance the first open milestone in ``from_status`` to ``to_status``."""
        for milestone in await self._repo.list_milestones(session, deal.id, for_update=True):
            if EscrowState(milestone.escrow_state) in _CLOSED_STATES:
                continue
            if milestone.status == from_status.value:
                milestone.status = to_status.value
                await self._repo.flush(session)
                return milestone
        return None

    async def has_pending_work(self, session: AsyncSession, deal: DealModel) -> bool:
        """True when some open milestone has not started its work cycle yet."""
        return any(
            m.status == MilestoneStatus.RESERVED.value
            and EscrowState(m.escrow_state) not in _CLOSED_STATES
            for m in await self._repo.list_milestones(session, deal.id)
        )

    async def is_funded(self, session: AsyncSession, deal: DealModel) -> bool:
        return is_funded(await self._repo.list_milestones(session, deal.id))

    # ── Summary ─────────────────────────────────────────────────────────────

    async def summary(self, session: AsyncSession, deal: DealModel) -> EscrowSummary:
        """Money buckets, milestones and invoices for one deal."""
        milestones = await self._repo.list_milestones(session, deal.id)
        invoices = await self._repo.list_invoices(session, deal.id)
        reserved = released = scheduled = refunded = 0
        for m in milestones:
            state = EscrowState(m.escrow_state)
            if state in RESERVED_ESCROW_STATES:
                reserved += m.amount
            elif state == EscrowState.PAID_OUT:
                released += m.amount
            elif state in UNFUNDED_ESCROW_STATES:
                scheduled += m.amount
            elif state == EscrowState.REFUNDED:
                refunded += m.amount
        total = deal.budget
        return EscrowSummary(
            deal_id=str(deal.id),
            total=total,
            reserved=reserved,
            released=released,
            unallocated=total - reserved - released,
            scheduled=scheduled,
            refunded=refunded,
            commission_percent=self._fee_percent,
            commission=platform_fee(total, self._fee_percent),
            settled=released == total,
            milestones=[to_milestone_read(m) for m in milestones],
            invoices=[to_invoice_read(i) for i in invoices],
        )

    # ── Internal ────────────────────────────────────────────────────────────

    @staticmethod
    def _fund(milestone: EscrowMilestoneModel, now: datetime) -> None:
        milestone.escrow_state = EscrowState.FUNDS_RESERVED.value
        milestone.reserved_at = now

    def _pay_out(self, milestone: EscrowMilestoneModel, actor_id: str, now: datetime) -> None:
        fee = platform_fee(milestone.amount, self._fee_percent)
        milestone.escrow_state = EscrowState.PAID_OUT.value
        milestone.status = MilestoneStatus.RELEASED.value
        milestone.released_at = now
        milestone.released_by = actor_id
        milestone.platform_fee = fee
        milestone.payout_amount = milestone.amount - fee
