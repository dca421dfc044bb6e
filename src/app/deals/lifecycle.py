"""Deal lifecycle manager -- the public contract of the deal core.

The only component external collaborators (API, chat, notifications) talk
to. Every command follows the same shape:

1. Open ``repository.transaction(deal_id)`` (per-deal lock + one DB transaction)
2. Load the deal FOR UPDATE and resolve the actor's role
3. Validate the move against the transition table (state_machine)
4. Apply ledger / escrow effects and update ``Deal.status`` (optimistic)
5. Append exactly one audit entry per transition, in the same transaction
6. Commit, then hand DealEvents to the dispatcher (best-effort, background)

A typed DealError anywhere in steps 2-5 rolls the whole command back.
Nothing in step 6 can undo a committed change.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.monitoring import record_rejected_command, record_transition
from src.app.deals.audit import DEFAULT_AUDIT_LIMIT, AuditLog
from src.app.deals.errors import (
    DealError,
    DealValidationError,
    InvalidStateTransition,
    NotAuthorized,
)
from src.app.deals.escrow import EscrowController, platform_fee
from src.app.deals.marking import advance_marking, check_marking_actor
from src.app.deals.models import DealFileModel, DealModel, utcnow
from src.app.deals.repository import (
    DealRepository,
    to_deal_read,
    to_file_read,
)
from src.app.deals.schemas import (
    AuditCategory,
    AuditEntryRead,
    CommandResult,
    DealFileRead,
    DealProposalCreate,
    DealRead,
    DealStatus,
    EscrowState,
    EscrowSummary,
    FileCategory,
    MarkingResponsibility,
    MarkingState,
    MilestoneStatus,
    PartyRole,
    TermsVersionRead,
    TurnInfo,
)
from src.app.deals.state_machine import (
    DealAction,
    Transition,
    acceptance_target,
    check_actor,
    draft_accepted_target,
    get_transition,
    is_terminal,
    next_status,
    resolve_role,
)
from src.app.deals.terms import TermsLedger, validate_terms
from src.app.events.dispatcher import NotificationDispatcher
from src.app.events.schemas import DealEvent, DealEventType

logger = structlog.get_logger(__name__)

# Deal statuses in which escrow money may move.
_ESCROW_STATUSES: frozenset[DealStatus] = frozenset({
    DealStatus.ACCEPTED,
    DealStatus.INVOICE_NEEDED,
    DealStatus.WAITING_PAYMENT,
    DealStatus.NEEDS_CHANGES,
    DealStatus.BRIEFING,
    DealStatus.IN_PROGRESS,
    DealStatus.REVIEW,
})

# Settlement on completion leaves milestones in a running placement period held.
_RELEASE_STATUSES: frozenset[DealStatus] = _ESCROW_STATUSES | {DealStatus.COMPLETED}


# ── File Storage Collaborator ───────────────────────────────────────────────


class FileCatalog(Protocol):
    """Answers "does at least one file of this category exist" for gating."""

    async def has_files(
        self, session: AsyncSession, deal_id: uuid.UUID, category: FileCategory
    ) -> bool: ...


class DatabaseFileCatalog:
    """FileCatalog backed by the ``deal_files`` metadata table."""

    def __init__(self, repository: DealRepository) -> None:
        self._repo = repository

    async def has_files(
        self, session: AsyncSession, deal_id: uuid.UUID, category: FileCategory
    ) -> bool:
        return await self._repo.count_files(session, deal_id, category) > 0


# ── Outbox ──────────────────────────────────────────────────────────────────


@dataclass
class _Outbox:
    """Audit entries and events produced by one command, released after commit."""

    entries: list[AuditEntryRead] = field(default_factory=list)
    events: list[DealEvent] = field(default_factory=list)
    transitions: list[tuple[str, str]] = field(default_factory=list)

    def add(
        self,
        event_type: DealEventType,
        deal: DealModel,
        actor_id: str,
        entry: AuditEntryRead,
        from_status: DealStatus | None,
        to_status: DealStatus,
    ) -> None:
        self.entries.append(entry)
        if from_status is not None and from_status != to_status:
            self.transitions.append((from_status.value, to_status.value))
        self.events.append(
            DealEvent(
                event_type=event_type,
                deal_id=str(deal.id),
                actor_id=actor_id,
                recipient_id=_counterparty(deal, actor_id),
                from_status=from_status.value if from_status is not None else None,
                to_status=to_status.value,
                summary=entry.action,
                payload=entry.metadata,
                audit_entry_id=entry.id,
            )
        )


def _counterparty(deal: DealModel, actor_id: str) -> str:
    return deal.creator_id if actor_id == deal.advertiser_id else deal.advertiser_id


# ── Lifecycle Manager ───────────────────────────────────────────────────────


class DealLifecycleManager:
    """Command handlers and read queries for the deal aggregate.

    Args:
        repository: DealRepository (unit of work + row access).
        dispatcher: Background fan-out of committed events. None disables it.
        files: FileCatalog for draft gating (defaults to deal_files table).
        audit: AuditLog writer.
        fee_percent: Platform commission percentage.
        invoice_due_days: Default invoice due date offset.
        clock: Current UTC time (injectable for tests).
    """

    def __init__(
        self,
        repository: DealRepository,
        *,
        dispatcher: NotificationDispatcher | None = None,
        files: FileCatalog | None = None,
        audit: AuditLog | None = None,
        fee_percent: int = 10,
        invoice_due_days: int = 7,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repository
        self._dispatcher = dispatcher
        self._files = files or DatabaseFileCatalog(repository)
        self._audit = audit or AuditLog()
        self._ledger = TermsLedger(repository)
        self._escrow = EscrowController(repository, fee_percent, invoice_due_days, clock)
        self._clock = clock

    @property
    def ledger(self) -> TermsLedger:
        return self._ledger

    @property
    def escrow(self) -> EscrowController:
        return self._escrow

    # ── Command Plumbing ────────────────────────────────────────────────────

    async def _execute(
        self,
        command: str,
        deal_id: str | None,
        actor_id: str,
        body: Callable[[AsyncSession, _Outbox], Awaitable[DealModel]],
    ) -> CommandResult:
        outbox = _Outbox()
        try:
            async with self._repo.transaction(deal_id) as session:
                deal = await body(session, outbox)
                snapshot = to_deal_read(deal)
        except DealError as exc:
            record_rejected_command(command, exc.code)
            logger.info(
                "deal_command_rejected",
                command=command,
                deal_id=deal_id,
                actor_id=actor_id,
                error_code=exc.code,
                detail=exc.message,
            )
            raise

        for from_status, to_status in outbox.transitions:
            record_transition(from_status, to_status)
        logger.info(
            "deal_command_committed",
            command=command,
            deal_id=snapshot.id,
            actor_id=actor_id,
            status=snapshot.status.value,
            transitions=outbox.transitions,
        )
        if self._dispatcher is not None:
            self._dispatcher.dispatch(outbox.events)
        return CommandResult(deal=snapshot, audit_entries=outbox.entries)

    async def _load(
        self, session: AsyncSession, deal_id: str, actor_id: str
    ) -> tuple[DealModel, PartyRole]:
        deal = await self._repo.get_deal(session, deal_id, for_update=True)
        return deal, resolve_role(deal.advertiser_id, deal.creator_id, actor_id)

    @staticmethod
    def _guard(
        deal: DealModel,
        action: DealAction,
        role: PartyRole,
        actor_id: str,
        latest_author: str | None = None,
    ) -> Transition:
        transition = get_transition(DealStatus(deal.status), action)
        check_actor(transition, role, actor_id, latest_author)
        return transition

    @staticmethod
    def _ensure_status(deal: DealModel, allowed: frozenset[DealStatus], command: str) -> None:
        status = DealStatus(deal.status)
        if status not in allowed:
            raise InvalidStateTransition(
                f"Cannot {command} while the deal is {status.value}",
                status=status.value,
            )

    @staticmethod
    def _ensure_active(deal: DealModel, command: str) -> None:
        status = DealStatus(deal.status)
        if is_terminal(status):
            raise InvalidStateTransition(
                f"Cannot {command}: the deal is {status.value}", status=status.value
            )

    @staticmethod
    def _require_role(role: PartyRole, required: PartyRole, actor_id: str, command: str) -> None:
        if role != required:
            raise NotAuthorized(
                f"Only the {required.value} may {command}", actor_id=actor_id
            )

    async def _transition(
        self,
        session: AsyncSession,
        deal: DealModel,
        actor_id: str,
        action: DealAction,
        outbox: _Outbox,
        *,
        summary: str,
        category: AuditCategory,
        metadata: dict[str, Any] | None = None,
        target: DealStatus | None = None,
        event_type: DealEventType = DealEventType.DEAL_TRANSITIONED,
    ) -> AuditEntryRead:
        """Move the deal, flush the compare-and-set, and audit the move."""
        from_status = DealStatus(deal.status)
        to_status = next_status(from_status, action, target)
        deal.status = to_status.value
        await self._repo.flush(session)
        entry = await self._audit.record(
            session,
            deal.id,
            actor_id,
            summary,
            category,
            {
                "action": action.value,
                "from_status": from_status.value,
                "to_status": to_status.value,
                **(metadata or {}),
            },
        )
        outbox.add(event_type, deal, actor_id, entry, from_status, to_status)
        logger.info(
            "deal_transitioned",
            deal_id=str(deal.id),
            actor_id=actor_id,
            action=action.value,
            from_status=from_status.value,
            to_status=to_status.value,
        )
        return entry

    async def _record(
        self,
        session: AsyncSession,
        deal: DealModel,
        actor_id: str,
        outbox: _Outbox,
        *,
        summary: str,
        category: AuditCategory,
        metadata: dict[str, Any],
        event_type: DealEventType,
    ) -> AuditEntryRead:
        """Audit a change that leaves the deal status where it is."""
        await self._repo.flush(session)
        entry = await self._audit.record(session, deal.id, actor_id, summary, category, metadata)
        status = DealStatus(deal.status)
        outbox.add(event_type, deal, actor_id, entry, status, status)
        return entry

    # ── Negotiation Commands ────────────────────────────────────────────────

    async def create_proposal(self, actor_id: str, data: DealProposalCreate) -> CommandResult:
        """Open a deal in ``pending`` with terms version 1 authored by the proposer.

        Args:
            actor_id: Proposing party; must be the advertiser or the creator.
            data: Deal attributes and initial terms.

        Returns:
            CommandResult with the new deal and its creation audit entry.
        """
        if actor_id not in (data.advertiser_id, data.creator_id):
            raise NotAuthorized("Only a party to the deal may propose it", actor_id=actor_id)

        async def body(session: AsyncSession, outbox: _Outbox) -> DealModel:
            deal = DealModel(
                advertiser_id=data.advertiser_id,
                creator_id=data.creator_id,
                title=data.title,
                budget=data.budget,
                status=DealStatus.PENDING.value,
                deadline=data.deadline,
                description=data.description,
                marking_required=data.marking_required,
                escrow_required=data.escrow_required,
                marking_state=MarkingState.NOT_STARTED.value,
            )
            session.add(deal)
            await self._repo.flush(session)

            fields = dict(data.terms)
            fields.setdefault("price", data.budget)
            if data.deadline is not None:
                fields.setdefault("deadline", data.deadline.isoformat())
            version = await self._ledger.propose_initial(session, deal, actor_id, fields)

            entry = await self._audit.record(
                session,
                deal.id,
                actor_id,
                f"Proposed deal '{data.title}' (v{version.version})",
                AuditCategory.TERMS,
                {"version": version.version, "budget": data.budget},
            )
            outbox.add(DealEventType.DEAL_CREATED, deal, actor_id, entry, None, DealStatus.PENDING)
            return deal

        return await self._execute("create_proposal", None, actor_id, body)

    async def submit_counter_offer(
        self,
        deal_id: str,
        actor_id: str,
        changes: dict[str, Any],
        rationale: str | None,
        expected_version: int | None = None,
    ) -> CommandResult:
        """Propose version N+1; the deal moves to ``needs_changes``.

        Args:
            deal_id: Deal UUID.
            actor_id: Countering party.
            changes: Terms fields to change; the rest inherit.
            rationale: Required explanation.
            expected_version: Latest version the caller saw; a mismatch
                raises VersionConflict before anything is written.
        """

        async def body(session: AsyncSession, outbox: _Outbox) -> DealModel:
            deal, role = await self._load(session, deal_id, actor_id)
            latest = await self._repo.latest_terms(session, deal.id)
            self._ledger.ensure_current(latest, expected_version)
            self._guard(deal, DealAction.COUNTER, role, actor_id, latest.created_by if latest else None)
            version = await self._ledger.counter_offer(
                session, deal, actor_id, changes, rationale, latest
            )
            changed = sorted(self._ledger.diff_versions(latest, version))
            await self._transition(
                session,
                deal,
                actor_id,
                DealAction.COUNTER,
                outbox,
                summary=f"Proposed changes (v{version.version}): {rationale.strip()}",
                category=AuditCategory.TERMS,
                metadata={
                    "version": version.version,
                    "changed_fields": changed,
                    "rationale": rationale.strip(),
                },
                event_type=DealEventType.TERMS_PROPOSED,
            )
            return deal

        return await self._execute("submit_counter_offer", deal_id, actor_id, body)

    async def accept_terms(
        self,
        deal_id: str,
        actor_id: str,
        expected_version: int | None = None,
    ) -> CommandResult:
        """Accept the latest terms version as the party that did not author it.

        The deal lands in ``in_progress`` when escrow already holds funds, in
        ``accepted`` when escrow is required but unfunded, else ``briefing``.
        An agreed price replaces the deal budget and a payment schedule
        creates escrow milestones.
        """

        async def body(session: AsyncSession, outbox: _Outbox) -> DealModel:
            deal, role = await self._load(session, deal_id, actor_id)
            latest = await self._repo.latest_terms(session, deal.id)
            self._ledger.ensure_current(latest, expected_version)
            self._guard(deal, DealAction.ACCEPT, role, actor_id, latest.created_by if latest else None)
            accepted = await self._ledger.accept_latest(session, deal, actor_id, latest)

            terms = validate_terms(accepted.fields)
            if terms.price is not None and terms.price != deal.budget:
                await self._escrow.ensure_total_covers(session, deal, terms.price)
                deal.budget = terms.price
            if terms.deadline is not None:
                deal.deadline = terms.deadline
            scheduled = await self._escrow.schedule_from_terms(session, deal, terms)
            target = acceptance_target(
                escrow_required=deal.escrow_required,
                escrow_funded=await self._escrow.is_funded(session, deal),
            )
            await self._transition(
                session,
                deal,
                actor_id,
                DealAction.ACCEPT,
                outbox,
                target=target,
                summary=f"Accepted terms v{accepted.version}",
                category=AuditCategory.TERMS,
                metadata={
                    "version": accepted.version,
                    "price": deal.budget,
                    "milestones_scheduled": len(scheduled),
                },
                event_type=DealEventType.TERMS_ACCEPTED,
            )
            return deal

        return await self._execute("accept_terms", deal_id, actor_id, body)

    async def reject_deal(
        self, deal_id: str, actor_id: str, reason: str | None = None
    ) -> CommandResult:
        """Reject the deal (terminal). The latest version stays a draft forever."""

        async def body(session: AsyncSession, outbox: _Outbox) -> DealModel:
            deal, role = await self._load(session, deal_id, actor_id)
            latest = await self._repo.latest_terms(session, deal.id)
            self._guard(deal, DealAction.REJECT, role, actor_id, latest.created_by if latest else None)
            latest = self._ledger.reject_latest(latest)
            reason_text = reason.strip() if reason and reason.strip() else None
            deal.rejection_reason = reason_text
            deal.rejected_at = self._clock()
            refunded = await self._escrow.refund_reserved(session, deal)
            await self._transition(
                session,
                deal,
                actor_id,
                DealAction.REJECT,
                outbox,
                summary="Rejected the deal" + (f": {reason_text}" if reason_text else ""),
                category=AuditCategory.GENERAL,
                metadata={
                    "reason": reason_text,
                    "version": latest.version if latest else None,
                    "refunded_milestones": [str(m.id) for m in refunded],
                },
            )
            return deal

        return await self._execute("reject_deal", deal_id, actor_id, body)

    # ── Payment Commands ────────────────────────────────────────────────────

    async def request_invoice(
        self,
        deal_id: str,
        actor_id: str,
        amount: int | None,
        due_date: date | None = None,
        comment: str | None = None,
        milestone_id: str | None = None,
    ) -> CommandResult:
        """Creator requests escrow funding: ``accepted`` -> ``invoice_needed`` -> ``waiting_payment``.

        Produces two audit entries, one per transition; ``audit_entry`` is
        the invoice issuance.
        """

        async def body(session: AsyncSession, outbox: _Outbox) -> DealModel:
            deal, role = await self._load(session, deal_id, actor_id)
            self._guard(deal, DealAction.REQUEST_INVOICE, role, actor_id)
            invoice = await self._escrow.request_invoice(
                session, deal, actor_id, amount, due_date, comment, milestone_id
            )
            await self._transition(
                session,
                deal,
                actor_id,
                DealAction.REQUEST_INVOICE,
                outbox,
                summary="Requested escrow invoice",
                category=AuditCategory.PAYMENTS,
                metadata={"amount": invoice.amount},
            )
            self._guard(deal, DealAction.ISSUE_INVOICE, role, actor_id)
            await self._transition(
                session,
                deal,
                actor_id,
                DealAction.ISSUE_INVOICE,
                outbox,
                summary=f"Issued invoice {invoice.invoice_number} for {invoice.amount}",
                category=AuditCategory.PAYMENTS,
                metadata={
                    "invoice_id": str(invoice.id),
                    "invoice_number": invoice.invoice_number,
                    "amount": invoice.amount,
                    "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
                    "milestone_id": str(invoice.milestone_id) if invoice.milestone_id else None,
                },
            )
            return deal

        return await self._execute("request_invoice", deal_id, actor_id, body)

    async def pay_invoice(self, deal_id: str, actor_id: str, invoice_id: str) -> CommandResult:
        """Advertiser pays: invoice ``paid``, funds reserved, deal -> ``briefing``."""

        async def body(session: AsyncSession, outbox: _Outbox) -> DealModel:
            deal, role = await self._load(session, deal_id, actor_id)
            self._guard(deal, DealAction.FUNDS_RESERVED, role, actor_id)
            invoice, milestone = await self._escrow.pay_invoice(session, deal, actor_id, invoice_id)
            await self._transition(
                session,
                deal,
                actor_id,
                DealAction.FUNDS_RESERVED,
                outbox,
                summary=f"Paid invoice {invoice.invoice_number}; {milestone.amount} reserved in escrow",
                category=AuditCategory.PAYMENTS,
                metadata={
                    "invoice_id": str(invoice.id),
                    "invoice_number": invoice.invoice_number,
                    "amount": invoice.amount,
                    "milestone_id": str(milestone.id),
                },
            )
            return deal

        return await self._execute("pay_invoice", deal_id, actor_id, body)

    async def reserve_escrow(self, deal_id: str, actor_id: str, milestone_id: str) -> CommandResult:
        """Advertiser reserves funds for a milestone. Idempotent: an already
        reserved milestone yields a result with no audit entry."""

        async def body(session: AsyncSession, outbox: _Outbox) -> DealModel:
            deal, role = await self._load(session, deal_id, actor_id)
            self._require_role(role, PartyRole.ADVERTISER, actor_id, "reserve escrow")
            self._ensure_status(deal, _ESCROW_STATUSES, "reserve escrow")
            milestone, changed = await self._escrow.reserve(session, deal, milestone_id)
            if changed:
                await self._record(
                    session,
                    deal,
                    actor_id,
                    outbox,
                    summary=f"Reserved {milestone.amount} for '{milestone.label}'",
                    category=AuditCategory.PAYMENTS,
                    metadata={"milestone_id": str(milestone.id), "amount": milestone.amount},
                    event_type=DealEventType.ESCROW_UPDATED,
                )
            return deal

        return await self._execute("reserve_escrow", deal_id, actor_id, body)

    async def release_milestone(self, deal_id: str, actor_id: str, milestone_id: str) -> CommandResult:
        """Advertiser releases a reserved milestone to the creator.

        Releasing an already paid-out milestone is a no-op success with no
        audit entry (``audit_entry`` is None), in any deal status. A completed
        deal still releases milestones whose placement period outlasted it.
        """

        async def body(session: AsyncSession, outbox: _Outbox) -> DealModel:
            deal, role = await self._load(session, deal_id, actor_id)
            self._require_role(role, PartyRole.ADVERTISER, actor_id, "release escrow")
            current = await self._repo.get_milestone(session, deal.id, milestone_id)
            if current.escrow_state == EscrowState.PAID_OUT.value:
                logger.info("escrow_release_retry", deal_id=str(deal.id), milestone_id=str(current.id))
                return deal
            self._ensure_status(deal, _RELEASE_STATUSES, "release escrow")
            milestone, changed = await self._escrow.release(session, deal, actor_id, milestone_id)
            if changed:
                await self._record(
                    session,
                    deal,
                    actor_id,
                    outbox,
                    summary=(
                        f"Released {milestone.amount} for '{milestone.label}' "
                        f"(platform fee {milestone.platform_fee})"
                    ),
                    category=AuditCategory.PAYMENTS,
                    metadata={
                        "milestone_id": str(milestone.id),
                        "amount": milestone.amount,
                        "platform_fee": milestone.platform_fee,
                        "payout_amount": milestone.payout_amount,
                    },
                    event_type=DealEventType.ESCROW_UPDATED,
                )
            return deal

        return await self._execute("release_milestone", deal_id, actor_id, body)

    async def submit_publication_proof(
        self, deal_id: str, actor_id: str, milestone_id: str, publication_url: str
    ) -> CommandResult:
        """Creator proves publication; the milestone enters its placement period
        (or becomes payout-ready when the terms set no duration)."""

        async def body(session: AsyncSession, outbox: _Outbox) -> DealModel:
            deal, role = await self._load(session, deal_id, actor_id)
            self._require_role(role, PartyRole.CREATOR, actor_id, "submit publication proof")
            self._ensure_status(deal, _ESCROW_STATUSES, "submit publication proof")
            accepted = await self._repo.latest_accepted_terms(session, deal.id)
            duration = validate_terms(accepted.fields).placement_duration_days if accepted else None
            milestone = await self._escrow.submit_publication_proof(
                session, deal, milestone_id, publication_url, duration
            )
            await self._record(
                session,
                deal,
                actor_id,
                outbox,
                summary=f"Submitted publication proof for '{milestone.label}'",
                category=AuditCategory.PAYMENTS,
                metadata={
                    "milestone_id": str(milestone.id),
                    "publication_url": milestone.publication_url,
                    "escrow_state": milestone.escrow_state,
                    "active_ends_at": (
                        milestone.active_ends_at.isoformat() if milestone.active_ends_at else None
                    ),
                },
                event_type=DealEventType.ESCROW_UPDATED,
            )
            return deal

        return await self._execute("submit_publication_proof", deal_id, actor_id, body)

    # ── Work Commands ───────────────────────────────────────────────────────

    async def start_work(self, deal_id: str, actor_id: str) -> CommandResult:
        """Creator starts work: ``briefing`` -> ``in_progress``."""

        async def body(session: AsyncSession, outbox: _Outbox) -> DealModel:
            deal, role = await self._load(session, deal_id, actor_id)
            self._guard(deal, DealAction.START_WORK, role, actor_id)
            milestone = await self._escrow.move_work(
                session, deal, MilestoneStatus.RESERVED, MilestoneStatus.IN_PROGRESS
            )
            await self._transition(
                session,
                deal,
                actor_id,
                DealAction.START_WORK,
                outbox,
                summary="Started work",
                category=AuditCategory.GENERAL,
                metadata={"milestone_id": str(milestone.id) if milestone else None},
            )
            return deal

        return await self._execute("start_work", deal_id, actor_id, body)

    async def mark_draft_submitted(
        self, deal_id: str, actor_id: str, comment: str | None = None
    ) -> CommandResult:
        """Creator submits a draft: ``in_progress`` -> ``review``.

        Requires at least one attached ``draft`` file.
        """

        async def body(session: AsyncSession, outbox: _Outbox) -> DealModel:
            deal, role = await self._load(session, deal_id, actor_id)
            self._guard(deal, DealAction.SUBMIT_DRAFT, role, actor_id)
            if not await self._files.has_files(session, deal.id, FileCategory.DRAFT):
                raise DealValidationError("Attach at least one draft file before submitting")
            milestone = await self._escrow.move_work(
                session, deal, MilestoneStatus.IN_PROGRESS, MilestoneStatus.REVIEW
            )
            await self._transition(
                session,
                deal,
                actor_id,
                DealAction.SUBMIT_DRAFT,
                outbox,
                summary="Submitted draft for review" + (f": {comment}" if comment else ""),
                category=AuditCategory.FILES,
                metadata={
                    "milestone_id": str(milestone.id) if milestone else None,
                    "comment": comment,
                },
            )
            return deal

        return await self._execute("mark_draft_submitted", deal_id, actor_id, body)

    async def mark_draft_accepted(self, deal_id: str, actor_id: str) -> CommandResult:
        """Advertiser accepts the draft.

        With milestones still waiting for their work cycle the next one starts
        and the deal returns to ``in_progress``; otherwise the deal is
        ``completed`` and every reserved milestone is settled.
        """

        async def body(session: AsyncSession, outbox: _Outbox) -> DealModel:
            deal, role = await self._load(session, deal_id, actor_id)
            self._guard(deal, DealAction.ACCEPT_DRAFT, role, actor_id)
            # The accepted milestone leaves the work cycle whatever its escrow state.
            accepted = await self._escrow.move_work(
                session, deal, MilestoneStatus.REVIEW, MilestoneStatus.RELEASED
            )
            accepted_id = str(accepted.id) if accepted else None
            remaining = await self._escrow.has_pending_work(session, deal)
            target = draft_accepted_target(milestones_remaining=remaining)

            if target == DealStatus.IN_PROGRESS:
                milestone = await self._escrow.move_work(
                    session, deal, MilestoneStatus.RESERVED, MilestoneStatus.IN_PROGRESS
                )
                summary = "Accepted draft"
                if milestone is not None:
                    summary += f"; next milestone '{milestone.label}' started"
                await self._transition(
                    session,
                    deal,
                    actor_id,
                    DealAction.ACCEPT_DRAFT,
                    outbox,
                    target=target,
                    summary=summary,
                    category=AuditCategory.GENERAL,
                    metadata={
                        "milestone_id": accepted_id,
                        "next_milestone_id": str(milestone.id) if milestone else None,
                    },
                )
                return deal

            settled = await self._escrow.settle_remaining(session, deal, actor_id)
            commission = platform_fee(deal.budget, self._escrow.fee_percent)
            await self._transition(
                session,
                deal,
                actor_id,
                DealAction.ACCEPT_DRAFT,
                outbox,
                target=target,
                summary="Accepted final draft; deal completed",
                category=AuditCategory.GENERAL,
                metadata={
                    "milestone_id": accepted_id,
                    "total": deal.budget,
                    "commission": commission,
                    "commission_percent": self._escrow.fee_percent,
                    "settled_milestones": [str(m.id) for m in settled],
                },
            )
            return deal

        return await self._execute("mark_draft_accepted", deal_id, actor_id, body)

    async def request_changes(
        self, deal_id: str, actor_id: str, comment: str | None = None
    ) -> CommandResult:
        """Advertiser sends the draft back: ``review`` -> ``in_progress``."""

        async def body(session: AsyncSession, outbox: _Outbox) -> DealModel:
            deal, role = await self._load(session, deal_id, actor_id)
            self._guard(deal, DealAction.REQUEST_CHANGES, role, actor_id)
            milestone = await self._escrow.move_work(
                session, deal, MilestoneStatus.REVIEW, MilestoneStatus.IN_PROGRESS
            )
            await self._transition(
                session,
                deal,
                actor_id,
                DealAction.REQUEST_CHANGES,
                outbox,
                summary="Requested changes to the draft" + (f": {comment}" if comment else ""),
                category=AuditCategory.GENERAL,
                metadata={
                    "milestone_id": str(milestone.id) if milestone else None,
                    "comment": comment,
                },
            )
            return deal

        return await self._execute("request_changes", deal_id, actor_id, body)

    async def open_dispute(
        self, deal_id: str, actor_id: str, reason: str | None = None
    ) -> CommandResult:
        """Either party opens a dispute from any non-terminal status; reserved
        escrow is locked until the dispute is resolved."""

        async def body(session: AsyncSession, outbox: _Outbox) -> DealModel:
            deal, role = await self._load(session, deal_id, actor_id)
            self._guard(deal, DealAction.OPEN_DISPUTE, role, actor_id)
            locked = await self._escrow.lock_for_dispute(session, deal)
            await self._transition(
                session,
                deal,
                actor_id,
                DealAction.OPEN_DISPUTE,
                outbox,
                summary="Opened a dispute" + (f": {reason}" if reason else ""),
                category=AuditCategory.GENERAL,
                metadata={
                    "reason": reason,
                    "locked_milestones": [str(m.id) for m in locked],
                },
            )
            return deal

        return await self._execute("open_dispute", deal_id, actor_id, body)

    # ── Attachments & Marking ───────────────────────────────────────────────

    async def attach_file(
        self,
        deal_id: str,
        actor_id: str,
        file_name: str,
        category: FileCategory,
        storage_path: str | None = None,
        file_size: int | None = None,
    ) -> CommandResult:
        """Register attachment metadata; the bytes live in external storage."""
        if not file_name or not file_name.strip():
            raise DealValidationError("A file name is required")

        async def body(session: AsyncSession, outbox: _Outbox) -> DealModel:
            deal, _role = await self._load(session, deal_id, actor_id)
            self._ensure_active(deal, "attach a file")
            model = DealFileModel(
                id=uuid.uuid4(),
                deal_id=deal.id,
                user_id=actor_id,
                file_name=file_name.strip(),
                category=category.value,
                storage_path=storage_path,
                file_size=file_size,
            )
            session.add(model)
            await self._record(
                session,
                deal,
                actor_id,
                outbox,
                summary=f"Uploaded file '{model.file_name}'",
                category=AuditCategory.FILES,
                metadata={
                    "file_id": str(model.id),
                    "file_name": model.file_name,
                    "category": category.value,
                },
                event_type=DealEventType.FILE_ATTACHED,
            )
            return deal

        return await self._execute("attach_file", deal_id, actor_id, body)

    async def update_marking(
        self,
        deal_id: str,
        actor_id: str,
        state: MarkingState,
        erid: str | None = None,
    ) -> CommandResult:
        """Record advertising-marking progress (forward moves only)."""

        async def body(session: AsyncSession, outbox: _Outbox) -> DealModel:
            deal, role = await self._load(session, deal_id, actor_id)
            self._ensure_active(deal, "update marking")
            terms = await self._repo.latest_accepted_terms(session, deal.id)
            if terms is None:
                terms = await self._repo.latest_terms(session, deal.id)
            responsibility = (
                validate_terms(terms.fields).marking_responsibility
                if terms is not None
                else MarkingResponsibility.PLATFORM
            )
            check_marking_actor(responsibility, role, actor_id)
            previous = advance_marking(deal, state, erid, self._clock())
            await self._record(
                session,
                deal,
                actor_id,
                outbox,
                summary=f"Marking {previous.value} -> {state.value}",
                category=AuditCategory.ORD,
                metadata={
                    "from_state": previous.value,
                    "to_state": state.value,
                    "erid": deal.erid,
                },
                event_type=DealEventType.MARKING_UPDATED,
            )
            return deal

        return await self._execute("update_marking", deal_id, actor_id, body)

    # ── Queries ─────────────────────────────────────────────────────────────

    @staticmethod
    def _check_viewer(deal: DealModel, viewer_id: str | None) -> None:
        if viewer_id is not None:
            resolve_role(deal.advertiser_id, deal.creator_id, viewer_id)

    async def get_deal_state(self, deal_id: str, viewer_id: str | None = None) -> DealRead:
        """Current deal snapshot."""
        async with self._repo.read_session() as session:
            deal = await self._repo.get_deal(session, deal_id)
            self._check_viewer(deal, viewer_id)
            return to_deal_read(deal)

    async def get_terms_history(
        self, deal_id: str, viewer_id: str | None = None
    ) -> list[TermsVersionRead]:
        """All terms versions, oldest first, with acceptances and changed keys."""
        async with self._repo.read_session() as session:
            deal = await self._repo.get_deal(session, deal_id)
            self._check_viewer(deal, viewer_id)
            return await self._ledger.history(session, deal.id)

    async def get_escrow_summary(
        self, deal_id: str, viewer_id: str | None = None
    ) -> EscrowSummary:
        """Money buckets, milestones and invoices."""
        async with self._repo.read_session() as session:
            deal = await self._repo.get_deal(session, deal_id)
            self._check_viewer(deal, viewer_id)
            return await self._escrow.summary(session, deal)

    async def get_audit_log(
        self,
        deal_id: str,
        limit: int = DEFAULT_AUDIT_LIMIT,
        category: AuditCategory | None = None,
        viewer_id: str | None = None,
    ) -> list[AuditEntryRead]:
        """Audit entries, newest first."""
        async with self._repo.read_session() as session:
            deal = await self._repo.get_deal(session, deal_id)
            self._check_viewer(deal, viewer_id)
            return await self._audit.list(session, deal.id, limit=limit, category=category)

    async def get_files(self, deal_id: str, viewer_id: str | None = None) -> list[DealFileRead]:
        """Attachment metadata, oldest first."""
        async with self._repo.read_session() as session:
            deal = await self._repo.get_deal(session, deal_id)
            self._check_viewer(deal, viewer_id)
            return [to_file_read(f) for f in await self._repo.list_files(session, deal.id)]

    async def list_deals_for_user(
        self, user_id: str, status: DealStatus | None = None
    ) -> list[DealRead]:
        """Deals where the user is either party, newest first."""
        async with self._repo.read_session() as session:
            deals = await self._repo.list_deals_for_user(session, user_id, status)
            return [to_deal_read(d) for d in deals]

    async def whose_turn(self, deal_id: str, viewer_id: str | None = None) -> TurnInfo:
        """Derive who may respond to the latest terms, from stored rows only."""
        async with self._repo.read_session() as session:
            deal = await self._repo.get_deal(session, deal_id)
            self._check_viewer(deal, viewer_id)
            latest = await self._repo.latest_terms(session, deal.id)
            return TurnInfo(
                deal_id=str(deal.id),
                status=DealStatus(deal.status),
                latest_version=latest.version if latest else None,
                latest_author=latest.created_by if latest else None,
                awaiting=self._ledger.whose_turn(deal, latest),
            )
