"""Integration tests for DealLifecycleManager on an in-memory database.

Covers:
- Negotiation: counter-offer then acceptance lands in briefing
- Concurrent counter-offers: one wins, the loser retries on top
- Work cycle: start, draft gating, review loop, completion settlement
- Multi-milestone work cycle
- Terminal statuses reject everything (disputes included)
- Atomicity: a failing audit write rolls back the whole command
- Event fan-out after commit; delivery failures never surface
- Queries: turn, audit ordering/limit/category, files, listing, viewers
"""

from __future__ import annotations

import asyncio
import uuid

import pytest

from src.app.deals.audit import AuditLog
from src.app.deals.errors import (
    AuditWriteError,
    DealError,
    DealNotFound,
    DealValidationError,
    InvalidStateTransition,
    NotAuthorized,
    VersionConflict,
)
from src.app.deals.lifecycle import DealLifecycleManager
from src.app.deals.schemas import (
    AuditCategory,
    DealStatus,
    EscrowState,
    FileCategory,
    MarkingState,
    MilestoneStatus,
    TermsStatus,
)
from src.app.events.dispatcher import NotificationDispatcher
from src.app.events.schemas import DealEventType

ADVERTISER = "adv-1001"
CREATOR = "cre-2002"
OUTSIDER = "usr-9999"

TWO_PAYMENTS = {
    "payment_schedule": [
        {"label": "Prepayment", "amount": 22500},
        {"label": "After publication", "amount": 22500},
    ]
}


async def _funded_deal(manager, accepted_deal) -> str:
    """Deal paid through a single invoice, sitting in briefing."""
    deal_id = await accepted_deal(escrow_required=True)
    await manager.request_invoice(deal_id, CREATOR, 45000)
    invoice_id = (await manager.get_escrow_summary(deal_id)).invoices[0].id
    await manager.pay_invoice(deal_id, ADVERTISER, invoice_id)
    return deal_id


async def _attach_draft(manager, deal_id: str) -> None:
    await manager.attach_file(deal_id, CREATOR, "cut-v1.mp4", FileCategory.DRAFT)


class FailingAuditLog(AuditLog):
    async def record(self, session, deal_id, user_id, action, category, metadata=None):
        raise AuditWriteError("Audit entry could not be written; operation aborted")


class FailingNotifier:
    def __init__(self) -> None:
        self.calls = 0

    async def notify(self, notification) -> None:
        self.calls += 1
        raise ConnectionError("notification service down")


# ── Negotiation ──────────────────────────────────────────────────────────────


class TestNegotiation:
    """Counter-offer and acceptance from a fresh proposal."""

    @pytest.mark.asyncio
    async def test_create_proposal(self, manager, make_proposal):
        result = await manager.create_proposal(ADVERTISER, make_proposal())
        assert result.deal.status == DealStatus.PENDING
        assert result.deal.budget == 45000
        assert result.audit_entry.action == "Proposed deal 'Spring launch integration' (v1)"
        assert result.audit_entry.category == AuditCategory.TERMS

    @pytest.mark.asyncio
    async def test_creator_may_propose(self, manager, make_proposal):
        result = await manager.create_proposal(CREATOR, make_proposal())
        turn = await manager.whose_turn(result.deal.id)
        assert turn.awaiting == ADVERTISER

    @pytest.mark.asyncio
    async def test_outsider_cannot_propose(self, manager, make_proposal):
        with pytest.raises(NotAuthorized):
            await manager.create_proposal(OUTSIDER, make_proposal())
        assert await manager.list_deals_for_user(ADVERTISER) == []

    @pytest.mark.asyncio
    async def test_invalid_initial_terms_create_nothing(self, manager, make_proposal):
        with pytest.raises(DealValidationError):
            await manager.create_proposal(
                ADVERTISER, make_proposal(terms={"placement_type": "billboard"})
            )
        assert await manager.list_deals_for_user(ADVERTISER) == []

    @pytest.mark.asyncio
    async def test_counter_then_accept(self, manager, create_deal):
        deal_id = await create_deal()

        countered = await manager.submit_counter_offer(
            deal_id, CREATOR, {"deadline": "2026-04-15"}, "need more time"
        )
        assert countered.deal.status == DealStatus.NEEDS_CHANGES
        assert countered.audit_entry.action == "Proposed changes (v2): need more time"
        assert countered.audit_entry.metadata["changed_fields"] == ["deadline"]

        accepted = await manager.accept_terms(deal_id, ADVERTISER)
        assert accepted.deal.status == DealStatus.BRIEFING
        assert accepted.audit_entry.action == "Accepted terms v2"

        history = await manager.get_terms_history(deal_id)
        assert history[1].created_by == CREATOR
        assert history[1].status == TermsStatus.ACCEPTED
        assert history[0].status == TermsStatus.DRAFT

    @pytest.mark.asyncio
    async def test_acceptance_with_required_escrow_waits_for_payment(self, manager, create_deal):
        deal_id = await create_deal(escrow_required=True)
        result = await manager.accept_terms(deal_id, CREATOR)
        assert result.deal.status == DealStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_reacceptance_with_funded_escrow_resumes_work(self, manager, accepted_deal):
        deal_id = await _funded_deal(manager, accepted_deal)
        await manager.submit_counter_offer(deal_id, CREATOR, {"revisions": 3}, "one more pass")
        result = await manager.accept_terms(deal_id, ADVERTISER)
        assert result.deal.status == DealStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_pending_reject_by_responder(self, manager, create_deal, clock):
        deal_id = await create_deal()
        with pytest.raises(NotAuthorized):
            await manager.reject_deal(deal_id, ADVERTISER)
        result = await manager.reject_deal(deal_id, CREATOR, "  not my audience ")
        assert result.deal.status == DealStatus.REJECTED
        assert result.deal.rejection_reason == "not my audience"
        assert result.deal.rejected_at == clock()
        assert result.audit_entry.action == "Rejected the deal: not my audience"


# ── Concurrency ──────────────────────────────────────────────────────────────


class TestConcurrentCounterOffers:
    """Both parties counter at the same instant against version 1."""

    @pytest.mark.asyncio
    async def test_one_wins_loser_retries(self, manager, accepted_deal):
        deal_id = await accepted_deal()
        outcomes = await asyncio.gather(
            manager.submit_counter_offer(deal_id, ADVERTISER, {"price": 40000}, "cheaper", 1),
            manager.submit_counter_offer(deal_id, CREATOR, {"price": 50000}, "pricier", 1),
            return_exceptions=True,
        )
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        assert len(errors) == 1
        assert isinstance(errors[0], VersionConflict)
        loser = ADVERTISER if isinstance(outcomes[0], BaseException) else CREATOR

        history = await manager.get_terms_history(deal_id)
        assert [v.version for v in history] == [1, 2]

        turn = await manager.whose_turn(deal_id)
        assert turn.latest_version == 2
        await manager.submit_counter_offer(deal_id, loser, {"price": 45000}, "meet halfway", 2)
        history = await manager.get_terms_history(deal_id)
        assert [v.version for v in history] == [1, 2, 3]
        assert history[2].created_by == loser

    @pytest.mark.asyncio
    async def test_pending_race_has_single_winner(self, manager, create_deal):
        deal_id = await create_deal()
        outcomes = await asyncio.gather(
            manager.submit_counter_offer(deal_id, ADVERTISER, {"price": 40000}, "cheaper", 1),
            manager.submit_counter_offer(deal_id, CREATOR, {"price": 50000}, "pricier", 1),
            return_exceptions=True,
        )
        errors = [o for o in outcomes if isinstance(o, DealError)]
        assert len(errors) == 1
        assert isinstance(outcomes[0], NotAuthorized)
        history = await manager.get_terms_history(deal_id)
        assert [v.version for v in history] == [1, 2]
        assert history[1].created_by == CREATOR


# ── Work Cycle ───────────────────────────────────────────────────────────────


class TestWorkCycle:
    """briefing -> in_progress -> review loop -> completed."""

    @pytest.mark.asyncio
    async def test_full_cycle_settles_escrow(self, manager, accepted_deal):
        deal_id = await _funded_deal(manager, accepted_deal)

        started = await manager.start_work(deal_id, CREATOR)
        assert started.deal.status == DealStatus.IN_PROGRESS

        await _attach_draft(manager, deal_id)
        review = await manager.mark_draft_submitted(deal_id, CREATOR, "first cut")
        assert review.deal.status == DealStatus.REVIEW
        assert review.audit_entry.category == AuditCategory.FILES

        back = await manager.request_changes(deal_id, ADVERTISER, "logo too small")
        assert back.deal.status == DealStatus.IN_PROGRESS

        await manager.mark_draft_submitted(deal_id, CREATOR)
        done = await manager.mark_draft_accepted(deal_id, ADVERTISER)
        assert done.deal.status == DealStatus.COMPLETED
        assert done.audit_entry.metadata["commission"] == 4500

        summary = await manager.get_escrow_summary(deal_id)
        assert summary.settled
        assert summary.released == 45000
        assert summary.milestones[0].escrow_state == EscrowState.PAID_OUT
        assert summary.milestones[0].status == MilestoneStatus.RELEASED

    @pytest.mark.asyncio
    async def test_draft_requires_file(self, manager, accepted_deal):
        deal_id = await accepted_deal()
        await manager.start_work(deal_id, CREATOR)
        await manager.attach_file(deal_id, CREATOR, "brief.pdf", FileCategory.BRIEF)
        with pytest.raises(DealValidationError, match="draft file"):
            await manager.mark_draft_submitted(deal_id, CREATOR)
        assert (await manager.get_deal_state(deal_id)).status == DealStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_role_rules(self, manager, accepted_deal):
        deal_id = await accepted_deal()
        with pytest.raises(NotAuthorized):
            await manager.start_work(deal_id, ADVERTISER)
        await manager.start_work(deal_id, CREATOR)
        await _attach_draft(manager, deal_id)
        await manager.mark_draft_submitted(deal_id, CREATOR)
        with pytest.raises(NotAuthorized):
            await manager.mark_draft_accepted(deal_id, CREATOR)
        with pytest.raises(NotAuthorized):
            await manager.request_changes(deal_id, CREATOR)

    @pytest.mark.asyncio
    async def test_out_of_order_action(self, manager, create_deal):
        deal_id = await create_deal()
        with pytest.raises(InvalidStateTransition) as exc_info:
            await manager.start_work(deal_id, CREATOR)
        assert exc_info.value.context["status"] == "pending"

    @pytest.mark.asyncio
    async def test_milestones_run_one_cycle_each(self, manager, accepted_deal):
        deal_id = await accepted_deal(terms=TWO_PAYMENTS)
        first, second = (await manager.get_escrow_summary(deal_id)).milestones
        await manager.reserve_escrow(deal_id, ADVERTISER, first.id)
        await manager.reserve_escrow(deal_id, ADVERTISER, second.id)

        await manager.start_work(deal_id, CREATOR)
        await _attach_draft(manager, deal_id)
        await manager.mark_draft_submitted(deal_id, CREATOR)
        next_up = await manager.mark_draft_accepted(deal_id, ADVERTISER)
        assert next_up.deal.status == DealStatus.IN_PROGRESS
        assert next_up.audit_entry.metadata["milestone_id"] == first.id
        assert next_up.audit_entry.metadata["next_milestone_id"] == second.id
        statuses = [m.status for m in (await manager.get_escrow_summary(deal_id)).milestones]
        assert statuses == [MilestoneStatus.RELEASED, MilestoneStatus.IN_PROGRESS]

        await manager.mark_draft_submitted(deal_id, CREATOR)
        back = await manager.request_changes(deal_id, ADVERTISER, "second cut too long")
        assert back.audit_entry.metadata["milestone_id"] == second.id
        statuses = [m.status for m in (await manager.get_escrow_summary(deal_id)).milestones]
        assert statuses == [MilestoneStatus.RELEASED, MilestoneStatus.IN_PROGRESS]

        await manager.mark_draft_submitted(deal_id, CREATOR)
        done = await manager.mark_draft_accepted(deal_id, ADVERTISER)
        assert done.audit_entry.metadata["milestone_id"] == second.id
        assert done.deal.status == DealStatus.COMPLETED
        assert sorted(done.audit_entry.metadata["settled_milestones"]) == sorted(
            [first.id, second.id]
        )


# ── Terminal Statuses ────────────────────────────────────────────────────────


class TestTerminal:
    """Nothing moves a completed or rejected deal."""

    @pytest.mark.asyncio
    async def test_completed_rejects_everything(self, manager, accepted_deal):
        deal_id = await _funded_deal(manager, accepted_deal)
        await manager.start_work(deal_id, CREATOR)
        await _attach_draft(manager, deal_id)
        await manager.mark_draft_submitted(deal_id, CREATOR)
        await manager.mark_draft_accepted(deal_id, ADVERTISER)

        with pytest.raises(InvalidStateTransition):
            await manager.open_dispute(deal_id, CREATOR, "late payout")
        with pytest.raises(InvalidStateTransition):
            await manager.submit_counter_offer(deal_id, CREATOR, {"price": 1}, "again")
        with pytest.raises(InvalidStateTransition):
            await manager.attach_file(deal_id, CREATOR, "late.mp4", FileCategory.FINAL)
        with pytest.raises(InvalidStateTransition):
            await manager.update_marking(deal_id, ADVERTISER, MarkingState.READY_TO_SUBMIT)

    @pytest.mark.asyncio
    async def test_release_retry_after_completion_is_noop(self, manager, accepted_deal):
        deal_id = await _funded_deal(manager, accepted_deal)
        await manager.start_work(deal_id, CREATOR)
        await _attach_draft(manager, deal_id)
        await manager.mark_draft_submitted(deal_id, CREATOR)
        await manager.mark_draft_accepted(deal_id, ADVERTISER)
        milestone_id = (await manager.get_escrow_summary(deal_id)).milestones[0].id

        result = await manager.release_milestone(deal_id, ADVERTISER, milestone_id)
        assert result.deal.status == DealStatus.COMPLETED
        assert result.audit_entry is None

    @pytest.mark.asyncio
    async def test_rejected_rejects_everything(self, manager, create_deal):
        deal_id = await create_deal()
        await manager.reject_deal(deal_id, CREATOR)
        with pytest.raises(InvalidStateTransition):
            await manager.accept_terms(deal_id, CREATOR)
        with pytest.raises(InvalidStateTransition):
            await manager.open_dispute(deal_id, ADVERTISER)
        with pytest.raises(InvalidStateTransition):
            await manager.reject_deal(deal_id, ADVERTISER)

    @pytest.mark.asyncio
    async def test_disputed_is_frozen(self, manager, accepted_deal):
        deal_id = await accepted_deal()
        await manager.open_dispute(deal_id, ADVERTISER, "no contact")
        with pytest.raises(InvalidStateTransition):
            await manager.start_work(deal_id, CREATOR)
        with pytest.raises(InvalidStateTransition):
            await manager.open_dispute(deal_id, CREATOR)


# ── Atomicity ────────────────────────────────────────────────────────────────


class TestAtomicity:
    """A failed audit write aborts the command it belongs to."""

    @pytest.mark.asyncio
    async def test_audit_failure_rolls_back_counter(self, repository, create_deal, manager, clock):
        deal_id = await create_deal()
        broken = DealLifecycleManager(repository, audit=FailingAuditLog(), clock=clock)

        with pytest.raises(AuditWriteError):
            await broken.submit_counter_offer(deal_id, CREATOR, {"price": 50000}, "more")

        assert (await manager.get_deal_state(deal_id)).status == DealStatus.PENDING
        assert len(await manager.get_terms_history(deal_id)) == 1
        assert len(await manager.get_audit_log(deal_id)) == 1

    @pytest.mark.asyncio
    @pytest.mark.filterwarnings("error::sqlalchemy.exc.SADeprecationWarning")
    async def test_counter_writes_without_deprecated_flush(self, manager, create_deal):
        deal_id = await create_deal()
        await manager.submit_counter_offer(deal_id, CREATOR, {"price": 50000}, "more", 1)
        assert len(await manager.get_terms_history(deal_id)) == 2
        assert len(await manager.get_audit_log(deal_id)) == 2

    @pytest.mark.asyncio
    async def test_audit_failure_rolls_back_creation(self, repository, make_proposal, clock):
        broken = DealLifecycleManager(repository, audit=FailingAuditLog(), clock=clock)
        with pytest.raises(AuditWriteError):
            await broken.create_proposal(ADVERTISER, make_proposal())
        assert await broken.list_deals_for_user(ADVERTISER) == []

    @pytest.mark.asyncio
    async def test_every_transition_is_audited(self, manager, accepted_deal):
        deal_id = await _funded_deal(manager, accepted_deal)
        log = await manager.get_audit_log(deal_id, limit=200)
        statuses = [e.metadata.get("to_status") for e in reversed(log) if "to_status" in e.metadata]
        assert statuses == ["accepted", "invoice_needed", "waiting_payment", "briefing"]


# ── Events ───────────────────────────────────────────────────────────────────


class TestEvents:
    """Committed changes reach the feed in order; failures never surface."""

    @pytest.mark.asyncio
    async def test_events_follow_commits(self, manager, dispatcher, event_bus, create_deal):
        deal_id = await create_deal()
        await manager.submit_counter_offer(deal_id, CREATOR, {"price": 50000}, "more reach")
        accepted = await manager.accept_terms(deal_id, ADVERTISER)
        await dispatcher.drain()

        events = event_bus.recent(deal_id)
        assert [e.event_type for e in events] == [
            DealEventType.DEAL_CREATED,
            DealEventType.TERMS_PROPOSED,
            DealEventType.TERMS_ACCEPTED,
        ]
        assert events[0].recipient_id == CREATOR
        assert events[1].recipient_id == ADVERTISER
        assert (events[2].from_status, events[2].to_status) == ("needs_changes", "briefing")
        assert events[2].audit_entry_id == accepted.audit_entry.id

    @pytest.mark.asyncio
    async def test_rejected_command_emits_nothing(self, manager, dispatcher, event_bus, create_deal):
        deal_id = await create_deal()
        with pytest.raises(NotAuthorized):
            await manager.accept_terms(deal_id, ADVERTISER)
        await dispatcher.drain()
        assert len(event_bus.recent(deal_id)) == 1

    @pytest.mark.asyncio
    async def test_two_transitions_two_events(self, manager, dispatcher, event_bus, accepted_deal):
        deal_id = await accepted_deal(escrow_required=True)
        await manager.request_invoice(deal_id, CREATOR, 45000)
        await dispatcher.drain()
        tail = event_bus.recent(deal_id)[-2:]
        assert [e.to_status for e in tail] == ["invoice_needed", "waiting_payment"]

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_undo_commit(
        self, repository, event_bus, make_proposal, clock
    ):
        failures: list[str] = []
        notifier = FailingNotifier()
        dispatcher = NotificationDispatcher(
            event_bus,
            notifier=notifier,
            max_attempts=2,
            backoff_multiplier=0,
            on_failure=failures.append,
        )
        manager = DealLifecycleManager(repository, dispatcher=dispatcher, clock=clock)

        result = await manager.create_proposal(ADVERTISER, make_proposal())
        await dispatcher.drain()

        assert failures == ["notify"]
        assert notifier.calls == 2
        assert event_bus.recent(result.deal.id)
        assert (await manager.get_deal_state(result.deal.id)).status == DealStatus.PENDING


# ── Files ────────────────────────────────────────────────────────────────────


class TestFiles:
    @pytest.mark.asyncio
    async def test_attach_and_list(self, manager, create_deal):
        deal_id = await create_deal()
        result = await manager.attach_file(
            deal_id, ADVERTISER, " brief.pdf ", FileCategory.BRIEF, "s3://bucket/brief.pdf", 2048
        )
        assert result.audit_entry.action == "Uploaded file 'brief.pdf'"
        assert result.audit_entry.category == AuditCategory.FILES
        assert result.deal.status == DealStatus.PENDING

        files = await manager.get_files(deal_id, viewer_id=CREATOR)
        assert [(f.file_name, f.category, f.file_size) for f in files] == [
            ("brief.pdf", FileCategory.BRIEF, 2048)
        ]
        assert files[0].id == result.audit_entry.metadata["file_id"]

    @pytest.mark.asyncio
    async def test_file_name_required(self, manager, create_deal):
        deal_id = await create_deal()
        with pytest.raises(DealValidationError):
            await manager.attach_file(deal_id, CREATOR, "  ", FileCategory.DRAFT)

    @pytest.mark.asyncio
    async def test_outsider_cannot_attach(self, manager, create_deal):
        deal_id = await create_deal()
        with pytest.raises(NotAuthorized):
            await manager.attach_file(deal_id, OUTSIDER, "x.pdf", FileCategory.LEGAL)


# ── Queries ──────────────────────────────────────────────────────────────────


class TestQueries:
    """Read-side behavior."""

    @pytest.mark.asyncio
    async def test_whose_turn(self, manager, create_deal):
        deal_id = await create_deal()
        assert (await manager.whose_turn(deal_id)).awaiting == CREATOR
        await manager.submit_counter_offer(deal_id, CREATOR, {"price": 50000}, "more")
        turn = await manager.whose_turn(deal_id)
        assert (turn.latest_version, turn.latest_author, turn.awaiting) == (2, CREATOR, ADVERTISER)
        await manager.accept_terms(deal_id, ADVERTISER)
        assert (await manager.whose_turn(deal_id)).awaiting is None

    @pytest.mark.asyncio
    async def test_audit_log_newest_first(self, manager, create_deal):
        deal_id = await create_deal()
        await manager.submit_counter_offer(deal_id, CREATOR, {"price": 50000}, "more")
        await manager.accept_terms(deal_id, ADVERTISER)

        log = await manager.get_audit_log(deal_id)
        assert [e.action for e in log] == [
            "Accepted terms v2",
            "Proposed changes (v2): more",
            "Proposed deal 'Spring launch integration' (v1)",
        ]
        assert log[0].id > log[1].id > log[2].id
        assert len(await manager.get_audit_log(deal_id, limit=1)) == 1
        assert await manager.get_audit_log(deal_id, category=AuditCategory.PAYMENTS) == []

    @pytest.mark.asyncio
    async def test_list_deals_for_user(self, manager, create_deal):
        first = await create_deal()
        second = await create_deal(title="Summer podcast read")
        await manager.reject_deal(second, CREATOR)

        assert {d.id for d in await manager.list_deals_for_user(CREATOR)} == {first, second}
        pending = await manager.list_deals_for_user(ADVERTISER, DealStatus.PENDING)
        assert [d.id for d in pending] == [first]
        assert await manager.list_deals_for_user(OUTSIDER) == []

    @pytest.mark.asyncio
    async def test_outsider_cannot_read(self, manager, create_deal):
        deal_id = await create_deal()
        with pytest.raises(NotAuthorized):
            await manager.get_deal_state(deal_id, viewer_id=OUTSIDER)
        with pytest.raises(NotAuthorized):
            await manager.get_audit_log(deal_id, viewer_id=OUTSIDER)

    @pytest.mark.asyncio
    async def test_unknown_and_malformed_ids(self, manager):
        with pytest.raises(DealNotFound):
            await manager.get_deal_state(str(uuid.uuid4()))
        with pytest.raises(DealNotFound):
            await manager.get_deal_state("not-a-uuid")
        with pytest.raises(DealNotFound):
            await manager.accept_terms("not-a-uuid", CREATOR)

    @pytest.mark.asyncio
    async def test_row_version_increments(self, manager, create_deal):
        deal_id = await create_deal()
        before = (await manager.get_deal_state(deal_id)).row_version
        await manager.submit_counter_offer(deal_id, CREATOR, {"price": 50000}, "more")
        assert (await manager.get_deal_state(deal_id)).row_version > before
