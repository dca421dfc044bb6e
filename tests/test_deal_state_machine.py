"""Tests for the pure deal transition table and guards.

Covers:
- Table shape: terminal statuses have no exits, disputes from every live status
- next_status() default and explicit targets
- Actor rules: responder, either party, advertiser/creator only
- Acceptance and draft-acceptance target selection
- Walk validation over the documented happy paths
"""

from __future__ import annotations

import pytest

from src.app.deals.errors import InvalidStateTransition, NotAuthorized
from src.app.deals.schemas import DealStatus, PartyRole
from src.app.deals.state_machine import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    ActorRule,
    DealAction,
    acceptance_target,
    allowed_actions,
    check_actor,
    draft_accepted_target,
    get_transition,
    is_terminal,
    is_valid_walk,
    next_status,
    resolve_role,
)

ADVERTISER = "adv-1001"
CREATOR = "cre-2002"


# ── Table Shape ──────────────────────────────────────────────────────────────


class TestTransitionTable:
    """Tests for the single transition table."""

    @pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_statuses_have_no_exits(self, status):
        """REJECTED and COMPLETED allow nothing, not even a dispute."""
        assert is_terminal(status)
        assert allowed_actions(status) == []
        with pytest.raises(InvalidStateTransition):
            get_transition(status, DealAction.OPEN_DISPUTE)

    def test_dispute_reachable_from_every_live_status(self):
        """Every non-terminal, non-disputed status can be disputed by either party."""
        for status in DealStatus:
            if is_terminal(status) or status == DealStatus.DISPUTED:
                continue
            transition = get_transition(status, DealAction.OPEN_DISPUTE)
            assert transition.targets == (DealStatus.DISPUTED,)
            assert transition.actor == ActorRule.EITHER

    def test_disputed_has_no_exits(self):
        """Dispute resolution happens outside the core."""
        assert allowed_actions(DealStatus.DISPUTED) == []

    def test_every_row_targets_known_statuses(self):
        for (source, action), row in TRANSITIONS.items():
            assert row.source == source
            assert row.action == action
            assert row.targets
            assert all(isinstance(t, DealStatus) for t in row.targets)

    def test_invalid_transition_lists_allowed_actions(self):
        """The error carries the legal alternatives for the caller."""
        with pytest.raises(InvalidStateTransition) as exc_info:
            get_transition(DealStatus.PENDING, DealAction.SUBMIT_DRAFT)
        assert exc_info.value.context["status"] == "pending"
        assert "accept" in exc_info.value.context["allowed"]
        assert exc_info.value.status_code == 409


# ── next_status ──────────────────────────────────────────────────────────────


class TestNextStatus:
    """Tests for target resolution."""

    def test_counter_from_pending(self):
        assert next_status(DealStatus.PENDING, DealAction.COUNTER) == DealStatus.NEEDS_CHANGES

    def test_counter_from_needs_changes_stays(self):
        assert (
            next_status(DealStatus.NEEDS_CHANGES, DealAction.COUNTER)
            == DealStatus.NEEDS_CHANGES
        )

    def test_accept_defaults_to_briefing(self):
        assert next_status(DealStatus.PENDING, DealAction.ACCEPT) == DealStatus.BRIEFING

    def test_accept_explicit_target(self):
        assert (
            next_status(DealStatus.NEEDS_CHANGES, DealAction.ACCEPT, DealStatus.ACCEPTED)
            == DealStatus.ACCEPTED
        )

    def test_explicit_target_outside_row_rejected(self):
        with pytest.raises(InvalidStateTransition):
            next_status(DealStatus.PENDING, DealAction.ACCEPT, DealStatus.COMPLETED)

    def test_invoice_chain(self):
        assert (
            next_status(DealStatus.ACCEPTED, DealAction.REQUEST_INVOICE)
            == DealStatus.INVOICE_NEEDED
        )
        assert (
            next_status(DealStatus.INVOICE_NEEDED, DealAction.ISSUE_INVOICE)
            == DealStatus.WAITING_PAYMENT
        )
        assert (
            next_status(DealStatus.WAITING_PAYMENT, DealAction.FUNDS_RESERVED)
            == DealStatus.BRIEFING
        )

    def test_work_phase_renegotiation(self):
        for status in (DealStatus.BRIEFING, DealStatus.IN_PROGRESS, DealStatus.REVIEW):
            assert next_status(status, DealAction.COUNTER) == DealStatus.NEEDS_CHANGES

    def test_accepted_cannot_be_countered(self):
        """ACCEPTED waits for the invoice flow; renegotiation starts from briefing."""
        with pytest.raises(InvalidStateTransition):
            next_status(DealStatus.ACCEPTED, DealAction.COUNTER)

    def test_pending_cannot_start_work(self):
        with pytest.raises(InvalidStateTransition):
            next_status(DealStatus.PENDING, DealAction.START_WORK)


# ── Actor Rules ──────────────────────────────────────────────────────────────


class TestActorRules:
    """Tests for role resolution and per-row actor checks."""

    def test_resolve_role(self):
        assert resolve_role(ADVERTISER, CREATOR, ADVERTISER) == PartyRole.ADVERTISER
        assert resolve_role(ADVERTISER, CREATOR, CREATOR) == PartyRole.CREATOR

    def test_resolve_role_outsider(self):
        with pytest.raises(NotAuthorized):
            resolve_role(ADVERTISER, CREATOR, "someone-else")

    def test_responder_must_not_be_latest_author(self):
        transition = get_transition(DealStatus.PENDING, DealAction.ACCEPT)
        with pytest.raises(NotAuthorized, match="not your turn"):
            check_actor(transition, PartyRole.ADVERTISER, ADVERTISER, ADVERTISER)
        check_actor(transition, PartyRole.CREATOR, CREATOR, ADVERTISER)

    def test_responder_requires_terms(self):
        transition = get_transition(DealStatus.PENDING, DealAction.COUNTER)
        with pytest.raises(NotAuthorized):
            check_actor(transition, PartyRole.CREATOR, CREATOR, None)

    def test_pending_reject_is_responder_only(self):
        """The proposer cannot reject their own pending proposal."""
        transition = get_transition(DealStatus.PENDING, DealAction.REJECT)
        with pytest.raises(NotAuthorized):
            check_actor(transition, PartyRole.ADVERTISER, ADVERTISER, ADVERTISER)

    def test_needs_changes_reject_by_either(self):
        transition = get_transition(DealStatus.NEEDS_CHANGES, DealAction.REJECT)
        check_actor(transition, PartyRole.ADVERTISER, ADVERTISER, ADVERTISER)
        check_actor(transition, PartyRole.CREATOR, CREATOR, ADVERTISER)

    def test_creator_only_rows(self):
        transition = get_transition(DealStatus.ACCEPTED, DealAction.REQUEST_INVOICE)
        with pytest.raises(NotAuthorized, match="creator"):
            check_actor(transition, PartyRole.ADVERTISER, ADVERTISER, None)
        check_actor(transition, PartyRole.CREATOR, CREATOR, None)

    def test_advertiser_only_rows(self):
        for status, action in (
            (DealStatus.WAITING_PAYMENT, DealAction.FUNDS_RESERVED),
            (DealStatus.REVIEW, DealAction.ACCEPT_DRAFT),
            (DealStatus.REVIEW, DealAction.REQUEST_CHANGES),
        ):
            transition = get_transition(status, action)
            with pytest.raises(NotAuthorized):
                check_actor(transition, PartyRole.CREATOR, CREATOR, None)
            check_actor(transition, PartyRole.ADVERTISER, ADVERTISER, None)


# ── Target Selection ─────────────────────────────────────────────────────────


class TestTargets:
    """Tests for acceptance and draft-acceptance targets."""

    def test_acceptance_without_escrow(self):
        assert (
            acceptance_target(escrow_required=False, escrow_funded=False)
            == DealStatus.BRIEFING
        )

    def test_acceptance_with_required_escrow(self):
        assert (
            acceptance_target(escrow_required=True, escrow_funded=False)
            == DealStatus.ACCEPTED
        )

    def test_acceptance_with_funded_escrow(self):
        assert (
            acceptance_target(escrow_required=True, escrow_funded=True)
            == DealStatus.IN_PROGRESS
        )
        assert (
            acceptance_target(escrow_required=False, escrow_funded=True)
            == DealStatus.IN_PROGRESS
        )

    def test_draft_accepted_target(self):
        assert draft_accepted_target(milestones_remaining=True) == DealStatus.IN_PROGRESS
        assert draft_accepted_target(milestones_remaining=False) == DealStatus.COMPLETED


# ── Walks ────────────────────────────────────────────────────────────────────


class TestWalks:
    """Tests for walk validation over whole lifecycles."""

    def test_negotiation_walk(self):
        assert is_valid_walk([
            DealStatus.PENDING,
            DealStatus.NEEDS_CHANGES,
            DealStatus.NEEDS_CHANGES,
            DealStatus.BRIEFING,
            DealStatus.IN_PROGRESS,
            DealStatus.REVIEW,
            DealStatus.IN_PROGRESS,
            DealStatus.REVIEW,
            DealStatus.COMPLETED,
        ])

    def test_escrow_walk(self):
        assert is_valid_walk([
            DealStatus.PENDING,
            DealStatus.ACCEPTED,
            DealStatus.INVOICE_NEEDED,
            DealStatus.WAITING_PAYMENT,
            DealStatus.BRIEFING,
        ])

    def test_invalid_walk(self):
        assert not is_valid_walk([DealStatus.PENDING, DealStatus.COMPLETED])
        assert not is_valid_walk([DealStatus.COMPLETED, DealStatus.IN_PROGRESS])
