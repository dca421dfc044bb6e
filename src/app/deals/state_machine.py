"""Deal lifecycle finite-state machine.

One transition table keyed by (status, action) plus pure guard functions.
Nothing in this module touches the database: the lifecycle manager reads
the aggregate, asks this module whether the move is legal and where it
lands, then persists the result.

Actor rules:
- RESPONDER: the party that did NOT author the latest terms version
- EITHER: any party to the deal
- ADVERTISER / CREATOR: that party only (requester / fulfiller)

IMPORTANT: REJECTED and COMPLETED are terminal. Every action from a terminal
status fails with InvalidStateTransition, including disputes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from src.app.deals.errors import InvalidStateTransition, NotAuthorized
from src.app.deals.schemas import DealStatus, PartyRole


class DealAction(str, Enum):
    """Events that move a deal through its lifecycle."""

    ACCEPT = "accept"
    COUNTER = "counter"
    REJECT = "reject"
    REQUEST_INVOICE = "request_invoice"
    ISSUE_INVOICE = "issue_invoice"
    FUNDS_RESERVED = "funds_reserved"
    START_WORK = "start_work"
    SUBMIT_DRAFT = "submit_draft"
    ACCEPT_DRAFT = "accept_draft"
    REQUEST_CHANGES = "request_changes"
    OPEN_DISPUTE = "open_dispute"


class ActorRule(str, Enum):
    RESPONDER = "responder"
    EITHER = "either"
    ADVERTISER = "advertiser"
    CREATOR = "creator"


@dataclass(frozen=True)
class Transition:
    """One row of the transition table."""

    source: DealStatus
    action: DealAction
    actor: ActorRule
    targets: tuple[DealStatus, ...]

    @property
    def default_target(self) -> DealStatus:
        return self.targets[0]


TERMINAL_STATUSES: frozenset[DealStatus] = frozenset({
    DealStatus.REJECTED,
    DealStatus.COMPLETED,
})

# Statuses in which a new terms version may be proposed. The work-phase
# entries cover mid-flight renegotiation of already accepted terms.
RENEGOTIABLE_STATUSES: frozenset[DealStatus] = frozenset({
    DealStatus.PENDING,
    DealStatus.NEEDS_CHANGES,
    DealStatus.BRIEFING,
    DealStatus.IN_PROGRESS,
    DealStatus.REVIEW,
})

# Statuses in which a turn exists (someone owes the other a response).
NEGOTIATING_STATUSES: frozenset[DealStatus] = frozenset({
    DealStatus.PENDING,
    DealStatus.NEEDS_CHANGES,
})

_ACCEPT_TARGETS = (DealStatus.BRIEFING, DealStatus.ACCEPTED, DealStatus.IN_PROGRESS)


def _build_table() -> dict[tuple[DealStatus, DealAction], Transition]:
    rows = [
        Transition(DealStatus.PENDING, DealAction.ACCEPT, ActorRule.RESPONDER, _ACCEPT_TARGETS),
        Transition(DealStatus.PENDING, DealAction.COUNTER, ActorRule.RESPONDER, (DealStatus.NEEDS_CHANGES,)),
        Transition(DealStatus.PENDING, DealAction.REJECT, ActorRule.RESPONDER, (DealStatus.REJECTED,)),
        Transition(DealStatus.NEEDS_CHANGES, DealAction.ACCEPT, ActorRule.RESPONDER, _ACCEPT_TARGETS),
        Transition(DealStatus.NEEDS_CHANGES, DealAction.COUNTER, ActorRule.RESPONDER, (DealStatus.NEEDS_CHANGES,)),
        Transition(DealStatus.NEEDS_CHANGES, DealAction.REJECT, ActorRule.EITHER, (DealStatus.REJECTED,)),
        Transition(DealStatus.ACCEPTED, DealAction.REQUEST_INVOICE, ActorRule.CREATOR, (DealStatus.INVOICE_NEEDED,)),
        Transition(DealStatus.INVOICE_NEEDED, DealAction.ISSUE_INVOICE, ActorRule.CREATOR, (DealStatus.WAITING_PAYMENT,)),
        Transition(DealStatus.WAITING_PAYMENT, DealAction.FUNDS_RESERVED, ActorRule.ADVERTISER, (DealStatus.BRIEFING,)),
        Transition(DealStatus.BRIEFING, DealAction.START_WORK, ActorRule.CREATOR, (DealStatus.IN_PROGRESS,)),
        Transition(DealStatus.IN_PROGRESS, DealAction.SUBMIT_DRAFT, ActorRule.CREATOR, (DealStatus.REVIEW,)),
        Transition(
            DealStatus.REVIEW,
            DealAction.ACCEPT_DRAFT,
            ActorRule.ADVERTISER,
            (DealStatus.COMPLETED, DealStatus.IN_PROGRESS),
        ),
        Transition(DealStatus.REVIEW, DealAction.REQUEST_CHANGES, ActorRule.ADVERTISER, (DealStatus.IN_PROGRESS,)),
    ]
    # Mid-flight renegotiation: the accepted terms are reopened by either party.
    for status in (DealStatus.BRIEFING, DealStatus.IN_PROGRESS, DealStatus.REVIEW):
        rows.append(
            Transition(status, DealAction.COUNTER, ActorRule.EITHER, (DealStatus.NEEDS_CHANGES,))
        )
    for status in DealStatus:
        if status in TERMINAL_STATUSES or status == DealStatus.DISPUTED:
            continue
        rows.append(
            Transition(status, DealAction.OPEN_DISPUTE, ActorRule.EITHER, (DealStatus.DISPUTED,))
        )
    return {(row.source, row.action): row for row in rows}


TRANSITIONS: dict[tuple[DealStatus, DealAction], Transition] = _build_table()


# ── Pure Guards ─────────────────────────────────────────────────────────────


def is_terminal(status: DealStatus) -> bool:
    return status in TERMINAL_STATUSES


def allowed_actions(status: DealStatus) -> list[DealAction]:
    """Actions that have a row for ``status``, in table order."""
    return [action for (source, action) in TRANSITIONS if source == status]


def get_transition(status: DealStatus, action: DealAction) -> Transition:
    """Look up the table row for (status, action).

    Raises:
        InvalidStateTransition: If the action is not legal from ``status``.
    """
    transition = TRANSITIONS.get((status, action))
    if transition is None:
        raise InvalidStateTransition(
            f"Cannot {action.value} a deal in status {status.value}",
            status=status.value,
            action=action.value,
            allowed=[a.value for a in allowed_actions(status)],
        )
    return transition


def next_status(
    status: DealStatus,
    action: DealAction,
    target: DealStatus | None = None,
) -> DealStatus:
    """Return where ``action`` lands from ``status``.

    Args:
        status: Current deal status.
        action: Requested lifecycle action.
        target: Explicit target for rows with more than one outcome
            (acceptance, draft acceptance). Defaults to the row's first target.

    Returns:
        The resulting DealStatus.

    Raises:
        InvalidStateTransition: If the move is not in the table.
    """
    transition = get_transition(status, action)
    if target is None:
        return transition.default_target
    if target not in transition.targets:
        raise InvalidStateTransition(
            f"{action.value} from {status.value} cannot land in {target.value}",
            status=status.value,
            action=action.value,
            target=target.value,
        )
    return target


def is_valid_walk(statuses: list[DealStatus]) -> bool:
    """Check that consecutive statuses are connected by some table row."""
    edges = {
        (row.source, target) for row in TRANSITIONS.values() for target in row.targets
    }
    return all((a, b) in edges for a, b in zip(statuses, statuses[1:]))


def resolve_role(advertiser_id: str, creator_id: str, actor_id: str) -> PartyRole:
    """Resolve the actor's role relative to a deal.

    Raises:
        NotAuthorized: If the actor is not a party to the deal.
    """
    if actor_id == advertiser_id:
        return PartyRole.ADVERTISER
    if actor_id == creator_id:
        return PartyRole.CREATOR
    raise NotAuthorized("Actor is not a party to this deal", actor_id=actor_id)


def check_actor(
    transition: Transition,
    role: PartyRole,
    actor_id: str,
    latest_author: str | None,
) -> None:
    """Enforce the row's actor rule.

    Raises:
        NotAuthorized: If the actor may not perform this transition.
    """
    rule = transition.actor
    if rule == ActorRule.EITHER:
        return
    if rule == ActorRule.RESPONDER:
        if latest_author is None:
            raise NotAuthorized("There are no terms to respond to")
        if latest_author == actor_id:
            raise NotAuthorized(
                "It is not your turn: you authored the latest terms version",
                actor_id=actor_id,
            )
        return
    if rule.value != role.value:
        raise NotAuthorized(
            f"Only the {rule.value} may {transition.action.value}",
            actor_id=actor_id,
            role=role.value,
        )


def acceptance_target(*, escrow_required: bool, escrow_funded: bool) -> DealStatus:
    """Where accepted terms move the deal.

    Funds already in escrow skip straight to work; required but missing
    escrow parks the deal in ACCEPTED until an invoice is paid.
    """
    if escrow_funded:
        return DealStatus.IN_PROGRESS
    if escrow_required:
        return DealStatus.ACCEPTED
    return DealStatus.BRIEFING


def draft_accepted_target(*, milestones_remaining: bool) -> DealStatus:
    return DealStatus.IN_PROGRESS if milestones_remaining else DealStatus.COMPLETED
