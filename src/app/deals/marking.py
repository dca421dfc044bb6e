"""Advertising-marking (ORD registration) workflow.

Deals flagged ``marking_required`` must be registered with the advertising
data operator before the placement goes live. Progress only moves forward
through MARKING_ORDER (skipping steps is allowed), and ERID_RECEIVED needs
the registration token (erid) issued by the operator.

Who may record progress follows the ``marking_responsibility`` of the
accepted terms: the named party, or either party when the platform handles it.
"""

from __future__ import annotations

from datetime import datetime

import structlog

from src.app.deals.errors import DealValidationError, IllegalOperation, NotAuthorized
from src.app.deals.models import DealModel
from src.app.deals.schemas import (
    MARKING_ORDER,
    MarkingResponsibility,
    MarkingState,
    PartyRole,
)

logger = structlog.get_logger(__name__)


def check_marking_actor(
    responsibility: MarkingResponsibility, role: PartyRole, actor_id: str
) -> None:
    """Raise NotAuthorized when marking belongs to the other party."""
    if responsibility == MarkingResponsibility.PLATFORM:
        return
    if responsibility.value != role.value:
        raise NotAuthorized(
            f"Marking is the {responsibility.value}'s responsibility on this deal",
            actor_id=actor_id,
        )


def advance_marking(
    deal: DealModel,
    target: MarkingState,
    erid: str | None,
    now: datetime,
) -> MarkingState:
    """Move the deal's marking state forward.

    Args:
        deal: Locked deal row; mutated in place.
        target: Requested marking state.
        erid: Registration token; required to reach ERID_RECEIVED.
        now: Timestamp for ``marking_state_updated_at``.

    Returns:
        The previous marking state.

    Raises:
        IllegalOperation: Marking not required, or a backwards move.
        DealValidationError: ERID_RECEIVED (or later) without an erid.
    """
    if not deal.marking_required:
        raise IllegalOperation(
            "Advertising marking is not required for this deal", deal_id=str(deal.id)
        )
    current = MarkingState(deal.marking_state)
    if MARKING_ORDER.index(target) <= MARKING_ORDER.index(current):
        raise IllegalOperation(
            f"Marking cannot move from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )

    erid = erid.strip() if erid else None
    needs_erid = MARKING_ORDER.index(target) >= MARKING_ORDER.index(MarkingState.ERID_RECEIVED)
    if needs_erid and not (erid or deal.erid):
        raise DealValidationError(f"{target.value} requires an erid")

    if erid:
        deal.erid = erid
    deal.marking_state = target.value
    deal.marking_state_updated_at = now
    logger.info(
        "marking_advanced",
        deal_id=str(deal.id),
        from_state=current.value,
        to_state=target.value,
    )
    return current
