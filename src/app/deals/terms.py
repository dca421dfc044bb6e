"""Terms negotiation ledger -- versioned proposals and the counter-offer protocol.

Versions form a strictly increasing, gap-free sequence per deal. A new
version is inserted as ``latest.version + 1``; the unique (deal_id, version)
constraint turns a lost race into VersionConflict, and callers may pass
``expected_version`` to detect the race before writing anything.

Turn rule: while a deal is negotiating (pending / needs_changes), the party
that did NOT author the latest version is the one who may respond. This is
derived from stored rows only, never from client-side flags.

Acceptance is asymmetric: one acceptance by the non-author finalizes a
version; the author's own endorsement is implicit.
"""

from __future__ import annotations

import uuid
from typing import Any

import pydantic
import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.deals.errors import (
    DealValidationError,
    IllegalOperation,
    NotAuthorized,
    VersionConflict,
)
from src.app.deals.models import DealModel, TermsAcceptanceModel, TermsVersionModel
from src.app.deals.repository import DealRepository, to_terms_read
from src.app.deals.schemas import (
    TERMS_SCHEMA_VERSION,
    BaseTerms,
    DealStatus,
    TermsStatus,
    TermsVersionRead,
    diff_terms,
    dump_terms_fields,
    migrate_terms_fields,
    parse_terms_fields,
)
from src.app.deals.state_machine import NEGOTIATING_STATUSES

logger = structlog.get_logger(__name__)

# Free-text keys that change on every counter and carry no terms meaning.
_NON_DIFF_KEYS = frozenset({"rationale"})


def validate_terms(fields: dict[str, Any]) -> BaseTerms:
    """Migrate and validate a terms map.

    Raises:
        DealValidationError: If the map does not describe valid terms.
    """
    try:
        return parse_terms_fields(fields)
    except pydantic.ValidationError as exc:
        raise DealValidationError(
            "Invalid terms",
            errors=[
                {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
                for err in exc.errors()
            ],
        ) from exc


class TermsLedger:
    """Versioned terms history for deals.

    Args:
        repository: DealRepository used for row access.
    """

    def __init__(self, repository: DealRepository) -> None:
        self._repo = repository

    # ── Pure Queries ────────────────────────────────────────────────────────

    @staticmethod
    def ensure_current(
        latest: TermsVersionModel | None, expected_version: int | None
    ) -> None:
        """Fail fast when the caller's view of the latest version is stale.

        Raises:
            VersionConflict: If ``expected_version`` is given and differs.
        """
        if expected_version is None:
            return
        current = latest.version if latest is not None else 0
        if current != expected_version:
            raise VersionConflict(
                f"Terms moved to version {current}; re-read and retry",
                expected_version=expected_version,
                current_version=current,
            )

    @staticmethod
    def whose_turn(deal: DealModel, latest: TermsVersionModel | None) -> str | None:
        """User id of the party expected to respond, or None outside negotiation."""
        if latest is None or DealStatus(deal.status) not in NEGOTIATING_STATUSES:
            return None
        if latest.created_by == deal.advertiser_id:
            return deal.creator_id
        return deal.advertiser_id

    @classmethod
    def can_respond(
        cls, deal: DealModel, latest: TermsVersionModel | None, actor_id: str
    ) -> bool:
        return cls.whose_turn(deal, latest) == actor_id

    @staticmethod
    def diff_versions(
        previous: TermsVersionRead | TermsVersionModel | None,
        current: TermsVersionRead | TermsVersionModel,
    ) -> set[str]:
        """Field keys whose values differ between two versions."""
        before = migrate_terms_fields(previous.fields) if previous is not None else None
        after = migrate_terms_fields(current.fields)
        return diff_terms(before, after) - _NON_DIFF_KEYS

    # ── Commands ────────────────────────────────────────────────────────────

    async def propose_initial(
        self,
        session: AsyncSession,
        deal: DealModel,
        author_id: str,
        fields: dict[str, Any],
    ) -> TermsVersionModel:
        """Create version 1 for a deal that has no terms yet.

        Raises:
            IllegalOperation: If the deal already has terms.
            DealValidationError: If the fields are invalid.
        """
        if await self._repo.latest_terms(session, deal.id) is not None:
            raise IllegalOperation("Initial terms already exist", deal_id=str(deal.id))
        terms = validate_terms(fields)
        return await self._insert(session, deal.id, 1, author_id, dump_terms_fields(terms))

    async def counter_offer(
        self,
        session: AsyncSession,
        deal: DealModel,
        actor_id: str,
        changes: dict[str, Any],
        rationale: str | None,
        latest: TermsVersionModel | None,
    ) -> TermsVersionModel:
        """Create version N+1 with merged fields.

        Unspecified fields inherit from the latest version.

        Args:
            session: Session with an open transaction.
            deal: Deal row (already locked by the caller).
            actor_id: Party submitting the counter-offer.
            changes: Fields to change.
            rationale: Required free-text reason.
            latest: Current latest version, read in the same transaction.

        Returns:
            The new draft version.

        Raises:
            DealValidationError: Missing rationale or invalid merged terms.
            NotAuthorized: Actor authored the still-pending latest version.
            VersionConflict: Another writer inserted the same version number.
        """
        if not rationale or not rationale.strip():
            raise DealValidationError("A counter-offer requires a rationale")
        if latest is None:
            raise IllegalOperation("There are no terms to counter", deal_id=str(deal.id))
        if latest.status == TermsStatus.DRAFT.value and latest.created_by == actor_id:
            raise NotAuthorized(
                "You cannot counter your own pending offer", actor_id=actor_id
            )

        merged = {
            **migrate_terms_fields(latest.fields or {}),
            **migrate_terms_fields(changes),
            "rationale": rationale.strip(),
        }
        terms = validate_terms(merged)
        return await self._insert(
            session, deal.id, latest.version + 1, actor_id, dump_terms_fields(terms)
        )

    async def accept_latest(
        self,
        session: AsyncSession,
        deal: DealModel,
        actor_id: str,
        latest: TermsVersionModel | None,
    ) -> TermsVersionModel:
        """Record the non-author's acceptance and finalize the latest version.

        Raises:
            IllegalOperation: No terms, or latest is already accepted.
            NotAuthorized: Actor authored the latest version.
        """
        if latest is None:
            raise IllegalOperation("There are no terms to accept", deal_id=str(deal.id))
        if latest.created_by == actor_id:
            raise NotAuthorized(
                "You cannot accept terms you authored", actor_id=actor_id
            )
        if latest.status == TermsStatus.ACCEPTED.value:
            raise IllegalOperation(
                f"Terms version {latest.version} is already accepted",
                version=latest.version,
            )
        session.add(TermsAcceptanceModel(terms_id=latest.id, user_id=actor_id))
        latest.status = TermsStatus.ACCEPTED.value
        await self._repo.flush(session)
        logger.info(
            "terms_accepted",
            deal_id=str(deal.id),
            version=latest.version,
            actor_id=actor_id,
        )
        return latest

    @staticmethod
    def reject_latest(latest: TermsVersionModel | None) -> TermsVersionModel | None:
        """Rejection leaves the latest version as a draft forever."""
        return latest

    async def history(
        self, session: AsyncSession, deal_id: uuid.UUID
    ) -> list[TermsVersionRead]:
        """Ordered versions with acceptances and per-version changed keys."""
        versions = await self._repo.list_terms(session, deal_id)
        acceptances = await self._repo.acceptances_for(session, [v.id for v in versions])
        history: list[TermsVersionRead] = []
        previous: TermsVersionModel | None = None
        for version in versions:
            read = to_terms_read(version, acceptances.get(version.id))
            read.changed_fields = sorted(self.diff_versions(previous, version))
            history.append(read)
            previous = version
        return history

    # ── Internal ────────────────────────────────────────────────────────────

    async def _insert(
        self,
        session: AsyncSession,
        deal_id: uuid.UUID,
        version: int,
        author_id: str,
        fields: dict[str, Any],
    ) -> TermsVersionModel:
        model = TermsVersionModel(
            deal_id=deal_id,
            version=version,
            created_by=author_id,
            status=TermsStatus.DRAFT.value,
            fields=fields,
            schema_version=TERMS_SCHEMA_VERSION,
        )
        session.add(model)
        try:
            await session.flush()
        except IntegrityError as exc:
            logger.info(
                "terms_version_conflict",
                deal_id=str(deal_id),
                version=version,
                actor_id=author_id,
            )
            raise VersionConflict(
                f"Terms version {version} already exists; re-read and retry",
                version=version,
            ) from exc
        logger.info(
            "terms_version_created",
            deal_id=str(deal_id),
            version=version,
            author_id=author_id,
        )
        return model
