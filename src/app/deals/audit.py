"""Append-only deal audit log.

Every state-changing command writes at least one entry in the same
transaction as the change it describes. ``record`` flushes immediately so
a failed write aborts the enclosing command instead of surfacing at
commit. No update or delete API exists.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.deals.errors import AuditWriteError
from src.app.deals.models import AuditLogModel
from src.app.deals.repository import to_audit_read
from src.app.deals.schemas import AuditCategory, AuditEntryRead

logger = structlog.get_logger(__name__)

DEFAULT_AUDIT_LIMIT = 20


class AuditLog:
    """Writer and reader for ``deal_audit_log``."""

    async def record(
        self,
        session: AsyncSession,
        deal_id: uuid.UUID,
        user_id: str,
        action: str,
        category: AuditCategory,
        metadata: dict[str, Any] | None = None,
    ) -> AuditEntryRead:
        """Append one entry inside the caller's transaction.

        Args:
            session: Session with an open transaction.
            deal_id: Deal the entry belongs to.
            user_id: Acting party.
            action: Human-readable description.
            category: Partition for downstream consumers.
            metadata: Structured details (JSON-serializable).

        Returns:
            The persisted entry.

        Raises:
            AuditWriteError: If the entry could not be written.
        """
        model = AuditLogModel(
            deal_id=deal_id,
            user_id=user_id,
            action=action,
            category=category.value,
            metadata_json=metadata or {},
        )
        session.add(model)
        try:
            await session.flush()
        except SQLAlchemyError as exc:
            logger.error(
                "audit_write_failed",
                deal_id=str(deal_id),
                action=action,
                error=str(exc),
            )
            raise AuditWriteError(
                "Audit entry could not be written; operation aborted",
                deal_id=str(deal_id),
            ) from exc
        return to_audit_read(model)

    async def list(
        self,
        session: AsyncSession,
        deal_id: uuid.UUID,
        limit: int = DEFAULT_AUDIT_LIMIT,
        category: AuditCategory | None = None,
    ) -> list[AuditEntryRead]:
        """Entries for a deal, newest first."""
        stmt = select(AuditLogModel).where(AuditLogModel.deal_id == deal_id)
        if category is not None:
            stmt = stmt.where(AuditLogModel.category == category.value)
        stmt = stmt.order_by(AuditLogModel.id.desc()).limit(limit)
        result = await session.execute(stmt)
        return [to_audit_read(m) for m in result.scalars().all()]
