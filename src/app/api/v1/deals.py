"""REST API endpoints for deal negotiation, escrow and audit.

Thin adapter over DealLifecycleManager: every endpoint authenticates the
actor from the bearer token, forwards to exactly one manager command or
query, and returns its result. DealError subclasses raised by the manager
are rendered by ``deal_error_handler`` (registered in main.create_app).
"""

from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.app.api.deps import get_current_user_id, get_lifecycle_manager
from src.app.deals.audit import DEFAULT_AUDIT_LIMIT
from src.app.deals.errors import DealError
from src.app.deals.lifecycle import DealLifecycleManager
from src.app.deals.schemas import (
    AuditCategory,
    AuditEntryRead,
    CommandResult,
    DealFileRead,
    DealProposalCreate,
    DealRead,
    DealStatus,
    EscrowSummary,
    FileCategory,
    MarkingState,
    TermsVersionRead,
    TurnInfo,
)

router = APIRouter(prefix="/deals", tags=["deals"])


async def deal_error_handler(request: Request, exc: DealError) -> JSONResponse:
    """Render a typed deal-core failure as ``{"error", "detail", ...context}``."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Request Schemas ──────────────────────────────────────────────────────────


class CounterOfferRequest(BaseModel):
    """Request body for proposing a new terms version."""

    changes: dict[str, Any] = Field(default_factory=dict)
    rationale: str | None = None
    expected_version: int | None = Field(default=None, ge=1)


class AcceptTermsRequest(BaseModel):
    expected_version: int | None = Field(default=None, ge=1)


class ReasonRequest(BaseModel):
    reason: str | None = None


class CommentRequest(BaseModel):
    comment: str | None = None


class InvoiceRequest(BaseModel):
    """Request body for an escrow invoice (amount defaults to the milestone's)."""

    amount: int | None = Field(default=None, gt=0)
    due_date: date | None = None
    comment: str | None = None
    milestone_id: str | None = None


class PublicationProofRequest(BaseModel):
    publication_url: str = Field(min_length=1)


class AttachFileRequest(BaseModel):
    """Metadata for a file already uploaded to external storage."""

    file_name: str = Field(min_length=1, max_length=500)
    category: FileCategory
    storage_path: str | None = None
    file_size: int | None = Field(default=None, ge=0)


class MarkingUpdateRequest(BaseModel):
    state: MarkingState
    erid: str | None = None


# ── Deal Endpoints ───────────────────────────────────────────────────────────


@router.post("", response_model=CommandResult, status_code=201)
async def create_deal(
    body: DealProposalCreate,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> CommandResult:
    """Propose a new deal with its first terms version."""
    return await manager.create_proposal(user_id, body)


@router.get("", response_model=list[DealRead])
async def list_deals(
    status: DealStatus | None = Query(default=None),
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> list[DealRead]:
    """Deals where the caller is the advertiser or the creator."""
    return await manager.list_deals_for_user(user_id, status)


@router.get("/{deal_id}", response_model=DealRead)
async def get_deal(
    deal_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> DealRead:
    return await manager.get_deal_state(deal_id, viewer_id=user_id)


@router.get("/{deal_id}/turn", response_model=TurnInfo)
async def get_turn(
    deal_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> TurnInfo:
    """Who is expected to respond to the latest terms."""
    return await manager.whose_turn(deal_id, viewer_id=user_id)


@router.post("/{deal_id}/reject", response_model=CommandResult)
async def reject_deal(
    deal_id: str,
    body: ReasonRequest,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> CommandResult:
    return await manager.reject_deal(deal_id, user_id, body.reason)


@router.post("/{deal_id}/dispute", response_model=CommandResult)
async def open_dispute(
    deal_id: str,
    body: ReasonRequest,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> CommandResult:
    return await manager.open_dispute(deal_id, user_id, body.reason)


# ── Terms Endpoints ──────────────────────────────────────────────────────────


@router.get("/{deal_id}/terms", response_model=list[TermsVersionRead])
async def get_terms_history(
    deal_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> list[TermsVersionRead]:
    """Full terms history, oldest first, with changed fields per version."""
    return await manager.get_terms_history(deal_id, viewer_id=user_id)


@router.post("/{deal_id}/terms/counter", response_model=CommandResult)
async def counter_offer(
    deal_id: str,
    body: CounterOfferRequest,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> CommandResult:
    return await manager.submit_counter_offer(
        deal_id, user_id, body.changes, body.rationale, body.expected_version
    )


@router.post("/{deal_id}/terms/accept", response_model=CommandResult)
async def accept_terms(
    deal_id: str,
    body: AcceptTermsRequest,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> CommandResult:
    return await manager.accept_terms(deal_id, user_id, body.expected_version)


# ── Escrow Endpoints ─────────────────────────────────────────────────────────


@router.get("/{deal_id}/escrow", response_model=EscrowSummary)
async def get_escrow(
    deal_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> EscrowSummary:
    return await manager.get_escrow_summary(deal_id, viewer_id=user_id)


@router.post("/{deal_id}/invoices", response_model=CommandResult)
async def request_invoice(
    deal_id: str,
    body: InvoiceRequest,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> CommandResult:
    return await manager.request_invoice(
        deal_id, user_id, body.amount, body.due_date, body.comment, body.milestone_id
    )


@router.post("/{deal_id}/invoices/{invoice_id}/pay", response_model=CommandResult)
async def pay_invoice(
    deal_id: str,
    invoice_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> CommandResult:
    return await manager.pay_invoice(deal_id, user_id, invoice_id)


@router.post("/{deal_id}/escrow/{milestone_id}/reserve", response_model=CommandResult)
async def reserve_milestone(
    deal_id: str,
    milestone_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> CommandResult:
    return await manager.reserve_escrow(deal_id, user_id, milestone_id)


@router.post("/{deal_id}/escrow/{milestone_id}/release", response_model=CommandResult)
async def release_milestone(
    deal_id: str,
    milestone_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> CommandResult:
    return await manager.release_milestone(deal_id, user_id, milestone_id)


@router.post("/{deal_id}/escrow/{milestone_id}/publication", response_model=CommandResult)
async def submit_publication_proof(
    deal_id: str,
    milestone_id: str,
    body: PublicationProofRequest,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> CommandResult:
    return await manager.submit_publication_proof(
        deal_id, user_id, milestone_id, body.publication_url
    )


# ── Work Endpoints ───────────────────────────────────────────────────────────


@router.post("/{deal_id}/work/start", response_model=CommandResult)
async def start_work(
    deal_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> CommandResult:
    return await manager.start_work(deal_id, user_id)


@router.post("/{deal_id}/draft/submit", response_model=CommandResult)
async def submit_draft(
    deal_id: str,
    body: CommentRequest,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> CommandResult:
    return await manager.mark_draft_submitted(deal_id, user_id, body.comment)


@router.post("/{deal_id}/draft/accept", response_model=CommandResult)
async def accept_draft(
    deal_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> CommandResult:
    return await manager.mark_draft_accepted(deal_id, user_id)


@router.post("/{deal_id}/draft/request-changes", response_model=CommandResult)
async def request_changes(
    deal_id: str,
    body: CommentRequest,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> CommandResult:
    return await manager.request_changes(deal_id, user_id, body.comment)


# ── Files & Marking ──────────────────────────────────────────────────────────


@router.get("/{deal_id}/files", response_model=list[DealFileRead])
async def list_files(
    deal_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> list[DealFileRead]:
    return await manager.get_files(deal_id, viewer_id=user_id)


@router.post("/{deal_id}/files", response_model=CommandResult, status_code=201)
async def attach_file(
    deal_id: str,
    body: AttachFileRequest,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> CommandResult:
    return await manager.attach_file(
        deal_id, user_id, body.file_name, body.category, body.storage_path, body.file_size
    )


@router.post("/{deal_id}/marking", response_model=CommandResult)
async def update_marking(
    deal_id: str,
    body: MarkingUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> CommandResult:
    return await manager.update_marking(deal_id, user_id, body.state, body.erid)


# ── Audit ────────────────────────────────────────────────────────────────────


@router.get("/{deal_id}/audit", response_model=list[AuditEntryRead])
async def get_audit_log(
    deal_id: str,
    limit: int = Query(default=DEFAULT_AUDIT_LIMIT, ge=1, le=200),
    category: AuditCategory | None = Query(default=None),
    user_id: str = Depends(get_current_user_id),
    manager: DealLifecycleManager = Depends(get_lifecycle_manager),
) -> list[AuditEntryRead]:
    """Audit entries, newest first, optionally filtered by category."""
    return await manager.get_audit_log(deal_id, limit, category, viewer_id=user_id)
