"""
Reconciliation API Endpoints

REST API for bank statement reconciliation:
- GET /api/reconciliation/status - Module status and effective policy
- POST /api/reconciliation/match - Run the matching engine
- GET /api/reconciliation/imports - List import batches
- GET /api/reconciliation/imports/{import_id}/summary - Import KPIs
- GET /api/reconciliation/transactions - Filtered transaction list
- GET /api/reconciliation/transactions/{transaction_id} - One transaction
- GET /api/reconciliation/transactions/{transaction_id}/candidates - Candidate preview
- GET /api/reconciliation/obligations - Open invoices/expenses for manual matching
- POST /api/reconciliation/transactions/{transaction_id}/approve - Approve a match
- POST /api/reconciliation/transactions/{transaction_id}/reject - Reject a match
- POST /api/reconciliation/transactions/{transaction_id}/ignore - Ignore a transaction
- POST /api/reconciliation/matches/batch-approve - Best-effort batch approval
"""

import logging
from typing import Optional, List, Dict
from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Header, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database.connection import get_db
from reconciliation.errors import (
    ReconciliationError,
    ReconciliationValidationError,
    MatchConflictError,
    ReconciliationNotFoundError,
    ReconciliationInfraError,
)
from reconciliation.match_policy import MatchPolicy, MatchStatus, TransactionType
from reconciliation.services.reconciliation_service import ReconciliationService
from utils.validation_errors import (
    validate_required_uuid,
    validate_optional_uuid,
    validate_choice,
    raise_invalid_parameter,
    raise_validation_error,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])

MODULE_VERSION = "1.0.0"


# ==================== Request/Response Models ====================

class RunMatchingRequest(BaseModel):
    """Request to run the matching engine."""
    import_id: Optional[str] = Field(default=None, description="Restrict the run to one import batch")
    auto_apply: bool = Field(default=False, description="Immediately approve high confidence suggestions")
    after_posted_date: Optional[date] = Field(default=None, description="Resume cursor returned as next_cursor by a capped run")
    after_id: Optional[str] = Field(default=None, description="Resume cursor returned as next_cursor by a capped run")


class ApproveMatchRequest(BaseModel):
    """Request to approve a match."""
    matched_type: str = Field(..., description="invoice or expense")
    matched_id: str = Field(..., description="Invoice or expense ID")
    confidence: Optional[str] = Field(default=None, description="Defaults to manual")


class SuggestionItem(BaseModel):
    """One suggestion inside a batch approval."""
    transaction_id: str
    matched_type: str
    matched_id: str
    confidence: Optional[str] = None
    reason: Optional[str] = None


class BatchApproveRequest(BaseModel):
    """Request to approve several suggestions."""
    suggestions: List[SuggestionItem] = Field(default_factory=list)


class MatchSuggestionResponse(BaseModel):
    transaction_id: str
    matched_type: str
    matched_id: str
    confidence: str
    reason: str
    confidence_label: Optional[str] = None
    applied: bool = False
    error: Optional[dict] = None


class RunMatchingResponse(BaseModel):
    """Response for a matching run."""
    success: bool
    run_id: str
    import_id: Optional[str]
    auto_apply: bool
    matches: List[MatchSuggestionResponse]
    stats: Dict[str, int]
    next_cursor: Optional[Dict[str, str]] = None


class BatchFailureResponse(BaseModel):
    transaction_id: Optional[str]
    reason: str
    message: str


class BatchApproveResponse(BaseModel):
    """Response for a batch approval."""
    applied_count: int
    applied_by_confidence: Dict[str, int]
    failures: List[BatchFailureResponse]


# ==================== Error Mapping ====================

def raise_for_reconciliation_error(e: ReconciliationError):
    """Convert a workflow error into the matching HTTPException."""
    if isinstance(e, ReconciliationValidationError):
        if e.parameter:
            raise_invalid_parameter(e.parameter, e.message)
        raise_validation_error(e.message)

    detail = {"error": e.code, "message": e.message, "transaction_id": e.transaction_id}
    if isinstance(e, MatchConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(e, ReconciliationNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    if isinstance(e, ReconciliationInfraError):
        logger.error(f"Reconciliation storage failure: {e.message}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


# ==================== Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status():
    """
    Get reconciliation module status.

    Returns the effective matching policy.
    """
    settings = get_settings()
    return {
        "module": "reconciliation",
        "status": "operational",
        "version": MODULE_VERSION,
        "features": {
            "auto_apply": True,
            "batch_approve": True,
            "reject_reverts_obligation": settings.RECON_REJECT_REVERTS_OBLIGATION,
        },
        "policy": MatchPolicy.from_settings(settings).to_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.post("/match", response_model=RunMatchingResponse, summary="Run matching")
async def run_matching(
    request: RunMatchingRequest,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    """
    Run the matching engine over unmatched transactions.

    This will:
    1. Load unmatched transactions (optionally of one import) and open obligations
    2. Suggest at most one obligation per transaction
    3. Approve high confidence suggestions when auto_apply is set

    A capped run returns next_cursor; send it back as after_posted_date and
    after_id to continue with the following transactions.
    """
    import_id = validate_optional_uuid(request.import_id, "import_id")
    after_id = validate_optional_uuid(request.after_id, "after_id")
    try:
        service = ReconciliationService(db)
        result = await service.run_matching(
            import_id=import_id,
            auto_apply=request.auto_apply,
            actor=x_user_id,
            after_posted_date=request.after_posted_date,
            after_id=after_id
        )
        return result.to_dict()
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)


@router.get("/imports", summary="List import batches")
async def list_imports(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db)
):
    try:
        service = ReconciliationService(db)
        imports = await service.list_imports(limit=limit, offset=offset)
        return {"imports": imports, "count": len(imports), "limit": limit, "offset": offset}
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)


@router.get("/imports/{import_id}/summary", summary="Import summary")
async def get_import_summary(
    import_id: str,
    db: AsyncSession = Depends(get_db)
):
    """Transaction count, credit/debit totals and match progress of one import."""
    import_id = validate_required_uuid(import_id, "import_id")
    try:
        service = ReconciliationService(db)
        return await service.get_import_summary(import_id)
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)


@router.get("/transactions", summary="List transactions")
async def list_transactions(
    import_id: Optional[str] = Query(default=None),
    match_status: Optional[str] = Query(default=None, description="Filter by match status"),
    transaction_type: Optional[str] = Query(default=None, description="credit or debit"),
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    search: Optional[str] = Query(default=None, description="Search memo and parsed name"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db)
):
    """
    List bank transactions, newest first.

    Supports filtering by import, match status, type, date range and text.
    """
    import_id = validate_optional_uuid(import_id, "import_id")
    validate_choice(
        match_status, "match_status",
        [s.value for s in MatchStatus if s != MatchStatus.SUGGESTED]
    )
    validate_choice(transaction_type, "transaction_type", [t.value for t in TransactionType])

    try:
        service = ReconciliationService(db)
        return await service.list_transactions(
            import_id=import_id,
            match_status=match_status,
            transaction_type=transaction_type,
            date_from=date_from,
            date_to=date_to,
            search=search,
            limit=limit,
            offset=offset
        )
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)


@router.get("/transactions/{transaction_id}", summary="Get single transaction")
async def get_transaction(
    transaction_id: str,
    db: AsyncSession = Depends(get_db)
):
    transaction_id = validate_required_uuid(transaction_id, "transaction_id")
    try:
        service = ReconciliationService(db)
        return await service.get_transaction(transaction_id)
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)


@router.get("/transactions/{transaction_id}/candidates", summary="Preview match candidates")
async def find_candidates(
    transaction_id: str,
    db: AsyncSession = Depends(get_db)
):
    """
    Ranked candidates for one transaction, best first.

    Returns scored candidates without creating matches.
    """
    transaction_id = validate_required_uuid(transaction_id, "transaction_id")
    try:
        service = ReconciliationService(db)
        return await service.find_candidates(transaction_id)
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)


@router.get("/obligations", summary="List open obligations")
async def list_open_obligations(
    transaction_type: str = Query(..., description="credit lists invoices, debit lists expenses"),
    search: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db)
):
    validate_choice(transaction_type, "transaction_type", [t.value for t in TransactionType])
    try:
        service = ReconciliationService(db)
        obligations = await service.list_open_obligations(transaction_type, search=search, limit=limit)
        return {"obligations": obligations, "count": len(obligations)}
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)


@router.post("/transactions/{transaction_id}/approve", summary="Approve match")
async def approve_match(
    transaction_id: str,
    request: ApproveMatchRequest,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    """
    Match a transaction to an invoice or expense and mark it paid.

    Returns 409 when the obligation is no longer open or the transaction
    is no longer unmatched.
    """
    transaction_id = validate_required_uuid(transaction_id, "transaction_id")
    matched_id = validate_required_uuid(request.matched_id, "matched_id")
    try:
        service = ReconciliationService(db)
        return await service.approve_match(
            transaction_id,
            request.matched_type,
            matched_id,
            actor=x_user_id,
            confidence=request.confidence
        )
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)


@router.post("/transactions/{transaction_id}/reject", summary="Reject match")
async def reject_match(
    transaction_id: str,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    """
    Return a matched transaction to unmatched.
    """
    transaction_id = validate_required_uuid(transaction_id, "transaction_id")
    try:
        service = ReconciliationService(db)
        return await service.reject_match(transaction_id, actor=x_user_id)
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)


@router.post("/transactions/{transaction_id}/ignore", summary="Ignore transaction")
async def ignore_transaction(
    transaction_id: str,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    transaction_id = validate_required_uuid(transaction_id, "transaction_id")
    try:
        service = ReconciliationService(db)
        return await service.ignore_transaction(transaction_id, actor=x_user_id)
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)


@router.post("/matches/batch-approve", response_model=BatchApproveResponse, summary="Batch approve")
async def batch_approve(
    request: BatchApproveRequest,
    db: AsyncSession = Depends(get_db),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id")
):
    """
    Approve suggestions one by one.

    Each item succeeds or fails independently; failures are reported per
    item and never undo earlier successes.
    """
    service = ReconciliationService(db)
    result = await service.batch_approve_matches(
        [item.model_dump() for item in request.suggestions],
        actor=x_user_id
    )
    return result.to_dict()
