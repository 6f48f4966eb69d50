"""
Reviewed (daily) settlement routes: staging and operator decisions.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional
from poolpay.db.session import get_db
from poolpay.schemas.reviewed_settlement import (
    ReviewedSettlementResponse, ReviewedSettlementBuildRequest, AuditRequest
)
from poolpay.api.dependencies import require_admin
from poolpay.services import review_service
from poolpay.services.settlement_service import SettlementStateError

router = APIRouter(prefix="/reviewed-settlements", tags=["reviewed-settlements"],
                   dependencies=[Depends(require_admin)])


@router.get("", response_model=List[ReviewedSettlementResponse])
async def list_reviewed_settlements(
    account: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
    db: Session = Depends(get_db)
):
    """List reviewed settlements, newest payout day first."""
    return review_service.list_reviewed_settlements(db, account=account, status=status, limit=limit)


@router.get("/{settlement_id}", response_model=ReviewedSettlementResponse)
async def get_reviewed_settlement(
    settlement_id: int,
    db: Session = Depends(get_db)
):
    """Get a reviewed settlement with its line items."""
    settlement = review_service.get_reviewed_settlement(db, settlement_id)
    if not settlement:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Reviewed settlement not found"
        )
    return settlement


@router.post("/build", response_model=ReviewedSettlementResponse)
async def build_reviewed_settlement(
    request: ReviewedSettlementBuildRequest,
    db: Session = Depends(get_db)
):
    """Stage the settlement of a payout day for review."""
    settlement = review_service.build_daily_settlement(
        db, request.account, request.coin, request.payout_date
    )
    if not settlement:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Nothing to stage: no pending payout, or scores/rates are missing (see alerts)"
        )
    return settlement


@router.post("/{settlement_id}/audit", response_model=ReviewedSettlementResponse)
async def audit_reviewed_settlement(
    settlement_id: int,
    request: AuditRequest,
    db: Session = Depends(get_db)
):
    """Approve or reject a staged settlement."""
    try:
        return review_service.audit_settlement(db, settlement_id, request.action, request.remark)
    except LookupError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except SettlementStateError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e)
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
