"""
Hourly settlement window routes.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional
from poolpay.db.session import get_db
from poolpay.schemas.settlement import (
    SettlementWindowResponse, SettlementRunRequest, SettlementRunResponse, PoolAlertResponse
)
from poolpay.api.dependencies import require_admin
from poolpay.services import settlement_service
from poolpay.services.alert_service import list_open_alerts
from poolpay.services.settlement_service import SettlementStateError

router = APIRouter(prefix="/settlements", tags=["settlements"], dependencies=[Depends(require_admin)])


def _run_response(outcome) -> SettlementRunResponse:
    return SettlementRunResponse(
        status=outcome.status,
        account=outcome.account,
        coin=outcome.coin,
        window_start=outcome.window_start,
        window_id=outcome.window_id,
        user_count=len(outcome.shares),
        message=outcome.message,
    )


@router.get("/windows", response_model=List[SettlementWindowResponse])
async def list_settlement_windows(
    account: Optional[str] = None,
    coin: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
    db: Session = Depends(get_db)
):
    """List settlement windows, newest first."""
    return settlement_service.list_windows(db, account=account, coin=coin, status=status, limit=limit)


@router.get("/windows/{window_id}", response_model=SettlementWindowResponse)
async def get_settlement_window(
    window_id: int,
    db: Session = Depends(get_db)
):
    """Get a single settlement window."""
    window = settlement_service.get_window(db, window_id)
    if not window:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Settlement window not found"
        )
    return window


@router.post("/windows/run", response_model=SettlementRunResponse)
async def run_settlement_window(
    request: SettlementRunRequest,
    db: Session = Depends(get_db)
):
    """Settle one window now. Re-running a recorded window is a no-op."""
    try:
        outcome = settlement_service.settle_window(
            db, request.account, request.coin, request.window_start, request.window_end
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    return _run_response(outcome)


@router.post("/windows/{window_id}/redrive", response_model=SettlementRunResponse)
async def redrive_settlement_window(
    window_id: int,
    db: Session = Depends(get_db)
):
    """Re-apply a FAILED or stuck PROCESSING window."""
    try:
        outcome = settlement_service.redrive_window(db, window_id)
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
    return _run_response(outcome)


@router.get("/alerts", response_model=List[PoolAlertResponse])
async def get_open_alerts(
    account: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """List open operator alerts."""
    return list_open_alerts(db, account=account)
