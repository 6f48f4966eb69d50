"""
Exchange rate routes.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from poolpay.core.config import settings
from poolpay.core.utils import now_local
from poolpay.db.session import get_db
from poolpay.models.exchange_rate import ExchangeRate
from poolpay.schemas.exchange_rate import ExchangeRateCreate, ExchangeRateResponse, RateSnapshotResponse
from poolpay.api.dependencies import require_admin
from poolpay.services.fx_service import RateResolver, normalize_coin, refresh_market_rates

router = APIRouter(prefix="/fx-rates", tags=["fx-rates"], dependencies=[Depends(require_admin)])


@router.get("/snapshot", response_model=RateSnapshotResponse)
async def get_rate_snapshot(
    coin: str,
    db: Session = Depends(get_db)
):
    """Resolve the rates settlement would use for a coin right now."""
    snapshot = RateResolver(db).resolve(coin)
    if not snapshot:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No {coin.upper()}->{settings.CREDIT_UNIT} rate available"
        )
    return RateSnapshotResponse(
        coin=normalize_coin(coin),
        coin_to_credit=snapshot.coin_to_credit,
        credit_to_reference=snapshot.credit_to_reference,
        reference_to_fiat=snapshot.reference_to_fiat,
        credit_to_fiat=snapshot.credit_to_fiat,
        provenance=snapshot.provenance,
        age_seconds=snapshot.age_seconds,
        stale=snapshot.stale,
    )


@router.get("/latest", response_model=ExchangeRateResponse)
async def get_latest_exchange_rate(
    symbol: str,
    db: Session = Depends(get_db)
):
    """Get the newest observation for a BASE/QUOTE symbol."""
    rate = db.query(ExchangeRate).filter(
        ExchangeRate.symbol == symbol.upper()
    ).order_by(ExchangeRate.fetched_at.desc(), ExchangeRate.id.desc()).first()
    if not rate:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No rate recorded for {symbol.upper()}"
        )
    return rate


@router.post("", response_model=ExchangeRateResponse, status_code=status.HTTP_201_CREATED)
async def record_exchange_rate(
    request: ExchangeRateCreate,
    db: Session = Depends(get_db)
):
    """Record a manual rate observation."""
    if "/" not in request.symbol or request.rate <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="symbol must be BASE/QUOTE and rate must be positive"
        )
    rate = ExchangeRate(
        symbol=request.symbol.upper(),
        rate=request.rate,
        source="MANUAL",
        fetched_at=now_local()
    )
    db.add(rate)
    db.commit()
    db.refresh(rate)
    return rate


@router.post("/refresh")
async def refresh_exchange_rates(db: Session = Depends(get_db)):
    """Fetch fresh market rates for the configured symbols."""
    if not settings.RATE_API_URL:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="RATE_API_URL is not configured"
        )
    refreshed = refresh_market_rates(db)
    return {"message": "Exchange rates refreshed", "refreshed": refreshed}
