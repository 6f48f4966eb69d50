"""
Pydantic schemas for exchange rates.
"""
from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from decimal import Decimal


class ExchangeRateCreate(BaseModel):
    """Schema for recording a manual rate observation."""
    symbol: str  # BASE/QUOTE, e.g. CFX/XMR
    rate: Decimal


class ExchangeRateResponse(BaseModel):
    """Schema for a stored rate observation."""
    id: int
    symbol: str
    rate: Decimal
    source: Optional[str] = None
    fetched_at: datetime

    class Config:
        from_attributes = True


class RateSnapshotResponse(BaseModel):
    """Schema for the resolved conversion rates of a coin."""
    coin: str
    coin_to_credit: Decimal
    credit_to_reference: Decimal
    reference_to_fiat: Optional[Decimal] = None
    credit_to_fiat: Optional[Decimal] = None
    provenance: str
    age_seconds: Optional[float] = None
    stale: bool = False
