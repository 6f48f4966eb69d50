"""
Pydantic schemas for hourly settlement windows.
"""
from pydantic import BaseModel
from typing import Dict, Optional
from datetime import datetime
from decimal import Decimal


class SettlementWindowResponse(BaseModel):
    """Schema for a settlement window record."""
    id: int
    account: str
    coin: str
    window_start: datetime
    window_end: datetime
    window_token: str
    total_coin_amount: Decimal
    total_credit_amount: Decimal
    total_reference_amount: Decimal  # Conserved amount distributed to users
    rate_provenance: Optional[str] = None
    allocation_source: str
    fallback_reason: Optional[str] = None
    category_totals: Dict[str, str] = {}
    sample_count: int
    status: str
    remark: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SettlementRunRequest(BaseModel):
    """Schema for manually settling one window."""
    account: str
    coin: str
    window_start: datetime
    window_end: Optional[datetime] = None  # Defaults to one hour after window_start


class SettlementRunResponse(BaseModel):
    """Schema for the outcome of a settlement run."""
    status: str  # SUCCESS, FAILED, SKIPPED, DEFERRED or DUPLICATE
    account: str
    coin: str
    window_start: datetime
    window_id: Optional[int] = None
    user_count: int = 0
    message: Optional[str] = None


class PoolAlertResponse(BaseModel):
    """Schema for an open operator alert."""
    id: int
    account: str
    coin: str
    user_id: Optional[int] = None
    alert_type: str
    severity: str
    ref_key: str
    message: Optional[str] = None
    status: str
    created_at: datetime

    class Config:
        from_attributes = True
