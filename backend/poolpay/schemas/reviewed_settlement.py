"""
Pydantic schemas for reviewed (daily) settlements.
"""
from pydantic import BaseModel
from typing import List, Optional
from datetime import date, datetime
from decimal import Decimal


class ReviewedSettlementItemResponse(BaseModel):
    """Schema for one staged line item."""
    id: int
    user_id: int
    user_score: Decimal
    revenue_ratio: Decimal
    gross_amount_credit: Decimal
    fee_credit: Decimal
    net_credit: Decimal
    net_fiat: Optional[Decimal] = None
    status: str

    class Config:
        from_attributes = True


class ReviewedSettlementResponse(BaseModel):
    """Schema for a reviewed settlement with its items."""
    id: int
    account: str
    coin: str
    payout_date: date
    gross_amount_coin: Decimal
    gross_amount_credit: Decimal
    credit_rate: Decimal
    rate_provenance: Optional[str] = None
    pool_score: Decimal
    fee_rate: Decimal
    fee_credit: Decimal
    net_credit: Decimal
    status: str
    remark: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime
    items: List[ReviewedSettlementItemResponse] = []

    class Config:
        from_attributes = True


class ReviewedSettlementBuildRequest(BaseModel):
    """Schema for staging a payout day."""
    account: str
    coin: str
    payout_date: Optional[date] = None  # Earliest pending payout when omitted


class AuditRequest(BaseModel):
    """Schema for an operator decision."""
    action: str  # APPROVE or REJECT
    remark: Optional[str] = None
