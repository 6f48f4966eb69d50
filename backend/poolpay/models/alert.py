"""
Operator alert model.
"""
from sqlalchemy import Column, String, Integer, Text, UniqueConstraint
from poolpay.db.base import BaseModel


class PoolAlert(BaseModel):
    """Open issue for operators, de-duplicated per (account, coin, alert_type, ref_key)."""
    __tablename__ = "pool_alerts"

    account = Column(String(64), nullable=False)
    coin = Column(String(16), nullable=False)
    user_id = Column(Integer, nullable=True)
    alert_type = Column(String(64), nullable=False)
    severity = Column(String(16), nullable=False, default="WARN")
    ref_key = Column(String(64), nullable=False, default="")
    message = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default="OPEN")

    __table_args__ = (
        UniqueConstraint('account', 'coin', 'alert_type', 'ref_key', name='uq_pool_alert_ref'),
    )
