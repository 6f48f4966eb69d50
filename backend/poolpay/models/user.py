"""
User model with balances, devices and worker ownership.
"""
from sqlalchemy import Column, String, Numeric, Boolean, ForeignKey, Integer, UniqueConstraint
from sqlalchemy.orm import relationship
from poolpay.db.base import BaseModel
import enum


class SettlementCurrency(str, enum.Enum):
    """Unit a user chooses to be paid in."""
    CREDIT = "CREDIT"
    FIAT = "FIAT"

    @classmethod
    def from_code(cls, code):
        """Parse a stored preference, defaulting to CREDIT."""
        if code is None:
            return cls.CREDIT
        if isinstance(code, cls):
            return code
        for value in cls:
            if value.value.lower() == str(code).strip().lower():
                return value
        return cls.CREDIT


class User(BaseModel):
    """Platform user and their mutable balance aggregate."""
    __tablename__ = "users"

    username = Column(String(50), unique=True, nullable=False, index=True)
    settlement_currency = Column(String(10), nullable=False, default=SettlementCurrency.CREDIT.value)

    credit_balance = Column(Numeric(30, 8), nullable=False, default=0)
    fiat_balance = Column(Numeric(30, 4), nullable=False, default=0)
    total_earned_credit = Column(Numeric(30, 8), nullable=False, default=0)
    total_earned_fiat = Column(Numeric(30, 4), nullable=False, default=0)

    # Relationships
    devices = relationship("Device", back_populates="user", cascade="all, delete-orphan")
    worker_bindings = relationship("WorkerBinding", back_populates="user", cascade="all, delete-orphan")


class Device(BaseModel):
    """Mining device; CPU hashrate is reported in H/s, GPU hashrate in MH/s."""
    __tablename__ = "devices"

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    category = Column(String(10), nullable=False)  # CPU or GPU
    hashrate = Column(Numeric(30, 6), nullable=False, default=0)
    is_online = Column(Boolean, nullable=False, default=True)

    user = relationship("User", back_populates="devices")


class WorkerBinding(BaseModel):
    """Maps an external pool worker id to its owner."""
    __tablename__ = "worker_bindings"

    worker_id = Column(String(128), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    user = relationship("User", back_populates="worker_bindings")

    __table_args__ = (
        UniqueConstraint('worker_id', name='uq_worker_binding_worker'),
    )
