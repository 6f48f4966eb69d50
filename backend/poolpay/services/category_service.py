"""
Category splitter: divides a user's share into CPU / GPU earnings categories.
"""
from collections import OrderedDict
from decimal import Decimal
from typing import Dict, Optional
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from poolpay.core.config import settings
from poolpay.core.utils import ZERO, quantize_half_up, to_decimal
from poolpay.models.user import Device
from poolpay.services.fx_service import normalize_coin

logger = logging.getLogger(__name__)

CPU = "CPU"
GPU = "GPU"
MIX_RATIO_SCALE = 12
HPS_PER_MHS = Decimal("1000000")


def category_override(coin: str) -> Optional[str]:
    """Category that takes the whole share for single-algorithm coins, if any."""
    if not coin:
        return None
    overrides = settings.CATEGORY_OVERRIDES or {}
    raw = coin.strip().upper()
    return overrides.get(raw) or overrides.get(normalize_coin(raw))


def cpu_ratio(db: Session, user_id: int, prefer_gpu_when_idle: bool = False) -> Decimal:
    """
    CPU share of the user's online hashrate, clamped to [0, 1].

    CPU devices report H/s and GPU devices MH/s; CPU is converted to MH/s
    first. Users with no measured hashrate are treated as all CPU unless
    `prefer_gpu_when_idle` is set.
    """
    rows = db.query(Device.category, func.sum(Device.hashrate)).filter(
        Device.user_id == user_id,
        Device.is_online.is_(True)
    ).group_by(Device.category).all()
    by_category = {(category or "").upper(): to_decimal(total) for category, total in rows}
    cpu_mh = max(by_category.get(CPU, ZERO), ZERO) / HPS_PER_MHS
    gpu_mh = max(by_category.get(GPU, ZERO), ZERO)
    total = cpu_mh + gpu_mh
    if total <= 0:
        return ZERO if prefer_gpu_when_idle else Decimal(1)
    ratio = quantize_half_up(cpu_mh / total, MIX_RATIO_SCALE)
    return min(max(ratio, ZERO), Decimal(1))


def split_amount(amount: Decimal, ratio: Decimal, scale: int, gpu_label: str = GPU) -> Dict[str, Decimal]:
    """Split by CPU ratio; the GPU part is the complement, so parts sum to amount."""
    amount = to_decimal(amount)
    ratio = min(max(to_decimal(ratio), ZERO), Decimal(1))
    cpu_part = quantize_half_up(amount * ratio, scale)
    if cpu_part > amount:
        cpu_part = amount
    return OrderedDict([(CPU, cpu_part), (gpu_label, amount - cpu_part)])


def split_share(
    db: Session,
    user_id: int,
    amount: Decimal,
    coin: Optional[str] = None,
    scale: Optional[int] = None,
) -> Dict[str, Decimal]:
    """
    Divide one user's share into categories.

    An override category for the coin takes the whole amount. Otherwise the
    share follows the user's current device mix. The unclaimed bucket has no
    devices and is booked as GPU.
    """
    scale = settings.REFERENCE_SCALE if scale is None else scale
    amount = to_decimal(amount)
    override = category_override(coin)
    if override:
        return OrderedDict([(CPU, ZERO), (override, amount)])
    ratio = cpu_ratio(db, user_id, prefer_gpu_when_idle=user_id == settings.UNCLAIMED_USER_ID)
    return split_amount(amount, ratio, scale)
