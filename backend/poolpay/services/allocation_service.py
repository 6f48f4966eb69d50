"""
Allocation engine: splits a reward into per-user shares by score ratio.

Every caller (hourly windows, reviewed daily settlements, re-drives) goes
through `allocate_by_score` so rounding is done in exactly one place.
"""
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import List, Mapping, Optional
import logging

from poolpay.core.config import settings
from poolpay.core.utils import ZERO, quantize_down, to_decimal

logger = logging.getLogger(__name__)

RATIO_SCALE = 18


@dataclass
class UserShare:
    user_id: int
    score: Decimal
    ratio: Decimal
    amount: Decimal


def allocate_by_score(
    total: Decimal,
    user_scores: Mapping[int, Decimal],
    total_score: Optional[Decimal] = None,
    scale: Optional[int] = None,
    unclaimed_user_id: Optional[int] = None,
) -> List[UserShare]:
    """
    Allocate `total` proportionally to `user_scores`.

    Users are processed by score descending, then user id ascending. Each
    share is truncated to `scale` decimals and capped at what is left; any
    leftover goes to the unclaimed user. The shares always sum to `total`.
    Returns an empty list when total or total_score is not positive.
    """
    total = to_decimal(total)
    scale = settings.REFERENCE_SCALE if scale is None else scale
    if unclaimed_user_id is None:
        unclaimed_user_id = settings.UNCLAIMED_USER_ID
    positive = {uid: to_decimal(s) for uid, s in user_scores.items() if to_decimal(s) > 0}
    if total_score is None:
        total_score = sum(positive.values(), ZERO)
    total_score = to_decimal(total_score)
    if total <= 0 or total_score <= 0 or not positive:
        return []

    ordered = sorted(positive.items(), key=lambda item: (-item[1], item[0]))
    shares = []
    allocated = ZERO
    with localcontext() as ctx:
        ctx.prec = 60
        for user_id, score in ordered:
            remaining = total - allocated
            if remaining <= 0:
                break
            amount = quantize_down(total * score / total_score, scale)
            if amount > remaining:
                amount = remaining
            if amount <= 0:
                continue
            allocated += amount
            shares.append(UserShare(
                user_id=user_id,
                score=score,
                ratio=quantize_down(score / total_score, RATIO_SCALE),
                amount=amount,
            ))

    leftover = total - allocated
    if leftover > 0:
        unclaimed = next((s for s in shares if s.user_id == unclaimed_user_id), None)
        if unclaimed is not None:
            unclaimed.amount += leftover
        else:
            shares.append(UserShare(
                user_id=unclaimed_user_id,
                score=ZERO,
                ratio=ZERO,
                amount=leftover,
            ))
        logger.debug(f"Allocation remainder {leftover} routed to unclaimed user {unclaimed_user_id}")
    return shares


def fallback_share(total: Decimal, unclaimed_user_id: Optional[int] = None) -> List[UserShare]:
    """The whole reward as a single share for the unclaimed bucket."""
    total = to_decimal(total)
    if total <= 0:
        return []
    if unclaimed_user_id is None:
        unclaimed_user_id = settings.UNCLAIMED_USER_ID
    return [UserShare(user_id=unclaimed_user_id, score=ZERO, ratio=Decimal(1), amount=total)]
