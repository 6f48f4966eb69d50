"""
Worker ownership: maps pool worker ids to platform users.

Lookup order per worker: explicit WorkerBinding (trying normalised forms of
the id), synthetic `USR-<id>` worker names, then the unclaimed bucket.
"""
from collections import OrderedDict
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple
import logging
import re

from sqlalchemy.orm import Session

from poolpay.core.config import settings
from poolpay.core.utils import ZERO
from poolpay.models.user import WorkerBinding

logger = logging.getLogger(__name__)

SYNTHETIC_WORKER = re.compile(r"^USR-(\d+)$", re.IGNORECASE)
BASE_SEPARATORS = re.compile(r"[.:/]")


def candidate_ids(worker_id: str) -> List[str]:
    """
    Forms of a worker id to try against bindings, most specific first.

    A prefixed id ("suanlibao.rig01") only resolves through its stripped
    form so it cannot collide with an unprefixed base id.
    """
    if worker_id is None:
        return []
    trimmed = worker_id.strip()
    if not trimmed:
        return []
    prefix = settings.WORKER_ID_STRIP_PREFIX
    if prefix and trimmed.lower().startswith(prefix.lower()):
        stripped = trimmed[len(prefix):].strip()
        return [stripped] if stripped else []
    candidates = [trimmed]
    base = BASE_SEPARATORS.split(trimmed, 1)[0].strip()
    if base and base != trimmed:
        candidates.append(base)
    return candidates


def parse_synthetic_user(worker_id: str) -> Optional[int]:
    """Return the user id encoded in a `USR-<digits>` worker name."""
    if not worker_id:
        return None
    match = SYNTHETIC_WORKER.match(worker_id.strip())
    if not match:
        return None
    user_id = int(match.group(1))
    return user_id if user_id > 0 else None


def resolve_owners(db: Session, worker_ids: Iterable[str]) -> Dict[str, int]:
    """
    Map each worker id to a user id from bindings or the synthetic form.

    Workers that cannot be attributed are absent from the result.
    """
    worker_ids = [w for w in worker_ids if w]
    by_worker = {w: candidate_ids(w) for w in worker_ids}
    lookup = sorted({c for candidates in by_worker.values() for c in candidates})

    bindings = {}
    if lookup:
        rows = db.query(WorkerBinding.worker_id, WorkerBinding.user_id).filter(
            WorkerBinding.worker_id.in_(lookup)
        ).all()
        bindings = {row.worker_id: row.user_id for row in rows}

    owners = {}
    for worker_id, candidates in by_worker.items():
        user_id = next((bindings[c] for c in candidates if c in bindings), None)
        if user_id is None:
            user_id = next(
                (u for u in (parse_synthetic_user(c) for c in candidates) if u is not None),
                None,
            )
        if user_id is not None:
            owners[worker_id] = user_id
    return owners


def collapse_to_users(
    db: Session,
    worker_scores: List[Tuple[str, Decimal]],
    unclaimed_user_id: Optional[int] = None,
) -> Tuple["OrderedDict[int, Decimal]", int]:
    """
    Sum worker scores per owning user.

    Unattributed workers are summed into the unclaimed bucket. Returns
    (user_id -> score, number of workers that resolved to a real owner).
    """
    if unclaimed_user_id is None:
        unclaimed_user_id = settings.UNCLAIMED_USER_ID
    owners = resolve_owners(db, [worker_id for worker_id, _ in worker_scores])
    user_scores = OrderedDict()
    for worker_id, score in worker_scores:
        if score is None or score <= 0:
            continue
        user_id = owners.get(worker_id)
        if user_id is None:
            logger.debug(f"Worker {worker_id} has no owner, routing to unclaimed bucket")
            user_id = unclaimed_user_id
        user_scores[user_id] = user_scores.get(user_id, ZERO) + score
    return user_scores, len(owners)
