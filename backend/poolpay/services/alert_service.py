"""
Alert service for raising operator-facing settlement alerts.
"""
import logging
from typing import List, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from poolpay.models.alert import PoolAlert

logger = logging.getLogger(__name__)


def raise_alert(
    db: Session,
    account: str,
    coin: str,
    alert_type: str,
    message: Optional[str] = None,
    ref_key: Optional[str] = None,
    user_id: Optional[int] = None,
    severity: str = "WARN",
) -> Optional[PoolAlert]:
    """
    Insert an OPEN alert unless one already exists for the same reference.

    Commits on its own, so call it only outside a pending unit of work.
    Returns the new alert, or None when it was a duplicate.
    """
    if not account or not coin or not alert_type:
        return None
    alert = PoolAlert(
        account=account,
        coin=coin,
        user_id=user_id,
        alert_type=alert_type,
        severity=severity or "WARN",
        ref_key=ref_key or "",
        message=message or alert_type,
        status="OPEN",
    )
    db.add(alert)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.debug(f"Alert already open: {alert_type} account={account} coin={coin} ref={ref_key}")
        return None
    logger.warning(f"Alert {alert_type} raised (account={account}, coin={coin}, ref={ref_key}): {message}")
    return alert


def list_open_alerts(db: Session, account: Optional[str] = None) -> List[PoolAlert]:
    query = db.query(PoolAlert).filter(PoolAlert.status == "OPEN")
    if account:
        query = query.filter(PoolAlert.account == account)
    return query.order_by(PoolAlert.id).all()
