"""
Foreign exchange service: rate snapshots for settlement and market rate refresh.

Settlement never waits on the network. `RateResolver` only reads the
last-known-good rates stored in `exchange_rates`, and `refresh_market_rates`
is run on its own schedule to append new observations.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Tuple
import logging

import httpx
from sqlalchemy.orm import Session

from poolpay.core.config import settings as default_settings
from poolpay.core.utils import now_local, quantize_half_up, to_decimal
from poolpay.models.exchange_rate import ExchangeRate

logger = logging.getLogger(__name__)

RATE_SCALE = 12

COIN_ALIASES = {
    "CONFLUX": "CFX",
    "CONFLUXTOKEN": "CFX",
    "RAVENCOIN": "RVN",
}


def normalize_coin(coin: str) -> str:
    """Upper-case a coin symbol and map pool-specific names to ticker symbols."""
    if not coin:
        return coin
    normalized = coin.strip().upper()
    return COIN_ALIASES.get(normalized, normalized)


@dataclass
class RateSnapshot:
    """Consistent set of conversion rates used for one settlement."""
    coin_to_credit: Decimal
    credit_to_reference: Decimal
    reference_to_fiat: Optional[Decimal]
    provenance: str
    age_seconds: Optional[float] = None
    stale: bool = False

    @property
    def credit_to_fiat(self) -> Optional[Decimal]:
        if self.reference_to_fiat is None or self.reference_to_fiat <= 0:
            return None
        return quantize_half_up(self.reference_to_fiat * self.credit_to_reference, RATE_SCALE)

    @property
    def is_usable(self) -> bool:
        return self.coin_to_credit > 0 and self.credit_to_reference > 0


@dataclass
class _Observed:
    """Market rows touched while resolving, used for the age of the snapshot."""
    fetched: List[datetime] = field(default_factory=list)


class RateResolver:
    """
    Resolve coin -> credit -> reference -> fiat rates from stored observations.

    Resolution order for coin -> credit:
    credit unit itself, reference coin, manual coin->reference, market
    COIN/REF, market COIN/FIAT divided by REF/FIAT, manual coin->credit.
    """

    def __init__(self, db: Session, config=None, clock: Callable[[], datetime] = now_local):
        self.db = db
        self.config = config or default_settings
        self.clock = clock

    def latest_rate(self, symbol: str) -> Optional[Tuple[Decimal, datetime, Optional[str]]]:
        """Newest positive observation for a BASE/QUOTE symbol."""
        row = self.db.query(ExchangeRate).filter(
            ExchangeRate.symbol == symbol.upper(),
            ExchangeRate.rate > 0
        ).order_by(ExchangeRate.fetched_at.desc(), ExchangeRate.id.desc()).first()
        if not row:
            return None
        return to_decimal(row.rate), row.fetched_at, row.source

    def resolve(self, coin: str) -> Optional[RateSnapshot]:
        """Return the rate snapshot for a coin, or None when coin -> credit is unknown."""
        if not coin:
            return None
        cfg = self.config
        normalized = normalize_coin(coin)
        credit_unit = cfg.CREDIT_UNIT.upper()
        reference = cfg.REFERENCE_COIN.upper()
        ratio = to_decimal(cfg.CREDIT_TO_REFERENCE_RATIO)
        if ratio <= 0:
            logger.warning("Credit to reference ratio is not configured, rates unavailable")
            return None

        observed = _Observed()
        reference_to_fiat = self._market(f"{reference}/{cfg.FIAT_CURRENCY}", observed)

        coin_to_credit = None
        provenance = None
        if normalized == credit_unit:
            coin_to_credit, provenance = Decimal(1), credit_unit
        elif normalized == reference:
            coin_to_credit = quantize_half_up(Decimal(1) / ratio, RATE_SCALE)
            provenance = f"{credit_unit}/{reference}"
        else:
            coin_to_reference = self._coin_to_reference(normalized, reference_to_fiat, observed)
            if coin_to_reference is not None:
                rate, source = coin_to_reference
                coin_to_credit = quantize_half_up(rate / ratio, RATE_SCALE)
                provenance = f"{source}->{credit_unit}"
            else:
                manual = self._manual(cfg.MANUAL_COIN_TO_CREDIT, normalized)
                if manual is not None:
                    coin_to_credit, provenance = manual, "MANUAL"

        if coin_to_credit is None or coin_to_credit <= 0:
            logger.warning(f"No {normalized}->{credit_unit} rate available")
            return None

        snapshot = RateSnapshot(
            coin_to_credit=coin_to_credit,
            credit_to_reference=ratio,
            reference_to_fiat=reference_to_fiat,
            provenance=provenance,
        )
        if observed.fetched:
            oldest = min(observed.fetched)
            snapshot.age_seconds = (self.clock() - oldest).total_seconds()
            stale_after = cfg.RATE_STALE_AFTER_MINUTES * 60
            if stale_after > 0 and snapshot.age_seconds > stale_after:
                snapshot.stale = True
                logger.warning(
                    f"Using stale rates for {normalized} (provenance={provenance}, "
                    f"age={int(snapshot.age_seconds)}s)"
                )
        return snapshot

    def _coin_to_reference(self, coin, reference_to_fiat, observed):
        cfg = self.config
        reference = cfg.REFERENCE_COIN.upper()
        manual = self._manual(cfg.MANUAL_COIN_TO_REFERENCE, coin)
        if manual is not None:
            return manual, f"MANUAL_{coin}_TO_{reference}"
        direct_symbol = f"{coin}/{reference}"
        direct = self._market(direct_symbol, observed)
        if direct is not None:
            return direct, direct_symbol
        coin_to_fiat = self._market(f"{coin}/{cfg.FIAT_CURRENCY}", observed)
        if coin_to_fiat is not None and reference_to_fiat is not None:
            return (
                quantize_half_up(coin_to_fiat / reference_to_fiat, RATE_SCALE),
                f"{coin}/{reference}(VIA {cfg.FIAT_CURRENCY})",
            )
        return None

    def _market(self, symbol: str, observed: _Observed) -> Optional[Decimal]:
        found = self.latest_rate(symbol)
        if found is None:
            return None
        rate, fetched_at, _ = found
        observed.fetched.append(fetched_at)
        return rate

    @staticmethod
    def _manual(overrides, coin) -> Optional[Decimal]:
        raw = (overrides or {}).get(coin)
        if raw is None:
            return None
        value = to_decimal(raw)
        return value if value > 0 else None


def fetch_market_rate(symbol: str, client: httpx.Client) -> Decimal:
    """
    Fetch one ticker from the configured rate API.

    Expected response: {"symbol": "CFX/XMR", "price": "0.00091"}.
    """
    if not default_settings.RATE_API_URL:
        raise ValueError("RATE_API_URL is required to refresh market rates")
    response = client.get(default_settings.RATE_API_URL, params={"symbol": symbol})
    response.raise_for_status()
    data = response.json()
    raw = data.get("price", data.get("rate"))
    if raw is None:
        raise ValueError(f"No price for {symbol} in rate API response")
    rate = to_decimal(raw)
    if rate <= 0:
        raise ValueError(f"Invalid exchange rate for {symbol}: {rate}")
    return rate


def refresh_market_rates(db: Session, symbols: Optional[List[str]] = None,
                         client: Optional[httpx.Client] = None) -> int:
    """
    Append a fresh observation for each symbol. Failures keep the last-known-good row.

    Returns the number of symbols refreshed.
    """
    symbols = symbols if symbols is not None else default_settings.RATE_SYMBOLS
    owns_client = client is None
    if owns_client:
        client = httpx.Client(timeout=default_settings.RATE_API_TIMEOUT_SECONDS)
    refreshed = 0
    try:
        for symbol in symbols:
            try:
                rate = fetch_market_rate(symbol, client)
            except httpx.HTTPStatusError as e:
                logger.error(f"Rate API HTTP error for {symbol}: {e.response.status_code}")
                continue
            except httpx.HTTPError as e:
                logger.error(f"Rate API network error for {symbol}: {e}")
                continue
            except ValueError as e:
                logger.error(f"Rate API returned unusable data for {symbol}: {e}")
                continue
            db.add(ExchangeRate(
                symbol=symbol.upper(),
                rate=rate,
                source="MARKET",
                fetched_at=now_local(),
            ))
            db.commit()
            refreshed += 1
            logger.info(f"Refreshed market rate {symbol} = {rate}")
    finally:
        if owns_client:
            client.close()
    return refreshed
