"""
Background scheduler for hourly settlement, daily staging and rate refresh.

One loop thread decides what is due and dispatches one task per
(account, coin) pair onto a bounded thread pool. Each task uses its own
database session and is awaited with its own deadline, so a slow or failing
pair never holds up or breaks its siblings.
"""
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
import logging
import threading
import time

from poolpay.core.config import settings
from poolpay.core.utils import hourly_window, now_local, truncate_to_hour
from poolpay.db.session import SessionLocal
from poolpay.services.fx_service import RateResolver, refresh_market_rates
from poolpay.services.review_service import build_daily_settlement
from poolpay.services.settlement_service import settle_window

logger = logging.getLogger(__name__)

TIMEOUT = "TIMEOUT"
ERROR = "ERROR"


class SettlementScheduler:
    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        clock: Callable[[], datetime] = now_local,
        max_workers: Optional[int] = None,
        task_timeout: Optional[float] = None,
        poll_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.task_timeout = task_timeout if task_timeout is not None else settings.SCHEDULER_TASK_TIMEOUT_SECONDS
        self.poll_seconds = poll_seconds if poll_seconds is not None else settings.SCHEDULER_POLL_SECONDS
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.SCHEDULER_MAX_WORKERS,
            thread_name_prefix="settlement",
        )
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_hourly: Optional[datetime] = None
        self._last_daily = None
        self._last_rate_refresh: Optional[datetime] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="settlement-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Settlement scheduler started (poll={self.poll_seconds}s)")

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        self._executor.shutdown(wait=False)
        logger.info("Settlement scheduler stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            self._stop_event.wait(self.poll_seconds)

    def tick(self, now: Optional[datetime] = None) -> Optional[Dict[str, Dict]]:
        """
        Run whatever is due at `now`. Returns per-job results, or None when
        another tick is still running.
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Previous scheduler tick still running, skipping")
            return None
        try:
            now = now or self.clock()
            results = {}
            hour = truncate_to_hour(now)
            if now.minute >= settings.SCHEDULER_HOURLY_OFFSET_MINUTES and self._last_hourly != hour:
                results["hourly"] = self.run_hourly(now)
                self._last_hourly = hour

            daily_due = now.replace(hour=settings.SCHEDULER_DAILY_HOUR, minute=0, second=0, microsecond=0) \
                + timedelta(minutes=settings.SCHEDULER_DAILY_OFFSET_MINUTES)
            if now >= daily_due and self._last_daily != now.date():
                results["daily"] = self.run_daily()
                self._last_daily = now.date()

            refresh_every = timedelta(minutes=settings.RATE_REFRESH_MINUTES)
            if settings.RATE_API_URL and (
                self._last_rate_refresh is None or now - self._last_rate_refresh >= refresh_every
            ):
                results["rates"] = self.refresh_rates()
                self._last_rate_refresh = now
            return results
        finally:
            self._tick_lock.release()

    def hourly_windows(self, now: datetime) -> List[Tuple[datetime, datetime]]:
        """The just-closed hour plus the lookback windows, oldest first."""
        windows = [hourly_window(now, back) for back in range(settings.SCHEDULER_LOOKBACK_WINDOWS + 1)]
        return list(reversed(windows))

    def run_hourly(self, now: datetime) -> Dict[Tuple[str, str], object]:
        windows = self.hourly_windows(now)
        tasks = {
            (account, coin): (self._settle_pair, account, coin, windows)
            for account, coin in settings.hourly_accounts
        }
        return self._dispatch(tasks)

    def run_daily(self) -> Dict[Tuple[str, str], object]:
        tasks = {
            (account, coin): (self._stage_pair, account, coin)
            for account, coin in settings.reviewed_accounts
        }
        return self._dispatch(tasks)

    def refresh_rates(self) -> object:
        return self._dispatch({("rates", "*"): (self._refresh_rates,)}).get(("rates", "*"))

    def _dispatch(self, tasks: Dict[Tuple[str, str], tuple]) -> Dict[Tuple[str, str], object]:
        """Submit every task, then collect each result against its own deadline."""
        submitted = {}
        for key, (fn, *args) in tasks.items():
            submitted[key] = (self._executor.submit(fn, *args), time.monotonic() + self.task_timeout)
        results = {}
        for key, (future, deadline) in submitted.items():
            try:
                results[key] = future.result(timeout=max(0.0, deadline - time.monotonic()))
            except FutureTimeout:
                logger.error(f"Scheduled task timed out (account={key[0]}, coin={key[1]})")
                results[key] = TIMEOUT
            except Exception:
                logger.exception(f"Scheduled task failed (account={key[0]}, coin={key[1]})")
                results[key] = ERROR
        return results

    def _settle_pair(self, account: str, coin: str, windows) -> List[str]:
        db = self.session_factory()
        try:
            statuses = []
            for window_start, window_end in windows:
                try:
                    outcome = settle_window(db, account, coin, window_start, window_end,
                                            rate_resolver=RateResolver(db))
                    statuses.append(outcome.status)
                except Exception:
                    db.rollback()
                    logger.exception(
                        f"Settlement crashed (account={account}, coin={coin}, window_start={window_start})"
                    )
                    statuses.append(ERROR)
            return statuses
        finally:
            db.close()

    def _stage_pair(self, account: str, coin: str) -> Optional[int]:
        db = self.session_factory()
        try:
            settlement = build_daily_settlement(db, account, coin)
            return settlement.id if settlement else None
        finally:
            db.close()

    def _refresh_rates(self) -> int:
        db = self.session_factory()
        try:
            return refresh_market_rates(db)
        finally:
            db.close()
