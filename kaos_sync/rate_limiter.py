"""
Rate Limiter Module
Fixed-window quota for calls to the Jira REST API.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError

from kaos_sync.config_manager import ConfigManager
from kaos_sync.database.connection import DatabaseConnection, get_db
from kaos_sync.database.models import QuotaWindow
from kaos_sync.utils.helpers import utcnow
from kaos_sync.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class QuotaState:
    """Point-in-time view of the quota window."""
    consumed: int
    limit: int
    window_start: datetime
    window_duration: timedelta

    @property
    def remaining(self) -> int:
        return self.limit - self.consumed

    @property
    def window_end(self) -> datetime:
        return self.window_start + self.window_duration

    def to_dict(self) -> dict:
        return {
            'consumed': self.consumed,
            'limit': self.limit,
            'remaining': self.remaining,
            'window_start': self.window_start.isoformat(),
            'window_end': self.window_end.isoformat(),
        }


class RateLimiter:
    """
    Counts Jira API calls in a fixed window (200 calls per 2 hours by default).

    When the window has elapsed the counter resets to zero and a new window
    starts at the moment of the check. Every operation runs under one lock,
    so ``try_acquire`` is a single atomic check-and-increment and concurrent
    callers can never push the counter past the limit.

    This counter lives in process memory; DatabaseRateLimiter shares it
    between processes.
    """

    def __init__(
        self,
        limit: int = 200,
        window: timedelta = timedelta(hours=2),
        clock: Callable[[], datetime] = utcnow
    ):
        if limit <= 0:
            raise ValueError("Quota limit must be positive")

        self.limit = limit
        self.window = window
        self._clock = clock
        self._lock = threading.Lock()
        self._consumed = 0
        self._window_start = clock()

    @classmethod
    def from_config(cls, config: Optional[ConfigManager] = None, **kwargs) -> 'RateLimiter':
        """Build a limiter from the 'sync' configuration section."""
        sync_config = (config or ConfigManager()).get_sync_config()
        return cls(
            limit=int(sync_config.get('quota_limit', 200)),
            window=timedelta(hours=float(sync_config.get('quota_window_hours', 2))),
            **kwargs
        )

    def _roll_window(self) -> None:
        # Caller holds the lock
        now = self._clock()
        if now >= self._window_start + self.window:
            if self._consumed:
                logger.info(f"Quota window reset ({self._consumed}/{self.limit} calls used)")
            self._consumed = 0
            self._window_start = now

    def try_acquire(self) -> bool:
        """
        Atomically reserve one call.

        Returns:
            True if the call was counted, False if the quota is exhausted
        """
        with self._lock:
            self._roll_window()
            if self._consumed >= self.limit:
                return False
            self._consumed += 1
            return True

    def snapshot(self) -> QuotaState:
        """Current counters as an immutable value."""
        with self._lock:
            self._roll_window()
            return QuotaState(
                consumed=self._consumed,
                limit=self.limit,
                window_start=self._window_start,
                window_duration=self.window
            )

    def can_make_call(self) -> bool:
        """True if at least one call is left in the current window."""
        return self.snapshot().remaining > 0

    def record_call(self) -> None:
        """Count one call. The counter never exceeds the limit."""
        if not self.try_acquire():
            logger.warning("record_call() invoked with quota already exhausted")

    def consumed(self) -> int:
        """Calls used in the current window."""
        return self.snapshot().consumed

    def remaining(self) -> int:
        """Calls left in the current window."""
        return self.snapshot().remaining


class DatabaseRateLimiter(RateLimiter):
    """
    RateLimiter whose counter lives in the ``jira_quota_windows`` table.

    Every process that talks to Jira (web app, scheduler, CLI scripts) shares
    the same row, and a restart does not reset the window. A call is reserved
    with a conditional UPDATE, so the database rejects the increment once
    ``consumed`` reaches the limit no matter how many processes race for it.
    An expired window is replaced by the first call made after it ends.
    """

    def __init__(
        self,
        db: DatabaseConnection = None,
        limit: int = 200,
        window: timedelta = timedelta(hours=2),
        clock: Callable[[], datetime] = utcnow,
        name: str = 'jira'
    ):
        super().__init__(limit=limit, window=window, clock=clock)
        self.db = db or get_db()
        self.name = name
        self._row_ready = False

    def _ensure_row(self) -> None:
        if self._row_ready:
            return
        try:
            with self.db.session_scope() as session:
                if session.get(QuotaWindow, self.name) is None:
                    session.add(QuotaWindow(name=self.name, consumed=0, window_start=self._clock()))
        except IntegrityError:
            # Another process created it first
            logger.debug(f"Quota row '{self.name}' already exists")
        self._row_ready = True

    def try_acquire(self) -> bool:
        with self._lock:
            self._ensure_row()
            now = self._clock()
            expired_before = now - self.window

            with self.db.session_scope() as session:
                rows = session.query(QuotaWindow).filter(QuotaWindow.name == self.name)

                taken = rows.filter(
                    QuotaWindow.window_start > expired_before,
                    QuotaWindow.consumed < self.limit
                ).update({QuotaWindow.consumed: QuotaWindow.consumed + 1}, synchronize_session=False)
                if taken:
                    return True

                # Open a new window with this call as its first
                rolled = rows.filter(
                    QuotaWindow.window_start <= expired_before
                ).update({QuotaWindow.consumed: 1, QuotaWindow.window_start: now}, synchronize_session=False)
                if rolled:
                    logger.info(f"Quota window '{self.name}' reset")
                return bool(rolled)

    def snapshot(self) -> QuotaState:
        with self._lock:
            self._ensure_row()
            now = self._clock()

            with self.db.session_scope() as session:
                row = session.get(QuotaWindow, self.name)
                consumed, window_start = row.consumed, row.window_start

            if now >= window_start + self.window:
                consumed, window_start = 0, now

            return QuotaState(
                consumed=consumed,
                limit=self.limit,
                window_start=window_start,
                window_duration=self.window
            )


_rate_limiter: Optional[RateLimiter] = None
_rate_limiter_lock = threading.Lock()


def get_rate_limiter(db: DatabaseConnection = None) -> RateLimiter:
    """
    Get the process-wide rate limiter, creating it from config on first use.

    ``sync.quota_store`` selects ``database`` (shared between processes, the
    default) or ``memory`` (this process only). ``db`` defaults to the shared
    connection and is only used on first creation.
    """
    global _rate_limiter
    with _rate_limiter_lock:
        if _rate_limiter is None:
            sync_config = ConfigManager().get_sync_config()
            if str(sync_config.get('quota_store', 'database')).lower() == 'memory':
                _rate_limiter = RateLimiter.from_config()
            else:
                _rate_limiter = DatabaseRateLimiter.from_config(db=db)
        return _rate_limiter
