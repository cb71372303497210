"""Periodic sweep that flags long-sold books as hidden from public listings.

The flag is a cache of ``sold_at < now - window``; listings recompute the
window from ``sold_at`` and never depend on it, so a missed or failed sweep
costs nothing but a wider scan.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from boipaben.db import session_scope
from boipaben.domain.visibility import VisibilityPolicy
from boipaben.repositories import BookRepository


DEFAULT_INTERVAL = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CleanupScheduler:
    """Own the sweep and the background timer that repeats it."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        policy: VisibilityPolicy,
        *,
        interval: timedelta | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._policy = policy
        self._interval = DEFAULT_INTERVAL if interval is None else interval
        if self._interval <= timedelta(0):
            raise ValueError("Cleanup interval must be positive")
        if self._interval >= policy.window:
            raise ValueError("Cleanup interval must be shorter than the visibility window")
        self._clock = clock
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def interval(self) -> timedelta:
        return self._interval

    def sweep(self, now: datetime) -> int:
        """Flag sold books whose window elapsed strictly before ``now``.

        Raises on store failure; use :meth:`run_cleanup_sweep` from timers.
        """

        cutoff = self._policy.hide_cutoff(now)
        with session_scope(self._session_factory) as session:
            updated = BookRepository(session).hide_sold_before(cutoff)
        return updated

    def run_cleanup_sweep(self, now: datetime) -> int | None:
        try:
            updated = self.sweep(now)
        except Exception:
            logger.exception("Sold-book cleanup sweep failed; next scheduled run will retry")
            return None
        if updated:
            logger.info("Hid {} sold books from public view", updated)
        else:
            logger.debug("Sold-book cleanup sweep found nothing to hide")
        return updated

    # ------------------------------------------------------------------
    # Background timer

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="sold-book-cleanup", daemon=True
        )
        self._thread.start()
        logger.info(
            "Sold-book cleanup scheduler started (interval={}h)",
            self._interval.total_seconds() / 3600,
        )

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None
        logger.info("Sold-book cleanup scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_cleanup_sweep(self._clock())
            if self._stop.wait(self._interval.total_seconds()):
                break
