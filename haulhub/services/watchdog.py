"""
Inactivity watchdog: periodically clears lapsed on-duty leases.

Lazy expiry in ``availability`` keeps reads correct on its own; the sweep
makes sure idle executors are notified even when nobody asks about them.
"""
import threading
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..db import SessionLocal
from ..logging import get_logger
from .availability import expire_idle


log = get_logger(__name__)


class InactivityWatchdog:
    def __init__(self, interval_s: Optional[float] = None, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self.interval_s = interval_s if interval_s is not None else settings.watchdog_interval_seconds
        self.session_factory = session_factory
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name="InactivityWatchdog", daemon=True)

    def start(self) -> None:
        self._thread.start()
        log.info("watchdog_started", interval_s=self.interval_s)

    def stop(self, join: bool = True) -> None:
        self._stop_event.set()
        if join and self._thread.is_alive():
            self._thread.join(timeout=self.interval_s + 5)
        log.info("watchdog_stopped")

    def sweep(self) -> int:
        """One pass with its own session."""
        db = self.session_factory()
        try:
            return expire_idle(db, source="watchdog")
        except SQLAlchemyError as exc:
            db.rollback()
            log.error("watchdog_sweep_failed", error=str(exc))
            return 0
        finally:
            db.close()

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_s):
            self.sweep()
