"""Daily durability flush of the target collection, independent of job loads."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import StoreConfig, store as store_cfg
from .errors import StoreError
from .store import StoreFactory, open_store

LOG = logging.getLogger(__name__)


def parse_daily_time(at: str) -> tuple[int, int]:
    try:
        hour, minute = (int(part) for part in at.split(":"))
    except ValueError as e:
        raise ValueError(f"Maintenance time must be HH:MM, got {at!r}") from e
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Maintenance time out of range: {at!r}")
    return hour, minute


def seconds_until(at: str, now: Optional[datetime] = None) -> float:
    """Seconds from ``now`` to the next local ``HH:MM`` (a full day if it is now)."""
    now = now or datetime.now()
    hour, minute = parse_daily_time(at)
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


def flush_collection(cfg: StoreConfig = store_cfg, store_factory: StoreFactory = open_store) -> bool:
    """Flush ``cfg.collection`` once. Failures are logged, not retried."""
    try:
        with store_factory(cfg) as store:
            store.flush(cfg.collection)
    except StoreError as e:
        LOG.error("Scheduled flush of %s failed: %s", cfg.collection, e)
        return False
    except Exception:
        LOG.exception("Scheduled flush of %s failed", cfg.collection)
        return False
    LOG.info("Scheduled flush of %s done", cfg.collection)
    return True


class MaintenanceScheduler:
    """Background thread running ``flush_collection`` every day at ``at``."""

    def __init__(
        self,
        cfg: StoreConfig = store_cfg,
        at: str = "03:00",
        task: Optional[Callable[[], object]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        parse_daily_time(at)
        self.cfg = cfg
        self.at = at
        self.task = task or (lambda: flush_collection(self.cfg))
        self.clock = clock
        self.runs = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("Maintenance scheduler already running")
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="maintenance", daemon=True)
        self._thread.start()
        LOG.info("Daily flush of %s scheduled at %s", self.cfg.collection, self.at)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def join(self) -> None:
        if self._thread is not None:
            self._thread.join()

    def _loop(self) -> None:
        while not self._stop.wait(seconds_until(self.at, self.clock())):
            self.run_once()

    def run_once(self) -> None:
        self.runs += 1
        try:
            self.task()
        except Exception:
            LOG.exception("Maintenance run %d failed; next run at %s", self.runs, self.at)
