"""Scheduling engine: cheapest-hour selection plus per-device persistence.

One engine instance owns its price cache and schedule store; nothing is
shared through module globals, so tests can run several engines side by
side.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

import schedule

from pricing import selector
from pricing.cache import PriceCache, PriceSource
from pricing.price_point import PricePoint
from storage.schedule_store import ScheduleStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ScheduleResult:
    hours: list[PricePoint]
    persisted: bool     # False if the schedule file could not be written


class SchedulingEngine:
    def __init__(
        self,
        source: PriceSource,
        store: ScheduleStore,
        now: Callable[[], datetime] = _utc_now,
    ):
        self.cache = PriceCache(source)
        self.store = store
        self._now = now

    def start(self):
        """Load saved schedules, then fetch prices before serving requests.

        Raises ScheduleStoreCorruptError if the schedule file is unreadable.
        A failed price fetch is not fatal; the cache simply stays empty.
        """
        self.store.load()
        self.refresh_prices()

    def refresh_prices(self) -> bool:
        return self.cache.refresh()

    # -- Scheduling --

    def schedule_unrestricted(self, device_id: str, n: int) -> ScheduleResult:
        hours = selector.cheapest_hours(self.cache.current(), n)
        return self._save(device_id, hours)

    def schedule_from_now(self, device_id: str, n: int) -> ScheduleResult:
        hours = selector.cheapest_hours_from_now(self.cache.current(), n, self._now())
        return self._save(device_id, hours)

    def schedule_windowed(
        self, device_id: str, start: datetime, window_hours: int, n: int
    ) -> ScheduleResult:
        if start.tzinfo is None or start.utcoffset() is None:
            raise ValueError("Window start must carry a UTC offset")
        hours = selector.cheapest_hours_within(
            self.cache.current(), start, window_hours, n
        )
        return self._save(device_id, hours)

    def schedule_from_now_within(
        self, device_id: str, window_hours: int, n: int
    ) -> ScheduleResult:
        """Windowed selection with the window starting at the current hour."""
        return self.schedule_windowed(device_id, self._now(), window_hours, n)

    def _save(self, device_id: str, hours: list[PricePoint]) -> ScheduleResult:
        persisted = self.store.put(device_id, hours)
        logger.info(
            "Scheduled %d hours for device %s%s",
            len(hours), device_id, "" if persisted else " (not persisted)",
        )
        return ScheduleResult(hours=hours, persisted=persisted)

    # -- Lookups --

    def get_charging_hours(self, device_id: str) -> tuple[PricePoint, ...] | None:
        return self.store.get(device_id)

    def get_devices(self) -> list[str]:
        return self.store.device_ids()

    def remove_device(self, device_id: str) -> bool:
        persisted = self.store.remove(device_id)
        logger.info("Removed device %s", device_id)
        return persisted

    def get_prices(self) -> tuple[PricePoint, ...]:
        return self.cache.current()

    def get_cheapest_hours(self, n: int) -> list[PricePoint]:
        return selector.cheapest_hours(self.cache.current(), n)


class PriceRefresher:
    """Background thread that refreshes prices once a day.

    Uses a private ``schedule.Scheduler`` so several engines (or tests) do
    not share jobs through the module-level default scheduler.
    """

    def __init__(self, engine: SchedulingEngine, at: str = "15:00", poll_s: float = 1.0):
        self.engine = engine
        self.at = at
        self.poll_s = poll_s
        self.scheduler = schedule.Scheduler()
        self.job = self.scheduler.every().day.at(at).do(self._refresh)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def _refresh(self):
        logger.info("Scheduled daily price refresh")
        self.engine.refresh_prices()

    def _run(self):
        while not self._stop.is_set():
            self.scheduler.run_pending()
            self._stop.wait(self.poll_s)

    def start(self):
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="price-refresher", daemon=True
        )
        self._thread.start()
        logger.info("Daily price refresh scheduled at %s (next run %s)",
                    self.at, self.job.next_run)

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
