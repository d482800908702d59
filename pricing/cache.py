import logging
import threading
from datetime import datetime, timezone
from typing import Protocol

from pricing.price_point import PricePoint
from tibber.client import PriceFetchResult

logger = logging.getLogger(__name__)


class PriceSource(Protocol):
    def fetch_prices(self) -> PriceFetchResult: ...


class PriceCache:
    """Holds the latest successfully fetched price table.

    The table is an immutable tuple that is swapped as a whole on refresh,
    so a reader holding a snapshot never sees a half-updated list. A failed
    refresh keeps serving the previous table.
    """

    def __init__(self, source: PriceSource):
        self.source = source
        self._prices: tuple[PricePoint, ...] = ()
        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._last_refresh: datetime | None = None
        self._last_error: str | None = None

    def current(self) -> tuple[PricePoint, ...]:
        with self._lock:
            return self._prices

    @property
    def last_refresh(self) -> datetime | None:
        return self._last_refresh

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def refresh(self) -> bool:
        """Fetch a new table. Returns True if the cached table was replaced."""
        # one fetch at a time; readers are never blocked by the fetch itself
        with self._refresh_lock:
            try:
                result = self.source.fetch_prices()
            except Exception as e:
                logger.exception("Price source raised during refresh")
                result = PriceFetchResult.failure(f"unexpected error: {e}")

            if not result.ok:
                self._last_error = result.error
                logger.error(
                    "Price refresh failed (%s); keeping %d cached prices",
                    result.error, len(self.current()),
                )
                return False

            with self._lock:
                self._prices = result.prices
            self._last_refresh = datetime.now(timezone.utc)
            self._last_error = None
            logger.info("Price list updated: %d prices", len(result.prices))
            return True
