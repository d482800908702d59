"""Cheapest-hour selection over a price table.

All functions are pure: the input sequence is never reordered or modified,
results are fresh lists. Sorting is stable, so equal prices keep the order
of the source feed (ascending start time).
"""

from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

from pricing.price_point import PricePoint


def truncate_to_hour(ts: datetime) -> datetime:
    """Round ``ts`` down to the start of its hour, keeping its offset.

    A zone-aware timestamp is first pinned to its current UTC offset, so
    later arithmetic on the result adds elapsed hours rather than
    wall-clock hours across a DST change.
    """
    if ts.utcoffset() is not None:
        ts = ts.astimezone(timezone(ts.utcoffset()))
    return ts.replace(minute=0, second=0, microsecond=0)


def _cheapest(prices: Iterable[PricePoint], n: int) -> list[PricePoint]:
    if n <= 0:
        return []
    return sorted(prices, key=lambda p: p.total)[:n]


def cheapest_hours(prices: Iterable[PricePoint], n: int) -> list[PricePoint]:
    """The ``n`` cheapest points of the whole table."""
    return _cheapest(prices, n)


def cheapest_hours_from_now(
    prices: Iterable[PricePoint], n: int, now: datetime
) -> list[PricePoint]:
    """The ``n`` cheapest points starting in the current hour or later."""
    current_hour = truncate_to_hour(now)
    return _cheapest((p for p in prices if p.starts_at >= current_hour), n)


def cheapest_hours_within(
    prices: Iterable[PricePoint], start: datetime, window_hours: int, n: int
) -> list[PricePoint]:
    """The ``n`` cheapest points inside ``[start, start + window_hours]``.

    ``start`` is truncated to the hour first. Both ends are inclusive, so a
    one-hour window from 11:00 may return the 11:00 and the 12:00 point.
    The window always spans ``window_hours`` elapsed hours, including on
    DST changeover nights.
    """
    if window_hours < 0:
        raise ValueError(f"window_hours must be non-negative, got {window_hours}")
    window_start = truncate_to_hour(start)
    window_end = window_start + timedelta(hours=window_hours)
    return _cheapest(
        (p for p in prices if window_start <= p.starts_at <= window_end), n
    )
