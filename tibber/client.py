import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import requests

import config
from pricing.price_point import PricePoint

logger = logging.getLogger(__name__)

PRICE_QUERY = (
    "{ viewer { homes { currentSubscription { priceInfo { "
    "today { total startsAt } tomorrow { total startsAt } "
    "} } } } }"
)


@dataclass(frozen=True)
class PriceFetchResult:
    """Outcome of one upstream fetch: either prices or a failure reason."""

    prices: tuple[PricePoint, ...] | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.prices is not None

    @classmethod
    def success(cls, prices) -> "PriceFetchResult":
        return cls(prices=tuple(prices))

    @classmethod
    def failure(cls, reason: str) -> "PriceFetchResult":
        return cls(error=reason)


class TibberClient:
    """Fetches today's and tomorrow's hourly prices from the Tibber GraphQL API.

    Tomorrow's prices are published in the early afternoon; before that the
    ``tomorrow`` list is empty and only today's prices are returned. Every
    problem (transport, HTTP status, GraphQL errors, unexpected payload)
    comes back as a failed ``PriceFetchResult``; nothing is retried.
    """

    def __init__(
        self,
        api_token: str | None = None,
        api_url: str | None = None,
        timeout_s: float | None = None,
    ):
        self.api_url = api_url or config.tibber.api_url
        self.timeout_s = timeout_s if timeout_s is not None else config.tibber.timeout_s
        self._headers = {
            "Authorization": f"Bearer {api_token or config.tibber.api_token}",
            "Content-Type": "application/json",
        }

    def fetch_prices(self) -> PriceFetchResult:
        logger.info("Fetching price list from Tibber API")
        try:
            resp = requests.post(
                self.api_url,
                json={"query": PRICE_QUERY},
                headers=self._headers,
                timeout=self.timeout_s,
            )
            logger.debug("Tibber response code: %d", resp.status_code)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.error("Tibber API request failed: %s", e)
            return PriceFetchResult.failure(f"request failed: {e}")

        try:
            payload = resp.json(parse_float=Decimal)
        except ValueError as e:
            logger.error("Tibber API returned invalid JSON: %s", e)
            return PriceFetchResult.failure(f"invalid JSON: {e}")

        try:
            prices = parse_price_info(payload)
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.error("Failed to parse Tibber response: %s", e)
            return PriceFetchResult.failure(f"malformed response: {e}")

        logger.info("Fetched %d hourly prices from Tibber", len(prices))
        return PriceFetchResult.success(prices)


def parse_price_info(payload: dict) -> list[PricePoint]:
    """Extract today's and tomorrow's prices from a GraphQL response.

    Raises ValueError if the response reports errors or has no home with a
    subscription; KeyError/TypeError propagate for structurally broken
    payloads.
    """
    errors = payload.get("errors")
    if errors:
        messages = "; ".join(str(e.get("message", e)) for e in errors)
        raise ValueError(f"GraphQL errors: {messages}")

    homes = payload["data"]["viewer"]["homes"]
    if not homes:
        raise ValueError("No homes found for this API token")
    subscription = homes[0].get("currentSubscription")
    if subscription is None:
        raise ValueError("First home has no active subscription")
    price_info = subscription["priceInfo"]

    prices = []
    for day in ("today", "tomorrow"):
        for entry in price_info.get(day) or []:
            prices.append(PricePoint(
                total=entry["total"],
                starts_at=datetime.fromisoformat(entry["startsAt"]),
            ))
    return prices
