"""Tests for the charge times REST API against a live local server."""

import os
import sys

os.environ.setdefault("TIBBER_API_TOKEN", "test")

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import http.client
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
import requests

from engine import SchedulingEngine
from pricing.price_point import PricePoint
from storage.schedule_store import ScheduleStore
from tibber.client import PriceFetchResult
from web.api import API_PREFIX, start_api_server

CET = timezone(timedelta(hours=2))


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 5, 1, hour, minute, tzinfo=CET)


TABLE = [
    PricePoint(Decimal("0.30"), at(10)),
    PricePoint(Decimal("0.10"), at(11)),
    PricePoint(Decimal("0.50"), at(12)),
    PricePoint(Decimal("0.05"), at(13)),
]


class StaticSource:
    def __init__(self, table=TABLE):
        self.table = table

    def fetch_prices(self):
        return PriceFetchResult.success(self.table)


def hours_of(body) -> list[str]:
    return [entry["startsAt"] for entry in body]


class TestChargeTimesApi:
    @pytest.fixture(autouse=True)
    def _server(self, tmp_path):
        self.engine = SchedulingEngine(
            StaticSource(), ScheduleStore(tmp_path / "hours.json"), now=lambda: at(11, 30)
        )
        self.engine.start()
        self.server = start_api_server(self.engine, "127.0.0.1", 0, "Europe/Berlin")
        self.base = f"http://127.0.0.1:{self.server.server_address[1]}{API_PREFIX}"
        yield
        self.server.shutdown()
        self.server.server_close()

    def test_schedule_defaults_to_from_now(self):
        resp = requests.post(f"{self.base}/schedule", params={"id": "car", "hours": 2}, timeout=5)
        assert resp.status_code == 200
        assert resp.json() == [
            {"total": 0.05, "startsAt": "2024-05-01T13:00:00+02:00"},
            {"total": 0.1, "startsAt": "2024-05-01T11:00:00+02:00"},
        ]
        assert "X-Persisted" not in resp.headers

    def test_schedule_unrestricted_mode(self):
        resp = requests.post(
            f"{self.base}/schedule",
            params={"id": "car", "hours": 4, "mode": "unrestricted"}, timeout=5,
        )
        assert hours_of(resp.json())[-1] == "2024-05-01T12:00:00+02:00"
        assert len(resp.json()) == 4

    def test_schedule_timeframe_from_now(self):
        resp = requests.post(
            f"{self.base}/schedule", params={"id": "car", "hours": 5, "timeframe": 1}, timeout=5,
        )
        assert hours_of(resp.json()) == [
            "2024-05-01T11:00:00+02:00", "2024-05-01T12:00:00+02:00",
        ]

    def test_schedule_explicit_window(self):
        resp = requests.post(
            f"{self.base}/schedule",
            params={"id": "car", "hours": 5, "timeframe": 1, "from": "2024-05-01T11:00:00+02:00"},
            timeout=5,
        )
        assert resp.status_code == 200
        assert hours_of(resp.json()) == [
            "2024-05-01T11:00:00+02:00", "2024-05-01T12:00:00+02:00",
        ]

    def test_naive_from_uses_configured_timezone(self):
        # Europe/Berlin is +02:00 on 1 May
        resp = requests.post(
            f"{self.base}/schedule",
            params={"id": "car", "hours": 5, "timeframe": 0, "from": "2024-05-01T13:00"},
            timeout=5,
        )
        assert hours_of(resp.json()) == ["2024-05-01T13:00:00+02:00"]

    def test_from_without_timeframe_is_bad_request(self):
        resp = requests.post(
            f"{self.base}/schedule",
            params={"id": "car", "hours": 2, "from": "2024-05-01T11:00:00+02:00"}, timeout=5,
        )
        assert resp.status_code == 400
        assert "timeframe" in resp.json()["error"]
        assert self.engine.get_devices() == []

    @pytest.mark.parametrize("params", [
        {"hours": 2},
        {"id": "car"},
        {"id": "car", "hours": "two"},
        {"id": "car", "hours": 2, "timeframe": 1, "from": "tomorrow"},
        {"id": "car", "hours": 2, "timeframe": -1},
    ])
    def test_invalid_schedule_params(self, params):
        resp = requests.post(f"{self.base}/schedule", params=params, timeout=5)
        assert resp.status_code == 400
        assert self.engine.get_devices() == []

    def test_get_charge_times(self):
        requests.post(f"{self.base}/schedule", params={"id": "car", "hours": 1}, timeout=5)
        resp = requests.get(self.base, params={"id": "car"}, timeout=5)
        assert resp.status_code == 200
        assert resp.json() == [{"total": 0.05, "startsAt": "2024-05-01T13:00:00+02:00"}]

    def test_get_unknown_device_is_404(self):
        resp = requests.get(self.base, params={"id": "ghost"}, timeout=5)
        assert resp.status_code == 404
        assert "ghost" in resp.json()["error"]

    def test_empty_schedule_is_404(self):
        requests.post(f"{self.base}/schedule", params={"id": "car", "hours": 0}, timeout=5)
        assert requests.get(self.base, params={"id": "car"}, timeout=5).status_code == 404

    def test_devices_and_delete(self):
        for device in ("car", "boiler"):
            requests.post(f"{self.base}/schedule", params={"id": device, "hours": 1}, timeout=5)
        assert sorted(requests.get(f"{self.base}/devices", timeout=5).json()) == ["boiler", "car"]

        resp = requests.delete(f"{self.base}/devices/car", timeout=5)
        assert resp.status_code == 204
        assert requests.get(f"{self.base}/devices", timeout=5).json() == ["boiler"]
        assert requests.get(self.base, params={"id": "car"}, timeout=5).status_code == 404

    def test_delete_unknown_device(self):
        assert requests.delete(f"{self.base}/devices/ghost", timeout=5).status_code == 204

    def test_delete_url_encoded_id(self):
        requests.post(f"{self.base}/schedule", params={"id": "my car", "hours": 1}, timeout=5)
        assert requests.delete(f"{self.base}/devices/my%20car", timeout=5).status_code == 204
        assert self.engine.get_devices() == []

    def test_prices(self):
        resp = requests.get(f"{self.base}/prices", timeout=5)
        assert [e["total"] for e in resp.json()] == [0.3, 0.1, 0.5, 0.05]

    def test_cheapest_prices(self):
        resp = requests.get(f"{self.base}/prices/cheapest", params={"hours": 2}, timeout=5)
        assert [e["total"] for e in resp.json()] == [0.05, 0.1]
        assert self.engine.get_devices() == []

    def test_health(self):
        body = requests.get(f"{self.base}/health", timeout=5).json()
        assert body["prices_count"] == 4
        assert body["last_error"] is None
        assert body["last_refresh"] is not None

    def test_persistence_failure_header(self):
        with patch("storage.schedule_store.os.replace", side_effect=OSError("disk full")):
            resp = requests.post(f"{self.base}/schedule", params={"id": "car", "hours": 1}, timeout=5)
        assert resp.status_code == 200
        assert resp.headers["X-Persisted"] == "false"

    def test_unknown_route(self):
        assert requests.get(f"{self.base}/nothing", timeout=5).status_code == 404
        assert requests.post(f"{self.base}/devices", timeout=5).status_code == 404

    def test_bad_content_length_is_bad_request(self):
        host, port = self.server.server_address[:2]
        conn = http.client.HTTPConnection(host, port, timeout=5)
        try:
            conn.putrequest("POST", f"{API_PREFIX}/schedule?id=car&hours=1")
            conn.putheader("Content-Length", "lots")
            conn.endheaders()
            resp = conn.getresponse()
            assert resp.status == 400
            assert "Content-Length" in json.loads(resp.read())["error"]
        finally:
            conn.close()
        assert self.engine.get_devices() == []


# Feed for the night clocks go forward in Berlin (2024-03-31)
SPRING_FORWARD = [
    PricePoint(Decimal("0.40"), datetime.fromisoformat("2024-03-31T00:00:00+01:00")),
    PricePoint(Decimal("0.30"), datetime.fromisoformat("2024-03-31T01:00:00+01:00")),
    PricePoint(Decimal("0.20"), datetime.fromisoformat("2024-03-31T03:00:00+02:00")),
    PricePoint(Decimal("0.10"), datetime.fromisoformat("2024-03-31T04:00:00+02:00")),
    PricePoint(Decimal("0.01"), datetime.fromisoformat("2024-03-31T05:00:00+02:00")),
]


class TestWindowOnDstNight:
    @pytest.fixture(autouse=True)
    def _server(self, tmp_path):
        self.engine = SchedulingEngine(
            StaticSource(SPRING_FORWARD), ScheduleStore(tmp_path / "hours.json")
        )
        self.engine.start()
        self.server = start_api_server(self.engine, "127.0.0.1", 0, "Europe/Berlin")
        self.base = f"http://127.0.0.1:{self.server.server_address[1]}{API_PREFIX}"
        yield
        self.server.shutdown()
        self.server.server_close()

    def test_naive_from_window_counts_elapsed_hours(self):
        resp = requests.post(
            f"{self.base}/schedule",
            params={"id": "car", "hours": 10, "timeframe": 3, "from": "2024-03-31T00:00"},
            timeout=5,
        )
        assert resp.status_code == 200
        assert hours_of(resp.json()) == [
            "2024-03-31T04:00:00+02:00",
            "2024-03-31T03:00:00+02:00",
            "2024-03-31T01:00:00+01:00",
            "2024-03-31T00:00:00+01:00",
        ]
