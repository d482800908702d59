"""REST API for charge times.

Routes (all under /api/v1/charge-times):
    GET    ?id=X                      stored hours for a device (404 if none)
    POST   /schedule?id=X&hours=N     schedule hours; optional from=ISO,
                                      timeframe=H, mode=unrestricted
    GET    /devices                   known device ids
    DELETE /devices/{id}              forget a device
    GET    /prices                    cached price table
    GET    /prices/cheapest?hours=N   cheapest N hours of the table
    GET    /health                    price refresh status
"""

import http.server
import json
import logging
import threading
from datetime import datetime
from urllib.parse import parse_qs, unquote, urlsplit
from zoneinfo import ZoneInfo

from engine import SchedulingEngine
from pricing.price_point import PricePoint

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1/charge-times"


class BadRequest(ValueError):
    pass


def point_to_json(point: PricePoint) -> dict:
    return {"total": float(point.total), "startsAt": point.starts_at.isoformat()}


def _single(query: dict[str, list[str]], name: str) -> str | None:
    values = query.get(name)
    return values[0] if values else None


def _int_param(query, name: str, required: bool = False) -> int | None:
    raw = _single(query, name)
    if raw is None or raw == "":
        if required:
            raise BadRequest(f"Missing required parameter: {name}")
        return None
    try:
        return int(raw)
    except ValueError:
        raise BadRequest(f"Parameter {name} must be an integer, got {raw!r}") from None


def _datetime_param(query, name: str, tz: ZoneInfo) -> datetime | None:
    raw = _single(query, name)
    if not raw:
        return None
    # an unescaped '+' in the offset arrives as a space
    raw = raw.strip().replace(" ", "+")
    try:
        value = datetime.fromisoformat(raw)
    except ValueError:
        raise BadRequest(f"Parameter {name} is not an ISO-8601 timestamp: {raw!r}") from None
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz)
    return value


def make_handler(engine: SchedulingEngine, tz: ZoneInfo):
    """Build a request handler class bound to ``engine``."""

    class ChargeTimesHandler(http.server.BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def log_message(self, format, *args):
            logger.debug("%s - %s", self.address_string(), format % args)

        def _send_json(self, data, status=200, headers=None):
            body = json.dumps(data).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.send_header("Access-Control-Allow-Origin", "*")
            for key, value in (headers or {}).items():
                self.send_header(key, value)
            self.end_headers()
            self.wfile.write(body)

        def _send_empty(self, status=204):
            self.send_response(status)
            self.send_header("Content-Length", "0")
            self.end_headers()

        def _send_error(self, status, message):
            self._send_json({"error": message}, status)

        def _dispatch(self, routes):
            url = urlsplit(self.path)
            query = parse_qs(url.query)
            path = url.path.rstrip("/") or "/"
            try:
                for prefix, exact, func in routes:
                    if exact and path == prefix:
                        return func(query, None)
                    if not exact and path.startswith(prefix + "/"):
                        return func(query, unquote(path[len(prefix) + 1:]))
                self._send_error(404, f"No route for {self.command} {url.path}")
            except ValueError as e:
                self._send_error(400, str(e))
            except Exception as e:
                logger.exception("Request %s %s failed", self.command, self.path)
                self._send_error(500, str(e))

        def do_GET(self):
            self._dispatch([
                (API_PREFIX, True, self._get_charge_times),
                (API_PREFIX + "/devices", True, self._get_devices),
                (API_PREFIX + "/prices", True, self._get_prices),
                (API_PREFIX + "/prices/cheapest", True, self._get_cheapest),
                (API_PREFIX + "/health", True, self._get_health),
            ])

        def do_POST(self):
            # query parameters only; drain any body so keep-alive stays in sync
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                length = -1
            if length < 0:
                self.close_connection = True
                self._send_error(400, "Invalid Content-Length header")
                return
            if length:
                self.rfile.read(length)
            self._dispatch([
                (API_PREFIX + "/schedule", True, self._post_schedule),
            ])

        def do_DELETE(self):
            self._dispatch([
                (API_PREFIX + "/devices", False, self._delete_device),
            ])

        # -- Handlers --

        def _get_charge_times(self, query, _):
            device_id = _single(query, "id")
            if not device_id:
                raise BadRequest("Missing required parameter: id")
            hours = engine.get_charging_hours(device_id)
            if not hours:
                self._send_error(404, f"No charge times found for device with ID: {device_id}")
                return
            self._send_json([point_to_json(p) for p in hours])

        def _post_schedule(self, query, _):
            device_id = _single(query, "id")
            if not device_id:
                raise BadRequest("Missing required parameter: id")
            n = _int_param(query, "hours", required=True)
            start = _datetime_param(query, "from", tz)
            timeframe = _int_param(query, "timeframe")
            mode = (_single(query, "mode") or "").lower()

            if start is None and timeframe is None:
                if mode == "unrestricted":
                    result = engine.schedule_unrestricted(device_id, n)
                else:
                    result = engine.schedule_from_now(device_id, n)
            elif start is None:
                result = engine.schedule_from_now_within(device_id, timeframe, n)
            elif timeframe is None:
                raise BadRequest("Missing timeframe. 'from' requires a valid timeframe.")
            else:
                result = engine.schedule_windowed(device_id, start, timeframe, n)

            headers = {} if result.persisted else {"X-Persisted": "false"}
            self._send_json([point_to_json(p) for p in result.hours], headers=headers)

        def _get_devices(self, query, _):
            self._send_json(engine.get_devices())

        def _delete_device(self, query, device_id):
            persisted = engine.remove_device(device_id)
            if not persisted:
                logger.warning("Removal of %s not persisted", device_id)
            self._send_empty(204)

        def _get_prices(self, query, _):
            self._send_json([point_to_json(p) for p in engine.get_prices()])

        def _get_cheapest(self, query, _):
            n = _int_param(query, "hours", required=True)
            self._send_json([point_to_json(p) for p in engine.get_cheapest_hours(n)])

        def _get_health(self, query, _):
            cache = engine.cache
            self._send_json({
                "prices_count": len(cache.current()),
                "last_refresh": cache.last_refresh.isoformat() if cache.last_refresh else None,
                "last_error": cache.last_error,
                "devices_count": len(engine.get_devices()),
            })

    return ChargeTimesHandler


def start_api_server(
    engine: SchedulingEngine, host: str, port: int, timezone_name: str
) -> http.server.ThreadingHTTPServer:
    """Serve the API from a daemon thread; one worker thread per request."""
    handler = make_handler(engine, ZoneInfo(timezone_name))
    server = http.server.ThreadingHTTPServer((host, port), handler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, name="api-server", daemon=True)
    thread.start()
    logger.info("Charge times API at http://%s:%d%s", host, server.server_address[1], API_PREFIX)
    return server
