"""Smart Charge - cheapest-hour charging scheduler.

Startup:
1. Load saved per-device charging hours (fatal if the file is corrupt)
2. Fetch today's + tomorrow's prices from Tibber
3. Serve the charge times REST API
4. Refresh prices once a day when tomorrow's prices are published
"""

import logging
import signal
import sys
import threading

import config
from engine import PriceRefresher, SchedulingEngine
from storage.schedule_store import ScheduleStore, ScheduleStoreCorruptError
from tibber.client import TibberClient
from web.api import start_api_server

logging.basicConfig(
    level=getattr(logging, config.system.log_level),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

logger = logging.getLogger("smart_charge")


class SmartChargeSystem:
    def __init__(self):
        self.engine = SchedulingEngine(
            TibberClient(), ScheduleStore(config.system.schedule_path)
        )
        self.refresher = PriceRefresher(self.engine, at=config.system.refresh_time)
        self.server = None
        self._stopped = threading.Event()

    def start(self):
        logger.info("Smart Charge starting")
        logger.info("Schedule file: %s", config.system.schedule_path)
        self.engine.start()
        if not self.engine.get_prices():
            logger.warning("No prices available yet; scheduling calls return no hours")

        self.server = start_api_server(
            self.engine,
            config.system.api_host,
            config.system.api_port,
            config.system.timezone,
        )
        self.refresher.start()

        logger.info("Running. Press Ctrl+C to stop.")
        self._stopped.wait()

    def stop(self):
        logger.info("Shutting down")
        self.refresher.stop()
        if self.server is not None:
            self.server.shutdown()
            self.server.server_close()
        self._stopped.set()


def main():
    system = SmartChargeSystem()

    def signal_handler(sig, frame):
        system.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        system.start()
    except ScheduleStoreCorruptError as e:
        logger.error("Cannot start: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
