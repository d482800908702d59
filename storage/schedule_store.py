"""Per-device charging schedules, mirrored to a JSON file.

The in-memory map is authoritative for the running process. Every mutation
rewrites the whole file (temp file + atomic rename) so a restart picks up
the last completed write.
"""

import json
import logging
import os
import threading
from collections.abc import Iterable
from pathlib import Path

from pricing.price_point import PricePoint

logger = logging.getLogger(__name__)

DEVICE_LOCK_STRIPES = 64


class ScheduleStoreCorruptError(RuntimeError):
    """The schedule file exists but cannot be read back."""


class ScheduleStore:
    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)
        self._schedules: dict[str, tuple[PricePoint, ...]] = {}
        self._map_lock = threading.Lock()
        self._write_lock = threading.Lock()
        # striped: ids sharing a stripe serialise, but the pool never grows
        self._device_locks = [threading.Lock() for _ in range(DEVICE_LOCK_STRIPES)]

    def _device_lock(self, device_id: str) -> threading.Lock:
        return self._device_locks[hash(device_id) % DEVICE_LOCK_STRIPES]

    # -- Startup --

    def load(self):
        """Replace the in-memory map with the contents of the schedule file.

        A missing file means a fresh install and yields an empty store. A
        file that exists but cannot be decoded raises
        ScheduleStoreCorruptError instead of silently starting empty, which
        would overwrite the user's schedules on the next write.
        """
        if not self.path.exists():
            logger.info("No saved charging hours file found at %s", self.path)
            with self._map_lock:
                self._schedules = {}
            return

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            schedules = _decode(raw)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise ScheduleStoreCorruptError(
                f"Cannot read charging hours from {self.path}: {e}"
            ) from e

        with self._map_lock:
            self._schedules = schedules
        logger.info(
            "Charging hours loaded from %s (%d devices)", self.path, len(schedules)
        )

    # -- Reads --

    def get(self, device_id: str) -> tuple[PricePoint, ...] | None:
        with self._map_lock:
            return self._schedules.get(device_id)

    def device_ids(self) -> list[str]:
        with self._map_lock:
            return list(self._schedules)

    # -- Mutations --

    def put(self, device_id: str, points: Iterable[PricePoint]) -> bool:
        """Set the device's hours and persist. Returns False if the file write failed."""
        points = tuple(points)
        with self._device_lock(device_id):
            with self._map_lock:
                self._schedules[device_id] = points
            return self._save()

    def remove(self, device_id: str) -> bool:
        """Forget the device (no-op if unknown) and persist."""
        with self._device_lock(device_id):
            with self._map_lock:
                self._schedules.pop(device_id, None)
            return self._save()

    def _save(self) -> bool:
        # Snapshot under the write lock: whichever write lands last was also
        # taken last, so the file never regresses behind memory.
        with self._write_lock:
            with self._map_lock:
                snapshot = dict(self._schedules)
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(_encode(snapshot), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except OSError as e:
                logger.error("Error saving charging hours to %s: %s", self.path, e)
                return False
        logger.debug("Charging hours saved to %s", self.path)
        return True


def _encode(schedules: dict[str, tuple[PricePoint, ...]]) -> dict:
    return {
        device_id: [p.to_dict() for p in points]
        for device_id, points in schedules.items()
    }


def _decode(raw) -> dict[str, tuple[PricePoint, ...]]:
    if not isinstance(raw, dict):
        raise ValueError(f"expected a JSON object, got {type(raw).__name__}")
    schedules = {}
    for device_id, entries in raw.items():
        if not isinstance(entries, list):
            raise ValueError(f"entry for {device_id!r} is not a list")
        schedules[device_id] = tuple(PricePoint.from_dict(e) for e in entries)
    return schedules
