import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env(key: str, default: str | None = None, required: bool = False) -> str:
    val = os.getenv(key, default)
    if required and not val:
        raise RuntimeError(f"Missing required env var: {key}")
    return val


def _env_float(key: str, default: float) -> float:
    return float(os.getenv(key, str(default)))


def _env_int(key: str, default: int) -> int:
    return int(os.getenv(key, str(default)))


@dataclass(frozen=True)
class TibberConfig:
    api_token: str = _env("TIBBER_API_TOKEN", required=True)
    api_url: str = _env("TIBBER_API_URL", "https://api.tibber.com/v1-beta/gql")
    timeout_s: float = _env_float("TIBBER_TIMEOUT_SECONDS", 30.0)


@dataclass(frozen=True)
class SystemConfig:
    log_level: str = _env("LOG_LEVEL", "INFO")
    schedule_path: str = _env("SCHEDULE_PATH", "chargingHours.json")
    timezone: str = _env("TIMEZONE", "Europe/Berlin")
    refresh_time: str = _env("REFRESH_TIME", "15:00")  # daily, process-local time
    api_host: str = _env("API_HOST", "0.0.0.0")
    api_port: int = _env_int("API_PORT", 8080)


# Singleton instances
tibber = TibberConfig()
system = SystemConfig()
