"""
backend/config.py

Application configuration via Pydantic Settings.
All values can be overridden with environment variables or a .env file.

Quick start — create a .env file in your project root:
    API_PORT=3000
    PROC_ROOT=/host/proc
    SAMPLER_DEVICES=eth0,wlan0
"""

from __future__ import annotations

from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 3000
    CORS_ORIGINS: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]

    # Cadence
    BROADCAST_INTERVAL_SECONDS: float = 1.0
    MAINTENANCE_INTERVAL_SECONDS: float = 300.0
    STATS_LOG_INTERVAL_SECONDS: float = 30.0

    # Collectors
    TOP_PROCESSES: int = 5
    DETAILS_CACHE_TTL_SECONDS: float = 300.0
    RATE_MAX_IDLE_TICKS: int = 60   # forget interfaces unseen for this many samples

    # Where the kernel tables live.
    # Running natively: defaults. In a container with the host's /proc
    # mounted at /host/proc, set PROC_ROOT=/host/proc.
    PROC_ROOT: str = "/proc"
    SYS_CLASS_NET: str = "/sys/class/net"

    # Per-process bandwidth (nethogs)
    BANDWIDTH_ENABLED: bool = True
    SAMPLER_BINARY: str = "nethogs"
    SAMPLER_REFRESH_SECONDS: int = 1
    SAMPLER_DEVICES: Annotated[list[str], NoDecode] = []
    NAME_CACHE_MAX: int = 500
    SHUTDOWN_TIMEOUT_SECONDS: float = 2.0

    # Logging
    LOG_LEVEL: str = "INFO"

    @field_validator("SAMPLER_DEVICES", "CORS_ORIGINS", mode="before")
    @classmethod
    def parse_list(cls, v):
        if isinstance(v, str):
            import json as _json
            v = v.strip()
            if v.startswith("["):
                try:
                    return _json.loads(v)
                except ValueError:
                    pass
            return [item.strip() for item in v.split(",") if item.strip()]
        return v


settings = Settings()
