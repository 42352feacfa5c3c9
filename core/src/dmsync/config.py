from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass

from .media import DEFAULT_PREFIX
from .profiles import DEFAULT_SHORT_ID_ATTEMPTS
from .retry import RetryPolicy
from .sync import DEFAULT_RETENTION


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class SyncConfig:
    retention_bound: int = DEFAULT_RETENTION
    short_id_attempts: int = DEFAULT_SHORT_ID_ATTEMPTS
    read_retry_attempts: int = 3
    read_retry_delay_ms: int = 50
    media_prefix: str = DEFAULT_PREFIX
    public_base_url: str = "http://127.0.0.1:8080/media"
    log_level: str = "INFO"

    @property
    def read_retry(self) -> RetryPolicy:
        return RetryPolicy(attempts=self.read_retry_attempts, delay_ms=self.read_retry_delay_ms)


def _parse_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be at least {minimum}")
    return parsed


def _parse_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _parse_log_level(name: str, default: str) -> str:
    level = _parse_str(name, default).upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"{name} must be a logging level name")
    return level


def load_config() -> SyncConfig:
    return SyncConfig(
        retention_bound=_parse_int("DMSYNC_RETENTION_BOUND", DEFAULT_RETENTION, minimum=1),
        short_id_attempts=_parse_int("DMSYNC_SHORT_ID_ATTEMPTS", DEFAULT_SHORT_ID_ATTEMPTS, minimum=1),
        read_retry_attempts=_parse_int("DMSYNC_READ_RETRY_ATTEMPTS", 3, minimum=1),
        read_retry_delay_ms=_parse_int("DMSYNC_READ_RETRY_DELAY_MS", 50),
        media_prefix=_parse_str("DMSYNC_MEDIA_PREFIX", DEFAULT_PREFIX),
        public_base_url=_parse_str("DMSYNC_PUBLIC_BASE_URL", "http://127.0.0.1:8080/media"),
        log_level=_parse_log_level("DMSYNC_LOG_LEVEL", "INFO"),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
