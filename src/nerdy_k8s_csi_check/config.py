from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import os

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class AppConfig:
    history_db_path: Path = Path(os.getenv("NKCC_HISTORY_DB_PATH", "./data/checks.db"))
    container_image: str = os.getenv("NKCC_CONTAINER_IMAGE", "alpine:3.20")
    run_as_user: int = int(os.getenv("NKCC_RUN_AS_USER", "0"))
    pod_ready_timeout_seconds: int = int(os.getenv("NKCC_POD_READY_TIMEOUT_SECONDS", "300"))
    snapshot_ready_timeout_seconds: int = int(os.getenv("NKCC_SNAPSHOT_READY_TIMEOUT_SECONDS", "300"))
    poll_interval_seconds: float = float(os.getenv("NKCC_POLL_INTERVAL_SECONDS", "2"))
    request_timeout_seconds: int = int(os.getenv("NKCC_REQUEST_TIMEOUT_SECONDS", "20"))
    log_level: str = os.getenv("NKCC_LOG_LEVEL", "INFO")


def ensure_directories(config: AppConfig) -> None:
    config.history_db_path.parent.mkdir(parents=True, exist_ok=True)


def configure_logging(level: str) -> None:
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
