from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any

import config
from log_rotation import append_rotating_log_line
from runtime_paths import get_log_path

LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR")

ENGINE_LOG_PATH: Path = get_log_path(config.ENGINE_LOG_FILENAME)
_LOG_LOCK = threading.Lock()


def _normalize_value(value: Any) -> str:
    text = str(value)
    return " ".join(text.split())


def _normalize_level(level: str) -> str:
    candidate = str(level or "").strip().upper()
    return candidate if candidate in LOG_LEVELS else "INFO"


def write_engine_log_line(message: str, *, level: str = "INFO") -> None:
    timestamp = time.strftime("%Y-%m-%d %H:%M:%S")
    line = f"[{timestamp}] [{_normalize_level(level)}] {message}\n"
    try:
        with _LOG_LOCK:
            append_rotating_log_line(ENGINE_LOG_PATH, line)
    except OSError:
        # Logging must never break runtime flow.
        pass


def log_engine(component: str, event: str, *, level: str = "INFO", **fields: Any) -> None:
    normalized_fields = " ".join(
        f"{key}={_normalize_value(val)}" for key, val in fields.items()
    )
    line = f"component={component} event={event}"
    if normalized_fields:
        line = f"{line} {normalized_fields}"
    write_engine_log_line(line, level=level)
