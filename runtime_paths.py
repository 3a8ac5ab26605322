from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Mapping, Optional

import config


def get_runtime_dir() -> Path:
    """Return the directory of the running executable (or project dir in dev)."""
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path(__file__).resolve().parent


def get_log_path(
    filename: str,
    *,
    base_dir: str | Path | None = None,
    env: Optional[Mapping[str, str]] = None,
) -> Path:
    """Build a log path under logs/<log_name>_log_file in the runtime (or overridden) dir."""
    file_name = Path(str(filename or "").strip()).name
    if not file_name:
        file_name = "engine.log"
    log_stem = Path(file_name).stem or "engine"
    log_folder_name = f"{log_stem}_log_file"

    source = env if env is not None else os.environ
    override = str(source.get(config.ENGINE_LOG_DIR_ENV, "") or "").strip()
    if base_dir is not None:
        root = Path(base_dir).expanduser()
    elif override:
        root = Path(override).expanduser()
    else:
        root = get_runtime_dir()
    return root / "logs" / log_folder_name / file_name
