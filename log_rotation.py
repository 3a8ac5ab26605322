from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import config

_LOCK_GUARD = threading.Lock()
_PATH_LOCKS: dict[str, threading.Lock] = {}


@dataclass(frozen=True)
class RotationPolicy:
    max_bytes: int
    backup_count: int


def resolve_policy(max_bytes: Optional[int] = None, backup_count: Optional[int] = None) -> RotationPolicy:
    size = int(max_bytes if max_bytes is not None else config.LOG_ROTATE_MAX_BYTES)
    backups = int(backup_count if backup_count is not None else config.LOG_ROTATE_BACKUP_COUNT)
    return RotationPolicy(max_bytes=max(1024, size), backup_count=max(0, backups))


def _lock_for_path(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _LOCK_GUARD:
        lock = _PATH_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _PATH_LOCKS[key] = lock
        return lock


def backup_path(path: Path, index: int) -> Path:
    return path.with_name(f"{path.name}.{index}")


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError:
        pass


def _purge_stale_backups(path: Path, backup_count: int) -> None:
    prefix = f"{path.name}."
    for candidate in path.parent.glob(f"{path.name}.*"):
        suffix = candidate.name[len(prefix):]
        if suffix.isdigit() and int(suffix) > backup_count:
            _remove_quietly(candidate)


def _shift_backups(path: Path, policy: RotationPolicy) -> Optional[Path]:
    if not path.exists():
        return None
    if policy.backup_count == 0:
        _remove_quietly(path)
        return None

    _purge_stale_backups(path, policy.backup_count - 1)
    for index in range(policy.backup_count - 1, 0, -1):
        source = backup_path(path, index)
        if source.exists():
            try:
                os.replace(source, backup_path(path, index + 1))
            except OSError:
                pass

    target = backup_path(path, 1)
    try:
        os.replace(path, target)
    except OSError:
        return None
    return target


def _needs_rotation(path: Path, incoming_bytes: int, policy: RotationPolicy) -> bool:
    try:
        current = path.stat().st_size
    except FileNotFoundError:
        return False
    return current + incoming_bytes > policy.max_bytes


def append_rotating_log_line(
    path: Path,
    line: str,
    *,
    max_bytes: int | None = None,
    backup_count: int | None = None,
) -> None:
    policy = resolve_policy(max_bytes, backup_count)
    payload = line if line.endswith("\n") else f"{line}\n"
    with _lock_for_path(path):
        path.parent.mkdir(parents=True, exist_ok=True)
        rotated_to: Optional[Path] = None
        if _needs_rotation(path, len(payload.encode("utf-8", errors="replace")), policy):
            rotated_to = _shift_backups(path, policy)
        with open(path, "a", encoding="utf-8") as handle:
            if rotated_to is not None:
                stamp = time.strftime("%Y-%m-%d %H:%M:%S")
                handle.write(
                    f"[{stamp}] [LOG_ROTATE] rotated_file={rotated_to.name} "
                    f"max_bytes={policy.max_bytes} backups={policy.backup_count}\n"
                )
            handle.write(payload)
