"""Inter-process state-file locking and atomic JSON persistence."""

from __future__ import annotations

import errno
import json
import os
import tempfile
import time
from contextlib import contextmanager
from typing import Any, Iterator

import config

try:  # pragma: no cover - platform specific
    import msvcrt
except Exception:  # pragma: no cover - platform specific
    msvcrt = None  # type: ignore[assignment]

try:  # pragma: no cover - platform specific
    import fcntl
except Exception:  # pragma: no cover - platform specific
    fcntl = None  # type: ignore[assignment]

E_STATE_LOCKED = "E_STATE_LOCKED"
E_JSON_CORRUPT = "E_JSON_CORRUPT"
E_STATE_IO = "E_STATE_IO"

_TRANSIENT_REPLACE_ERRNOS = {errno.EACCES, errno.EBUSY, errno.EPERM}
_REPLACE_RETRIES = 6
_REPLACE_BASE_DELAY_SECONDS = 0.03


class StateFileError(RuntimeError):
    code = E_STATE_IO


class StateFileLockError(StateFileError):
    """Raised when the state-file lock cannot be acquired in time."""

    code = E_STATE_LOCKED


class StateFileCorruptError(StateFileError):
    """Raised when a state file exists but does not hold valid JSON."""

    code = E_JSON_CORRUPT


def _lock_timeout(value: float | None) -> float:
    if value is not None:
        return max(0.05, float(value))
    return max(0.05, float(getattr(config, "STATE_FILE_LOCK_TIMEOUT_SECONDS", 2.0) or 2.0))


def _acquire(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc
        return
    if fcntl is not None:  # pragma: no cover - unix-only runtime path
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            raise BlockingIOError(str(exc)) from exc


def _release(handle: Any) -> None:
    if os.name == "nt" and msvcrt is not None:  # pragma: no cover - windows-only runtime path
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        return
    if fcntl is not None:  # pragma: no cover - unix-only runtime path
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def state_file_lock(
    target_path: str,
    *,
    timeout_seconds: float | None = None,
    poll_seconds: float = 0.05,
) -> Iterator[None]:
    """Hold an exclusive lock on `<target>.lock` for the duration of the block."""

    lock_path = f"{target_path}.lock"
    os.makedirs(os.path.dirname(lock_path) or ".", exist_ok=True)
    deadline = time.monotonic() + _lock_timeout(timeout_seconds)
    poll = max(0.01, float(poll_seconds))

    handle = open(lock_path, "a+b")
    locked = False
    try:
        # msvcrt locks a byte range, so the file needs at least one byte.
        handle.seek(0, os.SEEK_END)
        if handle.tell() == 0:
            handle.write(b"0")
            handle.flush()
        handle.seek(0)
        while not locked:
            try:
                _acquire(handle)
                locked = True
            except BlockingIOError as exc:
                if time.monotonic() >= deadline:
                    raise StateFileLockError(f"{E_STATE_LOCKED}: lock timeout path={target_path}") from exc
                time.sleep(poll)
        yield
    finally:
        if locked:
            try:
                _release(handle)
            except OSError:
                pass
        handle.close()


def atomic_write_json(path: str, payload: Any, *, indent: int = 2) -> None:
    """Write JSON through a temp file in the same directory, then replace."""

    target_dir = os.path.dirname(path) or "."
    os.makedirs(target_dir, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f"{os.path.basename(path)}.", suffix=".tmp", dir=target_dir, text=True)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=indent)
            f.flush()
            try:
                os.fsync(f.fileno())
            except OSError:
                pass
        for attempt in range(_REPLACE_RETRIES + 1):
            try:
                os.replace(tmp_path, path)
                break
            except OSError as exc:
                transient = int(getattr(exc, "errno", 0) or 0) in _TRANSIENT_REPLACE_ERRNOS
                if not transient or attempt >= _REPLACE_RETRIES:
                    raise
                time.sleep(_REPLACE_BASE_DELAY_SECONDS * (1.5**attempt))
    except Exception:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise


def write_json_atomic_locked(path: str, payload: Any, *, timeout_seconds: float | None = None) -> None:
    with state_file_lock(path, timeout_seconds=timeout_seconds):
        atomic_write_json(path, payload)


def read_json_locked(path: str, *, default: Any = None, timeout_seconds: float | None = None) -> Any:
    """Read a JSON state file under lock; `default` when the file is absent."""

    with state_file_lock(path, timeout_seconds=timeout_seconds):
        if not os.path.exists(path):
            return default
        try:
            with open(path, "r", encoding="utf-8-sig") as f:
                return json.load(f)
        except json.JSONDecodeError as exc:
            raise StateFileCorruptError(f"{E_JSON_CORRUPT}: path={path} error={exc}") from exc
