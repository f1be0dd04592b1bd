"""File and time helpers shared by the store, the settings mutator and the audit log.

atomic_write: temp file in the target's directory + os.replace, so a
concurrent reader sees either the old or the new file, never a partial one.

normalize_timestamp / parse_duration: one place for the timestamp and
duration formats written into status records.
"""

import os
import re
import stat
import tempfile
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Union

# Owner read/write, group read. Status records never need to be world-readable.
RECORD_FILE_MODE = 0o640

TMP_SUFFIX = ".tmp"

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
NO_EXPIRY_TOKENS = {"0", "none", "session", "never", ""}


@contextmanager
def atomic_write(filepath: Path, mode: str = "w", permissions: Optional[int] = None):
    """Write to a file atomically using tmp + os.replace pattern.

    The temp file lives next to the target (same filesystem, so the rename
    is atomic). On any exception the temp file is removed and the target
    is left exactly as it was. Without explicit permissions an existing target keeps its mode.

    Usage:
        with atomic_write(Path("settings.json")) as f:
            f.write("content")
    """
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    if permissions is None and filepath.exists():
        permissions = stat.S_IMODE(filepath.stat().st_mode)

    fd, tmp_path = tempfile.mkstemp(
        dir=filepath.parent,
        prefix=f".{filepath.name}.",
        suffix=TMP_SUFFIX,
    )
    try:
        with os.fdopen(fd, mode, encoding=None if "b" in mode else "utf-8") as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        if permissions is not None:
            os.chmod(tmp_path, permissions)
        os.replace(tmp_path, filepath)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def find_orphaned_temp_files(directory: Path) -> list[Path]:
    """List leftover temp files from interrupted atomic writes."""
    if not directory.is_dir():
        return []
    return sorted(
        p for p in directory.iterdir()
        if p.is_file() and p.name.startswith(".") and p.name.endswith(TMP_SUFFIX)
    )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_timestamp(
    ts: Union[str, int, float, datetime, None],
    default: Optional[datetime] = None,
) -> datetime:
    """Normalize a timestamp to a timezone-aware UTC datetime.

    Handles ISO-format strings (with or without tz, trailing Z), unix
    timestamps, datetime objects (adds UTC if naive) and None (returns
    default or now).
    """
    if default is None:
        default = utcnow()

    if ts is None:
        return default

    if isinstance(ts, datetime):
        if ts.tzinfo is None:
            return ts.replace(tzinfo=timezone.utc)
        return ts.astimezone(timezone.utc)

    if isinstance(ts, (int, float)):
        return datetime.fromtimestamp(ts, tz=timezone.utc)

    if isinstance(ts, str):
        try:
            dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        except ValueError:
            return default
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    return default


def format_timestamp(dt: datetime) -> str:
    """ISO 8601, UTC, second precision."""
    return normalize_timestamp(dt).isoformat(timespec="seconds")


def parse_duration(value: Union[str, int, None]) -> Optional[timedelta]:
    """Parse '90s', '30m', '1h', '2d' or a bare number of minutes.

    Returns None for "no expiry" ('0', 'none', 'session', 'never', empty).

    Raises:
        ValueError: If the value is not a recognised duration.
    """
    if value is None:
        return None
    if isinstance(value, int):
        return timedelta(minutes=value) if value > 0 else None

    text = str(value).strip().lower()
    if text in NO_EXPIRY_TOKENS:
        return None

    match = _DURATION_RE.match(text)
    if not match:
        raise ValueError(f"Invalid duration {value!r} (expected e.g. 90s, 30m, 1h, 2d)")

    amount = int(match.group(1))
    unit = match.group(2) or "m"
    if amount == 0:
        return None
    return timedelta(seconds=amount * _DURATION_UNITS[unit])


def format_duration(delta: Optional[timedelta]) -> str:
    """Render a timedelta the way parse_duration accepts it."""
    if delta is None:
        return "session"
    seconds = int(delta.total_seconds())
    if seconds <= 0:
        return "0s"
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60)):
        if seconds % size == 0:
            return f"{seconds // size}{unit}"
    return f"{seconds}s"
