"""Audit log — per-project append-only JSON-lines logs with rotation.

Layout under <project>/.claude/logs/:

    test_mode-<name>.log                    current audit log
    test_mode-<name>.log.<stamp>[.gz]       rotated archives
    security-<name>.log                     validation/security events

Nothing here may break a hook. record() and security_event() swallow every
internal error after reporting it on the standard logger, which is the
fallback channel when the log files themselves are unusable.
"""

import gzip
import json
import logging
import shutil
from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from .config import get_config
from .models import AuditEvent
from .path_utils import normalize_timestamp, utcnow

logger = logging.getLogger(__name__)
security_log = logging.getLogger("testgate.security")

AUDIT_PREFIX = "test_mode"
SECURITY_PREFIX = "security"
ROTATED_STAMP_FORMAT = "%Y%m%d-%H%M%S-%f"


def _audit_settings(config: Optional[dict]) -> dict:
    return (config or get_config())["audit"]


def log_dir(project_path) -> Path:
    return Path(project_path) / ".claude" / "logs"


def audit_log_path(project_path, project_name: str) -> Path:
    return log_dir(project_path) / f"{AUDIT_PREFIX}-{project_name}.log"


def security_log_path(project_path, project_name: str) -> Path:
    return log_dir(project_path) / f"{SECURITY_PREFIX}-{project_name}.log"


def rotate_if_needed(log_file: Path, max_bytes: int, compress: bool = True) -> Optional[Path]:
    """Archive log_file if it is over max_bytes. Returns the archive path."""
    if not log_file.exists() or log_file.stat().st_size <= max_bytes:
        return None

    stamp = utcnow().strftime(ROTATED_STAMP_FORMAT)
    archived = log_file.with_name(f"{log_file.name}.{stamp}")
    log_file.rename(archived)

    if not compress:
        return archived

    compressed = archived.with_name(archived.name + ".gz")
    with open(archived, "rb") as src, gzip.open(compressed, "wb") as dst:
        shutil.copyfileobj(src, dst)
    archived.unlink()
    return compressed


def prune_logs(directory: Path, retention_days: int, now: Optional[datetime] = None) -> list[Path]:
    """Delete rotated archives older than the retention window."""
    if not directory.is_dir():
        return []

    cutoff = normalize_timestamp(now) - timedelta(days=retention_days)
    removed = []
    for path in sorted(directory.glob("*.log.*")):
        mtime = normalize_timestamp(path.stat().st_mtime)
        if mtime < cutoff:
            path.unlink(missing_ok=True)
            removed.append(path)
    return removed


def _append_line(log_file: Path, data: dict, settings: dict) -> None:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    rotate_if_needed(log_file, settings["max_log_bytes"], settings["compress"])
    with open(log_file, "a", encoding="utf-8") as f:
        f.write(json.dumps(data, default=str) + "\n")


def record(event: AuditEvent, project_path, config: Optional[dict] = None) -> bool:
    """Append one event to the project's audit log. Never raises.

    Returns:
        True if the event was written
    """
    try:
        settings = _audit_settings(config)
        log_file = audit_log_path(project_path, event.project_name)
        _append_line(log_file, event.to_dict(), settings)
        prune_logs(log_file.parent, settings["retention_days"])
        return True
    except Exception as e:
        logger.warning(
            "Audit log write failed for %s/%s: %s", event.project_name, event.tool_name, e
        )
        return False


def security_event(
    level: int,
    message: str,
    project_path=None,
    project_name: Optional[str] = None,
    config: Optional[dict] = None,
) -> None:
    """Log a security event and, if the project is known, append it to its security log."""
    security_log.log(level, message)
    if project_path is None or not project_name:
        return
    try:
        settings = _audit_settings(config)
        _append_line(
            security_log_path(project_path, project_name),
            {
                "timestamp": utcnow().isoformat(timespec="seconds"),
                "level": logging.getLevelName(level),
                "project_name": project_name,
                "message": message,
            },
            settings,
        )
    except Exception as e:
        logger.warning("Security log write failed for %s: %s", project_name, e)


def read_events(project_path, project_name: str) -> list[dict]:
    """Events from the current (unrotated) audit log. Malformed lines are skipped."""
    log_file = audit_log_path(project_path, project_name)
    try:
        lines = log_file.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        return []

    events = []
    for line in lines:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            events.append(data)
    return events


def count_recent_blocks(
    events: list[dict],
    tool_name: str,
    window_seconds: int,
    now: Optional[datetime] = None,
) -> int:
    cutoff = normalize_timestamp(now) - timedelta(seconds=window_seconds)
    count = 0
    for event in events:
        if event.get("outcome") != "blocked" or event.get("tool_name") != tool_name:
            continue
        if normalize_timestamp(event.get("timestamp"), default=cutoff) > cutoff:
            count += 1
    return count


def detect_burst(
    tool_name: str,
    project_name: str,
    project_path,
    window_seconds: Optional[int] = None,
    threshold: Optional[int] = None,
    session_id: str = "unknown",
    config: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Flag a burst of blocked attempts for one tool as suspicious.

    Counts blocked events for tool_name in the trailing window; above the
    threshold, appends an anomaly event and a CRITICAL security event.
    Heuristic only: the sole effect is extra log entries. Never raises.

    Returns:
        True if an anomaly was recorded
    """
    try:
        settings = _audit_settings(config)
        window = settings["burst_window_seconds"] if window_seconds is None else window_seconds
        limit = settings["burst_threshold"] if threshold is None else threshold

        events = read_events(project_path, project_name)
        count = count_recent_blocks(events, tool_name, window, now)
        if count <= limit:
            return False

        detail = f"{count} blocked {tool_name} attempts in {window}s (threshold {limit})"
        record(
            AuditEvent(
                timestamp=normalize_timestamp(now),
                session_id=session_id,
                tool_name=tool_name,
                project_name=project_name,
                outcome="anomaly",
                detail=detail,
            ),
            project_path,
            config,
        )
        security_event(
            logging.CRITICAL,
            f"Suspicious activity in {project_name}: {detail}",
            project_path,
            project_name,
            config,
        )
        return True
    except Exception as e:
        logger.warning("Burst detection failed for %s/%s: %s", project_name, tool_name, e)
        return False


def summarize(project_path, project_name: str) -> dict:
    """Counters over the current audit log, for status output."""
    events = read_events(project_path, project_name)
    outcomes = Counter(e.get("outcome", "unknown") for e in events)
    blocked_tools = Counter(
        e.get("tool_name", "unknown") for e in events if e.get("outcome") == "blocked"
    )
    return {
        "total": len(events),
        "by_outcome": dict(outcomes),
        "blocked_by_tool": dict(blocked_tools),
        "last_event": events[-1].get("timestamp") if events else None,
    }
