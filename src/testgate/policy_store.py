"""Policy store — per-project test mode status records on disk.

One JSON file per (project identity, mode type):

    project-scoped: <project>/.claude/test_mode/project/<name>.json
    user-scoped:    $TESTGATE_HOME/user/<name>.json  (default ~/.claude/test_mode)

Precedence: a valid project-scoped record is effective; a user-scoped record
for the same identity stays dormant on disk until the project one is gone.

Staleness: a record is only trusted after a whole-file read, a full parse,
and an exact match of its embedded project path against the live identity.
Anything else (corrupt, wrong project, expired, inactive) is deleted on
sight. Writes go through atomic_write, so readers never see half a record.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from .config import get_state_root
from .errors import StaleStateError, ValidationError
from .models import MODE_PRECEDENCE, ModeType, PolicyRecord, ProjectIdentity
from .path_utils import RECORD_FILE_MODE, atomic_write, find_orphaned_temp_files
from .validation import validate_identifier, validate_json, validate_path

logger = logging.getLogger(__name__)

RECORD_SUFFIX = ".json"
MAX_RECORD_BYTES = 4096


def project_state_dir(identity: ProjectIdentity) -> Path:
    return Path(identity.absolute_path) / ".claude" / "test_mode" / "project"


def user_state_dir() -> Path:
    return get_state_root() / "user"


def _store_dir(identity: ProjectIdentity, mode_type: ModeType) -> Path:
    if mode_type == "project":
        return project_state_dir(identity)
    if mode_type == "user":
        return user_state_dir()
    raise ValueError(f"Unknown mode type: {mode_type!r}")


def status_path(identity: ProjectIdentity, mode_type: ModeType) -> Path:
    """Deterministic record location for (identity, mode_type). No I/O."""
    return _store_dir(identity, mode_type) / f"{identity.name}{RECORD_SUFFIX}"


def read_record(path: Path, identity: ProjectIdentity, mode_type: ModeType) -> PolicyRecord:
    """Read and fully validate one record against the live identity.

    The file is read in one call and parsed from that snapshot.

    Raises:
        FileNotFoundError: If there is no record at path
        StaleStateError: If the record must not be trusted
    """
    raw = path.read_bytes()

    if path.name != f"{identity.name}{RECORD_SUFFIX}":
        raise StaleStateError(path, "record is not at its expected location")

    try:
        data = validate_json(raw, max_bytes=MAX_RECORD_BYTES, scan_content=False)
        record = PolicyRecord.from_dict(data)
    except ValidationError as e:
        raise StaleStateError(path, f"invalid record ({e})")

    if record.mode_type != mode_type:
        raise StaleStateError(path, f"mode_type {record.mode_type!r} stored in {mode_type} store")
    if record.identity.absolute_path != identity.absolute_path:
        raise StaleStateError(
            path,
            f"project path {record.identity.absolute_path!r} != {identity.absolute_path!r}",
        )
    if record.identity.name != identity.name:
        raise StaleStateError(path, f"project name {record.identity.name!r} != {identity.name!r}")
    if not record.active:
        raise StaleStateError(path, "record is inactive")
    if record.is_expired():
        raise StaleStateError(path, "record has expired")

    return record


def _discard(path: Path, reason: str) -> None:
    logger.warning("Removing stale test mode record %s: %s", path, reason)
    path.unlink(missing_ok=True)


def load_record(identity: ProjectIdentity, mode_type: ModeType) -> Optional[PolicyRecord]:
    """Load one scoped record, deleting it if stale."""
    path = status_path(identity, mode_type)
    try:
        return read_record(path, identity, mode_type)
    except FileNotFoundError:
        return None
    except StaleStateError as e:
        _discard(path, e.reason)
        return None


def load_effective(identity: ProjectIdentity) -> Optional[PolicyRecord]:
    """Return the effective record for identity, or None (gate inactive).

    Project-scoped first, then user-scoped. The first valid record wins and
    lower-precedence records are not touched.
    """
    for mode_type in MODE_PRECEDENCE:
        record = load_record(identity, mode_type)
        if record is not None:
            return record
    return None


def list_records(identity: ProjectIdentity) -> dict[str, Optional[PolicyRecord]]:
    """All valid records for identity keyed by mode type (stale ones are removed)."""
    return {mode_type: load_record(identity, mode_type) for mode_type in MODE_PRECEDENCE}


def write_record(record: PolicyRecord) -> Path:
    """Validate then atomically persist a record, replacing any previous one.

    Raises:
        ValidationError: If the record's identity is not well-formed
        OSError: If the file cannot be written
    """
    validate_identifier(record.identity.name)
    validate_path(record.identity.absolute_path)

    path = status_path(record.identity, record.mode_type)
    payload = json.dumps(record.to_dict(), indent=2) + "\n"
    # Same checks the reader applies; a record it would reject is never written
    validate_json(payload, max_bytes=MAX_RECORD_BYTES, scan_content=False)
    with atomic_write(path, permissions=RECORD_FILE_MODE) as f:
        f.write(payload)
    logger.info("Wrote %s test mode record for %s", record.mode_type, record.identity.name)
    return path


def delete_record(identity: ProjectIdentity, mode_type: ModeType) -> bool:
    """Delete one scoped record. Returns True if a file was removed."""
    path = status_path(identity, mode_type)
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    logger.info("Deleted %s test mode record for %s", mode_type, identity.name)
    return True


def _candidate_records(identity: ProjectIdentity) -> list[tuple[Path, ModeType]]:
    """Records this identity is responsible for.

    Every record in the project's own store belongs to this project; in the
    shared user store only the file named after this project does.
    """
    candidates: list[tuple[Path, ModeType]] = []

    project_dir = project_state_dir(identity)
    if project_dir.is_dir():
        for path in sorted(project_dir.glob(f"*{RECORD_SUFFIX}")):
            candidates.append((path, "project"))

    user_path = status_path(identity, "user")
    if user_path.is_file():
        candidates.append((user_path, "user"))

    return candidates


def cleanup_stale(identity: ProjectIdentity) -> list[Path]:
    """Delete every record that fails validation against the live identity.

    Idempotent; safe on an empty or missing store. Also removes temp files
    left by interrupted writes in the project store.

    Returns:
        Paths that were removed
    """
    removed: list[Path] = []

    for path, mode_type in _candidate_records(identity):
        try:
            read_record(path, identity, mode_type)
        except FileNotFoundError:
            continue
        except StaleStateError as e:
            _discard(path, e.reason)
            removed.append(path)

    for tmp in find_orphaned_temp_files(project_state_dir(identity)):
        tmp.unlink(missing_ok=True)
        removed.append(tmp)

    return removed
