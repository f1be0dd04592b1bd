"""Settings mutator — splices the gate into the host's .claude/settings.json.

The gate owns two things in the document and nothing else:

- hooks.PreToolUse / hooks.PostToolUse entries whose command runs
  `testgate.hook`
- the CLAUDE_TEST_MODE* keys in env

Every mutation runs the same pipeline, and a failure at any stage raises
AtomicityFailure naming that stage with settings.json untouched:

    read-existing -> validate-existing -> backup -> compute-candidate
    -> validate-candidate -> write-settings (temp file + rename)

Ordering with the status record (not transactional):

- enable writes the status record first, then settings.json. If the
  settings step fails the previous record is restored.
- disable rewrites settings.json first, then deletes the record.

So the only state a crash can leave behind is "record present, hooks not
registered". That state is inert (the host never calls the gate), is
reported by validate_setup, and is repaired by the next enable or cleanup.
Two concurrent enable/disable calls on the same project are not serialized
beyond the atomic renames: last writer wins.
"""

import copy
import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from . import audit, policy_store
from .config import get_config
from .errors import AtomicityFailure, IOFailure, StaleStateError, ValidationError
from .models import MODE_PRECEDENCE, SCOPES, ModeType, PolicyRecord, ProjectIdentity
from .path_utils import (
    RECORD_FILE_MODE,
    atomic_write,
    find_orphaned_temp_files,
    format_duration,
    parse_duration,
    utcnow,
)
from .validation import project_identity, validate_json

logger = logging.getLogger(__name__)

ENV_PREFIX = "CLAUDE_TEST_MODE"
ENV_KEYS = (
    ENV_PREFIX,
    f"{ENV_PREFIX}_PROJECT",
    f"{ENV_PREFIX}_PATH",
    f"{ENV_PREFIX}_SCOPE",
    f"{ENV_PREFIX}_STRICT",
    f"{ENV_PREFIX}_DURATION",
)

HOOK_EVENTS = ("PreToolUse", "PostToolUse")
HOOK_MATCHER = "*"
HOOK_MARKER = "testgate.hook"
HOOK_COMMANDS = {
    "PreToolUse": "python3 -m testgate.hook pre",
    "PostToolUse": "python3 -m testgate.hook post",
}
HOOK_TIMEOUT_SECONDS = 10

DEFAULT_DOCUMENT = {
    "hooks": {"PreToolUse": [], "PostToolUse": []},
    "env": {ENV_PREFIX: "false"},
}

MAX_SETTINGS_BYTES = 1024 * 1024
BACKUP_PREFIX = "settings-backup-"
BACKUP_STAMP_FORMAT = "%Y%m%d-%H%M%S-%f"

Document = dict
Mutation = Callable[[Document], Document]


def settings_path(project_path) -> Path:
    return Path(project_path) / ".claude" / "settings.json"


def backups_dir(project_path) -> Path:
    return Path(project_path) / ".claude" / "backups"


# ── Document parsing and validation ──


def parse_document(text, stage: str) -> Document:
    """JSON-syntax and top-level-object check for a settings document.

    Raises:
        AtomicityFailure: Tagged with stage
    """
    label = "existing" if stage == "validate-existing" else "candidate"
    try:
        document = validate_json(text, max_bytes=MAX_SETTINGS_BYTES, scan_content=False)
    except ValidationError as e:
        raise AtomicityFailure(stage, f"{label} configuration document is not valid JSON ({e})")

    if not isinstance(document, dict):
        raise AtomicityFailure(stage, f"{label} configuration document is not a JSON object")
    if not isinstance(document.get("hooks", {}), dict):
        raise AtomicityFailure(stage, f"{label} configuration document has a non-object 'hooks'")
    if not isinstance(document.get("env", {}), dict):
        raise AtomicityFailure(stage, f"{label} configuration document has a non-object 'env'")
    return document


def read_document(path: Path) -> tuple[Document, Optional[bytes]]:
    """Read and validate the existing document. A missing file yields the default.

    Returns:
        (document, raw bytes or None if the file did not exist)
    """
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        return copy.deepcopy(DEFAULT_DOCUMENT), None
    except OSError as e:
        raise AtomicityFailure("read-existing", f"cannot read {path}: {e}", e)
    return parse_document(raw, "validate-existing"), raw


def serialize_document(document: Document) -> str:
    return json.dumps(document, indent=2) + "\n"


# ── Pure mutations ──


def _is_gate_hook(entry) -> bool:
    if not isinstance(entry, dict):
        return False
    hooks = entry.get("hooks")
    if not isinstance(hooks, list):
        return False
    return any(
        isinstance(h, dict) and HOOK_MARKER in str(h.get("command", ""))
        for h in hooks
    )


def _gate_hook_entry(event: str) -> dict:
    return {
        "matcher": HOOK_MATCHER,
        "hooks": [
            {
                "type": "command",
                "command": HOOK_COMMANDS[event],
                "timeout": HOOK_TIMEOUT_SECONDS,
            }
        ],
    }


def _event_entries(hooks: dict, event: str) -> list:
    entries = hooks.get(event, [])
    if not isinstance(entries, list):
        raise ValueError(f"hooks.{event} is not a list")
    return [e for e in entries if not _is_gate_hook(e)]


def apply_enable(
    document: Document,
    identity: ProjectIdentity,
    scope: str,
    strict: bool,
    duration: str,
) -> Document:
    """Return a copy of document with the gate registered and env keys set.

    Pure: the input is not modified. Unrelated keys are carried over as-is,
    and any earlier gate registration is replaced rather than duplicated.
    """
    candidate = copy.deepcopy(document)

    hooks = candidate.setdefault("hooks", {})
    for event in HOOK_EVENTS:
        hooks[event] = _event_entries(hooks, event) + [_gate_hook_entry(event)]

    env = candidate.setdefault("env", {})
    for key in ENV_KEYS:
        env.pop(key, None)
    env.update({
        ENV_PREFIX: "true",
        f"{ENV_PREFIX}_PROJECT": identity.name,
        f"{ENV_PREFIX}_PATH": identity.absolute_path,
        f"{ENV_PREFIX}_SCOPE": scope,
        f"{ENV_PREFIX}_STRICT": "true" if strict else "false",
        f"{ENV_PREFIX}_DURATION": duration,
    })
    return candidate


def apply_disable(document: Document) -> Document:
    """Return a copy of document with the gate unregistered and env keys reset."""
    candidate = copy.deepcopy(document)

    hooks = candidate.get("hooks")
    if isinstance(hooks, dict):
        for event in HOOK_EVENTS:
            if event in hooks:
                hooks[event] = _event_entries(hooks, event)

    env = candidate.setdefault("env", {})
    for key in ENV_KEYS:
        env.pop(key, None)
    env[ENV_PREFIX] = "false"
    return candidate


def apply_record(document: Document, record: Optional[PolicyRecord]) -> Document:
    """Make document reflect the effective record (or its absence)."""
    if record is None:
        return apply_disable(document)
    delta = record.expires_at - record.started_at if record.expires_at else None
    return apply_enable(
        document, record.identity, record.scope, record.strict, format_duration(delta)
    )


def registered_events(document: Document) -> list[str]:
    hooks = document.get("hooks")
    if not isinstance(hooks, dict):
        return []
    return [
        event for event in HOOK_EVENTS
        if isinstance(hooks.get(event), list) and any(_is_gate_hook(e) for e in hooks[event])
    ]


def is_registered(document: Document) -> bool:
    return len(registered_events(document)) == len(HOOK_EVENTS)


# ── Backups ──


def list_backups(backup_dir: Path) -> list[Path]:
    if not backup_dir.is_dir():
        return []
    return sorted(backup_dir.glob(f"{BACKUP_PREFIX}*.json"))


def prune_backups(backup_dir: Path, retention: int) -> list[Path]:
    """Delete the oldest backups beyond the retention cap."""
    backups = list_backups(backup_dir)
    excess = backups[:-retention] if retention > 0 else backups
    for path in excess:
        path.unlink(missing_ok=True)
    return excess


def backup_settings(settings_file: Path, backup_dir: Path, retention: int = 10) -> Optional[Path]:
    """Copy settings_file into backup_dir under a timestamped name, then prune.

    Returns:
        The backup path, or None if there was nothing to back up
    """
    if not settings_file.exists():
        return None
    backup_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime(BACKUP_STAMP_FORMAT)
    backup_file = backup_dir / f"{BACKUP_PREFIX}{stamp}.json"
    shutil.copy2(settings_file, backup_file)
    prune_backups(backup_dir, retention)
    logger.info("Backed up %s to %s", settings_file, backup_file)
    return backup_file


# ── Commit pipeline ──


def commit_document(project_path, mutate: Mutation, config: Optional[dict] = None) -> Document:
    """Run the validate/backup/compute/validate/replace pipeline.

    A candidate identical to the existing document is not written (and no
    backup is taken), which keeps repeated cleanup runs idempotent.

    Raises:
        AtomicityFailure: With the failing stage; settings.json is untouched
    """
    config = config or get_config()
    path = settings_path(project_path)

    document, raw = read_document(path)

    try:
        candidate = mutate(document)
    except (TypeError, ValueError, AttributeError, KeyError) as e:
        raise AtomicityFailure("compute-candidate", f"cannot build new configuration: {e}", e)

    text = serialize_document(candidate)
    parse_document(text, "validate-candidate")

    if candidate == document:
        return document

    try:
        backup_settings(path, backups_dir(project_path), config["backups"]["retention"])
    except OSError as e:
        raise AtomicityFailure("backup", f"cannot back up {path}: {e}", e)

    try:
        with atomic_write(path) as f:
            f.write(text)
    except OSError as e:
        raise AtomicityFailure("write-settings", f"cannot replace {path}: {e}", e)

    logger.info("Updated %s", path)
    return candidate


# ── Activation / deactivation ──


def _resolve_identity(project_path, config: dict) -> ProjectIdentity:
    return project_identity(
        str(project_path), max_length=config["validation"]["max_path_length"]
    )


def _restore_record(path: Path, previous: Optional[bytes]) -> None:
    try:
        if previous is None:
            path.unlink(missing_ok=True)
        else:
            with atomic_write(path, permissions=RECORD_FILE_MODE) as f:
                f.write(previous.decode("utf-8"))
    except OSError as e:
        logger.error("Could not restore status record %s: %s", path, e)


def enable_test_mode(
    project_path,
    scope: Optional[str] = None,
    strict: Optional[bool] = None,
    duration=None,
    mode_type: ModeType = "project",
    config: Optional[dict] = None,
) -> PolicyRecord:
    """Activate test mode: persist the status record, then register the gate.

    Raises:
        ValidationError: Bad project path, scope or duration
        IOFailure: The existing status record could not be read
        AtomicityFailure: A write stage failed; previous state restored
    """
    config = config or get_config()
    mode_defaults = config["mode"]
    scope = scope or mode_defaults["default_scope"]
    strict = mode_defaults["default_strict"] if strict is None else strict
    duration = mode_defaults["default_duration"] if duration is None else duration

    identity = _resolve_identity(project_path, config)
    if scope not in SCOPES:
        raise ValidationError("InvalidField", f"scope must be one of {', '.join(SCOPES)}")
    if mode_type not in MODE_PRECEDENCE:
        raise ValidationError("InvalidField", f"unknown mode type {mode_type!r}")
    try:
        delta = parse_duration(duration)
    except ValueError as e:
        raise ValidationError("InvalidField", str(e))

    # Fail on a broken settings.json before any state is touched
    read_document(settings_path(identity.absolute_path))

    started_at = utcnow()
    record = PolicyRecord(
        identity=identity,
        active=True,
        scope=scope,
        strict=bool(strict),
        mode_type=mode_type,
        started_at=started_at,
        expires_at=started_at + delta if delta else None,
    )

    record_path = policy_store.status_path(identity, mode_type)
    try:
        previous = record_path.read_bytes()
    except FileNotFoundError:
        previous = None
    except OSError as e:
        raise IOFailure(f"cannot read {record_path}: {e}", e)

    try:
        policy_store.write_record(record)
    except OSError as e:
        raise AtomicityFailure("write-status", f"cannot write {record_path}: {e}", e)

    try:
        effective = policy_store.load_effective(identity)
        commit_document(identity.absolute_path, lambda doc: apply_record(doc, effective), config)
    except Exception:
        _restore_record(record_path, previous)
        raise

    logger.info(
        "Test mode enabled for %s (%s, scope=%s, strict=%s, duration=%s)",
        identity.name, mode_type, scope, strict, format_duration(delta),
    )
    return record


def disable_test_mode(
    project_path,
    mode_type: Optional[ModeType] = None,
    config: Optional[dict] = None,
) -> dict:
    """Deactivate test mode: update settings.json, then delete the record(s).

    With mode_type None both scoped records are removed. If a record of
    the other mode type survives, the gate stays registered for it.

    Returns:
        {"removed": [mode types deleted], "remaining": PolicyRecord or None}

    Raises:
        ValidationError: Bad project path
        AtomicityFailure: A stage failed; the records are untouched
    """
    config = config or get_config()
    identity = _resolve_identity(project_path, config)

    targets = MODE_PRECEDENCE if mode_type is None else (mode_type,)
    remaining = None
    for other in MODE_PRECEDENCE:
        if other in targets:
            continue
        remaining = policy_store.load_record(identity, other)
        if remaining is not None:
            break

    commit_document(identity.absolute_path, lambda doc: apply_record(doc, remaining), config)

    removed = []
    for target in targets:
        try:
            if policy_store.delete_record(identity, target):
                removed.append(target)
        except OSError as e:
            raise AtomicityFailure(
                "delete-status", f"cannot delete {target} status record: {e}", e
            )

    logger.info("Test mode disabled for %s (removed: %s)", identity.name, removed or "none")
    return {"removed": removed, "remaining": remaining}


# ── Maintenance ──


def validate_setup(project_path, config: Optional[dict] = None) -> list[dict]:
    """Read-only consistency check. Returns a list of {component, message} problems."""
    config = config or get_config()
    identity = _resolve_identity(project_path, config)
    problems: list[dict] = []

    def problem(component: str, message: str) -> None:
        problems.append({"component": component, "message": message})

    document = None
    path = settings_path(identity.absolute_path)
    try:
        document, _ = read_document(path)
    except AtomicityFailure as e:
        problem("settings", e.message)

    records: dict[str, Optional[PolicyRecord]] = {}
    for mode_type in MODE_PRECEDENCE:
        record_path = policy_store.status_path(identity, mode_type)
        try:
            records[mode_type] = policy_store.read_record(record_path, identity, mode_type)
        except FileNotFoundError:
            records[mode_type] = None
        except OSError as e:
            records[mode_type] = None
            problem("status", f"cannot read {mode_type} status record: {e}")
        except StaleStateError as e:
            records[mode_type] = None
            problem("status", f"stale {mode_type} status record {record_path.name}: {e.reason}")

    effective = records.get("project") or records.get("user")

    if document is not None:
        events = registered_events(document)
        if events and len(events) != len(HOOK_EVENTS):
            problem("hooks", f"gate registered for {', '.join(events)} only")
        if events and effective is None:
            problem("hooks", "gate hooks are registered but no valid status record exists")
        if effective is not None and not events:
            problem("hooks", "status record exists but the gate hooks are not registered")

        env = document.get("env", {})
        flag = str(env.get(ENV_PREFIX, "false")).lower()
        if flag == "true" and effective is None:
            problem("env", f"{ENV_PREFIX}=true but test mode is not active")
        if flag != "true" and effective is not None:
            problem("env", f"{ENV_PREFIX} is not 'true' but test mode is active")
        if flag == "true":
            env_path = env.get(f"{ENV_PREFIX}_PATH")
            if env_path and env_path != identity.absolute_path:
                problem("env", f"{ENV_PREFIX}_PATH points at {env_path}, not this project")

    retention = config["backups"]["retention"]
    backups = list_backups(backups_dir(identity.absolute_path))
    if len(backups) > retention:
        problem("backups", f"{len(backups)} backups exceed the retention cap of {retention}")

    claude_dir = Path(identity.absolute_path) / ".claude"
    leftovers = find_orphaned_temp_files(claude_dir) + find_orphaned_temp_files(
        policy_store.project_state_dir(identity)
    )
    if leftovers:
        problem("files", f"{len(leftovers)} leftover temp file(s) from interrupted writes")

    return problems


def cleanup_test_mode(project_path, config: Optional[dict] = None) -> dict:
    """Remove stale records, excess backups, expired logs and temp files.

    Never touches a valid record. Idempotent: a second run finds nothing to do.

    Raises:
        ValidationError: Bad project path
        IOFailure: A file could not be inspected or removed
        AtomicityFailure: Unregistering leftover hooks failed
    """
    config = config or get_config()
    identity = _resolve_identity(project_path, config)
    project_dir = Path(identity.absolute_path)

    try:
        removed_records = policy_store.cleanup_stale(identity)
        removed_backups = prune_backups(backups_dir(project_dir), config["backups"]["retention"])
        removed_logs = audit.prune_logs(
            audit.log_dir(project_dir), config["audit"]["retention_days"]
        )
        removed_tmp = []
        for tmp in find_orphaned_temp_files(project_dir / ".claude"):
            tmp.unlink(missing_ok=True)
            removed_tmp.append(tmp)
    except OSError as e:
        raise IOFailure(f"cleanup of {project_dir} failed: {e}", e)

    # Hooks left registered with no record behind them are unregistered
    effective = policy_store.load_effective(identity)
    synced = False
    settings_error = None
    try:
        document, raw = read_document(settings_path(project_dir))
    except AtomicityFailure as e:
        settings_error = e.message
    else:
        if raw is not None and effective is None and registered_events(document):
            commit_document(project_dir, apply_disable, config)
            synced = True

    return {
        "records": [str(p) for p in removed_records],
        "backups": [str(p) for p in removed_backups],
        "logs": [str(p) for p in removed_logs],
        "temp_files": [str(p) for p in removed_tmp],
        "settings_synced": synced,
        "settings_error": settings_error,
    }


def get_status(project_path, config: Optional[dict] = None) -> dict:
    """Effective record, dormant record, registration and audit counters."""
    config = config or get_config()
    identity = _resolve_identity(project_path, config)

    records = policy_store.list_records(identity)
    effective = records["project"] or records["user"]
    dormant = records["user"] if records["project"] and records["user"] else None

    try:
        document, _ = read_document(settings_path(identity.absolute_path))
        registered = is_registered(document)
        settings_error = None
    except AtomicityFailure as e:
        registered = False
        settings_error = e.message

    return {
        "project": identity.name,
        "path": identity.absolute_path,
        "active": effective is not None,
        "effective": effective.to_dict() if effective else None,
        "remaining": format_duration(effective.remaining()) if effective and effective.expires_at else None,
        "dormant": dormant.to_dict() if dormant else None,
        "registered": registered,
        "settings_error": settings_error,
        "audit": audit.summarize(identity.absolute_path, identity.name),
    }
