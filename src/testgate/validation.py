"""Input validation — JSON blobs, project paths, project identifiers.

Pure functions: the only side effect is a security log entry for every
rejection (CRITICAL for traversal/injection, ERROR otherwise). Every
rejection raises a ValidationError; callers decide what a failure means
(the pre-tool hook blocks, the CLI exits non-zero).
"""

import json
import logging
import os
import re
from typing import Any, Optional, Union

from .errors import TraversalOrInjectionAttempt, ValidationError
from .models import ProjectIdentity

security_log = logging.getLogger("testgate.security")

DEFAULT_MAX_JSON_BYTES = 32 * 1024
DEFAULT_MAX_PATH_LENGTH = 4096
MAX_PREVIEW_LENGTH = 80

# Shell metacharacter sequences that have no business in hook metadata
SUSPICIOUS_CONTENT_PATTERNS = [
    (re.compile(r"\$\("), "command substitution $("),
    (re.compile(r"`"), "backtick"),
    (re.compile(r"\beval\b"), "eval"),
    (re.compile(r"\bexec\b"), "exec"),
    (re.compile(r";"), "semicolon"),
    (re.compile(r"&&"), "&&"),
    (re.compile(r"\|\|"), "||"),
]

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
_PATH_DANGEROUS_TOKENS = ("$(", "`", "|")

IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_-]{1,255}$")
RESERVED_IDENTIFIERS = frozenset(
    {"", ".", "..", "con", "prn", "aux", "nul", "clock$"}
    | {f"com{i}" for i in range(1, 10)}
    | {f"lpt{i}" for i in range(1, 10)}
)


def _preview(value: Any) -> str:
    text = repr(value)
    if len(text) > MAX_PREVIEW_LENGTH:
        return text[:MAX_PREVIEW_LENGTH] + "..."
    return text


def _reject(code: str, message: str, value: Any, critical: bool = False):
    """Log a security event and raise the matching ValidationError."""
    if critical:
        security_log.critical("%s: %s (input=%s)", code, message, _preview(value))
        raise TraversalOrInjectionAttempt(code, message)
    security_log.error("%s: %s (input=%s)", code, message, _preview(value))
    raise ValidationError(code, message)


def scan_suspicious(text: str) -> Optional[str]:
    """Return a label for the first shell metacharacter sequence in text, if any."""
    for pattern, label in SUSPICIOUS_CONTENT_PATTERNS:
        if pattern.search(text):
            return label
    return None


def validate_json(
    blob: Union[str, bytes],
    max_bytes: Optional[int] = None,
    scan_content: bool = True,
) -> Any:
    """Size-check, parse and injection-scan a JSON blob, in that order.

    Args:
        blob: Raw JSON text
        max_bytes: Size limit (default 32 KiB)
        scan_content: Reject shell metacharacter sequences in the raw text

    Returns:
        The parsed JSON value

    Raises:
        ValidationError: TooLarge or Malformed
        TraversalOrInjectionAttempt: SuspiciousContent
    """
    limit = DEFAULT_MAX_JSON_BYTES if max_bytes is None else max_bytes
    raw = blob if isinstance(blob, bytes) else blob.encode("utf-8", errors="replace")

    if len(raw) > limit:
        _reject("TooLarge", f"JSON input is {len(raw)} bytes (limit {limit})", raw[:40])

    text = raw.decode("utf-8", errors="replace")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        _reject("Malformed", f"JSON input is not valid: {e.msg} at line {e.lineno}", text)

    if scan_content:
        label = scan_suspicious(text)
        if label:
            _reject("SuspiciousContent", f"JSON input contains {label}", text, critical=True)
    return data


def validate_fields(data: dict, fields) -> None:
    """Injection-scan selected string fields of an already parsed document.

    Used where the blob as a whole legitimately carries shell text (a Bash
    tool call's command) but its metadata fields must not.

    Raises:
        TraversalOrInjectionAttempt: SuspiciousContent
    """
    for name in fields:
        value = data.get(name)
        if not isinstance(value, str):
            continue
        label = scan_suspicious(value)
        if label:
            _reject(
                "SuspiciousContent", f"field {name!r} contains {label}", value, critical=True
            )


def has_traversal(path: str) -> bool:
    return (
        "../" in path
        or "/../" in path
        or path.endswith("/..")
        or path == ".."
    )


def check_path_chars(path: str) -> None:
    """Reject control characters and $( ` | in a path.

    Raises:
        TraversalOrInjectionAttempt: DangerousChars
    """
    if _CONTROL_CHARS_RE.search(path) or any(tok in path for tok in _PATH_DANGEROUS_TOKENS):
        _reject("DangerousChars", "path contains control or shell characters", path, critical=True)


def validate_path(
    path: Any,
    max_length: Optional[int] = None,
    must_exist: bool = True,
) -> str:
    """Validate an absolute project directory path.

    Checks, in order: traversal, length, absoluteness, dangerous characters,
    existence as a directory.

    Returns:
        The normalized path

    Raises:
        TraversalOrInjectionAttempt: Traversal or DangerousChars
        ValidationError: TooLong, NotAbsolute or NotADirectory
    """
    if not isinstance(path, str) or not path:
        _reject("NotAbsolute", "path must be a non-empty string", path)

    if has_traversal(path):
        _reject("Traversal", "path contains a parent-directory reference", path, critical=True)

    limit = DEFAULT_MAX_PATH_LENGTH if max_length is None else max_length
    if len(path) > limit:
        _reject("TooLong", f"path is {len(path)} characters (limit {limit})", path)

    if not path.startswith("/"):
        _reject("NotAbsolute", "path must be absolute", path)

    check_path_chars(path)

    normalized = os.path.normpath(path)
    if must_exist and not os.path.isdir(normalized):
        _reject("NotADirectory", "path is not an existing directory", path)

    return normalized


def validate_identifier(name: Any) -> str:
    """Validate a project name: [A-Za-z0-9_-]{1,255}, not a reserved token.

    Raises:
        ValidationError: InvalidIdentifier or ReservedIdentifier
    """
    if not isinstance(name, str):
        _reject("InvalidIdentifier", "project name must be a string", name)
    if name.lower() in RESERVED_IDENTIFIERS:
        _reject("ReservedIdentifier", f"project name {name!r} is reserved", name)
    if not IDENTIFIER_RE.match(name):
        _reject(
            "InvalidIdentifier",
            "project name must be 1-255 characters of letters, digits, '_' or '-'",
            name,
        )
    return name


def project_identity(path: Any, max_length: Optional[int] = None) -> ProjectIdentity:
    """Derive and validate the ProjectIdentity for a project directory."""
    normalized = validate_path(path, max_length=max_length)
    name = validate_identifier(os.path.basename(normalized))
    return ProjectIdentity(name=name, absolute_path=normalized)
