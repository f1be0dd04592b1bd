"""Typed records passed between the validator, store, engine and audit log.

PolicyRecord.from_dict is the parse-validate boundary for status records:
nothing read from disk is trusted until it has gone through it.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal, Optional, get_args

from .errors import ValidationError
from .path_utils import format_timestamp, normalize_timestamp

Scope = Literal["all", "backend", "frontend"]
ModeType = Literal["project", "user"]
Verdict = Literal["allow", "block"]
Outcome = Literal["allowed", "blocked", "success", "failure", "anomaly", "error"]

SCOPES: tuple[str, ...] = get_args(Scope)
MODE_TYPES: tuple[str, ...] = get_args(ModeType)

# Lookup order for load_effective: project-scoped wins over user-scoped.
MODE_PRECEDENCE: tuple[ModeType, ...] = ("project", "user")

RECORD_VERSION = 1

_REQUIRED_RECORD_FIELDS = (
    "project_name", "project_path", "active", "scope",
    "strict", "mode_type", "started_at",
)


@dataclass(frozen=True)
class ProjectIdentity:
    """A project, compared by (name, absolute_path) - never by name alone."""
    name: str
    absolute_path: str

    def matches(self, other: "ProjectIdentity") -> bool:
        return self.name == other.name and self.absolute_path == other.absolute_path


@dataclass
class PolicyRecord:
    """Persisted test mode state for one (identity, mode_type) pair."""
    identity: ProjectIdentity
    active: bool
    scope: Scope
    strict: bool
    mode_type: ModeType
    started_at: datetime
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return normalize_timestamp(now) >= self.expires_at

    def remaining(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        if self.expires_at is None:
            return None
        return max(self.expires_at - normalize_timestamp(now), timedelta(0))

    def to_dict(self) -> dict:
        return {
            "version": RECORD_VERSION,
            "project_name": self.identity.name,
            "project_path": self.identity.absolute_path,
            "active": self.active,
            "scope": self.scope,
            "strict": self.strict,
            "mode_type": self.mode_type,
            "started_at": format_timestamp(self.started_at),
            "expires_at": format_timestamp(self.expires_at) if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "PolicyRecord":
        """Build a record from parsed JSON, rejecting any invalid shape.

        Raises:
            ValidationError: On a missing or wrongly typed field.
        """
        if not isinstance(data, dict):
            raise ValidationError("Malformed", "status record is not a JSON object")

        missing = [k for k in _REQUIRED_RECORD_FIELDS if k not in data]
        if missing:
            raise ValidationError("MissingField", f"status record missing: {', '.join(missing)}")

        name = data["project_name"]
        path = data["project_path"]
        if not isinstance(name, str) or not isinstance(path, str):
            raise ValidationError("InvalidField", "project_name/project_path must be strings")
        if not isinstance(data["active"], bool) or not isinstance(data["strict"], bool):
            raise ValidationError("InvalidField", "active/strict must be booleans")
        if data["scope"] not in SCOPES:
            raise ValidationError("InvalidField", f"unknown scope {data['scope']!r}")
        if data["mode_type"] not in MODE_TYPES:
            raise ValidationError("InvalidField", f"unknown mode_type {data['mode_type']!r}")

        started_at = _parse_required_timestamp(data["started_at"], "started_at")
        expires_raw = data.get("expires_at")
        expires_at = (
            _parse_required_timestamp(expires_raw, "expires_at")
            if expires_raw is not None else None
        )

        return cls(
            identity=ProjectIdentity(name=name, absolute_path=path),
            active=data["active"],
            scope=data["scope"],
            strict=data["strict"],
            mode_type=data["mode_type"],
            started_at=started_at,
            expires_at=expires_at,
        )


def _parse_required_timestamp(value: Any, field_name: str) -> datetime:
    if not isinstance(value, str):
        raise ValidationError("InvalidField", f"{field_name} must be an ISO timestamp string")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("InvalidField", f"{field_name} is not an ISO timestamp: {value!r}")
    return normalize_timestamp(parsed)


@dataclass
class ToolInvocationRequest:
    """One tool call as seen by the pre-invocation boundary."""
    tool_name: str
    parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def command(self) -> str:
        value = self.parameters.get("command")
        return value if isinstance(value, str) else ""


@dataclass
class Decision:
    """Allow/block verdict. A block names the record that produced it."""
    verdict: Verdict
    reason: str = ""
    rule: Optional[str] = None
    mode_type: Optional[ModeType] = None
    project_name: Optional[str] = None

    @property
    def blocked(self) -> bool:
        return self.verdict == "block"


@dataclass(frozen=True)
class AuditEvent:
    """Append-only audit log entry."""
    timestamp: datetime
    session_id: str
    tool_name: str
    project_name: str
    outcome: Outcome
    mode_type: Optional[str] = None
    latency_ms: Optional[float] = None
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "timestamp": format_timestamp(self.timestamp),
            "session_id": self.session_id,
            "tool_name": self.tool_name,
            "project_name": self.project_name,
            "outcome": self.outcome,
            "mode_type": self.mode_type,
            "latency_ms": self.latency_ms,
        }
        if self.detail:
            data["detail"] = self.detail
        return data
