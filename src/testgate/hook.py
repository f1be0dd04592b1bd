"""Hook boundaries for Claude Code integration.

    python3 -m testgate.hook pre   < hook JSON   (PreToolUse)
    python3 -m testgate.hook post  < hook JSON   (PostToolUse)

The pre boundary fails closed: any validation or internal error becomes a
block. The post boundary fails open: it always exits 0 and only ever
writes audit entries.
"""

import argparse
import json
import logging
import os
import sys
import time
from dataclasses import dataclass
from typing import Optional

from . import audit, policy_store
from .config import get_config
from .decision import decide
from .errors import ValidationError
from .models import AuditEvent, Decision, ToolInvocationRequest
from .path_utils import utcnow
from .validation import check_path_chars, project_identity, validate_fields, validate_json

logger = logging.getLogger(__name__)

EXIT_ALLOW = 0
EXIT_BLOCK = 2

# Hook metadata that ends up in log lines and paths
METADATA_FIELDS = ("tool_name", "session_id", "hook_event_name")


@dataclass
class HookResponse:
    """Response for a Claude Code hook."""
    decision: str  # "allow" or "block"
    reason: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return EXIT_BLOCK if self.decision == "block" else EXIT_ALLOW


def generate_hook_response(response: HookResponse) -> str:
    """Generate JSON response for hook."""
    if response.decision == "allow":
        return json.dumps({"decision": "allow"})
    else:
        return json.dumps({
            "decision": "block",
            "reason": response.reason or "Blocked by test mode",
        })


def resolve_project_dir(hook_input: dict) -> str:
    """Project root for this call.

    CLAUDE_PROJECT_DIR wins over the reported cwd so that changing into a
    subdirectory does not change which project's policy applies.
    """
    return (
        os.environ.get("CLAUDE_PROJECT_DIR")
        or (hook_input.get("cwd") if isinstance(hook_input.get("cwd"), str) else None)
        or os.getcwd()
    )


def validate_metadata(hook_input: dict) -> None:
    """Injection-scan metadata fields; cwd gets the path character checks.

    Raises:
        TraversalOrInjectionAttempt: SuspiciousContent or DangerousChars
    """
    validate_fields(hook_input, METADATA_FIELDS)
    cwd = hook_input.get("cwd")
    if isinstance(cwd, str):
        check_path_chars(cwd)


def parse_request(raw, config: dict) -> tuple[dict, ToolInvocationRequest]:
    """Validate raw PreToolUse input into (hook_input, request).

    Raises:
        ValidationError: On oversized, malformed or incomplete input
    """
    data = validate_json(
        raw, max_bytes=config["validation"]["max_json_bytes"], scan_content=False
    )
    if not isinstance(data, dict):
        raise ValidationError("Malformed", "hook input is not a JSON object")

    tool_name = data.get("tool_name")
    if not isinstance(tool_name, str) or not tool_name.strip():
        raise ValidationError("MissingField", "hook input has no tool_name")

    tool_input = data.get("tool_input", {})
    if tool_input is None:
        tool_input = {}
    if not isinstance(tool_input, dict):
        raise ValidationError("InvalidField", "tool_input is not a JSON object")

    validate_metadata(data)
    return data, ToolInvocationRequest(tool_name=tool_name, parameters=tool_input)


def _fallback_project_dir() -> Optional[str]:
    """Project root for an unblock instruction when hook input is unusable."""
    try:
        return os.environ.get("CLAUDE_PROJECT_DIR") or os.getcwd()
    except OSError:
        return None


def _fail_closed(detail: str, project_dir: Optional[str]) -> HookResponse:
    project_dir = project_dir or _fallback_project_dir()
    where = f" --project-path {project_dir}" if project_dir else ""
    return HookResponse(
        decision="block",
        reason=(
            "TEST MODE: gate error, failing closed\n\n"
            f"{detail}\n\n"
            f"To leave test mode run: testgate disable{where}"
        ),
    )


def handle_pre_tool_use(
    raw,
    project_dir: Optional[str] = None,
    config: Optional[dict] = None,
) -> HookResponse:
    """Handle pre-tool-use hook.

    Validates input, resolves the effective record for the project and
    asks the decision engine. Blocks are audited and fed to burst
    detection. Any failure before a verdict blocks the call.
    """
    started = time.monotonic()
    hook_input: dict = {}
    try:
        config = config or get_config()
        hook_input, request = parse_request(raw, config)
        project_dir = project_dir or resolve_project_dir(hook_input)
        identity = project_identity(
            project_dir, max_length=config["validation"]["max_path_length"]
        )
        record = policy_store.load_effective(identity)
        decision_cfg = config["decision"]
        decision: Decision = decide(
            request,
            record,
            extra_dangerous=decision_cfg["extra_dangerous_patterns"],
            extra_allowed=decision_cfg["extra_allowed_patterns"],
        )
    except ValidationError as e:
        return _fail_closed(f"Invalid hook input: {e}", project_dir)
    except Exception as e:
        logger.error("Pre-tool-use gate error, failing closed: %s", e)
        return _fail_closed(f"Internal error: {e}", project_dir)

    if record is None:
        return HookResponse(decision="allow")

    session_id = str(hook_input.get("session_id") or "unknown")
    audit.record(
        AuditEvent(
            timestamp=utcnow(),
            session_id=session_id,
            tool_name=request.tool_name,
            project_name=identity.name,
            outcome="blocked" if decision.blocked else "allowed",
            mode_type=record.mode_type,
            latency_ms=round((time.monotonic() - started) * 1000, 3),
            detail=decision.rule,
        ),
        identity.absolute_path,
        config,
    )

    if not decision.blocked:
        return HookResponse(decision="allow")

    audit.security_event(
        logging.WARNING,
        f"Blocked {request.tool_name} in {identity.name} ({decision.rule})",
        identity.absolute_path,
        identity.name,
        config,
    )
    audit.detect_burst(
        request.tool_name,
        identity.name,
        identity.absolute_path,
        session_id=session_id,
        config=config,
    )
    return HookResponse(decision="block", reason=decision.reason)


def _tool_succeeded(hook_input: dict) -> bool:
    if isinstance(hook_input.get("success"), bool):
        return hook_input["success"]
    response = hook_input.get("tool_response")
    if isinstance(response, dict):
        if response.get("is_error") or response.get("error"):
            return False
        if isinstance(response.get("success"), bool):
            return response["success"]
    return True


def _latency_ms(hook_input: dict) -> Optional[float]:
    for source in (hook_input, hook_input.get("tool_response")):
        if isinstance(source, dict):
            value = source.get("duration_ms")
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return float(value)
    return None


def handle_post_tool_use(
    raw,
    project_dir: Optional[str] = None,
    config: Optional[dict] = None,
) -> HookResponse:
    """Handle post-tool-use hook.

    Records the tool outcome while test mode is active. Malformed input
    and every internal error are logged and ignored.
    """
    try:
        config = config or get_config()
        hook_input = validate_json(
            raw, max_bytes=config["validation"]["max_json_bytes"], scan_content=False
        )
        if not isinstance(hook_input, dict):
            return HookResponse(decision="allow")
        validate_metadata(hook_input)

        project_dir = project_dir or resolve_project_dir(hook_input)
        identity = project_identity(
            project_dir, max_length=config["validation"]["max_path_length"]
        )
        record = policy_store.load_effective(identity)
        if record is None:
            return HookResponse(decision="allow")

        audit.record(
            AuditEvent(
                timestamp=utcnow(),
                session_id=str(hook_input.get("session_id") or "unknown"),
                tool_name=str(hook_input.get("tool_name") or "unknown"),
                project_name=identity.name,
                outcome="success" if _tool_succeeded(hook_input) else "failure",
                mode_type=record.mode_type,
                latency_ms=_latency_ms(hook_input),
            ),
            identity.absolute_path,
            config,
        )
    except Exception as e:
        logger.warning("Post-tool-use audit skipped: %s", e)

    # Post-hook always allows (already executed)
    return HookResponse(decision="allow")


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point when called from hooks: python3 -m testgate.hook pre|post"""
    parser = argparse.ArgumentParser(prog="testgate-hook")
    parser.add_argument("event", choices=["pre", "post"])
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.WARNING,
        stream=sys.stderr,
        format="testgate %(levelname)s %(name)s: %(message)s",
    )

    try:
        raw = sys.stdin.read() if not sys.stdin.isatty() else ""
    except Exception as e:
        raw = ""
        logger.warning("Could not read hook input: %s", e)

    if args.event == "post":
        handle_post_tool_use(raw)
        return EXIT_ALLOW

    response = handle_pre_tool_use(raw)
    if response.decision == "block":
        print(generate_hook_response(response))
        print(response.reason, file=sys.stderr)
    return response.exit_code


if __name__ == "__main__":
    sys.exit(main())
