"""Decision engine — allow/block verdicts for tool calls under test mode.

Two states: no effective record (gate inert, everything allowed) and an
effective record. With a record in effect:

- File mutation tools are blocked unconditionally. Scope and strict never
  change this; it is the actual safety guarantee.
- Shell commands are checked against DANGEROUS_PATTERNS; in strict mode
  they must also match ALLOWED_PATTERNS.
- Any other tool passes, unless strict mode is on and it is not a known
  read-only tool.

Command matching is regex-over-text, not a shell parser. It catches the
common destructive forms and nothing more; quoting tricks, aliases and
interpreters can get past it. Treat it as a heuristic layer on top of the
mutation-tool floor.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from .models import Decision, PolicyRecord, ToolInvocationRequest

logger = logging.getLogger(__name__)

FILE_MUTATION_TOOLS = frozenset({"Edit", "Write", "MultiEdit", "NotebookEdit"})

# The host calls its shell tool "Bash"
SHELL_TOOLS = frozenset({"Shell", "Bash"})

SAFE_READ_TOOLS = frozenset({
    "Read", "Glob", "Grep", "LS", "NotebookRead",
    "TodoRead", "WebSearch", "WebFetch",
})


@dataclass(frozen=True)
class CommandPattern:
    category: str
    regex: re.Pattern
    description: str


def _p(category: str, pattern: str, description: str) -> CommandPattern:
    return CommandPattern(category, re.compile(pattern, re.IGNORECASE), description)


DANGEROUS_PATTERNS: list[CommandPattern] = [
    # Destructive remove/move/copy
    _p("remove", r"\brm\s+(?:\S+\s+)*-[a-z]*[rf]", "rm with -r/-f"),
    _p("remove", r"(?:^|[\s;&|(])rm\s", "rm"),
    _p("remove", r"\b(?:rmdir|unlink|shred)\b", "rmdir/unlink/shred"),
    _p("remove", r"\bfind\b.*\s-(?:delete|exec\s+rm)\b", "find -delete / -exec rm"),
    _p("remove", r"\bxargs\s+(?:\S+\s+)*rm\b", "xargs rm"),
    _p("remove", r"\bgit\s+(?:rm|clean)\b", "git rm / git clean"),
    _p("move", r"\bmv\s+(?:\S+\s+)*-[a-z]*f", "mv -f"),
    _p("move", r"\bmv\s+\S+\s+\S+", "mv over a file"),
    _p("copy", r"\bcp\s+(?:\S+\s+)*-[a-z]*[rf]", "cp with -r/-f"),
    _p("copy", r"\bcp\s+\S+\s+\S+", "cp over a file"),
    _p("rewrite", r"\bgit\s+(?:reset\s+--hard|checkout\s+--|restore)\b", "git reset --hard / checkout -- / restore"),
    _p("rewrite", r"\b(?:sed|perl)\s+(?:\S+\s+)*-i", "in-place edit"),
    _p("rewrite", r"\btruncate\b", "truncate"),
    # Output redirection (stderr/stdout merging and /dev/null are fine)
    _p("redirect", r"(?:^|[^0-9&>])>>?\s*(?!&|/dev/null\b)\S", "output redirection"),
    _p("redirect", r"\|\s*tee\b", "tee"),
    # Command chaining
    _p("chaining", r";", "command chaining with ;"),
    _p("chaining", r"&&", "command chaining with &&"),
    _p("chaining", r"\|\|", "command chaining with ||"),
    _p("chaining", r"\$\(|`", "command substitution"),
    # Privilege escalation
    _p("privilege", r"\b(?:sudo|doas|pkexec)\b", "sudo/doas/pkexec"),
    _p("privilege", r"(?:^|[\s;&|])su(?:\s|$)", "su"),
    _p("privilege", r"\b(?:chmod|chown|chgrp)\b", "permission change"),
    # Pipe to network utilities / remote execution
    _p("network", r"\|\s*(?:curl|wget|nc|ncat|netcat|ssh|scp|socat|telnet)\b", "pipe to network utility"),
    _p("network", r"\b(?:curl|wget)\b.*\|\s*(?:ba|z|da)?sh\b", "download piped to shell"),
    # Raw devices and filesystem tools
    _p("device", r"/dev/(?:sd|hd|nvme|xvd|vd|disk|mmcblk|mapper|loop)", "raw device path"),
    _p("device", r"\bdd\b.*\bof=", "dd of="),
    _p("device", r"\b(?:mkfs|fdisk|parted|wipefs)\b", "filesystem tool"),
]

ALLOWED_PATTERNS: list[CommandPattern] = [
    # Test runners
    _p("test", r"^(?:npm|pnpm|yarn|bun)\s+(?:run\s+)?test\b", "npm/pnpm/yarn/bun test"),
    _p("test", r"^(?:npx\s+)?(?:jest|vitest|mocha|ava|playwright\s+test|cypress\s+run)\b", "JS test runner"),
    _p("test", r"^(?:python3?\s+-m\s+)?(?:pytest|unittest|tox|nox)\b", "Python test runner"),
    _p("test", r"^(?:uv|poetry|pipenv|hatch)\s+run\s+(?:pytest|tox|nox)\b", "Python test runner via env manager"),
    _p("test", r"^go\s+(?:test|vet)\b", "go test"),
    _p("test", r"^cargo\s+(?:test|nextest|check|clippy)\b", "cargo test"),
    _p("test", r"^(?:mvn|\./mvnw)\s+(?:\S+\s+)*(?:test|verify)\b", "maven test"),
    _p("test", r"^(?:gradle|\./gradlew)\s+(?:\S+\s+)*(?:test|check)\b", "gradle test"),
    _p("test", r"^(?:bundle\s+exec\s+)?(?:rspec|rake\s+test)\b", "ruby test"),
    _p("test", r"^(?:dotnet\s+test|phpunit|vendor/bin/phpunit|mix\s+test|ctest)\b", "other test runner"),
    _p("test", r"^make\s+(?:test|check)\b", "make test"),
    # Read-only inspection
    _p("read", r"^(?:ls|cat|head|tail|less|more|wc|pwd|echo|which|file|stat|du|df|tree)\b", "read-only shell utility"),
    _p("read", r"^(?:grep|egrep|rg|ag|find)\b", "search"),
    _p("read", r"^git\s+(?:status|log|diff|show|branch|blame|ls-files)\b", "read-only git"),
]


def _compile_extra(patterns: Iterable[str], category: str) -> list[CommandPattern]:
    compiled = []
    for pattern in patterns or ():
        try:
            compiled.append(_p(category, pattern, f"configured: {pattern}"))
        except re.error as e:
            logger.warning("Ignoring invalid %s pattern %r: %s", category, pattern, e)
    return compiled


def _first_match(command: str, patterns: Iterable[CommandPattern]) -> Optional[CommandPattern]:
    for pattern in patterns:
        if pattern.regex.search(command):
            return pattern
    return None


def match_dangerous(command: str, extra: Iterable[str] = ()) -> Optional[CommandPattern]:
    """First dangerous pattern the command matches, or None."""
    return _first_match(command, [*DANGEROUS_PATTERNS, *_compile_extra(extra, "configured")])


def match_allowed(command: str, extra: Iterable[str] = ()) -> Optional[CommandPattern]:
    """First strict allow-list pattern the (stripped) command matches, or None."""
    return _first_match(
        command.strip(), [*ALLOWED_PATTERNS, *_compile_extra(extra, "configured")]
    )


def exit_instruction(record: PolicyRecord) -> str:
    flag = " --user" if record.mode_type == "user" else ""
    return (
        f"To leave test mode run: testgate disable{flag} "
        f"--project-path {record.identity.absolute_path}"
    )


def _block(
    record: PolicyRecord,
    request: ToolInvocationRequest,
    title: str,
    detail: str,
    rule: str,
) -> Decision:
    reason = (
        f"TEST MODE: {title}\n\n"
        f"Project: {record.identity.name} ({record.identity.absolute_path})\n"
        f"Mode: {record.mode_type} | scope: {record.scope} | "
        f"strict: {'on' if record.strict else 'off'}\n"
        f"Tool: {request.tool_name}\n"
        f"{detail}\n\n"
        f"{exit_instruction(record)}"
    )
    return Decision(
        verdict="block",
        reason=reason,
        rule=rule,
        mode_type=record.mode_type,
        project_name=record.identity.name,
    )


def decide(
    request: ToolInvocationRequest,
    record: Optional[PolicyRecord],
    extra_dangerous: Iterable[str] = (),
    extra_allowed: Iterable[str] = (),
) -> Decision:
    """Render a verdict for a validated request under the effective record.

    Args:
        request: Validated tool call
        record: Effective policy record, None when test mode is off
        extra_dangerous: Additional deny regexes from config
        extra_allowed: Additional strict allow-list regexes from config
    """
    if record is None:
        return Decision(verdict="allow")

    tool = request.tool_name

    if tool in FILE_MUTATION_TOOLS:
        return _block(
            record, request,
            "file modification blocked",
            "File edits are not allowed while test mode is active.",
            rule="file_mutation",
        )

    if tool in SHELL_TOOLS:
        command = request.command
        dangerous = match_dangerous(command, extra_dangerous)
        if dangerous:
            return _block(
                record, request,
                "dangerous command blocked",
                f"Command: {command}\nMatched: {dangerous.description} ({dangerous.category})",
                rule=f"dangerous:{dangerous.category}",
            )
        if record.strict and not match_allowed(command, extra_allowed):
            return _block(
                record, request,
                "command not in strict allow-list",
                f"Command: {command}\nStrict mode only allows test runners and read-only commands.",
                rule="strict_allowlist",
            )
        return Decision(verdict="allow", mode_type=record.mode_type, project_name=record.identity.name)

    if record.strict and tool not in SAFE_READ_TOOLS:
        return _block(
            record, request,
            "unknown tool blocked in strict mode",
            "Strict mode only allows read-only tools and allow-listed commands.",
            rule="strict_unknown_tool",
        )

    return Decision(verdict="allow", mode_type=record.mode_type, project_name=record.identity.name)
