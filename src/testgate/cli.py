"""cli.py — enable/disable/inspect test mode for a project.

Usage:
    testgate enable [--scope all|backend|frontend] [--duration 1h] [--strict] [--user]
    testgate disable [--user | --project-only]
    testgate validate
    testgate cleanup
    testgate status [--json]
    testgate config init|show

Every project command takes --project-path (default: current directory).

Exit codes: 0 ok, 1 invalid arguments, 2 bad project path, 4 operation
failed (settings.json and status records left as they were), 5 validate
found problems.
"""

import argparse
import json
import logging
import os
import sys

from testgate import __version__
from testgate.config import ensure_config, get_config
from testgate.errors import AtomicityFailure, IOFailure, ValidationError
from testgate.models import SCOPES
from testgate.path_utils import format_duration

EXIT_OK = 0
EXIT_INVALID_ARGS = 1
EXIT_BAD_PATH = 2
EXIT_FAILED = 4
EXIT_VALIDATION_FAILED = 5

PATH_ERROR_CODES = frozenset({
    "Traversal", "TooLong", "NotAbsolute", "DangerousChars",
    "NotADirectory", "InvalidIdentifier", "ReservedIdentifier",
})


class _Parser(argparse.ArgumentParser):
    """ArgumentParser that exits 1 on usage errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_INVALID_ARGS, f"{self.prog}: error: {message}\n")


def _project_path(args) -> str:
    # Relative paths are joined, not normalized, so '..' still reaches the validator
    path = args.project_path or os.getcwd()
    if not path.startswith("/"):
        path = os.path.join(os.getcwd(), path)
    return path


def cmd_enable(args):
    """Activate test mode for the project."""
    from testgate.settings import enable_test_mode

    record = enable_test_mode(
        _project_path(args),
        scope=args.scope,
        strict=args.strict,
        duration=args.duration,
        mode_type="user" if args.user else "project",
    )
    expires = record.expires_at.isoformat(timespec="seconds") if record.expires_at else "end of session"
    print(f"Test mode enabled for {record.identity.name} ({record.mode_type} scope)")
    print(f"  Path:    {record.identity.absolute_path}")
    print(f"  Scope:   {record.scope}")
    print(f"  Strict:  {'on' if record.strict else 'off'}")
    print(f"  Expires: {expires}")
    print()
    print("File edits and dangerous shell commands are now blocked.")
    flag = " --user" if args.user else ""
    print(f"To disable: testgate disable{flag} --project-path {record.identity.absolute_path}")
    return EXIT_OK


def cmd_disable(args):
    """Deactivate test mode (both scopes unless narrowed)."""
    from testgate.settings import disable_test_mode

    mode_type = "user" if args.user else "project" if args.project_only else None
    result = disable_test_mode(_project_path(args), mode_type=mode_type)

    if result["removed"]:
        print(f"Test mode disabled ({', '.join(result['removed'])} record removed)")
    else:
        print("Test mode was not active")
    remaining = result["remaining"]
    if remaining is not None:
        print(f"  Still active: {remaining.mode_type}-scoped record for {remaining.identity.name}")
    return EXIT_OK


def cmd_validate(args):
    """Check settings.json, status records and backups for inconsistencies."""
    from testgate.settings import validate_setup

    problems = validate_setup(_project_path(args))
    if not problems:
        print("Test mode setup OK")
        return EXIT_OK

    print(f"Found {len(problems)} problem(s):")
    for p in problems:
        print(f"  [{p['component']}] {p['message']}")
    print("\nRun 'testgate cleanup' to repair, or 'testgate enable' to re-register.")
    return EXIT_VALIDATION_FAILED


def cmd_cleanup(args):
    """Remove stale records, excess backups, expired logs and temp files."""
    from testgate.settings import cleanup_test_mode

    result = cleanup_test_mode(_project_path(args))
    labels = (
        ("records", "Stale records"),
        ("backups", "Old backups"),
        ("logs", "Expired logs"),
        ("temp_files", "Temp files"),
    )
    total = 0
    for key, label in labels:
        count = len(result[key])
        total += count
        print(f"  {label + ':':<16} {count}")
    if result["settings_synced"]:
        print("  Unregistered leftover gate hooks from settings.json")
    if result["settings_error"]:
        print(f"  Warning: {result['settings_error']}", file=sys.stderr)
    if not total and not result["settings_synced"]:
        print("Nothing to clean up")
    return EXIT_OK


def cmd_status(args):
    """Show effective test mode state for the project."""
    from testgate.settings import get_status

    status = get_status(_project_path(args))
    if args.json:
        print(json.dumps(status, indent=2, default=str))
        return EXIT_OK

    print(f"Project: {status['project']} ({status['path']})")
    effective = status["effective"]
    if effective is None:
        print("Test mode: inactive")
    else:
        print(f"Test mode: ACTIVE ({effective['mode_type']}-scoped)")
        print(f"  Scope:     {effective['scope']}")
        print(f"  Strict:    {'on' if effective['strict'] else 'off'}")
        print(f"  Started:   {effective['started_at']}")
        print(f"  Remaining: {status['remaining'] or format_duration(None)}")
    if status["dormant"]:
        print("  Dormant user-scoped record (takes effect when the project one is removed)")

    print(f"Hooks registered: {'yes' if status['registered'] else 'no'}")
    if status["settings_error"]:
        print(f"  settings.json: {status['settings_error']}")

    audit_summary = status["audit"]
    if audit_summary["total"]:
        outcomes = audit_summary["by_outcome"]
        print(
            f"Audit: {audit_summary['total']} events "
            f"({outcomes.get('allowed', 0)} allowed, {outcomes.get('blocked', 0)} blocked, "
            f"{outcomes.get('anomaly', 0)} anomalies)"
        )
        for tool, count in sorted(audit_summary["blocked_by_tool"].items()):
            print(f"  {tool}: {count} blocked")
    return EXIT_OK


def cmd_config_init(args):
    """Write the default config file if none exists."""
    try:
        path = ensure_config()
    except OSError as e:
        raise IOFailure(f"cannot write config: {e}", e)
    print(f"Config: {path}")
    return EXIT_OK


def cmd_config_show(args):
    """Print the merged configuration."""
    print(json.dumps(get_config(), indent=2))
    return EXIT_OK


def _add_project_path(parser):
    parser.add_argument(
        "--project-path", "-p", default=None,
        help="Project directory (default: current directory)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog="testgate",
        description="Block file edits and dangerous commands while running tests",
    )
    parser.add_argument(
        "--version", action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Log progress to stderr",
    )
    subparsers = parser.add_subparsers(dest="command")

    # enable
    enable_parser = subparsers.add_parser("enable", help="Activate test mode")
    _add_project_path(enable_parser)
    enable_parser.add_argument(
        "--scope", "-s", choices=SCOPES, default=None,
        help="Scope label (default from config: all)",
    )
    enable_parser.add_argument(
        "--duration", "-d", default=None,
        help="How long test mode lasts: 90s, 30m, 1h, 2d, or 'session' (default from config)",
    )
    enable_parser.add_argument(
        "--strict", action="store_true", default=None,
        help="Only allow test runners, read-only commands and read-only tools",
    )
    enable_parser.add_argument(
        "--user", action="store_true",
        help="Store the record in the user state dir instead of the project",
    )
    enable_parser.set_defaults(func=cmd_enable)

    # disable
    disable_parser = subparsers.add_parser("disable", help="Deactivate test mode")
    _add_project_path(disable_parser)
    which = disable_parser.add_mutually_exclusive_group()
    which.add_argument("--user", action="store_true", help="Only remove the user-scoped record")
    which.add_argument(
        "--project-only", action="store_true", help="Only remove the project-scoped record",
    )
    disable_parser.set_defaults(func=cmd_disable)

    # validate
    validate_parser = subparsers.add_parser("validate", help="Check setup consistency")
    _add_project_path(validate_parser)
    validate_parser.set_defaults(func=cmd_validate)

    # cleanup
    cleanup_parser = subparsers.add_parser("cleanup", help="Remove stale state")
    _add_project_path(cleanup_parser)
    cleanup_parser.set_defaults(func=cmd_cleanup)

    # status
    status_parser = subparsers.add_parser("status", help="Show test mode status")
    _add_project_path(status_parser)
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")
    status_parser.set_defaults(func=cmd_status)

    # config (parent with subcommands)
    config_parser = subparsers.add_parser("config", help="Configuration file")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_init = config_sub.add_parser("init", help="Write default config")
    config_init.set_defaults(func=cmd_config_init)
    config_show = config_sub.add_parser("show", help="Print merged config")
    config_show.set_defaults(func=cmd_config_show)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not hasattr(args, "func"):
        # No command, or nested subcommand not provided
        parser.print_help()
        return EXIT_INVALID_ARGS

    try:
        return args.func(args)
    except ValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_BAD_PATH if e.code in PATH_ERROR_CODES else EXIT_INVALID_ARGS
    except AtomicityFailure as e:
        print(f"Error: {e.stage} failed: {e.message}", file=sys.stderr)
        return EXIT_FAILED
    except (IOFailure, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
