"""Tests for the validator: JSON blobs, project paths, identifiers."""

import logging

import pytest

from testgate.errors import TraversalOrInjectionAttempt, ValidationError
from testgate.validation import (
    check_path_chars,
    project_identity,
    scan_suspicious,
    validate_fields,
    validate_identifier,
    validate_json,
    validate_path,
)


# ── JSON blobs ──


class TestValidateJson:
    """Size, syntax, then injection scan."""

    def test_parses_valid_object(self):
        assert validate_json('{"tool_name": "Read"}') == {"tool_name": "Read"}

    def test_accepts_bytes(self):
        assert validate_json(b'{"a": 1}') == {"a": 1}

    def test_rejects_oversized(self):
        blob = '{"a": "' + "x" * 100 + '"}'
        with pytest.raises(ValidationError) as exc:
            validate_json(blob, max_bytes=50)
        assert exc.value.code == "TooLarge"

    def test_default_limit_is_32k(self):
        blob = '{"a": "' + "x" * (32 * 1024) + '"}'
        with pytest.raises(ValidationError) as exc:
            validate_json(blob)
        assert exc.value.code == "TooLarge"

    def test_size_checked_before_content(self):
        blob = '{"a": "$(whoami)' + "x" * 100 + '"}'
        with pytest.raises(ValidationError) as exc:
            validate_json(blob, max_bytes=50)
        assert exc.value.code == "TooLarge"
        assert not isinstance(exc.value, TraversalOrInjectionAttempt)

    @pytest.mark.parametrize("payload", [
        '{"a": "$(whoami)"}',
        '{"a": "`id`"}',
        '{"a": "eval x"}',
        '{"a": "x; y"}',
        '{"a": "x && y"}',
        '{"a": "x || y"}',
    ])
    def test_rejects_suspicious_content(self, payload):
        with pytest.raises(TraversalOrInjectionAttempt) as exc:
            validate_json(payload)
        assert exc.value.code == "SuspiciousContent"

    def test_syntax_checked_before_content(self):
        with pytest.raises(ValidationError) as exc:
            validate_json('{"a": "x; y"')
        assert exc.value.code == "Malformed"
        assert not isinstance(exc.value, TraversalOrInjectionAttempt)

    def test_scan_can_be_disabled(self):
        data = validate_json('{"command": "npm test && echo ok"}', scan_content=False)
        assert data["command"] == "npm test && echo ok"

    def test_rejects_malformed(self):
        with pytest.raises(ValidationError) as exc:
            validate_json('{"a": ')
        assert exc.value.code == "Malformed"

    def test_injection_logged_critical(self, caplog):
        caplog.set_level(logging.ERROR, logger="testgate.security")
        with pytest.raises(TraversalOrInjectionAttempt):
            validate_json('{"a": "$(id)"}')
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    def test_malformed_logged_error(self, caplog):
        caplog.set_level(logging.ERROR, logger="testgate.security")
        with pytest.raises(ValidationError):
            validate_json("not json")
        levels = {r.levelno for r in caplog.records}
        assert logging.ERROR in levels
        assert logging.CRITICAL not in levels


class TestScanSuspicious:
    def test_clean_text(self):
        assert scan_suspicious("pytest -q tests/") is None

    def test_labels_match(self):
        assert scan_suspicious("a && b") == "&&"

    def test_word_boundaries(self):
        # "evaluate" and "executor" are not eval/exec
        assert scan_suspicious("evaluate executor") is None


class TestValidateFields:
    def test_clean_fields_pass(self):
        validate_fields({"tool_name": "Bash", "session_id": "abc-123"}, ["tool_name", "session_id"])

    def test_dirty_field_rejected(self):
        with pytest.raises(TraversalOrInjectionAttempt):
            validate_fields({"session_id": "x; rm"}, ["session_id"])

    def test_unlisted_fields_ignored(self):
        validate_fields({"tool_input": {"command": "a && b"}, "tool_name": "Bash"}, ["tool_name"])

    def test_non_string_fields_ignored(self):
        validate_fields({"tool_name": 42}, ["tool_name"])


# ── Paths ──


class TestValidatePath:
    """Traversal, length, absoluteness, dangerous chars, directory."""

    def test_accepts_existing_directory(self, project_dir):
        assert validate_path(str(project_dir)) == str(project_dir)

    def test_normalizes_trailing_slash(self, project_dir):
        assert validate_path(str(project_dir) + "/") == str(project_dir)

    @pytest.mark.parametrize("path", [
        "/home/u/../etc",
        "/home/u/app/..",
        "../app",
    ])
    def test_rejects_traversal(self, path):
        with pytest.raises(TraversalOrInjectionAttempt) as exc:
            validate_path(path)
        assert exc.value.code == "Traversal"

    def test_traversal_logged_critical(self, caplog):
        caplog.set_level(logging.ERROR, logger="testgate.security")
        with pytest.raises(TraversalOrInjectionAttempt):
            validate_path("/home/../etc")
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    def test_traversal_checked_before_length(self):
        with pytest.raises(ValidationError) as exc:
            validate_path("/a/../" + "x" * 5000)
        assert exc.value.code == "Traversal"

    def test_rejects_too_long(self):
        with pytest.raises(ValidationError) as exc:
            validate_path("/" + "x" * 5000)
        assert exc.value.code == "TooLong"

    def test_custom_length_limit(self, project_dir):
        with pytest.raises(ValidationError) as exc:
            validate_path(str(project_dir), max_length=5)
        assert exc.value.code == "TooLong"

    @pytest.mark.parametrize("path", ["app", "./app", "~/app", ""])
    def test_rejects_relative(self, path):
        with pytest.raises(ValidationError) as exc:
            validate_path(path)
        assert exc.value.code == "NotAbsolute"

    def test_rejects_non_string(self):
        with pytest.raises(ValidationError) as exc:
            validate_path(None)
        assert exc.value.code == "NotAbsolute"

    @pytest.mark.parametrize("path", [
        "/tmp/$(id)",
        "/tmp/`id`",
        "/tmp/a|b",
        "/tmp/a\nb",
        "/tmp/a\x00b",
    ])
    def test_rejects_dangerous_chars(self, path):
        with pytest.raises(TraversalOrInjectionAttempt) as exc:
            validate_path(path)
        assert exc.value.code == "DangerousChars"

    def test_rejects_missing_directory(self, tmp_path):
        with pytest.raises(ValidationError) as exc:
            validate_path(str(tmp_path / "missing"))
        assert exc.value.code == "NotADirectory"

    def test_rejects_file(self, tmp_path):
        f = tmp_path / "file.txt"
        f.write_text("x")
        with pytest.raises(ValidationError) as exc:
            validate_path(str(f))
        assert exc.value.code == "NotADirectory"

    def test_existence_optional(self, tmp_path):
        missing = str(tmp_path / "missing")
        assert validate_path(missing, must_exist=False) == missing

    @pytest.mark.parametrize("name", ["exec-tools", "eval", "a;b", "x&&y", "p||q"])
    def test_shell_words_in_directory_names_accepted(self, tmp_path, name):
        path = tmp_path / name / "app"
        path.mkdir(parents=True)
        assert validate_path(str(path)) == str(path)


class TestCheckPathChars:
    def test_plain_path(self):
        check_path_chars("/home/u/exec-tools/app/src/exec")

    @pytest.mark.parametrize("path", ["/tmp/$(id)", "/tmp/`id`", "/tmp/a|b", "/tmp/a\x07b"])
    def test_rejects_dangerous(self, path):
        with pytest.raises(TraversalOrInjectionAttempt) as exc:
            check_path_chars(path)
        assert exc.value.code == "DangerousChars"


# ── Identifiers ──


class TestValidateIdentifier:
    @pytest.mark.parametrize("name", ["app", "my-app", "my_app_2", "A" * 255])
    def test_accepts_valid(self, name):
        assert validate_identifier(name) == name

    @pytest.mark.parametrize("name", ["my app", "app.js", "a/b", "a" * 256, "naïve"])
    def test_rejects_invalid(self, name):
        with pytest.raises(ValidationError) as exc:
            validate_identifier(name)
        assert exc.value.code == "InvalidIdentifier"

    @pytest.mark.parametrize("name", ["", ".", "..", "con", "NUL", "com1", "LPT9"])
    def test_rejects_reserved(self, name):
        with pytest.raises(ValidationError) as exc:
            validate_identifier(name)
        assert exc.value.code == "ReservedIdentifier"

    def test_rejects_non_string(self):
        with pytest.raises(ValidationError) as exc:
            validate_identifier(7)
        assert exc.value.code == "InvalidIdentifier"


class TestProjectIdentity:
    def test_name_is_basename(self, project_dir):
        identity = project_identity(str(project_dir))
        assert identity.name == "app"
        assert identity.absolute_path == str(project_dir)

    def test_same_name_different_path_do_not_match(self, tmp_path):
        a = tmp_path / "x" / "app"
        b = tmp_path / "y" / "app"
        a.mkdir(parents=True)
        b.mkdir(parents=True)
        ia, ib = project_identity(str(a)), project_identity(str(b))
        assert ia.name == ib.name
        assert not ia.matches(ib)

    def test_bad_basename_rejected(self, tmp_path):
        d = tmp_path / "my app"
        d.mkdir()
        with pytest.raises(ValidationError) as exc:
            project_identity(str(d))
        assert exc.value.code == "InvalidIdentifier"
