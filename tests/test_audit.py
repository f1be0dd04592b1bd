"""Tests for the audit log: append, rotation, retention, burst detection."""

import gzip
import json
import logging
import os
import time
from datetime import timedelta
from unittest.mock import patch

import pytest

from testgate import audit
from testgate.models import AuditEvent
from testgate.path_utils import utcnow


def _event(outcome="blocked", tool="Bash", when=None, project="app"):
    return AuditEvent(
        timestamp=when or utcnow(),
        session_id="s1",
        tool_name=tool,
        project_name=project,
        outcome=outcome,
        mode_type="project",
    )


class TestRecord:
    def test_appends_json_lines(self, project_dir, config):
        assert audit.record(_event("allowed"), project_dir, config)
        assert audit.record(_event("blocked"), project_dir, config)

        lines = audit.audit_log_path(project_dir, "app").read_text().splitlines()
        assert [json.loads(line)["outcome"] for line in lines] == ["allowed", "blocked"]

    def test_log_location(self, project_dir, config):
        audit.record(_event(), project_dir, config)
        assert (project_dir / ".claude" / "logs" / "test_mode-app.log").exists()

    def test_event_fields(self, project_dir, config):
        event = AuditEvent(
            timestamp=utcnow(), session_id="s1", tool_name="Bash",
            project_name="app", outcome="allowed", mode_type="user",
            latency_ms=1.5, detail="dangerous:remove",
        )
        audit.record(event, project_dir, config)
        data = audit.read_events(project_dir, "app")[0]
        assert data["session_id"] == "s1"
        assert data["mode_type"] == "user"
        assert data["latency_ms"] == 1.5
        assert data["detail"] == "dangerous:remove"

    def test_never_raises(self, project_dir, config, caplog):
        caplog.set_level(logging.WARNING, logger="testgate.audit")
        with patch("testgate.audit._append_line", side_effect=PermissionError("denied")):
            assert audit.record(_event(), project_dir, config) is False
        assert any("Audit log write failed" in r.getMessage() for r in caplog.records)

    def test_unwritable_directory(self, tmp_path, config):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        # .claude cannot be created under a regular file
        assert audit.record(_event(), blocker, config) is False


class TestRotation:
    def test_rotates_when_over_limit(self, project_dir, config):
        config["audit"]["max_log_bytes"] = 200
        config["audit"]["compress"] = False
        for _ in range(10):
            audit.record(_event(), project_dir, config)

        log_dir = audit.log_dir(project_dir)
        rotated = list(log_dir.glob("test_mode-app.log.*"))
        assert rotated
        assert audit.audit_log_path(project_dir, "app").stat().st_size < 400

    def test_compressed_archive(self, project_dir):
        log_file = audit.audit_log_path(project_dir, "app")
        log_file.parent.mkdir(parents=True)
        log_file.write_text("x" * 100)

        archived = audit.rotate_if_needed(log_file, max_bytes=50, compress=True)
        assert archived.name.endswith(".gz")
        assert not log_file.exists()
        with gzip.open(archived, "rt") as f:
            assert f.read() == "x" * 100

    def test_under_limit_untouched(self, project_dir):
        log_file = audit.audit_log_path(project_dir, "app")
        log_file.parent.mkdir(parents=True)
        log_file.write_text("small")
        assert audit.rotate_if_needed(log_file, max_bytes=1000) is None
        assert log_file.read_text() == "small"

    def test_exactly_at_limit_untouched(self, project_dir):
        log_file = audit.audit_log_path(project_dir, "app")
        log_file.parent.mkdir(parents=True)
        log_file.write_text("x" * 50)
        assert audit.rotate_if_needed(log_file, max_bytes=50) is None
        assert audit.rotate_if_needed(log_file, max_bytes=49) is not None

    def test_missing_file(self, project_dir):
        assert audit.rotate_if_needed(audit.audit_log_path(project_dir, "app"), 10) is None


class TestRetention:
    def test_prunes_old_archives_only(self, project_dir):
        log_dir = audit.log_dir(project_dir)
        log_dir.mkdir(parents=True)
        current = log_dir / "test_mode-app.log"
        current.write_text("")
        old = log_dir / "test_mode-app.log.20200101-000000-000000.gz"
        fresh = log_dir / "test_mode-app.log.20990101-000000-000000.gz"
        old.write_bytes(b"")
        fresh.write_bytes(b"")
        ancient = time.time() - 60 * 86400
        os.utime(old, (ancient, ancient))
        os.utime(current, (ancient, ancient))

        removed = audit.prune_logs(log_dir, retention_days=30)
        assert removed == [old]
        assert current.exists()
        assert fresh.exists()

    def test_missing_directory(self, project_dir):
        assert audit.prune_logs(audit.log_dir(project_dir), 30) == []


class TestSecurityEvent:
    def test_logged_and_written(self, project_dir, config, caplog):
        caplog.set_level(logging.WARNING, logger="testgate.security")
        audit.security_event(logging.CRITICAL, "burst", project_dir, "app", config)

        assert any(r.levelno == logging.CRITICAL for r in caplog.records)
        line = audit.security_log_path(project_dir, "app").read_text().strip()
        data = json.loads(line)
        assert data["level"] == "CRITICAL"
        assert data["message"] == "burst"

    def test_without_project_only_logs(self, project_dir, config):
        audit.security_event(logging.ERROR, "no project", config=config)
        assert not audit.log_dir(project_dir).exists()


class TestReadEvents:
    def test_skips_malformed_lines(self, project_dir, config):
        audit.record(_event("allowed"), project_dir, config)
        with open(audit.audit_log_path(project_dir, "app"), "a") as f:
            f.write("not json\n[1, 2]\n")
        audit.record(_event("blocked"), project_dir, config)

        events = audit.read_events(project_dir, "app")
        assert [e["outcome"] for e in events] == ["allowed", "blocked"]

    def test_no_log(self, project_dir):
        assert audit.read_events(project_dir, "app") == []


class TestBurstDetection:
    """More than threshold blocks for one tool in the window is an anomaly."""

    def _blocks(self, project_dir, config, count, tool="Bash", when=None):
        for _ in range(count):
            audit.record(_event("blocked", tool=tool, when=when), project_dir, config)

    def test_under_threshold(self, project_dir, config):
        self._blocks(project_dir, config, 3)
        assert not audit.detect_burst("Bash", "app", project_dir, threshold=3, config=config)

    def test_over_threshold(self, project_dir, config, caplog):
        caplog.set_level(logging.WARNING, logger="testgate.security")
        self._blocks(project_dir, config, 4)
        assert audit.detect_burst("Bash", "app", project_dir, threshold=3, config=config)

        events = audit.read_events(project_dir, "app")
        anomaly = events[-1]
        assert anomaly["outcome"] == "anomaly"
        assert "4 blocked Bash attempts" in anomaly["detail"]
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)
        assert audit.security_log_path(project_dir, "app").exists()

    def test_counts_per_tool(self, project_dir, config):
        self._blocks(project_dir, config, 4, tool="Edit")
        assert not audit.detect_burst("Bash", "app", project_dir, threshold=3, config=config)

    def test_ignores_allowed(self, project_dir, config):
        for _ in range(5):
            audit.record(_event("allowed"), project_dir, config)
        assert not audit.detect_burst("Bash", "app", project_dir, threshold=3, config=config)

    def test_outside_window(self, project_dir, config):
        self._blocks(project_dir, config, 5, when=utcnow() - timedelta(hours=1))
        assert not audit.detect_burst(
            "Bash", "app", project_dir, window_seconds=300, threshold=3, config=config
        )

    def test_config_threshold(self, project_dir, config):
        config["audit"]["burst_threshold"] = 1
        self._blocks(project_dir, config, 2)
        assert audit.detect_burst("Bash", "app", project_dir, config=config)

    def test_never_raises(self, project_dir, config):
        with patch("testgate.audit.read_events", side_effect=OSError("gone")):
            assert audit.detect_burst("Bash", "app", project_dir, config=config) is False


class TestSummarize:
    def test_counts(self, project_dir, config):
        audit.record(_event("allowed", tool="Read"), project_dir, config)
        audit.record(_event("blocked", tool="Edit"), project_dir, config)
        audit.record(_event("blocked", tool="Edit"), project_dir, config)
        audit.record(_event("blocked", tool="Bash"), project_dir, config)

        summary = audit.summarize(project_dir, "app")
        assert summary["total"] == 4
        assert summary["by_outcome"] == {"allowed": 1, "blocked": 3}
        assert summary["blocked_by_tool"] == {"Edit": 2, "Bash": 1}
        assert summary["last_event"] is not None

    def test_empty(self, project_dir):
        assert audit.summarize(project_dir, "app")["total"] == 0
