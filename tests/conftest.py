"""Pytest fixtures for testgate tests."""

from datetime import timedelta

import pytest

from testgate.config import get_config
from testgate.models import PolicyRecord
from testgate.path_utils import utcnow
from testgate.validation import project_identity


@pytest.fixture(autouse=True)
def testgate_home(tmp_path, monkeypatch):
    """Isolated user state dir ($TESTGATE_HOME) for every test."""
    home = tmp_path / "testgate_home"
    monkeypatch.setenv("TESTGATE_HOME", str(home))
    monkeypatch.delenv("CLAUDE_PROJECT_DIR", raising=False)
    return home


@pytest.fixture
def project_dir(tmp_path):
    """A project directory named 'app'."""
    path = tmp_path / "app"
    path.mkdir()
    return path


@pytest.fixture
def other_project_dir(tmp_path):
    path = tmp_path / "other"
    path.mkdir()
    return path


@pytest.fixture
def identity(project_dir):
    return project_identity(str(project_dir))


@pytest.fixture
def config():
    return get_config()


@pytest.fixture
def make_record(identity):
    """Factory for PolicyRecords bound to the 'app' project."""
    def _make(
        mode_type="project",
        scope="all",
        strict=False,
        active=True,
        expires_in=timedelta(hours=1),
        for_identity=None,
    ):
        started = utcnow().replace(microsecond=0)
        return PolicyRecord(
            identity=for_identity or identity,
            active=active,
            scope=scope,
            strict=strict,
            mode_type=mode_type,
            started_at=started,
            expires_at=started + expires_in if expires_in is not None else None,
        )
    return _make
