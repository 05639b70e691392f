"""Shared pytest fixtures for the test suite."""

import json
import os
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from agent_manager import settings
from agent_manager.models import AgentType, ProcessSnapshot, Session, SessionStatus


def iso(dt: datetime) -> str:
    return dt.astimezone(UTC).isoformat().replace("+00:00", "Z")


def ago(now: datetime, seconds: float) -> datetime:
    return now - timedelta(seconds=seconds)


def write_jsonl(path, entries):
    """Write a list of dicts as a JSONL file, creating parent directories."""
    os.makedirs(os.path.dirname(str(path)), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for entry in entries:
            f.write(json.dumps(entry) + "\n")
    return str(path)


def write_json(path, data):
    os.makedirs(os.path.dirname(str(path)), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f)
    return str(path)


def set_mtime(path, when: datetime):
    ts = when.timestamp()
    os.utime(path, (ts, ts))


def make_session(pid=100, status=SessionStatus.WAITING, agent=AgentType.CLAUDE, **kwargs) -> Session:
    defaults = {
        "id": f"sess-{pid}",
        "agent_type": agent,
        "project_name": "proj",
        "project_path": "/work/proj",
        "status": status,
        "last_activity_at": datetime(2026, 1, 1, tzinfo=UTC),
        "pid": pid,
    }
    defaults.update(kwargs)
    return Session(**defaults)


@pytest.fixture(autouse=True)
def isolated_config(tmp_path):
    """Never read the developer's real config file during tests."""
    settings.reset_config()
    with patch("agent_manager.settings.CONFIG_PATH", str(tmp_path / "no-config.json")):
        yield
    settings.reset_config()


@pytest.fixture(autouse=True)
def no_git_remote():
    """Detectors look up the GitHub URL of each project; keep that offline."""
    with (
        patch("agent_manager.claude_detector.github_url", return_value=None),
        patch("agent_manager.codex_detector.github_url", return_value=None),
        patch("agent_manager.opencode_detector.github_url", return_value=None),
    ):
        yield


@pytest.fixture
def now():
    return datetime.now(UTC)


@pytest.fixture
def inventory():
    """A ProcessInventory stand-in with no cwd and no open files."""
    inv = MagicMock()
    inv.snapshot.return_value = []
    inv.working_directory.return_value = None
    inv.newest_open_file.return_value = None
    return inv


@pytest.fixture
def make_snapshot():
    def _make(pid, cmdline, cpu=0.0, ppid=1, elapsed="01:00", tty="ttys001"):
        return ProcessSnapshot(
            pid=pid,
            parent_pid=ppid,
            group_id=pid,
            cpu=cpu,
            memory_bytes=1024,
            tty=tty,
            state="S",
            elapsed=elapsed,
            cmdline=cmdline,
        )

    return _make
