"""Tests for opencode_detector.py: document store reading and correlation."""

from unittest.mock import patch

import pytest

from agent_manager.models import EventKind, ProcessSnapshot, SessionStatus
from agent_manager.opencode_detector import (
    OpenCodeDetector,
    OpenCodeProject,
    OpenCodeStore,
    is_opencode_command,
    load_session,
    normalize_preview,
)

from conftest import ago, write_json

WORKTREE = "/Users/me/dev/web"


def ms(dt):
    return int(dt.timestamp() * 1000)


class StoreBuilder:
    def __init__(self, root):
        self.root = root

    def project(self, project_id, worktree, sandboxes=()):
        write_json(
            self.root / "project" / f"{project_id}.json",
            {"id": project_id, "worktree": worktree, "sandboxes": list(sandboxes)},
        )

    def session(self, project_id, session_id, directory, updated, title=""):
        return write_json(
            self.root / "session" / project_id / f"{session_id}.json",
            {
                "id": session_id,
                "projectID": project_id,
                "directory": directory,
                "title": title,
                "time": {"created": ms(updated), "updated": ms(updated)},
            },
        )

    def message(self, session_id, message_id, role, created, parts=(), completed=None, error=None):
        data = {"id": message_id, "sessionID": session_id, "role": role, "time": {"created": ms(created)}}
        if completed is not None:
            data["time"]["completed"] = ms(completed)
        if error is not None:
            data["error"] = {"name": error}
        write_json(self.root / "message" / session_id / f"{message_id}.json", data)
        for i, part in enumerate(parts):
            write_json(self.root / "part" / message_id / f"prt_{i:03d}.json", {"id": f"prt_{i}", **part})


@pytest.fixture
def storage(tmp_path):
    root = tmp_path / "opencode" / "storage"
    root.mkdir(parents=True)
    return root


@pytest.fixture
def store(storage):
    return StoreBuilder(storage)


@pytest.fixture
def detector(inventory, storage):
    inventory.working_directory.side_effect = lambda pid: WORKTREE
    return OpenCodeDetector(inventory, config={}, roots=[str(storage)])


class TestHelpers:
    @pytest.mark.parametrize(
        "cmdline,expected",
        [
            ("opencode", True),
            ("/Users/me/.opencode/bin/opencode --port 4096", True),
            ("opencode-helper", False),
            ("opencode /Users/me/src/agent_manager", True),
            ("node server.js", False),
        ],
    )
    def test_is_opencode_command(self, cmdline, expected):
        assert is_opencode_command(ProcessSnapshot(pid=1, cmdline=cmdline)) is expected

    def test_normalize_preview(self):
        assert normalize_preview("  hello ") == "hello"
        assert normalize_preview("<ultrawork-mode>on</ultrawork-mode>") is None
        assert normalize_preview("<plan mode>x") is None
        assert normalize_preview("   ") is None
        assert normalize_preview("x" * 250) == "x" * 200 + "..."

    def test_project_contains(self):
        project = OpenCodeProject(id="p", worktree="/w/app", sandboxes=["/tmp/sbx"])
        assert project.contains("/w/app")
        assert project.contains("/w/app/src")
        assert project.contains("/tmp/sbx/1")
        assert not project.contains("/w/application")

    def test_load_session_requires_id(self, tmp_path):
        path = write_json(tmp_path / "s.json", {"title": "no id"})
        assert load_session(path) is None


class TestStoreEvents:
    def test_step_parts(self, store, storage, now):
        store.message("ses_1", "msg_1", "user", ago(now, 30), [{"type": "text", "text": "build it"}])
        store.message(
            "ses_1",
            "msg_2",
            "assistant",
            ago(now, 25),
            [
                {"type": "step-start", "time": {"start": ms(ago(now, 25))}},
                {"type": "reasoning", "text": "planning", "time": {"start": ms(ago(now, 24))}},
                {"type": "tool", "state": {"status": "completed"}, "time": {"start": ms(ago(now, 20))}},
                {"type": "text", "text": "Built.", "time": {"start": ms(ago(now, 15))}},
                {"type": "step-finish", "time": {"end": ms(ago(now, 10))}},
            ],
        )
        kinds = [e.kind for e in OpenCodeStore(str(storage)).events("ses_1")]
        assert kinds == [
            EventKind.USER_MESSAGE,
            EventKind.TASK_STARTED,
            EventKind.REASONING,
            EventKind.TOOL_CALL,
            EventKind.TOOL_RESULT,
            EventKind.ASSISTANT_MESSAGE,
            EventKind.TASK_COMPLETE,
        ]

    def test_aborted_message_is_interrupt(self, store, storage, now):
        store.message("ses_1", "msg_1", "user", ago(now, 30), [{"type": "text", "text": "go"}])
        store.message("ses_1", "msg_2", "assistant", ago(now, 20), [], completed=ago(now, 10), error="MessageAbortedError")
        events = OpenCodeStore(str(storage)).events("ses_1")
        assert events[-1].kind == EventKind.INTERRUPT
        assert events[-1].control

    def test_stepless_completed_message_completes(self, store, storage, now):
        store.message("ses_1", "msg_1", "assistant", ago(now, 20), [{"type": "text", "text": "hi"}], completed=ago(now, 5))
        kinds = [e.kind for e in OpenCodeStore(str(storage)).events("ses_1")]
        assert kinds == [EventKind.ASSISTANT_MESSAGE, EventKind.TASK_COMPLETE]

    def test_sessions_newest_first_and_directory_scope(self, store, storage, now):
        store.session("global", "ses_a", "/w/one", ago(now, 100))
        store.session("global", "ses_b", "/w/two", ago(now, 10))
        store.session("global", "ses_c", "/w/one", ago(now, 5))
        s = OpenCodeStore(str(storage))
        assert [x.id for x in s.sessions("global")] == ["ses_c", "ses_b", "ses_a"]
        assert [x.id for x in s.sessions("global", "/w/one/src")] == ["ses_c", "ses_a"]


class TestDetect:
    def test_project_match_and_status(self, detector, store, now, make_snapshot):
        store.project("prj_1", WORKTREE)
        store.session("prj_1", "ses_1", WORKTREE, ago(now, 5), title="Build the site")
        store.message("ses_1", "msg_1", "user", ago(now, 10), [{"type": "text", "text": "build the site"}])
        store.message(
            "ses_1",
            "msg_2",
            "assistant",
            ago(now, 8),
            [
                {"type": "step-start", "time": {"start": ms(ago(now, 8))}},
                {"type": "text", "text": "Starting", "time": {"start": ms(ago(now, 6))}},
            ],
        )
        session = detector.detect([make_snapshot(400, "opencode")], now)[0]
        assert session.id == "ses_1"
        assert session.status == SessionStatus.PROCESSING
        assert session.last_message == "Starting"
        assert session.project_path == WORKTREE

    def test_step_finish_is_waiting(self, detector, store, now, make_snapshot):
        store.project("prj_1", WORKTREE)
        store.session("prj_1", "ses_1", WORKTREE, ago(now, 5))
        store.message("ses_1", "msg_1", "user", ago(now, 20), [{"type": "text", "text": "hi"}])
        store.message(
            "ses_1",
            "msg_2",
            "assistant",
            ago(now, 15),
            [
                {"type": "step-start", "time": {"start": ms(ago(now, 15))}},
                {"type": "text", "text": "Hello!", "time": {"start": ms(ago(now, 12))}},
                {"type": "step-finish", "time": {"end": ms(ago(now, 10))}},
            ],
        )
        session = detector.detect([make_snapshot(400, "opencode")], now)[0]
        assert session.status == SessionStatus.WAITING

    def test_title_fallback_when_no_messages(self, detector, store, now, make_snapshot):
        store.project("prj_1", WORKTREE)
        store.session("prj_1", "ses_1", WORKTREE, ago(now, 5), title="Refactor auth")
        session = detector.detect([make_snapshot(400, "opencode")], now)[0]
        assert session.last_message == "Refactor auth"
        assert session.last_message_role is None

    def test_global_session_filtered_by_directory(self, detector, store, now, make_snapshot):
        store.session("global", "ses_other", "/somewhere/else", ago(now, 1))
        store.session("global", "ses_mine", WORKTREE, ago(now, 30))
        session = detector.detect([make_snapshot(400, "opencode")], now)[0]
        assert session.id == "ses_mine"

    def test_unmatched_process_gets_fallback(self, detector, now, make_snapshot):
        session = detector.detect([make_snapshot(400, "opencode")], now)[0]
        assert session.id == "opencode-400"
        assert session.project_path == WORKTREE

    def test_active_session_file(self, detector, inventory, store, now, make_snapshot):
        path = store.session("prj_1", "ses_open", "/w/open", ago(now, 5))
        inventory.newest_open_file.return_value = path
        session = detector.detect([make_snapshot(400, "opencode")], now)[0]
        assert session.id == "ses_open"
        assert session.session_file_path == path


class TestMultipleRoots:
    def test_configured_root_is_searched(self, inventory, tmp_path, now, make_snapshot):
        extra = tmp_path / "work" / "storage"
        builder = StoreBuilder(extra)
        builder.project("p1", "/w/app")
        builder.session("p1", "s1", "/w/app", ago(now, 5))
        inventory.working_directory.side_effect = lambda pid: "/w/app"
        config = {"transcript_roots": {"opencode": [str(extra)]}}
        with patch("agent_manager.opencode_detector.OPENCODE_STORAGE_DIR", str(tmp_path / "missing")):
            detector = OpenCodeDetector(inventory, config=config)
            sessions = detector.detect([make_snapshot(7, "opencode")], now)
        assert [s.id for s in sessions] == ["s1"]

    def test_each_root_matches_remaining_processes(self, inventory, tmp_path, now, make_snapshot):
        first = StoreBuilder(tmp_path / "a" / "storage")
        first.project("p1", "/w/one")
        first.session("p1", "s-one", "/w/one", ago(now, 5))
        second = StoreBuilder(tmp_path / "b" / "storage")
        second.session("global", "s-two", "/w/two", ago(now, 5))
        cwds = {1: "/w/one", 2: "/w/two"}
        inventory.working_directory.side_effect = cwds.get
        detector = OpenCodeDetector(inventory, config={}, roots=[str(first.root), str(second.root)])
        sessions = detector.detect([make_snapshot(1, "opencode"), make_snapshot(2, "opencode")], now)
        assert {s.pid: s.id for s in sessions} == {1: "s-one", 2: "s-two"}
