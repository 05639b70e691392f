"""Tests for correlator.py: directory-name matching, fallbacks and de-duplication."""

from datetime import UTC, datetime, timedelta

import pytest

from agent_manager.correlator import (
    assign_by_recency,
    build_fallback_session,
    decode_directory_name,
    dedupe_by_pid,
    directory_matches_path,
    encode_directory_name,
    fallback_project_path,
    find_project_directories,
    infer_project_path,
    is_low_signal,
    normalize_directory_name,
)
from agent_manager.models import AgentProcess, AgentType, SessionStatus

from conftest import make_session, set_mtime

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class TestDirectoryNames:
    @pytest.mark.parametrize(
        "path,encoded",
        [
            ("/Users/me/dev/api", "-Users-me-dev-api"),
            ("/Users/me/.config/tool", "-Users-me--config-tool"),
            ("/", "-"),
        ],
    )
    def test_encode(self, path, encoded):
        assert encode_directory_name(path) == encoded

    def test_decode_plain(self):
        assert decode_directory_name("-Users-me-dev-api") == "/Users/me/dev/api"

    def test_decode_keeps_dashes_after_projects_anchor(self):
        assert decode_directory_name("-Users-me-Projects-my-app") == "/Users/me/Projects/my-app"

    def test_decode_hidden_folder_after_anchor(self):
        assert decode_directory_name("-Users-me-Projects-app--worktrees-x") == "/Users/me/Projects/app/.worktrees/x"

    def test_normalize(self):
        assert normalize_directory_name("-Users-me-My_App.v2") == "-users-me-my-app-v2"

    def test_matches_under_normalization(self):
        assert directory_matches_path("-Users-me-My-App-v2", "/Users/me/My_App.v2")
        assert directory_matches_path("-users-me-my-app", "/Users/me/My App")
        assert not directory_matches_path("-Users-me-other", "/Users/me/My App")


class TestFindProjectDirectories:
    def test_exact_match(self, tmp_path):
        root = tmp_path / "projects"
        (root / "-work-api").mkdir(parents=True)
        (root / "-work-api-v2").mkdir()
        assert find_project_directories([str(root)], "/work/api") == [str(root / "-work-api")]

    def test_normalized_scan_when_exact_missing(self, tmp_path):
        root = tmp_path / "projects"
        (root / "-work-my-app").mkdir(parents=True)
        assert find_project_directories([str(root)], "/work/my_app") == [str(root / "-work-my-app")]

    def test_multiple_roots_and_missing_root(self, tmp_path):
        a = tmp_path / "a"
        b = tmp_path / "b"
        (a / "-w-x").mkdir(parents=True)
        (b / "-w-x").mkdir(parents=True)
        found = find_project_directories([str(a), str(tmp_path / "missing"), str(b)], "/w/x")
        assert found == [str(a / "-w-x"), str(b / "-w-x")]

    def test_files_are_not_directories(self, tmp_path):
        root = tmp_path / "projects"
        root.mkdir()
        (root / "-w-x").write_text("")
        assert find_project_directories([str(root)], "/w/x") == []


class TestInferProjectPath:
    def test_from_open_transcript(self):
        path = "/Users/me/.claude/projects/-Users-me-dev-api/abc.jsonl"
        assert infer_project_path(path) == "/Users/me/dev/api"

    def test_non_transcript_path(self):
        assert infer_project_path("/tmp/whatever.jsonl") is None
        assert infer_project_path(None) is None

    def test_fallback_project_path_prefers_cwd(self):
        process = AgentProcess(pid=1, cwd="/w/api", active_session_file="/x/projects/-w-other/a.jsonl")
        assert fallback_project_path(process) == "/w/api"

    def test_fallback_project_path_root(self):
        assert fallback_project_path(AgentProcess(pid=1)) == "/"


class TestLowSignal:
    def test_message_is_never_low_signal(self):
        assert not is_low_signal("/", "hello", 0.0)

    def test_root_without_message(self):
        assert is_low_signal("/", None, 50.0)

    def test_idle_cpu_without_message(self):
        assert is_low_signal("/w/api", None, 0.5)
        assert not is_low_signal("/w/api", None, 5.0)


class TestFallbackSession:
    def test_fields(self):
        process = AgentProcess(pid=42, cpu=0.0, memory_bytes=10, cwd="/w/api")
        session = build_fallback_session(AgentType.CLAUDE, process, NOW)
        assert session.id == "claude-42"
        assert session.project_name == "api"
        assert session.status == SessionStatus.WAITING
        assert session.last_activity_at == NOW
        assert session.last_message is None
        assert not session.is_background

    def test_activity_from_active_file(self, tmp_path):
        path = tmp_path / "t.jsonl"
        path.write_text("")
        set_mtime(path, NOW - timedelta(seconds=1))
        process = AgentProcess(pid=1, cwd="/w", active_session_file=str(path))
        session = build_fallback_session(AgentType.CODEX, process, NOW, background=True)
        assert session.status == SessionStatus.PROCESSING
        assert session.is_background


class TestAssignByRecency:
    def test_pairs_in_order(self):
        processes = [AgentProcess(pid=1), AgentProcess(pid=2), AgentProcess(pid=3)]
        assert assign_by_recency(processes, ["newest", "older"]) == {1: "newest", 2: "older"}

    def test_no_candidates(self):
        assert assign_by_recency([AgentProcess(pid=1)], []) == {}


class TestDedupeByPid:
    def test_prefers_busier(self):
        a = make_session(pid=1, id="a", status=SessionStatus.IDLE)
        b = make_session(pid=1, id="b", status=SessionStatus.PROCESSING)
        assert [s.id for s in dedupe_by_pid([a, b])] == ["b"]

    def test_prefers_newer_at_same_priority(self):
        old = make_session(pid=1, id="a", last_activity_at=NOW - timedelta(minutes=1))
        new = make_session(pid=1, id="b", last_activity_at=NOW)
        assert [s.id for s in dedupe_by_pid([new, old])] == ["b"]

    def test_prefers_message(self):
        bare = make_session(pid=1, id="a", last_activity_at=NOW)
        chatty = make_session(pid=1, id="b", last_activity_at=NOW, last_message="hi")
        assert [s.id for s in dedupe_by_pid([chatty, bare])] == ["b"]

    def test_distinct_pids_kept(self):
        assert len(dedupe_by_pid([make_session(pid=1), make_session(pid=2)])) == 2
