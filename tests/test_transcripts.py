"""Tests for transcripts.py: JSONL readers, text filters and project metadata."""

from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

from agent_manager import transcripts
from agent_manager.models import EventKind, TranscriptEvent
from agent_manager.transcripts import (
    extract_text,
    files_by_recency,
    format_iso,
    from_epoch_ms,
    github_url,
    github_url_from_remote,
    is_interrupt_marker,
    is_local_command,
    is_placeholder,
    is_suppressed,
    live_git_branch,
    parse_iso_timestamp,
    project_name,
    read_jsonl_head,
    read_jsonl_tail,
    select_last_message,
    select_last_user_message,
    truncate,
)

from conftest import set_mtime, write_jsonl


class TestTimestamps:
    def test_z_suffix(self):
        assert parse_iso_timestamp("2026-01-15T10:30:00Z") == datetime(2026, 1, 15, 10, 30, tzinfo=UTC)

    def test_naive_is_utc(self):
        assert parse_iso_timestamp("2026-01-15T10:30:00").tzinfo == UTC

    def test_invalid_is_none(self):
        assert parse_iso_timestamp("yesterday") is None
        assert parse_iso_timestamp(None) is None
        assert parse_iso_timestamp(12345) is None

    def test_epoch_ms(self):
        assert from_epoch_ms(1_700_000_000_000) == datetime.fromtimestamp(1_700_000_000, UTC)
        assert from_epoch_ms(0) is None
        assert from_epoch_ms("1") is None

    def test_format_iso(self):
        assert format_iso(datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)) == "2026-01-02T03:04:05.000Z"


class TestReadJsonlTail:
    def test_reads_objects_and_skips_malformed(self, tmp_path):
        path = tmp_path / "t.jsonl"
        path.write_text('{"a": 1}\nnot json\n[1, 2]\n{"a": 2}\n')
        assert read_jsonl_tail(str(path)) == [{"a": 1}, {"a": 2}]

    def test_max_lines(self, tmp_path):
        path = write_jsonl(tmp_path / "t.jsonl", [{"i": i} for i in range(10)])
        assert read_jsonl_tail(path, max_lines=3) == [{"i": 7}, {"i": 8}, {"i": 9}]

    def test_partial_first_line_dropped_when_seeking(self, tmp_path):
        path = write_jsonl(tmp_path / "t.jsonl", [{"payload": "x" * 50}, {"i": 1}, {"i": 2}])
        result = read_jsonl_tail(path, max_bytes=30)
        assert result == [{"i": 1}, {"i": 2}] or result == [{"i": 2}]
        assert all("payload" not in entry for entry in result)

    def test_truncated_trailing_line_skipped(self, tmp_path):
        path = tmp_path / "t.jsonl"
        path.write_text('{"a": 1}\n{"a": 2, "b":')
        assert read_jsonl_tail(str(path)) == [{"a": 1}]

    def test_missing_file(self, tmp_path):
        assert read_jsonl_tail(str(tmp_path / "missing.jsonl")) == []


class TestReadJsonlHead:
    def test_reads_first_lines(self, tmp_path):
        path = write_jsonl(tmp_path / "t.jsonl", [{"i": i} for i in range(10)])
        assert read_jsonl_head(path, 2) == [{"i": 0}, {"i": 1}]

    def test_missing_file(self, tmp_path):
        assert read_jsonl_head(str(tmp_path / "nope.jsonl"), 5) == []


class TestTextFilters:
    def test_extract_text_from_blocks(self):
        content = [{"type": "tool_use"}, {"type": "text", "text": "  "}, {"type": "text", "text": "hello"}]
        assert extract_text(content) == "hello"

    def test_extract_text_string(self):
        assert extract_text("hi") == "hi"
        assert extract_text("   ") is None
        assert extract_text(None) is None

    def test_interrupt_marker(self):
        assert is_interrupt_marker("[Request interrupted by user for tool use]")
        assert not is_interrupt_marker("please continue")
        assert not is_interrupt_marker(None)

    def test_local_commands(self):
        assert is_local_command("/clear")
        assert is_local_command("/model sonnet")
        assert is_local_command("<command-name>/cost</command-name>")
        assert not is_local_command("/fix-the-bug please")
        assert not is_local_command("/clearly not a command")
        assert not is_local_command("write tests")

    def test_suppressed(self):
        assert is_suppressed(None)
        assert is_suppressed("   ")
        assert is_suppressed("<environment_context><cwd>/x</cwd></environment_context>")
        assert is_suppressed("# AGENTS.md instructions for /repo")
        assert is_suppressed("<local-command-stdout>ok</local-command-stdout>")
        assert not is_suppressed("Refactor the parser")

    def test_placeholder(self):
        assert is_placeholder(None)
        assert is_placeholder("(no content)")
        assert not is_placeholder("done")

    def test_truncate(self):
        assert truncate("abcdef", 3) == "abc..."
        assert truncate("abc", 3) == "abc"


def _event(kind, text=None, control=False, role=""):
    return TranscriptEvent(kind=kind, text=text, control=control, role=role)


class TestSelectLastMessage:
    def test_skips_control_and_suppressed(self):
        events = [
            _event(EventKind.USER_MESSAGE, "fix the bug", role="user"),
            _event(EventKind.ASSISTANT_MESSAGE, "<turn_aborted>"),
            _event(EventKind.INTERRUPT, "[Request interrupted by user]", control=True),
            _event(EventKind.TOOL_CALL),
        ]
        assert select_last_message(events).text == "fix the bug"

    def test_none_when_only_sentinels(self):
        events = [_event(EventKind.USER_MESSAGE, "/clear", control=True)]
        assert select_last_message(events) is None

    def test_last_user_message(self):
        events = [
            _event(EventKind.USER_MESSAGE, "first", role="user"),
            _event(EventKind.ASSISTANT_MESSAGE, "answer", role="assistant"),
        ]
        assert select_last_user_message(events).text == "first"


class TestProjectMetadata:
    def test_project_name(self):
        assert project_name("/Users/me/dev/api/") == "api"
        assert project_name("/") == "Unknown"

    def test_files_by_recency(self, tmp_path):
        a = tmp_path / "a.jsonl"
        b = tmp_path / "b.jsonl"
        hidden = tmp_path / ".c.jsonl"
        sub = tmp_path / "agent-1.jsonl"
        for path in (a, b, hidden, sub):
            path.write_text("{}\n")
        set_mtime(a, datetime(2026, 1, 1, tzinfo=UTC))
        set_mtime(b, datetime(2026, 1, 2, tzinfo=UTC))
        assert files_by_recency([str(tmp_path)], ".jsonl", exclude_prefix="agent-") == [str(b), str(a)]

    def test_files_by_recency_merges_directories(self, tmp_path):
        first = tmp_path / "one"
        second = tmp_path / "two"
        first.mkdir()
        second.mkdir()
        old = first / "old.jsonl"
        new = second / "new.jsonl"
        mid = first / "mid.jsonl"
        for path, day in ((old, 1), (mid, 2), (new, 3)):
            path.write_text("{}\n")
            set_mtime(path, datetime(2026, 1, day, tzinfo=UTC))
        assert files_by_recency([str(first), str(second)], ".jsonl") == [str(new), str(mid), str(old)]

    def test_files_by_recency_missing_dir(self, tmp_path):
        assert files_by_recency([str(tmp_path / "nope")], ".jsonl") == []

    def test_live_git_branch_walks_up(self, tmp_path):
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("ref: refs/heads/feature/x\n")
        nested = tmp_path / "pkg" / "sub"
        nested.mkdir(parents=True)
        assert live_git_branch(str(nested)) == "feature/x"

    def test_live_git_branch_detached_head(self, tmp_path):
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("0123456789abcdef\n")
        assert live_git_branch(str(tmp_path)) is None

    def test_live_git_branch_none(self):
        assert live_git_branch(None) is None


class TestGithubUrl:
    def test_ssh_remote(self):
        assert github_url_from_remote("git@github.com:org/repo.git\n") == "https://github.com/org/repo"

    def test_https_remote(self):
        assert github_url_from_remote("https://github.com/org/repo.git") == "https://github.com/org/repo"

    def test_other_host(self):
        assert github_url_from_remote("git@gitlab.com:org/repo.git") is None

    def test_cached_lookup(self, tmp_path):
        transcripts._github_url_cache.clear()
        result = MagicMock(returncode=0, stdout="git@github.com:org/repo.git\n")
        with patch("agent_manager.transcripts.subprocess.run", return_value=result) as run:
            assert github_url(str(tmp_path)) == "https://github.com/org/repo"
            assert github_url(str(tmp_path)) == "https://github.com/org/repo"
        assert run.call_count == 1
        transcripts._github_url_cache.clear()

    def test_root_and_missing_paths_skip_git(self, tmp_path):
        with patch("agent_manager.transcripts.subprocess.run") as run:
            assert github_url("/") is None
            assert github_url(str(tmp_path / "missing")) is None
        run.assert_not_called()
