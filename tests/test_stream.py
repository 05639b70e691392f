"""Tests for stream.py: line encoding, decoding and closed-pipe handling."""

import io
import json
from datetime import UTC, datetime
from unittest.mock import MagicMock

from agent_manager.aggregator import build_result
from agent_manager.models import RefreshSnapshot, SessionStatus
from agent_manager.schemas import SessionsResponse, VisibilityCommand
from agent_manager.stream import StreamWriter, decode_line, encode_command, encode_result

from conftest import make_session


def result():
    return build_result([make_session(pid=1, status=SessionStatus.WAITING, last_message="Done.")])


class TestEncoding:
    def test_result_line_is_camel_case_json(self):
        data = json.loads(encode_result(result()))
        assert data["totalCount"] == 1
        assert data["sessions"][0]["lastMessage"] == "Done."
        assert "\n" not in encode_result(result())

    def test_snapshot_carries_generation(self):
        snapshot = RefreshSnapshot(result=result(), generation=7, refreshed_at=datetime(2026, 3, 1, tzinfo=UTC))
        assert json.loads(encode_result(snapshot))["generation"] == 7

    def test_command(self):
        assert json.loads(encode_command(False)) == {"command": "setVisibility", "isVisible": False}


class TestDecodeLine:
    def test_result(self):
        decoded = decode_line(encode_result(result()))
        assert isinstance(decoded, SessionsResponse)
        assert decoded.sessions[0].pid == 1

    def test_command(self):
        decoded = decode_line('{"command": "setVisibility", "isVisible": true}')
        assert isinstance(decoded, VisibilityCommand)
        assert decoded.is_visible is True

    def test_garbage(self):
        assert decode_line("") is None
        assert decode_line("not json") is None
        assert decode_line("[1, 2]") is None
        assert decode_line('{"command": "explode"}') is None


class TestStreamWriter:
    def test_writes_lines(self):
        out = io.StringIO()
        writer = StreamWriter(out)
        assert writer.set_visibility(True)
        assert writer.write_result(result())
        lines = out.getvalue().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[0])["isVisible"] is True

    def test_broken_pipe_closes(self):
        out = MagicMock()
        out.write.side_effect = BrokenPipeError()
        writer = StreamWriter(out)
        assert writer.write_line("x") is False
        assert writer.closed
        assert writer.write_line("y") is False
        assert out.write.call_count == 1

    def test_closed_file_closes(self):
        out = io.StringIO()
        out.close()
        writer = StreamWriter(out)
        assert writer.write_line("x") is False
        assert writer.closed
