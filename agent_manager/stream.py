"""
Line-delimited JSON stream for the floating viewer.

Every line is one JSON object: either a full ``SessionsResponse`` or a
control command such as ``{"command": "setVisibility", "isVisible": true}``.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from typing import TextIO

from pydantic import ValidationError

from .models import RefreshSnapshot, SessionsResult
from .schemas import SessionsResponse, VisibilityCommand

logger = logging.getLogger(__name__)


def encode_result(result: SessionsResult | RefreshSnapshot) -> str:
    if isinstance(result, RefreshSnapshot):
        response = SessionsResponse.from_snapshot(result)
    else:
        response = SessionsResponse.from_result(result)
    return response.model_dump_json(by_alias=True)


def encode_command(is_visible: bool) -> str:
    return VisibilityCommand(is_visible=is_visible).model_dump_json(by_alias=True)


def decode_line(line: str) -> SessionsResponse | VisibilityCommand | None:
    """Parse one stream line; blank or malformed lines give None."""
    line = line.strip()
    if not line:
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        logger.debug("Skipping malformed stream line: %s", e)
        return None
    if not isinstance(data, dict):
        return None
    try:
        if "command" in data:
            return VisibilityCommand.model_validate(data)
        return SessionsResponse.model_validate(data)
    except ValidationError as e:
        logger.debug("Skipping invalid stream line: %s", e)
        return None


class StreamWriter:
    """Writes stream lines to ``out`` until the reader goes away."""

    def __init__(self, out: TextIO | None = None):
        self.out = out or sys.stdout
        self.closed = False
        self._lock = threading.Lock()

    def write_line(self, line: str) -> bool:
        """Write one line and flush; returns False once the pipe is closed."""
        with self._lock:
            if self.closed:
                return False
            try:
                self.out.write(line + "\n")
                self.out.flush()
            except (BrokenPipeError, ValueError):
                # ValueError: write to a closed file
                logger.debug("Stream reader went away")
                self.closed = True
                return False
            return True

    def write_result(self, result: SessionsResult | RefreshSnapshot) -> bool:
        return self.write_line(encode_result(result))

    def set_visibility(self, is_visible: bool) -> bool:
        return self.write_line(encode_command(is_visible))
