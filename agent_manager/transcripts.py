"""
Shared transcript reading and text helpers used by every agent detector.

Transcripts are actively appended to by live agents, so every reader here
tolerates a truncated trailing line and skips anything that fails to parse.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import threading
import time
from datetime import UTC, datetime

from .constants import (
    EMPTY_MESSAGE_PLACEHOLDERS,
    GIT_REMOTE_TIMEOUT,
    GITHUB_URL_CACHE_TTL,
    INTERRUPT_MARKER,
    LOCAL_CLAUDE_COMMANDS,
    SUPPRESSED_PREFIXES,
    TRANSCRIPT_TAIL_BUFFER,
)
from .models import EventKind, TranscriptEvent

logger = logging.getLogger(__name__)

MESSAGE_KINDS = frozenset({EventKind.USER_MESSAGE, EventKind.ASSISTANT_MESSAGE})

# project path -> (fetched_at, url)
_github_url_cache: dict[str, tuple[float, str | None]] = {}
_github_url_lock = threading.Lock()


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def parse_iso_timestamp(value) -> datetime | None:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def from_epoch_ms(value) -> datetime | None:
    if not isinstance(value, (int, float)) or value <= 0:
        return None
    return datetime.fromtimestamp(value / 1000, UTC)


def format_iso(dt: datetime) -> str:
    return dt.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def modified_time(path: str) -> datetime | None:
    try:
        return datetime.fromtimestamp(os.path.getmtime(path), UTC)
    except OSError:
        return None


# ---------------------------------------------------------------------------
# JSONL readers
# ---------------------------------------------------------------------------


def read_jsonl_tail(path: str, max_bytes: int = TRANSCRIPT_TAIL_BUFFER, max_lines: int | None = None) -> list[dict]:
    """Read JSON objects from the last ``max_bytes`` of a JSONL file."""
    try:
        with open(path, "rb") as f:
            f.seek(0, 2)
            size = f.tell()
            read_from = max(0, size - max_bytes)
            f.seek(read_from)
            chunk = f.read().decode("utf-8", errors="replace")
    except OSError as e:
        logger.debug("Error reading transcript %s: %s", path, e)
        return []
    raw_lines = [ln.strip() for ln in chunk.split("\n") if ln.strip()]
    # When seeking mid-file, the first line is likely truncated; discard it
    if read_from > 0 and raw_lines:
        raw_lines = raw_lines[1:]
    if max_lines is not None:
        raw_lines = raw_lines[-max_lines:]
    entries = []
    for line in raw_lines:
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed line in %s", path)
            continue
        if isinstance(entry, dict):
            entries.append(entry)
    return entries


def read_jsonl_head(path: str, max_lines: int) -> list[dict]:
    """Read up to ``max_lines`` JSON objects from the top of a JSONL file."""
    entries: list[dict] = []
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            for _ in range(max_lines):
                line = f.readline()
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(entry, dict):
                    entries.append(entry)
    except OSError as e:
        logger.debug("Error reading head of %s: %s", path, e)
    return entries


def read_json_file(path: str) -> dict | None:
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.debug("Skipping unreadable JSON file %s: %s", path, e)
        return None
    return data if isinstance(data, dict) else None


# ---------------------------------------------------------------------------
# Message content
# ---------------------------------------------------------------------------


def extract_text(content) -> str | None:
    """First non-blank text from a string or a list of content blocks."""
    if isinstance(content, str):
        return content if content.strip() else None
    if isinstance(content, list):
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str) and text.strip():
                    return text
    return None


def has_block(content, block_type: str) -> bool:
    if not isinstance(content, list):
        return False
    return any(isinstance(item, dict) and item.get("type") == block_type for item in content)


def is_interrupt_marker(text: str | None) -> bool:
    return bool(text) and INTERRUPT_MARKER.lower() in text.lower()


def is_local_command(text: str | None) -> bool:
    """True for slash commands and command echo blocks handled without a model turn."""
    if not text:
        return False
    stripped = text.strip()
    lowered = stripped.lower()
    if lowered.startswith(("<command-name>", "<local-command-", "<command-message>")):
        return True
    if not stripped.startswith("/"):
        return False
    return any(stripped == cmd or stripped.startswith(cmd + " ") for cmd in LOCAL_CLAUDE_COMMANDS)


def is_suppressed(text: str | None) -> bool:
    """Control/sentinel text that must never be shown as a preview."""
    if text is None:
        return True
    lowered = text.strip().lower()
    if not lowered:
        return True
    return lowered.startswith(SUPPRESSED_PREFIXES) or is_local_command(text)


def is_placeholder(text: str | None) -> bool:
    return text is None or text.strip().lower() in EMPTY_MESSAGE_PLACEHOLDERS


def truncate(value: str, max_chars: int) -> str:
    if len(value) <= max_chars:
        return value
    return value[:max_chars] + "..."


def select_last_message(events: list[TranscriptEvent]) -> TranscriptEvent | None:
    """Newest genuine conversational message; control text is skipped."""
    for event in reversed(events):
        if event.kind in MESSAGE_KINDS and not event.control and not is_suppressed(event.text):
            return event
    return None


def select_last_user_message(events: list[TranscriptEvent]) -> TranscriptEvent | None:
    for event in reversed(events):
        if event.kind == EventKind.USER_MESSAGE and not event.control and not is_suppressed(event.text):
            return event
    return None


# ---------------------------------------------------------------------------
# Project metadata
# ---------------------------------------------------------------------------


def project_name(path: str) -> str:
    name = os.path.basename(path.rstrip("/"))
    return name or "Unknown"


def files_by_recency(directories: list[str], extension: str, exclude_prefix: str | None = None) -> list[str]:
    """Files with ``extension`` across ``directories``, newest first."""
    candidates = []
    for directory in directories:
        try:
            entries = os.listdir(directory)
        except OSError:
            continue
        for name in entries:
            if name.startswith(".") or not name.endswith(extension):
                continue
            if exclude_prefix and name.startswith(exclude_prefix):
                continue
            path = os.path.join(directory, name)
            try:
                candidates.append((os.path.getmtime(path), path))
            except OSError:
                continue
    candidates.sort(reverse=True)
    return [path for _, path in candidates]


def live_git_branch(cwd: str | None) -> str | None:
    """Read the current git branch directly from .git/HEAD (no subprocess)."""
    if not cwd:
        return None
    try:
        head = os.path.join(cwd, ".git", "HEAD")
        if not os.path.exists(head):
            # Walk up to find the git root
            parts = cwd.rstrip("/").split("/")
            for i in range(len(parts) - 1, 0, -1):
                candidate = "/".join(parts[:i]) + "/.git/HEAD"
                if os.path.exists(candidate):
                    head = candidate
                    break
        with open(head, encoding="utf-8") as f:
            line = f.read().strip()
        if line.startswith("ref: refs/heads/"):
            return line[len("ref: refs/heads/") :]
    except OSError as e:
        logger.debug("Error reading git HEAD for %s: %s", cwd, e)
    return None


def github_url_from_remote(remote: str) -> str | None:
    remote = remote.strip()
    if remote.startswith("git@github.com:"):
        slug = remote[len("git@github.com:") :]
        if slug.endswith(".git"):
            slug = slug[:-4]
        return f"https://github.com/{slug}"
    if remote.startswith("https://github.com/"):
        return remote[:-4] if remote.endswith(".git") else remote
    return None


def github_url(project_path: str) -> str | None:
    """GitHub web URL for the project's ``origin`` remote, cached briefly."""
    if not project_path or project_path == "/" or not os.path.isdir(project_path):
        return None
    now = time.monotonic()
    with _github_url_lock:
        cached = _github_url_cache.get(project_path)
        if cached and now - cached[0] < GITHUB_URL_CACHE_TTL:
            return cached[1]
    url = None
    try:
        result = subprocess.run(
            ["git", "remote", "get-url", "origin"],
            cwd=project_path,
            capture_output=True,
            text=True,
            timeout=GIT_REMOTE_TIMEOUT,
            check=False,
        )
        if result.returncode == 0:
            url = github_url_from_remote(result.stdout)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("git remote lookup failed for %s: %s", project_path, e)
    with _github_url_lock:
        _github_url_cache[project_path] = (now, url)
    return url
