"""
Process to transcript correlation.

Claude stores transcripts in a directory named after the encoded working
directory, so most matching here is about comparing those names against a
process cwd.  Anything that cannot be matched still yields a fallback
session so a live process is never dropped.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import TypeVar

from .models import AgentProcess, AgentType, Session
from .settings import StatusThresholds, thresholds_for
from .status import fallback_status, status_priority
from .transcripts import modified_time, project_name

logger = logging.getLogger(__name__)

T = TypeVar("T")

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_PROJECT_ANCHORS = ("Projects", "UnityProjects")


def encode_directory_name(path: str) -> str:
    """Encode an absolute path as a transcript directory name.

    ``/`` becomes ``-`` and ``/.`` (a hidden folder) becomes ``--``.
    """
    trimmed = path[1:] if path.startswith("/") else path
    return "-" + trimmed.replace("/.", "--").replace("/", "-")


def decode_directory_name(name: str) -> str:
    """Best-effort inverse of ``encode_directory_name``.

    The encoding is lossy, so segments after a ``Projects`` or
    ``UnityProjects`` folder keep their dashes and ``--`` opens a hidden
    folder.  Everything else treats ``-`` as a separator.
    """
    body = name[1:] if name.startswith("-") else name
    parts = body.split("-")
    if not body:
        return ""

    anchor = next((i for i, part in enumerate(parts) if part in _PROJECT_ANCHORS), None)
    if anchor is None:
        return "/" + body.replace("-", "/")

    components = parts[: anchor + 1]
    segments: list[str] = []
    current = ""
    in_hidden = False
    for part in parts[anchor + 1 :]:
        if not part:
            if current:
                segments.append(current)
                current = ""
            in_hidden = True
            continue
        if in_hidden:
            if not current:
                current = "." + part
            else:
                segments.append(current)
                current = part
        elif not current:
            current = part
        else:
            current += "-" + part
    if current:
        segments.append(current)
    return "/" + "/".join(components + segments)


def normalize_directory_name(name: str) -> str:
    """Lower-case and treat every non-alphanumeric character as ``-``."""
    return _NON_ALNUM.sub("-", name.lower())


def directory_matches_path(directory_name: str, path: str) -> bool:
    return normalize_directory_name(directory_name) == normalize_directory_name(encode_directory_name(path))


def find_project_directories(roots: Iterable[str], cwd: str) -> list[str]:
    """Transcript directories under ``roots`` whose name matches ``cwd``.

    The exact encoding is tried first; a normalized scan of each root runs
    only when the exact directory is missing.
    """
    exact = encode_directory_name(cwd)
    target = normalize_directory_name(exact)
    found: list[str] = []
    for root in roots:
        if not os.path.isdir(root):
            continue
        candidate = os.path.join(root, exact)
        if os.path.isdir(candidate):
            found.append(candidate)
            continue
        try:
            entries = sorted(os.listdir(root))
        except OSError as e:
            logger.debug("Could not list transcript root %s: %s", root, e)
            continue
        for entry in entries:
            if normalize_directory_name(entry) == target and os.path.isdir(os.path.join(root, entry)):
                found.append(os.path.join(root, entry))
    return found


def infer_project_path(active_file: str | None) -> str | None:
    """Project path recovered from an open ``.../projects/<encoded>/x.jsonl`` path."""
    if not active_file:
        return None
    parts = active_file.split("/")
    try:
        idx = len(parts) - 1 - parts[::-1].index("projects")
    except ValueError:
        return None
    if idx + 1 >= len(parts):
        return None
    encoded = parts[idx + 1]
    if not encoded.startswith("-"):
        return None
    return decode_directory_name(encoded) or None


def fallback_project_path(process: AgentProcess) -> str:
    cwd = (process.cwd or "").strip()
    if cwd:
        return cwd
    return infer_project_path(process.active_session_file) or "/"


def is_low_signal(project_path: str, last_message: str | None, cpu: float) -> bool:
    """A session with no message, at the filesystem root or nearly idle."""
    if last_message and last_message.strip():
        return False
    return project_path == "/" or cpu <= 1.0


def build_fallback_session(
    agent: AgentType,
    process: AgentProcess,
    now: datetime | None = None,
    thresholds: StatusThresholds | None = None,
    background: bool = False,
) -> Session:
    """Session for a live process whose transcript could not be resolved."""
    now = now or datetime.now(UTC)
    thresholds = thresholds or thresholds_for(agent)
    project_path = fallback_project_path(process)
    activity = modified_time(process.active_session_file) if process.active_session_file else None
    return Session(
        id=f"{agent.value}-{process.pid}",
        agent_type=agent,
        project_name=project_name(project_path),
        project_path=project_path,
        status=fallback_status(process.cpu, activity, now, thresholds),
        last_activity_at=activity or now,
        pid=process.pid,
        cpu=process.cpu,
        memory_bytes=process.memory_bytes,
        is_background=background,
    )


def assign_by_recency(processes: Sequence[AgentProcess], candidates: Sequence[T]) -> dict[int, T]:
    """Pair the i-th process with the i-th most recent candidate transcript.

    ``candidates`` must already be ordered newest first.  Processes beyond the
    number of candidates get nothing.
    """
    return {process.pid: candidates[i] for i, process in enumerate(processes) if i < len(candidates)}


def _is_better(candidate: Session, current: Session) -> bool:
    cp, rp = status_priority(candidate.status), status_priority(current.status)
    if cp != rp:
        return cp > rp
    if candidate.last_activity_at != current.last_activity_at:
        return candidate.last_activity_at > current.last_activity_at
    if (candidate.last_message is None) != (current.last_message is None):
        return candidate.last_message is not None
    return candidate.id > current.id


def dedupe_by_pid(sessions: Iterable[Session]) -> list[Session]:
    """Keep one session per pid: busier, then newer, then with a message."""
    best: dict[int, Session] = {}
    for session in sessions:
        current = best.get(session.pid)
        if current is None or _is_better(session, current):
            best[session.pid] = session
    return list(best.values())
