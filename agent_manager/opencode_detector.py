"""
OpenCode session detection.

OpenCode keeps a JSON document store rather than a log::

    storage/project/<projectID>.json           id, worktree, sandboxes
    storage/session/<projectID>/<sessionID>.json
    storage/message/<sessionID>/<messageID>.json
    storage/part/<messageID>/<partID>.json      text, reasoning, tool, step-*

Times in the store are epoch milliseconds.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .constants import OPENCODE_PREVIEW_MAX_LEN, OPENCODE_STORAGE_DIR, SELF_PROCESS_MARKERS
from .correlator import assign_by_recency, build_fallback_session
from .models import (
    AgentProcess,
    AgentType,
    EventKind,
    MessageRole,
    ParsedTranscript,
    ProcessSnapshot,
    Session,
    TranscriptEvent,
)
from .process_inventory import ProcessInventory, process_start_time
from .settings import extra_transcript_roots, load_config, thresholds_for
from .status import determine_status, newest_event
from .transcripts import (
    from_epoch_ms,
    github_url,
    is_suppressed,
    live_git_branch,
    project_name,
    read_json_file,
    select_last_message,
    truncate,
)

logger = logging.getLogger(__name__)

GLOBAL_PROJECT_ID = "global"
SESSION_MARKER = "/opencode/storage/session/"
ABORTED_ERROR = "MessageAbortedError"


@dataclass
class OpenCodeProject:
    id: str
    worktree: str = ""
    sandboxes: list[str] = field(default_factory=list)

    def contains(self, path: str) -> bool:
        return any(
            root and (path == root or path.startswith(root.rstrip("/") + "/"))
            for root in [self.worktree, *self.sandboxes]
        )


@dataclass
class OpenCodeSession:
    id: str
    project_id: str = ""
    directory: str = ""
    title: str = ""
    created_ms: int = 0
    updated_ms: int = 0
    path: str = ""


def _ms(value) -> int:
    return int(value) if isinstance(value, (int, float)) else 0


def load_project(path: str) -> OpenCodeProject | None:
    data = read_json_file(path)
    if not data or not isinstance(data.get("id"), str):
        return None
    sandboxes = data.get("sandboxes") if isinstance(data.get("sandboxes"), list) else []
    return OpenCodeProject(
        id=data["id"],
        worktree=data.get("worktree") or "",
        sandboxes=[s for s in sandboxes if isinstance(s, str)],
    )


def load_session(path: str) -> OpenCodeSession | None:
    if not path.endswith(".json"):
        return None
    data = read_json_file(path)
    if not data or not isinstance(data.get("id"), str):
        return None
    times = data.get("time") if isinstance(data.get("time"), dict) else {}
    return OpenCodeSession(
        id=data["id"],
        project_id=data.get("projectID") or "",
        directory=data.get("directory") or "",
        title=data.get("title") or "",
        created_ms=_ms(times.get("created")),
        updated_ms=_ms(times.get("updated")),
        path=path,
    )


def normalize_preview(content: str | None) -> str | None:
    """Preview text for a part, or None for blank, mode-tag or control text."""
    if content is None:
        return None
    trimmed = content.strip()
    if not trimmed:
        return None
    if trimmed.startswith("<") and ("ultrawork" in trimmed or "mode>" in trimmed):
        return None
    if is_suppressed(trimmed):
        return None
    return truncate(trimmed, OPENCODE_PREVIEW_MAX_LEN)


def is_opencode_command(snapshot: ProcessSnapshot) -> bool:
    args = snapshot.first_arguments(1)
    first = args[0].lower() if args else ""
    if snapshot.executable_name != "opencode" and first != "opencode" and not first.endswith("/opencode"):
        return False
    lowered = snapshot.cmdline.lower()
    return not any(marker in lowered for marker in SELF_PROCESS_MARKERS)


class OpenCodeStore:
    """Read-only view over one OpenCode storage directory."""

    def __init__(self, root: str):
        self.root = root

    def _json_files(self, *parts: str) -> list[str]:
        directory = os.path.join(self.root, *parts)
        try:
            names = sorted(os.listdir(directory))
        except OSError:
            return []
        return [os.path.join(directory, n) for n in names if n.endswith(".json") and not n.startswith(".")]

    def projects(self) -> list[OpenCodeProject]:
        return [p for p in (load_project(f) for f in self._json_files("project")) if p is not None]

    def sessions(self, project_id: str, directory: str | None = None) -> list[OpenCodeSession]:
        """Sessions of one project, newest first, optionally scoped to ``directory``."""
        sessions = []
        for path in self._json_files("session", project_id):
            session = load_session(path)
            if session is None:
                continue
            if directory is not None:
                root = session.directory.rstrip("/")
                if not root or not (directory == root or directory.startswith(root + "/")):
                    continue
            sessions.append(session)
        sessions.sort(key=lambda s: s.updated_ms, reverse=True)
        return sessions

    def events(self, session_id: str) -> list[TranscriptEvent]:
        """Normalized events for a session, oldest message first."""
        messages = [m for m in (read_json_file(f) for f in self._json_files("message", session_id)) if m]
        messages = [m for m in messages if isinstance(m.get("id"), str)]

        def created(message: dict) -> int:
            times = message.get("time") if isinstance(message.get("time"), dict) else {}
            return _ms(times.get("created"))

        messages.sort(key=lambda m: (created(m), m["id"]))
        events: list[TranscriptEvent] = []

        def add(kind: EventKind, ms: int, role: str, text: str | None = None, control: bool = False) -> None:
            events.append(
                TranscriptEvent(
                    kind=kind, timestamp=from_epoch_ms(ms), role=role, text=text, control=control, index=len(events)
                )
            )

        for message in messages:
            role = str(message.get("role") or "").lower()
            times = message.get("time") if isinstance(message.get("time"), dict) else {}
            created_ms = _ms(times.get("created"))
            finished_ms = _ms(times.get("completed")) or _ms(times.get("updated")) or created_ms
            parts = [p for p in (read_json_file(f) for f in self._json_files("part", message["id"])) if p]

            if role == "user":
                raw = next((p.get("text") for p in parts if p.get("type") == "text" and p.get("text")), None)
                control = raw is not None and is_suppressed(raw)
                add(EventKind.USER_MESSAGE, created_ms, role, normalize_preview(raw), control=control)
                continue
            if role != "assistant":
                continue

            has_step = False
            for part in parts:
                part_type = part.get("type")
                part_times = part.get("time") if isinstance(part.get("time"), dict) else {}
                start_ms = _ms(part_times.get("start")) or created_ms
                if part_type == "step-start":
                    has_step = True
                    add(EventKind.TASK_STARTED, start_ms, role)
                elif part_type == "step-finish":
                    has_step = True
                    add(EventKind.TASK_COMPLETE, _ms(part_times.get("end")) or finished_ms, role, control=True)
                elif part_type == "tool":
                    add(EventKind.TOOL_CALL, start_ms, role)
                    state = part.get("state") if isinstance(part.get("state"), dict) else {}
                    if state.get("status") in ("completed", "error"):
                        add(EventKind.TOOL_RESULT, start_ms, role)
                elif part_type == "reasoning":
                    add(EventKind.REASONING, start_ms, role, normalize_preview(part.get("text")))
                elif part_type == "text":
                    add(EventKind.ASSISTANT_MESSAGE, start_ms, role, normalize_preview(part.get("text")))

            error = message.get("error") if isinstance(message.get("error"), dict) else {}
            if error.get("name") == ABORTED_ERROR:
                add(EventKind.INTERRUPT, finished_ms, role, control=True)
            elif not has_step and (times.get("completed") or any(p.get("type") == "text" for p in parts)):
                # Messages without step parts end when their text lands
                add(EventKind.TASK_COMPLETE, finished_ms, role, control=True)
        return events


class OpenCodeDetector:
    agent_type = AgentType.OPENCODE

    def __init__(self, inventory: ProcessInventory, config: dict | None = None, roots: list[str] | None = None):
        self.inventory = inventory
        self.config = load_config() if config is None else config
        self._roots = roots

    def matches_process(self, snapshot: ProcessSnapshot) -> bool:
        return is_opencode_command(snapshot)

    def find_processes(self, snapshots: list[ProcessSnapshot] | None = None) -> list[AgentProcess]:
        snapshots = self.inventory.snapshot() if snapshots is None else snapshots
        return [
            AgentProcess(
                pid=snap.pid,
                cpu=snap.cpu,
                memory_bytes=snap.memory_bytes,
                cwd=self.inventory.working_directory(snap.pid),
                parent_pid=snap.parent_pid,
                group_id=snap.group_id,
                cmdline=snap.cmdline,
                tty=snap.tty,
                active_session_file=self.inventory.newest_open_file(snap.pid, SESSION_MARKER, ".json"),
                started_at=process_start_time(snap),
            )
            for snap in snapshots
            if self.matches_process(snap)
        ]

    def transcript_roots(self) -> list[str]:
        if self._roots is not None:
            return list(self._roots)
        return [OPENCODE_STORAGE_DIR, *extra_transcript_roots(self.agent_type, self.config)]

    def _store_for(self, path: str | None) -> OpenCodeStore:
        """The storage root owning ``path``, else the first configured root."""
        roots = self.transcript_roots()
        if path:
            for root in roots:
                if path.startswith(root.rstrip("/") + "/"):
                    return OpenCodeStore(root)
            marker = path.find("/session/")
            if marker > 0:
                return OpenCodeStore(path[:marker])
        return OpenCodeStore(roots[0])

    def parse_transcript(self, path: str) -> ParsedTranscript | None:
        """Load a session document and the events of its messages."""
        session = load_session(path)
        if session is None:
            return None
        return self._parsed(self._store_for(path), session)

    def _parsed(self, store: OpenCodeStore, session: OpenCodeSession) -> ParsedTranscript:
        events = store.events(session.id)
        newest = newest_event(events)
        return ParsedTranscript(
            path=session.path,
            events=events,
            session_id=session.id,
            cwd=session.directory or None,
            title=session.title.strip() or None,
            modified_at=from_epoch_ms(session.updated_ms),
            updated_at=from_epoch_ms(session.updated_ms) or (newest.timestamp if newest else None),
        )

    def build_session(self, parsed: ParsedTranscript, process: AgentProcess, project_path: str, now: datetime) -> Session:
        status = determine_status(
            self.agent_type,
            parsed.events,
            process.cpu,
            now=now,
            thresholds=thresholds_for(self.agent_type, self.config),
        )
        last = select_last_message(parsed.events)
        if last is not None and last.text:
            message, role = last.text, MessageRole.parse(last.role)
        else:
            message, role = parsed.title, None
        return Session(
            id=parsed.session_id or f"{self.agent_type.value}-{process.pid}",
            agent_type=self.agent_type,
            project_name=project_name(project_path),
            project_path=project_path,
            status=status,
            last_activity_at=parsed.updated_at or now,
            pid=process.pid,
            git_branch=live_git_branch(project_path),
            github_url=github_url(project_path),
            last_message=message,
            last_message_role=role,
            cpu=process.cpu,
            memory_bytes=process.memory_bytes,
            session_file_path=parsed.path or None,
        )

    def match_processes(self, processes: list[AgentProcess], now: datetime | None = None) -> list[Session]:
        now = now or datetime.now(UTC)
        sessions: list[Session] = []
        matched: set[int] = set()
        used: set[str] = set()

        for process in processes:
            parsed = self.parse_transcript(process.active_session_file) if process.active_session_file else None
            if parsed is None:
                continue
            sessions.append(self.build_session(parsed, process, process.cwd or parsed.cwd or "/", now))
            matched.add(process.pid)
            used.add(parsed.session_id)

        pending = [p for p in processes if p.pid not in matched and p.cwd]
        for root in self.transcript_roots():
            if not pending or not os.path.isdir(root):
                continue
            self._match_store(OpenCodeStore(root), pending, now, sessions, matched, used)
            pending = [p for p in pending if p.pid not in matched]

        for process in processes:
            if process.pid not in matched:
                logger.debug("No OpenCode session for PID %d (cwd=%s)", process.pid, process.cwd)
                thresholds = thresholds_for(self.agent_type, self.config)
                sessions.append(build_fallback_session(self.agent_type, process, now, thresholds))
        return sessions

    def _match_store(
        self,
        store: OpenCodeStore,
        pending: list[AgentProcess],
        now: datetime,
        sessions: list[Session],
        matched: set[int],
        used: set[str],
    ) -> None:
        """Match processes to one store: project worktrees first, then global sessions."""
        for project in store.projects():
            if project.id == GLOBAL_PROJECT_ID:
                continue
            group = [p for p in pending if p.pid not in matched and project.contains(p.cwd)]
            if not group:
                continue
            candidates = [s for s in store.sessions(project.id) if s.id not in used]
            for pid, found in assign_by_recency(group, candidates).items():
                process = next(p for p in group if p.pid == pid)
                parsed = self._parsed(store, found)
                sessions.append(self.build_session(parsed, process, process.cwd or project.worktree, now))
                matched.add(pid)
                used.add(found.id)

        for process in pending:
            if process.pid in matched:
                continue
            found = next((s for s in store.sessions(GLOBAL_PROJECT_ID, process.cwd) if s.id not in used), None)
            if found is None:
                continue
            parsed = self._parsed(store, found)
            sessions.append(self.build_session(parsed, process, found.directory or process.cwd, now))
            matched.add(process.pid)
            used.add(found.id)

    def detect(self, snapshots: list[ProcessSnapshot] | None = None, now: datetime | None = None) -> list[Session]:
        processes = self.find_processes(snapshots)
        if not processes:
            return []
        return self.match_processes(processes, now)
