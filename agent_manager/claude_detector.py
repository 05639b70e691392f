"""
Claude Code session detection.

Claude appends one JSON object per line to
``~/.claude/projects/<encoded-cwd>/<session-id>.jsonl``.  Sub-agents write
``agent-*.jsonl`` files next to their parent; those are counted, not listed.
"""

from __future__ import annotations

import logging
import os
from datetime import UTC, datetime

from .constants import (
    CLAUDE_ACP_MARKER,
    CLAUDE_PROFILE_DIRS,
    CLAUDE_PROJECTS_DIR,
    LAST_MESSAGE_MAX_LEN,
    SELF_PROCESS_MARKERS,
    SUBAGENT_ACTIVE_WINDOW,
    SUBAGENT_HEAD_LINES,
    TRANSCRIPT_TAIL_LINES,
)
from .correlator import (
    assign_by_recency,
    build_fallback_session,
    dedupe_by_pid,
    find_project_directories,
    infer_project_path,
)
from .models import (
    AgentProcess,
    AgentType,
    EventKind,
    MessageRole,
    ParsedTranscript,
    ProcessSnapshot,
    Session,
    SessionStatus,
    TranscriptEvent,
)
from .process_inventory import ProcessInventory, process_start_time
from .settings import extra_transcript_roots, load_config, thresholds_for
from .status import determine_status
from .transcripts import (
    extract_text,
    files_by_recency,
    github_url,
    has_block,
    is_interrupt_marker,
    is_placeholder,
    is_suppressed,
    live_git_branch,
    modified_time,
    parse_iso_timestamp,
    project_name,
    read_jsonl_head,
    read_jsonl_tail,
    select_last_message,
    select_last_user_message,
    truncate,
)

logger = logging.getLogger(__name__)

SUBAGENT_PREFIX = "agent-"


def is_claude_command(snapshot: ProcessSnapshot) -> bool:
    args = snapshot.first_arguments(1)
    if not args:
        return False
    first = args[0].lower()
    if first != "claude" and not first.endswith("/claude"):
        return False
    lowered = snapshot.cmdline.lower()
    return not any(marker in lowered for marker in SELF_PROCESS_MARKERS)


def entries_to_events(entries: list[dict]) -> list[TranscriptEvent]:
    """Map raw Claude transcript entries onto the shared event vocabulary."""
    events: list[TranscriptEvent] = []

    def add(kind: EventKind, ts, role: str = "", text: str | None = None, control: bool = False) -> None:
        events.append(
            TranscriptEvent(kind=kind, timestamp=ts, role=role, text=text, control=control, index=len(events))
        )

    for entry in entries:
        entry_type = str(entry.get("type") or "").lower()
        ts = parse_iso_timestamp(entry.get("timestamp"))
        body = entry.get("message") if isinstance(entry.get("message"), dict) else {}
        content = body.get("content")

        if entry_type == "user":
            if content is None:
                continue
            role = body.get("role") or "user"
            if has_block(content, "tool_result"):
                # Tool output is intermediate task activity, not a new prompt
                add(EventKind.TOOL_RESULT, ts, role)
                continue
            text = extract_text(content)
            if is_interrupt_marker(text):
                add(EventKind.INTERRUPT, ts, role, text, control=True)
            else:
                add(EventKind.USER_MESSAGE, ts, role, text, control=is_suppressed(text))
        elif entry_type == "assistant":
            if content is None:
                continue
            role = body.get("role") or "assistant"
            if has_block(content, "thinking"):
                add(EventKind.REASONING, ts, role)
            if has_block(content, "tool_use"):
                add(EventKind.TOOL_CALL, ts, role)
            text = extract_text(content)
            if text is not None and not is_suppressed(text):
                add(EventKind.ASSISTANT_MESSAGE, ts, role, text)
        elif entry_type == "progress":
            add(EventKind.TOOL_RESULT, ts)
        elif entry_type == "system":
            subtype = str(entry.get("subtype") or "").lower()
            if "stop" in subtype or "complete" in subtype:
                add(EventKind.TASK_COMPLETE, ts, control=True)
    return events


def parse_claude_transcript(path: str) -> ParsedTranscript | None:
    """Parse the recent tail of one Claude transcript; None when unusable."""
    entries = read_jsonl_tail(path, max_lines=TRANSCRIPT_TAIL_LINES)
    if not entries:
        return None
    parsed = ParsedTranscript(path=path, events=entries_to_events(entries), modified_at=modified_time(path))
    for entry in reversed(entries):
        if parsed.session_id is None and isinstance(entry.get("sessionId"), str):
            parsed.session_id = entry["sessionId"]
        if parsed.git_branch is None and isinstance(entry.get("gitBranch"), str) and entry["gitBranch"]:
            parsed.git_branch = entry["gitBranch"]
        if parsed.cwd is None and isinstance(entry.get("cwd"), str) and entry["cwd"]:
            parsed.cwd = entry["cwd"]
        if parsed.updated_at is None:
            parsed.updated_at = parse_iso_timestamp(entry.get("timestamp"))
    return parsed


def count_active_subagents(project_dir: str, parent_session_id: str, now: datetime | None = None) -> int:
    """Sub-agent transcripts written recently whose header names ``parent_session_id``."""
    now = now or datetime.now(UTC)
    try:
        names = os.listdir(project_dir)
    except OSError:
        return 0
    count = 0
    for name in names:
        if not name.startswith(SUBAGENT_PREFIX) or not name.endswith(".jsonl"):
            continue
        path = os.path.join(project_dir, name)
        modified = modified_time(path)
        if modified is None or (now - modified).total_seconds() >= SUBAGENT_ACTIVE_WINDOW:
            continue
        for entry in read_jsonl_head(path, SUBAGENT_HEAD_LINES):
            if isinstance(entry.get("sessionId"), str):
                if entry["sessionId"] == parent_session_id:
                    count += 1
                break
    return count


class ClaudeDetector:
    agent_type = AgentType.CLAUDE

    def __init__(self, inventory: ProcessInventory, config: dict | None = None, roots: list[str] | None = None):
        self.inventory = inventory
        self.config = load_config() if config is None else config
        self._roots = roots

    # -- process matching ---------------------------------------------------

    def matches_process(self, snapshot: ProcessSnapshot) -> bool:
        return is_claude_command(snapshot)

    def find_processes(self, snapshots: list[ProcessSnapshot] | None = None) -> list[AgentProcess]:
        """Top-level Claude processes, skipping nested and ACP-spawned ones."""
        snapshots = self.inventory.snapshot() if snapshots is None else snapshots
        by_pid = {s.pid: s for s in snapshots}
        candidates = [s for s in snapshots if self.matches_process(s)]
        claude_pids = {s.pid for s in candidates}

        processes = []
        for snap in candidates:
            if snap.parent_pid in claude_pids:
                continue
            parent = by_pid.get(snap.parent_pid)
            if parent is not None and CLAUDE_ACP_MARKER in parent.cmdline.lower():
                continue
            processes.append(
                AgentProcess(
                    pid=snap.pid,
                    cpu=snap.cpu,
                    memory_bytes=snap.memory_bytes,
                    cwd=self.inventory.working_directory(snap.pid),
                    parent_pid=snap.parent_pid,
                    group_id=snap.group_id,
                    cmdline=snap.cmdline,
                    tty=snap.tty,
                    active_session_file=self.inventory.newest_open_file(
                        snap.pid, "/.claude", ".jsonl", exclude_prefix=SUBAGENT_PREFIX
                    ),
                    started_at=process_start_time(snap),
                )
            )
        return processes

    # -- transcript store ---------------------------------------------------

    def transcript_roots(self) -> list[str]:
        if self._roots is not None:
            return list(self._roots)
        roots = [CLAUDE_PROJECTS_DIR]
        for profile in CLAUDE_PROFILE_DIRS:
            projects = os.path.join(profile, "projects")
            roots.append(projects if os.path.isdir(projects) else profile)
        config_dir = os.environ.get("CLAUDE_CONFIG_DIR")
        if config_dir:
            roots.append(os.path.join(os.path.expanduser(config_dir), "projects"))
        roots.extend(extra_transcript_roots(self.agent_type, self.config))
        seen: set[str] = set()
        return [r for r in roots if not (r in seen or seen.add(r))]

    def parse_transcript(self, path: str) -> ParsedTranscript | None:
        return parse_claude_transcript(path)

    # -- sessions -----------------------------------------------------------

    def build_session(
        self,
        parsed: ParsedTranscript,
        process: AgentProcess,
        project_path: str,
        now: datetime,
    ) -> Session:
        thresholds = thresholds_for(self.agent_type, self.config)
        status = determine_status(
            self.agent_type,
            parsed.events,
            process.cpu,
            now=now,
            thresholds=thresholds,
            file_modified_at=parsed.modified_at,
        )

        last = select_last_message(parsed.events)
        if status in (SessionStatus.THINKING, SessionStatus.PROCESSING) and (last is None or is_placeholder(last.text)):
            last = select_last_user_message(parsed.events) or last
        last_message = truncate(last.text, LAST_MESSAGE_MAX_LEN) if last and last.text else None

        session_id = parsed.session_id or os.path.splitext(os.path.basename(parsed.path))[0]
        activity = parsed.updated_at or parsed.modified_at or now
        return Session(
            id=session_id,
            agent_type=self.agent_type,
            project_name=project_name(project_path),
            project_path=project_path,
            status=status,
            last_activity_at=activity,
            pid=process.pid,
            git_branch=parsed.git_branch or live_git_branch(project_path),
            github_url=github_url(project_path),
            last_message=last_message,
            last_message_role=MessageRole.parse(last.role) if last_message else None,
            cpu=process.cpu,
            memory_bytes=process.memory_bytes,
            active_subagent_count=count_active_subagents(os.path.dirname(parsed.path), session_id, now),
            session_file_path=parsed.path,
        )

    def match_processes(self, processes: list[AgentProcess], now: datetime | None = None) -> list[Session]:
        """Correlate processes with transcripts, falling back when nothing fits."""
        now = now or datetime.now(UTC)
        sessions: list[Session] = []
        unmatched: list[AgentProcess] = []

        for process in processes:
            parsed = self.parse_transcript(process.active_session_file) if process.active_session_file else None
            if parsed is None:
                unmatched.append(process)
                continue
            project_path = process.cwd or parsed.cwd or infer_project_path(parsed.path) or "/"
            sessions.append(self.build_session(parsed, process, project_path, now))

        by_cwd: dict[str, list[AgentProcess]] = {}
        for process in unmatched:
            if process.cwd:
                by_cwd.setdefault(process.cwd, []).append(process)

        matched: set[int] = set()
        used: set[str] = {s.session_file_path for s in sessions if s.session_file_path}
        roots = self.transcript_roots()
        for cwd, group in by_cwd.items():
            files = [f for f in self._recent_transcripts(roots, cwd) if f not in used]
            for pid, path in assign_by_recency(group, files).items():
                process = next(p for p in group if p.pid == pid)
                parsed = self.parse_transcript(path)
                if parsed is None:
                    logger.debug("Transcript %s for PID %d could not be parsed", path, pid)
                    continue
                used.add(path)
                matched.add(pid)
                sessions.append(self.build_session(parsed, process, cwd, now))

        for process in unmatched:
            if process.pid not in matched:
                logger.debug("No Claude transcript for PID %d (cwd=%s)", process.pid, process.cwd)
                thresholds = thresholds_for(self.agent_type, self.config)
                sessions.append(build_fallback_session(self.agent_type, process, now, thresholds))
        return dedupe_by_pid(sessions)

    @staticmethod
    def _recent_transcripts(roots: list[str], cwd: str) -> list[str]:
        """Top-level transcripts of every directory matching ``cwd``, newest first."""
        return files_by_recency(find_project_directories(roots, cwd), ".jsonl", exclude_prefix=SUBAGENT_PREFIX)

    def detect(self, snapshots: list[ProcessSnapshot] | None = None, now: datetime | None = None) -> list[Session]:
        processes = self.find_processes(snapshots)
        if not processes:
            return []
        return self.match_processes(processes, now)
