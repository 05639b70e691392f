"""
Codex CLI session detection.

Codex writes one rollout per conversation under
``<codex-home>/sessions/YYYY/MM/DD/rollout-<timestamp>-<id>.jsonl``.  A
running process usually holds its rollout open, which is the strongest
signal; otherwise rollouts are matched to processes by working directory.
"""

from __future__ import annotations

import logging
import math
import os
from datetime import UTC, datetime, timedelta

from .constants import (
    CODEX_FILES_PER_PROCESS,
    CODEX_HELPER_SUBCOMMANDS,
    CODEX_MAX_PARSE_FILES,
    CODEX_PROFILE_DIRS,
    CODEX_SESSIONS_DIR,
    CODEX_START_SLACK,
    LAST_MESSAGE_MAX_LEN,
    SELF_PROCESS_MARKERS,
    TRANSCRIPT_TAIL_LINES,
)
from .correlator import build_fallback_session, is_low_signal
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
    github_url,
    is_suppressed,
    live_git_branch,
    modified_time,
    parse_iso_timestamp,
    project_name,
    read_jsonl_head,
    read_jsonl_tail,
    select_last_message,
    truncate,
)

logger = logging.getLogger(__name__)

SESSIONS_MARKER = "/sessions/"

# event_msg payload type -> (kind, control)
_EVENT_KINDS: dict[str, tuple[EventKind, bool]] = {
    "task_started": (EventKind.TASK_STARTED, False),
    "agent_reasoning": (EventKind.REASONING, False),
    "task_complete": (EventKind.TASK_COMPLETE, True),
    "item_completed": (EventKind.TASK_COMPLETE, True),
    "turn_aborted": (EventKind.INTERRUPT, True),
    "thread_rolled_back": (EventKind.ROLLBACK, True),
}

# response_item payload type -> kind
_RESPONSE_KINDS: dict[str, EventKind] = {
    "function_call": EventKind.TOOL_CALL,
    "custom_tool_call": EventKind.TOOL_CALL,
    "function_call_output": EventKind.TOOL_RESULT,
    "custom_tool_call_output": EventKind.TOOL_RESULT,
    "reasoning": EventKind.REASONING,
}


def codex_subcommand(snapshot: ProcessSnapshot) -> str | None:
    args = snapshot.first_arguments(3)
    return args[1].lower() if len(args) > 1 else None


def is_codex_command(snapshot: ProcessSnapshot) -> bool:
    args = snapshot.first_arguments(1)
    if not args:
        return False
    first = args[0].lower()
    if first != "codex" and not first.endswith("/codex"):
        return False
    lowered = snapshot.cmdline.lower()
    return not any(marker in lowered for marker in SELF_PROCESS_MARKERS)


def infer_data_home(session_path: str | None) -> str | None:
    """``/x/.codex/sessions/2025/...`` -> ``/x/.codex``."""
    if not session_path or SESSIONS_MARKER not in session_path:
        return None
    prefix = session_path.split(SESSIONS_MARKER, 1)[0]
    return prefix or None


def sessions_directory(root: str) -> str:
    """A codex home or profile directory resolved to its ``sessions`` folder."""
    sessions = os.path.join(root, "sessions")
    return sessions if os.path.isdir(sessions) else root


def parse_limit(process_count: int) -> int:
    """How many rollouts to parse for ``process_count`` unresolved processes."""
    minimum = max(process_count, 2)
    return min(max(process_count * CODEX_FILES_PER_PROCESS, minimum), CODEX_MAX_PARSE_FILES)


def extract_cwd_from_environment(text: str) -> str | None:
    start = text.find("<cwd>")
    if start < 0:
        return None
    end = text.find("</cwd>", start)
    if end < 0:
        return None
    value = text[start + len("<cwd>") : end].strip()
    return value or None


def select_best_cwd(*candidates: str | None) -> str | None:
    """First non-empty candidate that isn't ``/``; ``/`` only as a last resort."""
    values = [c.strip() for c in candidates if c and c.strip()]
    for value in values:
        if value != "/":
            return value
    return values[0] if values else None


def _payload_text(payload: dict) -> str | None:
    content = payload.get("content")
    if not isinstance(content, list):
        return None
    chunks = [
        item["text"]
        for item in content
        if isinstance(item, dict)
        and item.get("type") in ("input_text", "output_text")
        and isinstance(item.get("text"), str)
        and item["text"].strip()
    ]
    return "\n".join(chunks) if chunks else None


def parse_codex_transcript(path: str) -> ParsedTranscript | None:
    """Parse a rollout: metadata from its header, events from its tail."""
    head = read_jsonl_head(path, 5)
    tail = read_jsonl_tail(path, max_lines=TRANSCRIPT_TAIL_LINES)
    if not head and not tail:
        return None

    parsed = ParsedTranscript(path=path, modified_at=modified_time(path))
    cwd_meta = cwd_turn = cwd_env = None
    for entry in head:
        if entry.get("type") == "session_meta" and isinstance(entry.get("payload"), dict):
            payload = entry["payload"]
            parsed.session_id = parsed.session_id or payload.get("id")
            cwd_meta = cwd_meta or payload.get("cwd")
            git = payload.get("git")
            if isinstance(git, dict) and isinstance(git.get("branch"), str):
                parsed.git_branch = git["branch"]

    events: list[TranscriptEvent] = []

    def add(kind: EventKind, ts, role: str = "", text: str | None = None, control: bool = False) -> None:
        events.append(
            TranscriptEvent(kind=kind, timestamp=ts, role=role, text=text, control=control, index=len(events))
        )

    for entry in tail:
        line_type = entry.get("type")
        payload = entry.get("payload")
        if not isinstance(payload, dict):
            continue
        ts = parse_iso_timestamp(entry.get("timestamp"))
        payload_type = payload.get("type") or ""

        if line_type == "session_meta":
            parsed.session_id = parsed.session_id or payload.get("id")
            cwd_meta = cwd_meta or payload.get("cwd")
        elif line_type == "turn_context":
            if isinstance(payload.get("cwd"), str) and payload["cwd"]:
                cwd_turn = payload["cwd"]
        elif line_type == "response_item":
            if payload_type in _RESPONSE_KINDS:
                add(_RESPONSE_KINDS[payload_type], ts, "assistant")
            elif payload_type == "message":
                role = payload.get("role") or ""
                text = _payload_text(payload)
                if text is None:
                    continue
                cwd_env = extract_cwd_from_environment(text) or cwd_env
                if role == "assistant":
                    add(EventKind.ASSISTANT_MESSAGE, ts, role, text.strip(), control=is_suppressed(text))
                elif role == "user":
                    add(EventKind.USER_MESSAGE, ts, role, text.strip(), control=is_suppressed(text))
        elif line_type == "event_msg":
            if payload_type == "user_message":
                message = payload.get("message") if isinstance(payload.get("message"), str) else None
                if message:
                    cwd_env = extract_cwd_from_environment(message) or cwd_env
                    message = message.strip()
                add(EventKind.USER_MESSAGE, ts, "user", message, control=is_suppressed(message))
            elif payload_type == "agent_message":
                message = payload.get("message") if isinstance(payload.get("message"), str) else None
                add(EventKind.ASSISTANT_MESSAGE, ts, "assistant", message, control=is_suppressed(message))
            elif payload_type in _EVENT_KINDS:
                kind, control = _EVENT_KINDS[payload_type]
                add(kind, ts, control=control)

    parsed.events = events
    parsed.cwd = select_best_cwd(cwd_turn, cwd_env, cwd_meta)
    newest = newest_event(events)
    parsed.updated_at = newest.timestamp if newest else None
    return parsed


class CodexDetector:
    agent_type = AgentType.CODEX

    def __init__(self, inventory: ProcessInventory, config: dict | None = None, roots: list[str] | None = None):
        self.inventory = inventory
        self.config = load_config() if config is None else config
        self._roots = roots

    def matches_process(self, snapshot: ProcessSnapshot) -> bool:
        return is_codex_command(snapshot)

    def find_processes(self, snapshots: list[ProcessSnapshot] | None = None) -> list[AgentProcess]:
        snapshots = self.inventory.snapshot() if snapshots is None else snapshots
        processes = []
        for snap in snapshots:
            if not self.matches_process(snap):
                continue
            active = self.inventory.newest_open_file(snap.pid, SESSIONS_MARKER, ".jsonl")
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
                    active_session_file=active,
                    data_home=infer_data_home(active),
                    started_at=process_start_time(snap),
                    is_helper=codex_subcommand(snap) in CODEX_HELPER_SUBCOMMANDS,
                )
            )
        return processes

    def transcript_roots(self, processes: list[AgentProcess] | None = None) -> list[str]:
        """Rollout roots: data homes seen on live processes, else the defaults."""
        if self._roots is not None:
            return list(self._roots)
        roots = [sessions_directory(p.data_home) for p in processes or [] if p.data_home]
        if not roots:
            roots = [CODEX_SESSIONS_DIR]
            codex_home = os.environ.get("CODEX_HOME")
            if codex_home:
                roots.append(sessions_directory(os.path.expanduser(codex_home)))
            roots.extend(sessions_directory(p) for p in CODEX_PROFILE_DIRS)
        roots.extend(extra_transcript_roots(self.agent_type, self.config))
        seen: set[str] = set()
        return [r for r in roots if not (r in seen or seen.add(r))]

    def parse_transcript(self, path: str) -> ParsedTranscript | None:
        return parse_codex_transcript(path)

    def collect_rollouts(self, roots: list[str], limit: int) -> list[str]:
        """Newest rollouts across ``roots``, at most ``limit`` of them.

        Directory names sort by date, so walking them in reverse name order
        reaches recent rollouts first and the walk can stop early.
        """
        max_candidates = max(limit * 3, limit)
        per_root = math.ceil(max_candidates / len(roots)) if roots else max_candidates
        candidates: list[tuple[float, str]] = []
        seen: set[str] = set()

        def _walk(directory: str, found: list[tuple[float, str]]) -> None:
            if len(found) >= per_root:
                return
            try:
                with os.scandir(directory) as it:
                    entries = sorted(it, key=lambda e: e.name, reverse=True)
            except OSError:
                return
            for entry in entries:
                if len(found) >= per_root:
                    return
                if entry.name.startswith("."):
                    continue
                try:
                    if entry.is_dir():
                        _walk(entry.path, found)
                        continue
                    if not entry.name.endswith(".jsonl") or entry.path in seen:
                        continue
                    seen.add(entry.path)
                    found.append((entry.stat().st_mtime, entry.path))
                except OSError:
                    continue

        for root in roots:
            if os.path.isdir(root):
                found: list[tuple[float, str]] = []
                _walk(root, found)
                candidates.extend(found)
        candidates.sort(reverse=True)
        return [path for _, path in candidates[:limit]]

    def build_session(self, parsed: ParsedTranscript, process: AgentProcess, now: datetime) -> Session:
        project_path = parsed.cwd or process.cwd or "/"
        status = determine_status(
            self.agent_type,
            parsed.events,
            process.cpu,
            now=now,
            thresholds=thresholds_for(self.agent_type, self.config),
            file_modified_at=parsed.modified_at,
        )
        last = select_last_message(parsed.events)
        last_message = truncate(last.text.strip(), LAST_MESSAGE_MAX_LEN) if last and last.text else None
        stem = os.path.splitext(os.path.basename(parsed.path))[0]
        return Session(
            id=stem or parsed.session_id or f"{self.agent_type.value}-{process.pid}",
            agent_type=self.agent_type,
            project_name=project_name(project_path),
            project_path=project_path,
            status=status,
            last_activity_at=parsed.updated_at or parsed.modified_at or now,
            pid=process.pid,
            git_branch=live_git_branch(project_path) or parsed.git_branch,
            github_url=github_url(project_path),
            last_message=last_message,
            last_message_role=MessageRole.parse(last.role) if last_message else None,
            cpu=process.cpu,
            memory_bytes=process.memory_bytes,
            is_background=process.is_helper or is_low_signal(project_path, last_message, process.cpu),
            session_file_path=parsed.path,
        )

    def _fallback(self, process: AgentProcess, now: datetime) -> Session:
        path = process.cwd or "/"
        background = process.is_helper or is_low_signal(path, None, process.cpu)
        thresholds = thresholds_for(self.agent_type, self.config)
        return build_fallback_session(self.agent_type, process, now, thresholds, background=background)

    def match_processes(self, processes: list[AgentProcess], now: datetime | None = None) -> list[Session]:
        now = now or datetime.now(UTC)
        sessions: list[Session] = []
        unresolved: list[AgentProcess] = []
        used: set[str] = set()

        for process in processes:
            parsed = self.parse_transcript(process.active_session_file) if process.active_session_file else None
            if parsed is not None:
                used.add(parsed.path)
                sessions.append(self.build_session(parsed, process, now))
            elif process.is_helper:
                # Helpers serve editors and never own a rollout by directory
                sessions.append(self._fallback(process, now))
            else:
                unresolved.append(process)

        if not unresolved:
            return sessions

        roots = self.transcript_roots(processes)
        rollouts = [p for p in self.collect_rollouts(roots, parse_limit(len(unresolved))) if p not in used]
        parsed_files = [p for p in (self.parse_transcript(path) for path in rollouts) if p is not None]

        by_cwd: dict[str, list[ParsedTranscript]] = {}
        for parsed in parsed_files:
            if parsed.cwd:
                by_cwd.setdefault(parsed.cwd, []).append(parsed)
        epoch = datetime.fromtimestamp(0, UTC)
        for queue in by_cwd.values():
            queue.sort(key=lambda p: p.modified_at or epoch, reverse=True)

        for process in unresolved:
            assigned = None
            for candidate in by_cwd.get(process.cwd or "", []):
                if candidate.path in used:
                    continue
                if process.started_at is not None and candidate.modified_at is not None:
                    # Only rollouts written since this process started
                    if candidate.modified_at < process.started_at - timedelta(seconds=CODEX_START_SLACK):
                        continue
                assigned = candidate
                break
            if assigned is None:
                logger.debug("No Codex rollout for PID %d (cwd=%s)", process.pid, process.cwd)
                sessions.append(self._fallback(process, now))
                continue
            used.add(assigned.path)
            sessions.append(self.build_session(assigned, process, now))
        return sessions

    def detect(self, snapshots: list[ProcessSnapshot] | None = None, now: datetime | None = None) -> list[Session]:
        processes = self.find_processes(snapshots)
        if not processes:
            return []
        return self.match_processes(processes, now)
