"""Typed data models for the Agent Manager X engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class AgentType(StrEnum):
    """The agent families the engine knows how to detect."""

    CLAUDE = "claude"
    CODEX = "codex"
    OPENCODE = "opencode"


AGENT_ORDER: tuple[AgentType, ...] = (AgentType.CLAUDE, AgentType.CODEX, AgentType.OPENCODE)


class SessionStatus(StrEnum):
    THINKING = "thinking"
    PROCESSING = "processing"
    WAITING = "waiting"
    IDLE = "idle"
    STALE = "stale"


class EventKind(StrEnum):
    """Normalized transcript event vocabulary shared by every parser."""

    USER_MESSAGE = "user_message"
    ASSISTANT_MESSAGE = "assistant_message"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    REASONING = "reasoning"
    TASK_STARTED = "task_started"
    TASK_COMPLETE = "task_complete"
    INTERRUPT = "interrupt"
    ROLLBACK = "rollback"


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def parse(cls, raw: str | None) -> MessageRole | None:
        if not raw:
            return None
        try:
            return cls(raw.lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class ProcessSnapshot:
    """One row of the OS process table, captured for a single poll cycle."""

    pid: int
    parent_pid: int = 0
    group_id: int = 0
    cpu: float = 0.0
    memory_bytes: int = 0
    tty: str = ""
    state: str = ""
    elapsed: str = ""
    cmdline: str = ""

    @property
    def executable_name(self) -> str:
        first = self.cmdline.split(None, 1)[0] if self.cmdline.strip() else ""
        return os.path.basename(first).lower()

    def first_arguments(self, max_count: int = 4) -> list[str]:
        return self.cmdline.split()[:max_count]


@dataclass
class AgentProcess:
    """A detector-matched process enriched with cwd and open-file signals."""

    pid: int
    cpu: float = 0.0
    memory_bytes: int = 0
    cwd: str | None = None
    parent_pid: int = 0
    group_id: int = 0
    cmdline: str = ""
    tty: str = ""
    active_session_file: str | None = None
    data_home: str | None = None
    started_at: datetime | None = None
    is_helper: bool = False


@dataclass(frozen=True)
class TranscriptEvent:
    """A single normalized event parsed from an agent transcript."""

    kind: EventKind
    timestamp: datetime | None = None
    role: str = ""
    text: str | None = None
    control: bool = False
    index: int = 0


@dataclass
class ParsedTranscript:
    """Events plus metadata recovered from one transcript file or store entry."""

    path: str = ""
    events: list[TranscriptEvent] = field(default_factory=list)
    session_id: str | None = None
    cwd: str | None = None
    git_branch: str | None = None
    title: str | None = None
    modified_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class PendingTaskState:
    """Trigger-vs-terminal summary of an event stream. Never persisted."""

    latest_trigger: datetime | None = None
    latest_terminal: datetime | None = None
    latest_signal: datetime | None = None
    is_pending: bool = False


@dataclass(frozen=True)
class Session:
    """The published unit: one running agent process and its conversation."""

    id: str
    agent_type: AgentType
    project_name: str
    project_path: str
    status: SessionStatus
    last_activity_at: datetime
    pid: int
    git_branch: str | None = None
    github_url: str | None = None
    last_message: str | None = None
    last_message_role: MessageRole | None = None
    cpu: float = 0.0
    memory_bytes: int = 0
    active_subagent_count: int = 0
    is_background: bool = False
    session_file_path: str | None = None

    @property
    def render_id(self) -> str:
        """Unique key for lists; ``id`` alone may repeat across processes."""
        return f"{self.agent_type.value}:{self.pid}:{self.id}"


@dataclass(frozen=True)
class SessionsResult:
    """Aggregate result of one detection pass."""

    sessions: list[Session] = field(default_factory=list)
    background_sessions: list[Session] = field(default_factory=list)
    total_count: int = 0
    waiting_count: int = 0
    agent_counts: dict[AgentType, int] = field(default_factory=dict)


@dataclass(frozen=True)
class RefreshSnapshot:
    """What the refresh coordinator publishes after each pass."""

    result: SessionsResult
    generation: int
    refreshed_at: datetime
    error: str | None = None


@dataclass(frozen=True)
class GitDiffStats:
    additions: int = 0
    deletions: int = 0


@dataclass
class ProcessCache:
    """TTL cache for the process table snapshot."""

    data: list[ProcessSnapshot] = field(default_factory=list)
    time: float = 0.0
    valid: bool = False
