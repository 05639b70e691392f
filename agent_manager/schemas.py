"""
Pydantic models for the API, the CLI ``--json`` output and the viewer stream.

Field names are snake_case in Python and camelCase on the wire, which gives
us automatic OpenAPI schema generation with the same shape the viewer reads.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .constants import SECONDS_PER_DAY, SECONDS_PER_HOUR, SECONDS_PER_MINUTE
from .models import GitDiffStats, ProcessSnapshot, RefreshSnapshot, Session, SessionsResult
from .transcripts import format_iso


def time_ago(dt: datetime | None, now: datetime | None = None) -> str:
    """Human-readable relative time for a timestamp."""
    if dt is None:
        return "unknown"
    now = now or datetime.now(UTC)
    seconds = max(0, int((now - dt).total_seconds()))
    if seconds < SECONDS_PER_MINUTE:
        return f"{seconds}s ago"
    if seconds < SECONDS_PER_HOUR:
        return f"{seconds // SECONDS_PER_MINUTE}m ago"
    if seconds < SECONDS_PER_DAY:
        return f"{seconds // SECONDS_PER_HOUR}h ago"
    return f"{seconds // SECONDS_PER_DAY}d ago"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Sessions (/api/sessions, stream) ─────────────────────────────────────────


class SessionResponse(CamelModel):
    """One detected agent session."""

    id: str
    render_id: str
    agent_type: str
    project_name: str
    project_path: str
    git_branch: str | None = None
    github_url: str | None = None
    status: str
    last_message: str | None = None
    last_message_role: str | None = None
    last_activity_at: str
    time_ago: str = ""
    pid: int
    cpu_usage: float = 0.0
    memory_bytes: int = 0
    active_subagent_count: int = 0
    is_background: bool = False
    session_file_path: str | None = None

    @classmethod
    def from_session(cls, session: Session, now: datetime | None = None) -> SessionResponse:
        return cls(
            id=session.id,
            render_id=session.render_id,
            agent_type=session.agent_type.value,
            project_name=session.project_name,
            project_path=session.project_path,
            git_branch=session.git_branch,
            github_url=session.github_url,
            status=session.status.value,
            last_message=session.last_message,
            last_message_role=session.last_message_role.value if session.last_message_role else None,
            last_activity_at=format_iso(session.last_activity_at),
            time_ago=time_ago(session.last_activity_at, now),
            pid=session.pid,
            cpu_usage=session.cpu,
            memory_bytes=session.memory_bytes,
            active_subagent_count=session.active_subagent_count,
            is_background=session.is_background,
            session_file_path=session.session_file_path,
        )


class SessionsResponse(CamelModel):
    """Aggregate detection result; one of these per stream line."""

    sessions: list[SessionResponse] = Field(default_factory=list)
    background_sessions: list[SessionResponse] = Field(default_factory=list)
    total_count: int = 0
    waiting_count: int = 0
    agent_counts: dict[str, int] = Field(default_factory=dict)
    generation: int | None = None
    refreshed_at: str | None = None
    error: str | None = None

    @classmethod
    def from_result(cls, result: SessionsResult, now: datetime | None = None) -> SessionsResponse:
        return cls(
            sessions=[SessionResponse.from_session(s, now) for s in result.sessions],
            background_sessions=[SessionResponse.from_session(s, now) for s in result.background_sessions],
            total_count=result.total_count,
            waiting_count=result.waiting_count,
            agent_counts={agent.value: count for agent, count in result.agent_counts.items()},
        )

    @classmethod
    def from_snapshot(cls, snapshot: RefreshSnapshot, now: datetime | None = None) -> SessionsResponse:
        response = cls.from_result(snapshot.result, now)
        response.generation = snapshot.generation
        response.refreshed_at = format_iso(snapshot.refreshed_at)
        response.error = snapshot.error
        return response


class VisibilityCommand(CamelModel):
    """Viewer control line: show or hide the floating window."""

    command: Literal["setVisibility"] = "setVisibility"
    is_visible: bool


# ── Projects (/api/projects) ─────────────────────────────────────────────────


class DiffStatsResponse(CamelModel):
    additions: int = 0
    deletions: int = 0

    @classmethod
    def from_stats(cls, stats: GitDiffStats) -> DiffStatsResponse:
        return cls(additions=stats.additions, deletions=stats.deletions)


class ProjectResponse(CamelModel):
    """Sessions sharing one project path, with display decorations applied."""

    project_path: str
    project_name: str
    display_name: str
    url: str | None = None
    git_branch: str | None = None
    diff_stats: DiffStatsResponse | None = None
    sessions: list[SessionResponse] = Field(default_factory=list)


# ── Process map (/api/processes) ─────────────────────────────────────────────


class ProcessResponse(CamelModel):
    """A raw process-table row of a detected agent process."""

    pid: int
    parent_pid: int = 0
    group_id: int = 0
    cpu_usage: float = 0.0
    memory_bytes: int = 0
    tty: str = ""
    state: str = ""
    elapsed: str = ""
    cmdline: str = ""
    agent_type: str

    @classmethod
    def from_snapshot(cls, snap: ProcessSnapshot, agent_type: str) -> ProcessResponse:
        return cls(
            pid=snap.pid,
            parent_pid=snap.parent_pid,
            group_id=snap.group_id,
            cpu_usage=snap.cpu,
            memory_bytes=snap.memory_bytes,
            tty=snap.tty,
            state=snap.state,
            elapsed=snap.elapsed,
            cmdline=snap.cmdline,
            agent_type=agent_type,
        )


# ── Version (/api/version) ──────────────────────────────────────────────────


class VersionResponse(CamelModel):
    current: str


# ── Generic ─────────────────────────────────────────────────────────────────


class ActionResponse(CamelModel):
    """Generic success/failure response for POST actions."""

    success: bool
    message: str = ""


class FocusRequest(CamelModel):
    project_path: str | None = None


class OpenProjectRequest(CamelModel):
    path: str


class ServerInfoResponse(CamelModel):
    pid: int
    port: str
