"""
Agent Manager X - FastAPI application.

Serves the live session list for every detected coding agent with:
  - Foreground and background session lists, stably ordered between polls
  - Project grouping with branch and uncommitted diff stats
  - Kill, focus and open-project actions
  - Auto-generated OpenAPI docs at /docs

The refresh coordinator polls in the background while the app is running;
request handlers only ever read its latest published snapshot.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .__version__ import __version__
from .actions import SessionActions
from .aggregator import SessionDetectionService
from .constants import DEFAULT_PORT, REFRESH_NOW_TIMEOUT
from .diff_stats import DiffStatsCache
from .errors import ActionFailure, ScanFailure
from .grouping import group_sessions
from .models import Session
from .process_inventory import ProcessInventory
from .refresh import RefreshCoordinator
from .schemas import (
    ActionResponse,
    DiffStatsResponse,
    FocusRequest,
    OpenProjectRequest,
    ProcessResponse,
    ProjectResponse,
    ServerInfoResponse,
    SessionResponse,
    SessionsResponse,
    VersionResponse,
)
from .settings import load_config

logger = logging.getLogger(__name__)

# ── Engine wiring ────────────────────────────────────────────────────────────

_inventory = ProcessInventory()
_service = SessionDetectionService(_inventory)
_diff_stats = DiffStatsCache()
_coordinator = RefreshCoordinator(_service, diff_stats=_diff_stats)
_actions = SessionActions(_inventory)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _coordinator.start()
    try:
        yield
    finally:
        _coordinator.stop()
        _diff_stats.shutdown()


app = FastAPI(
    title="Agent Manager X",
    version=__version__,
    description="Monitor Claude, Codex and OpenCode sessions in real-time.",
    lifespan=lifespan,
)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _find_session(pid: int) -> Session | None:
    """Look a pid up in the latest published result, background included."""
    result = _coordinator.snapshot.result
    for session in (*result.sessions, *result.background_sessions):
        if session.pid == pid:
            return session
    return None


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"success": False, "message": message}, status_code=status_code)


# ── API Routes ───────────────────────────────────────────────────────────────


@app.get("/api/sessions", response_model=SessionsResponse)
def api_sessions():
    """Latest detection result, without waiting for a new pass."""
    return SessionsResponse.from_snapshot(_coordinator.snapshot)


@app.post("/api/refresh", response_model=SessionsResponse)
def api_refresh():
    """Trigger a detection pass and return its result."""
    return SessionsResponse.from_snapshot(_coordinator.refresh_now(REFRESH_NOW_TIMEOUT))


@app.get("/api/projects", response_model=list[ProjectResponse])
def api_projects():
    """Foreground sessions grouped by project path."""
    config = load_config()
    groups = group_sessions(_coordinator.snapshot.result.sessions, _diff_stats.stats(), config)
    return [
        ProjectResponse(
            project_path=group.project_path,
            project_name=group.project_name,
            display_name=group.display_name,
            url=group.url,
            git_branch=group.git_branch,
            diff_stats=DiffStatsResponse.from_stats(group.diff_stats) if group.diff_stats else None,
            sessions=[SessionResponse.from_session(s) for s in group.sessions],
        )
        for group in groups
    ]


@app.get("/api/processes", response_model=list[ProcessResponse])
def api_processes():
    """Raw process-table rows each detector recognises as its agent."""
    try:
        snapshots = _inventory.snapshot()
    except ScanFailure as e:
        return JSONResponse({"error": str(e)}, status_code=503)
    processes = []
    for detector in _service.detectors:
        for snap in snapshots:
            if detector.matches_process(snap):
                processes.append(ProcessResponse.from_snapshot(snap, detector.agent_type.value))
    return processes


@app.get("/api/diff-stats", response_model=dict[str, DiffStatsResponse])
def api_diff_stats():
    """Latest applied diff stats keyed by project path."""
    return {path: DiffStatsResponse.from_stats(stats) for path, stats in _diff_stats.stats().items()}


@app.post("/api/kill/{pid}", response_model=ActionResponse)
def api_kill(pid: int):
    """Kill a session process together with its descendants."""
    if _find_session(pid) is None:
        return _error("Session not found among running processes", 404)
    try:
        _actions.kill_session(pid)
    except ActionFailure as e:
        logger.warning("Kill of PID %d failed: %s", pid, e)
        return _error(str(e), 500)
    _coordinator.trigger()
    return {"success": True, "message": f"Killed PID {pid}"}


@app.post("/api/focus/{pid}", response_model=ActionResponse)
def api_focus(pid: int, body: FocusRequest | None = None):
    """Focus the terminal window running a session."""
    session = _find_session(pid)
    if session is None:
        return _error("Session not found among running processes", 404)
    project_path = (body.project_path if body else None) or session.project_path
    success, message = _actions.focus_session(pid, project_path)
    return {"success": success, "message": message}


@app.post("/api/open", response_model=ActionResponse)
def api_open(body: OpenProjectRequest):
    """Open a project directory in the configured editor."""
    try:
        _actions.open_project(body.path)
    except ActionFailure as e:
        return _error(str(e), 500)
    return {"success": True, "message": f"Opened {body.path}"}


@app.get("/api/server-info", response_model=ServerInfoResponse)
def server_info(request: Request):
    """Return server metadata including PID."""
    host = request.headers.get("host", f"localhost:{DEFAULT_PORT}")
    return {"pid": os.getpid(), "port": host.split(":")[-1]}


@app.get("/api/version", response_model=VersionResponse)
def api_version():
    return {"current": __version__}
