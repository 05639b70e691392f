"""
Centralised constants for the Agent Manager X engine.

All magic numbers, timeouts, file-system paths, and hardcoded lists live
here so they are easy to find, tune, and test.  Status thresholds can be
overridden per agent from the user config file (see ``settings.py``).
"""

from __future__ import annotations

import os

# ── Network & server ──────────────────────────────────────────────────────────

DEFAULT_PORT = 5112
"""Default HTTP port for the dashboard server."""

LOCALHOST = "127.0.0.1"
"""Bind address; the dashboard is local-only."""

# ── File-system paths ─────────────────────────────────────────────────────────

HOME_DIR = os.path.expanduser("~")

CONFIG_DIR = os.path.join(HOME_DIR, ".agent-manager-x")
CONFIG_PATH = os.environ.get("AGENT_MANAGER_CONFIG") or os.path.join(CONFIG_DIR, "config.json")

CLAUDE_PROJECTS_DIR = os.path.join(HOME_DIR, ".claude", "projects")
CLAUDE_PROFILE_DIRS: tuple[str, ...] = (
    os.path.join(HOME_DIR, ".claude-profiles", "work"),
    os.path.join(HOME_DIR, ".claude-profiles", "personal"),
)

CODEX_SESSIONS_DIR = os.path.join(HOME_DIR, ".codex", "sessions")
CODEX_PROFILE_DIRS: tuple[str, ...] = (
    os.path.join(HOME_DIR, ".codex-profiles", "work"),
    os.path.join(HOME_DIR, ".codex-profiles", "personal"),
)

OPENCODE_STORAGE_DIR = os.path.join(HOME_DIR, ".local", "share", "opencode", "storage")

# ── Polling & cache intervals (seconds) ──────────────────────────────────────

POLL_INTERVAL = 3.0
"""How often the refresh coordinator's timer fires."""

PROCESS_CACHE_TTL = 0.8
"""How long one ``ps`` snapshot is shared between detectors."""

DIFF_STATS_CACHE_TTL = 12.0
"""How long per-project git diff stats are reused."""

GITHUB_URL_CACHE_TTL = 60.0
"""How long a project's ``origin`` remote URL is reused."""

# ── Subprocess timeouts (seconds) ────────────────────────────────────────────

PS_TIMEOUT = 3.0
"""Timeout for the ``ps`` process listing."""

LSOF_CWD_TIMEOUT = 1.5
"""Timeout for the ``lsof`` working-directory lookup."""

LSOF_FILES_TIMEOUT = 1.8
"""Timeout for the ``lsof`` open-file listing."""

GIT_REMOTE_TIMEOUT = 1.5
"""Timeout for ``git remote get-url origin``."""

GIT_DIFF_TIMEOUT = 2.5
"""Timeout for ``git diff --numstat HEAD``."""

OSASCRIPT_TIMEOUT = 3.0
"""Timeout for macOS AppleScript focus commands."""

KILL_SETTLE_DELAY = 0.05
"""Pause between kill escalation steps."""

# ── Buffer & truncation sizes ────────────────────────────────────────────────

TRANSCRIPT_TAIL_BUFFER = 524_288
"""Bytes to read from the end of a JSONL transcript."""

TRANSCRIPT_TAIL_LINES = 250
"""Max trailing transcript lines fed to the status state machine."""

SUBAGENT_HEAD_LINES = 5
"""Lines read from the top of a sub-agent transcript to find its parent id."""

LAST_MESSAGE_MAX_LEN = 5000
"""Max characters for ``Session.last_message``."""

OPENCODE_PREVIEW_MAX_LEN = 200
"""Max characters for an OpenCode message preview."""

# ── Correlation limits ───────────────────────────────────────────────────────

CODEX_FILES_PER_PROCESS = 12
CODEX_MAX_PARSE_FILES = 120
"""Bounded rollout scan: files parsed per unresolved process, and overall."""

CODEX_START_SLACK = 5.0
"""Rollouts last modified earlier than process start minus this are skipped."""

SUBAGENT_ACTIVE_WINDOW = 30.0
"""A sub-agent transcript modified within this many seconds counts as active."""

# ── Status thresholds (seconds unless noted) ─────────────────────────────────

PENDING_WINDOW = 180.0
"""A pending task whose latest signal is older than this no longer reads as busy."""

INTERRUPT_WINDOW = 90.0
"""A terminal/interrupt event this recent forces ``waiting``."""

CPU_ACTIVE_THRESHOLD = 15.0
"""cpu% above which a process counts as actively computing."""

CPU_THINKING_THRESHOLD = 5.0
"""cpu% above which a transcript-less process reads as ``thinking``."""

FILE_RECENT_WINDOW = 3.0
"""A transcript written within this window counts as live activity."""

IDLE_AFTER = 5 * 60.0
STALE_AFTER = 10 * 60.0
"""Age ladder on last activity: waiting, then idle, then stale."""

# ── Transcript vocabulary ─────────────────────────────────────────────────────

LOCAL_CLAUDE_COMMANDS: frozenset[str] = frozenset(
    {
        "/clear",
        "/compact",
        "/config",
        "/cost",
        "/doctor",
        "/help",
        "/init",
        "/login",
        "/logout",
        "/memory",
        "/model",
        "/permissions",
        "/pr-comments",
        "/review",
        "/status",
        "/terminal-setup",
        "/vim",
    }
)
"""Slash commands Claude handles locally without starting a model turn."""

SUPPRESSED_PREFIXES: tuple[str, ...] = (
    "<environment_context>",
    "<permissions instructions>",
    "# agents.md instructions",
    "<turn_aborted",
    "<command-name>",
    "<command-message>",
    "<local-command-stdout>",
    "<local-command-stderr>",
    "<local-command-caveat>",
    "[request interrupted by user",
)
"""Lower-cased prefixes of control/sentinel text that is never a preview."""

INTERRUPT_MARKER = "[Request interrupted by user"
"""Claude writes this as a user-role message when a turn is aborted."""

EMPTY_MESSAGE_PLACEHOLDERS: frozenset[str] = frozenset({"", "(no content)", "no content"})

# ── Process names ────────────────────────────────────────────────────────────

SELF_PROCESS_MARKERS: tuple[str, ...] = ("agent-manager-x", "agent_manager.agent_dashboard")
"""Command-line substrings identifying this tool's own processes."""

CLAUDE_ACP_MARKER = "claude-code-acp"
CODEX_HELPER_SUBCOMMANDS: frozenset[str] = frozenset({"app-server", "mcp-server", "proto"})

# ── macOS terminal focus ──────────────────────────────────────────────────────

MACOS_FOCUS_APPS: tuple[str, ...] = ("iTerm2", "Terminal")
"""Terminal apps probed (in order) when focusing a session by tty."""

DEFAULT_EDITOR_COMMAND = "code"
"""Editor used by ``open_project`` unless overridden in the config file."""

# ── Time unit divisors (for time_ago display) ─────────────────────────────────

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400

# ── Viewer surfaces ───────────────────────────────────────────────────────────

REFRESH_NOW_TIMEOUT = 10.0
"""How long ``POST /api/refresh`` waits for the pass it triggered."""

STREAM_INTERVAL = 3.0
"""Default seconds between ``agent-manager stream`` lines."""

PID_FILE_NAME = "dashboard.pid"
"""PID file for the background server, kept under ``CONFIG_DIR``."""
