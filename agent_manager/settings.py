"""User configuration for Agent Manager X.

Reads an optional JSON file (``~/.agent-manager-x/config.json`` or the path
in ``$AGENT_MANAGER_CONFIG``).  Expected format, every key optional:

{
    "thresholds": {
        "claude": {"idle_after": 420, "cpu_active": 20},
        "codex": {"pending_window": 240}
    },
    "transcript_roots": {"claude": ["/Volumes/work/.claude/projects"]},
    "editor": "cursor",
    "projects": {
        "/Users/me/dev/api": {"name": "API", "url": "https://example.test/api"}
    }
}
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields, replace

from .constants import (
    CONFIG_PATH,
    CPU_ACTIVE_THRESHOLD,
    CPU_THINKING_THRESHOLD,
    DEFAULT_EDITOR_COMMAND,
    FILE_RECENT_WINDOW,
    IDLE_AFTER,
    INTERRUPT_WINDOW,
    PENDING_WINDOW,
    STALE_AFTER,
)
from .models import AgentType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusThresholds:
    """Tunable windows used by the status state machine (seconds, cpu in %)."""

    pending_window: float = PENDING_WINDOW
    interrupt_window: float = INTERRUPT_WINDOW
    cpu_active: float = CPU_ACTIVE_THRESHOLD
    cpu_thinking: float = CPU_THINKING_THRESHOLD
    file_recent: float = FILE_RECENT_WINDOW
    idle_after: float = IDLE_AFTER
    stale_after: float = STALE_AFTER


DEFAULT_THRESHOLDS: dict[AgentType, StatusThresholds] = {
    AgentType.CLAUDE: StatusThresholds(),
    AgentType.CODEX: StatusThresholds(),
    AgentType.OPENCODE: StatusThresholds(),
}

# Loaded once on first call
_config: dict | None = None


def load_config(path: str | None = None) -> dict:
    """Load the user config file, caching it for the life of the process."""
    global _config
    if _config is not None and path is None:
        return _config
    config_path = path or CONFIG_PATH
    loaded: dict = {}
    if os.path.exists(config_path):
        try:
            with open(config_path, encoding="utf-8") as f:
                data = json.load(f)
            if isinstance(data, dict):
                loaded = data
            else:
                logger.warning("Ignoring config %s: top level is not an object", config_path)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read config %s: %s", config_path, e)
    if path is None:
        _config = loaded
    return loaded


def reset_config() -> None:
    """Forget the cached config so the next call re-reads the file."""
    global _config
    _config = None


def _agent_section(config: dict, key: str, agent: AgentType):
    """``config[key][agent]``, or None when a level has the wrong shape."""
    section = config.get(key)
    if section is None:
        return None
    if not isinstance(section, dict):
        logger.warning("Ignoring config %r: expected an object keyed by agent", key)
        return None
    return section.get(agent.value)


def thresholds_for(agent: AgentType, config: dict | None = None) -> StatusThresholds:
    """Default thresholds for ``agent`` with any config overrides applied."""
    config = load_config() if config is None else config
    base = DEFAULT_THRESHOLDS[agent]
    overrides = _agent_section(config, "thresholds", agent)
    if overrides is None:
        return base
    if not isinstance(overrides, dict):
        logger.warning("Ignoring thresholds for %s: expected an object", agent.value)
        return base
    known = {f.name for f in fields(StatusThresholds)}
    values: dict[str, float] = {}
    for key, value in overrides.items():
        if key not in known:
            logger.debug("Unknown threshold %r for %s ignored", key, agent.value)
            continue
        try:
            values[key] = float(value)
        except (TypeError, ValueError):
            logger.debug("Non-numeric threshold %r=%r for %s ignored", key, value, agent.value)
    result = replace(base, **values)
    if result.stale_after < result.idle_after:
        logger.warning("stale_after < idle_after for %s; using defaults", agent.value)
        return base
    return result


def extra_transcript_roots(agent: AgentType, config: dict | None = None) -> list[str]:
    config = load_config() if config is None else config
    roots = _agent_section(config, "transcript_roots", agent)
    if roots is None:
        return []
    if isinstance(roots, str):
        roots = [roots]
    elif not isinstance(roots, list):
        logger.warning("Ignoring transcript roots for %s: expected a list of paths", agent.value)
        return []
    return [os.path.expanduser(r) for r in roots if isinstance(r, str) and r]


def editor_command(config: dict | None = None) -> str:
    config = load_config() if config is None else config
    editor = config.get("editor")
    return editor if isinstance(editor, str) and editor.strip() else DEFAULT_EDITOR_COMMAND


def project_decorations(config: dict | None = None) -> dict[str, dict]:
    """Per-project display overrides keyed by absolute project path."""
    config = load_config() if config is None else config
    projects = config.get("projects") or {}
    if not isinstance(projects, dict):
        return {}
    return {
        os.path.normpath(os.path.expanduser(path)): value
        for path, value in projects.items()
        if isinstance(value, dict)
    }
