"""Project grouping for the viewer.

Sessions that share a project path are shown together under one header with
the branch, uncommitted diff stats and any user-defined decorations from the
config file:

    "projects": {
        "/Users/me/dev/api": {"name": "API", "url": "https://example.test/api"}
    }
"""

from __future__ import annotations

import os
import re
from collections.abc import Sequence

from .models import GitDiffStats, Session
from .settings import project_decorations

# Directories to skip when deriving a group name from path segments
_SKIP_DIRS = {
    "",
    "users",
    "home",
    "src",
    "documents",
    "desktop",
    "projects",
    "repos",
    "github",
    "dev",
    "code",
}


def get_group_name(project_path: str, config: dict | None = None) -> str:
    """Derive a display name for a project path.

    Strategy (in order):
    1. User-defined decoration name for the exact path
    2. Last meaningful directory segment
    3. "General"
    """
    normalized = os.path.normpath(project_path) if project_path else ""
    decoration = project_decorations(config).get(normalized) or {}
    name = decoration.get("name")
    if isinstance(name, str) and name.strip():
        return name.strip()

    if normalized:
        parts = normalized.replace("\\", "/").rstrip("/").split("/")
        meaningful = [p for p in parts if p.lower() not in _SKIP_DIRS and not re.match(r"^\.", p)]
        if meaningful:
            return meaningful[-1]

    return "General"


def project_url(project_path: str, config: dict | None = None) -> str | None:
    decoration = project_decorations(config).get(os.path.normpath(project_path)) or {}
    url = decoration.get("url")
    return url if isinstance(url, str) and url else None


class ProjectGroup:
    """Sessions sharing one project path."""

    def __init__(self, project_path: str, display_name: str, url: str | None = None):
        self.project_path = project_path
        self.display_name = display_name
        self.url = url
        self.sessions: list[Session] = []
        self.diff_stats: GitDiffStats | None = None

    @property
    def project_name(self) -> str:
        return self.sessions[0].project_name if self.sessions else os.path.basename(self.project_path)

    @property
    def git_branch(self) -> str | None:
        return next((s.git_branch for s in self.sessions if s.git_branch), None)


def group_sessions(
    sessions: Sequence[Session],
    diff_stats: dict[str, GitDiffStats] | None = None,
    config: dict | None = None,
) -> list[ProjectGroup]:
    """Group sessions by project path, keeping first-seen order."""
    groups: dict[str, ProjectGroup] = {}
    for session in sessions:
        group = groups.get(session.project_path)
        if group is None:
            group = ProjectGroup(
                session.project_path,
                get_group_name(session.project_path, config),
                project_url(session.project_path, config),
            )
            if diff_stats is not None:
                group.diff_stats = diff_stats.get(session.project_path)
            groups[session.project_path] = group
        group.sessions.append(session)
    return list(groups.values())
