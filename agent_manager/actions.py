"""
Actions on detected sessions: kill, focus its terminal, open its project.

Focus uses AppleScript and only does something useful on macOS; elsewhere it
falls through to opening the project in the configured editor.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import signal
import subprocess
import sys
import time

from .constants import KILL_SETTLE_DELAY, MACOS_FOCUS_APPS, OSASCRIPT_TIMEOUT
from .errors import ActionFailure, ScanFailure
from .process_inventory import ProcessInventory
from .settings import editor_command

logger = logging.getLogger(__name__)

NOT_FOUND = "not found"

_TTY_SCRIPTS = {
    "iTerm2": """
tell application "System Events"
    if not (exists process "iTerm2") then
        return "not found"
    end if
end tell
tell application "iTerm2"
    activate
    repeat with w in windows
        repeat with t in tabs of w
            repeat with s in sessions of t
                if tty of s contains "{needle}" then
                    select s
                    select t
                    set index of w to 1
                    return "found"
                end if
            end repeat
        end repeat
    end repeat
end tell
return "not found"
""",
    "Terminal": """
tell application "System Events"
    if not (exists process "Terminal") then
        return "not found"
    end if
end tell
tell application "Terminal"
    activate
    repeat with w in windows
        repeat with t in tabs of w
            try
                if tty of t contains "{needle}" then
                    set selected of t to true
                    set index of w to 1
                    return "found"
                end if
            end try
        end repeat
    end repeat
end tell
return "not found"
""",
}

_TITLE_SCRIPTS = {
    "iTerm2": _TTY_SCRIPTS["iTerm2"].replace("tty of s", "name of s"),
    "Terminal": _TTY_SCRIPTS["Terminal"].replace("tty of t", "custom title of t"),
}


def escape_applescript(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def run_focus_script(script: str) -> bool:
    """Run an AppleScript that returns ``"not found"`` when it did nothing."""
    try:
        result = subprocess.run(
            ["osascript", "-e", script],
            capture_output=True,
            text=True,
            timeout=OSASCRIPT_TIMEOUT,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("osascript failed: %s", e)
        return False
    if result.returncode != 0:
        logger.debug("osascript exited %d: %s", result.returncode, result.stderr.strip())
        return False
    return result.stdout.strip() != NOT_FOUND


class SessionActions:
    def __init__(self, inventory: ProcessInventory, config: dict | None = None):
        self.inventory = inventory
        self.config = config

    def _kill_tree(self, pid: int) -> None:
        for child in self.inventory.descendants(pid):
            self.inventory.send_signal(child, signal.SIGKILL)
        self.inventory.send_signal(pid, signal.SIGKILL)

    def kill_session(self, pid: int) -> None:
        """SIGKILL a session process with its descendants and process group.

        Raises ``ActionFailure`` if the process survives a retry.
        """
        try:
            self._kill_tree(pid)
            snap = self.inventory.find(pid)
            if snap is not None:
                self.inventory.send_signal_to_group(snap.group_id, signal.SIGKILL)
            time.sleep(KILL_SETTLE_DELAY)

            if self.inventory.is_alive(pid):
                logger.debug("PID %d survived first kill pass, retrying", pid)
                self._kill_tree(pid)
                time.sleep(KILL_SETTLE_DELAY)
                if self.inventory.is_alive(pid):
                    raise ActionFailure(f"Process {pid} is still running after kill attempts")
        except ScanFailure as e:
            raise ActionFailure(f"Could not read the process table to kill {pid}: {e}") from e
        self.inventory.invalidate()
        logger.info("Killed session process %d", pid)

    def focus_session(self, pid: int, project_path: str) -> tuple[bool, str]:
        """Bring the terminal running ``pid`` forward.

        Tries the process tty in each known terminal app, then a window
        title matching the project folder, then opens the project instead.
        Returns (success, message).
        """
        if sys.platform == "darwin":
            snap = self.inventory.find(pid)
            tty = snap.tty if snap else ""
            if tty and tty not in ("??", "?"):
                needle = escape_applescript(tty)
                for app in MACOS_FOCUS_APPS:
                    if run_focus_script(_TTY_SCRIPTS[app].replace("{needle}", needle)):
                        return True, f"Focused: {app} ({tty})"
            search = os.path.basename(project_path.rstrip("/")) or project_path
            needle = escape_applescript(search)
            for app in MACOS_FOCUS_APPS:
                if run_focus_script(_TITLE_SCRIPTS[app].replace("{needle}", needle)):
                    return True, f"Focused: {app} ({search})"
        try:
            self.open_project(project_path)
        except ActionFailure as e:
            return False, f"Could not focus session: {e}"
        return True, f"Opened {project_path}"

    def open_project(self, path: str) -> None:
        """Open ``path`` in the configured editor, else the system opener."""
        if not path or not os.path.isdir(path):
            raise ActionFailure(f"Project path does not exist: {path}")
        command = shlex.split(editor_command(self.config))
        candidates = []
        if command and shutil.which(command[0]):
            candidates.append([*command, path])
        opener = "open" if sys.platform == "darwin" else "xdg-open"
        if shutil.which(opener):
            candidates.append([opener, path])
        if not candidates:
            raise ActionFailure(f"No editor or opener available for {path}")
        errors = []
        for argv in candidates:
            try:
                subprocess.Popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    start_new_session=True,
                )
            except OSError as e:
                errors.append(f"{argv[0]}: {e}")
                continue
            logger.info("Opened %s with %s", path, argv[0])
            return
        raise ActionFailure("; ".join(errors))
