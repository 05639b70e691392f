"""
Process inventory for agent session detection.
Takes point-in-time ``ps`` snapshots shared by every detector in a poll
cycle, and answers the per-process questions detectors and the kill
action need (cwd, open files, descendants, liveness, signals).
"""

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from datetime import UTC, datetime, timedelta

from .constants import LSOF_CWD_TIMEOUT, LSOF_FILES_TIMEOUT, PROCESS_CACHE_TTL, PS_TIMEOUT
from .errors import ScanFailure
from .models import ProcessCache, ProcessSnapshot

logger = logging.getLogger(__name__)

PS_COLUMNS = "pid=,ppid=,pgid=,%cpu=,rss=,tty=,state=,etime=,command="


def parse_ps_line(line: str) -> ProcessSnapshot | None:
    """Parse one ``ps`` row; the first eight columns never contain spaces."""
    parts = line.strip().split(None, 8)
    if len(parts) < 9:
        return None
    try:
        pid = int(parts[0])
        ppid = int(parts[1])
        pgid = int(parts[2])
        cpu = float(parts[3])
        rss_kb = int(parts[4])
    except ValueError:
        return None
    return ProcessSnapshot(
        pid=pid,
        parent_pid=ppid,
        group_id=pgid,
        cpu=cpu,
        memory_bytes=rss_kb * 1024,
        tty=parts[5],
        state=parts[6],
        elapsed=parts[7],
        cmdline=parts[8].strip(),
    )


def parse_elapsed(elapsed: str) -> int | None:
    """Convert ``ps`` etime (``[[dd-]hh:]mm:ss``) to seconds."""
    if not elapsed:
        return None
    days = 0
    rest = elapsed.strip()
    if "-" in rest:
        day_part, rest = rest.split("-", 1)
        try:
            days = int(day_part)
        except ValueError:
            return None
    try:
        fields = [int(p) for p in rest.split(":")]
    except ValueError:
        return None
    if not fields or len(fields) > 3:
        return None
    while len(fields) < 3:
        fields.insert(0, 0)
    hours, minutes, seconds = fields
    return days * 86400 + hours * 3600 + minutes * 60 + seconds


def process_start_time(snapshot: ProcessSnapshot, now: datetime | None = None) -> datetime | None:
    seconds = parse_elapsed(snapshot.elapsed)
    if seconds is None:
        return None
    return (now or datetime.now(UTC)) - timedelta(seconds=seconds)


def parse_lsof_names(output: str) -> list[str]:
    """Extract the ``n`` (name) fields from ``lsof -F`` output."""
    return [line[1:] for line in output.splitlines() if line.startswith("n") and len(line) > 1]


def _list_processes() -> list[ProcessSnapshot]:
    result = subprocess.run(
        ["ps", "-A", "-ww", "-o", PS_COLUMNS],
        capture_output=True,
        text=True,
        timeout=PS_TIMEOUT,
        check=False,
    )
    if result.returncode != 0 or not result.stdout.strip():
        raise ScanFailure(f"ps exited with {result.returncode}: {result.stderr.strip()}")
    snapshots = []
    for line in result.stdout.splitlines():
        snap = parse_ps_line(line)
        if snap is not None:
            snapshots.append(snap)
    return snapshots


class ProcessInventory:
    """Owns the short-lived process table cache.

    The lock is held across the whole scan so concurrent callers wait for
    the first one rather than each spawning their own ``ps``.
    """

    def __init__(self, ttl: float = PROCESS_CACHE_TTL):
        self.ttl = ttl
        self._cache = ProcessCache()
        self._lock = threading.Lock()

    def snapshot(self, force: bool = False) -> list[ProcessSnapshot]:
        """Return the current process table, reusing a fresh cache.

        A failed scan falls back to the last good snapshot, however old.
        Only when there is nothing cached does the failure propagate.
        """
        with self._lock:
            now = time.monotonic()
            if not force and self._cache.valid and now - self._cache.time < self.ttl:
                return self._cache.data
            try:
                snapshots = _list_processes()
            except (OSError, subprocess.SubprocessError, ScanFailure) as e:
                if self._cache.valid:
                    logger.warning("Error scanning processes, reusing last snapshot: %s", e)
                    return self._cache.data
                raise ScanFailure(f"Error scanning processes: {e}") from e
            self._cache.data = snapshots
            self._cache.time = time.monotonic()
            self._cache.valid = True
            return snapshots

    def invalidate(self) -> None:
        with self._lock:
            self._cache.time = 0.0

    def find(self, pid: int) -> ProcessSnapshot | None:
        for snap in self.snapshot():
            if snap.pid == pid:
                return snap
        return None

    def working_directory(self, pid: int) -> str | None:
        """Current working directory of ``pid`` (procfs when available, else lsof)."""
        proc_link = f"/proc/{pid}/cwd"
        if os.path.exists(f"/proc/{pid}"):
            try:
                return os.readlink(proc_link)
            except OSError as e:
                logger.debug("Could not read %s: %s", proc_link, e)
                return None
        try:
            result = subprocess.run(
                ["lsof", "-a", "-p", str(pid), "-d", "cwd", "-Fn"],
                capture_output=True,
                text=True,
                timeout=LSOF_CWD_TIMEOUT,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("lsof cwd lookup failed for PID %d: %s", pid, e)
            return None
        if result.returncode != 0:
            return None
        names = parse_lsof_names(result.stdout)
        return names[0] if names else None

    def open_files(self, pid: int) -> list[str]:
        fd_dir = f"/proc/{pid}/fd"
        if os.path.isdir(fd_dir):
            paths = []
            try:
                entries = os.listdir(fd_dir)
            except OSError as e:
                logger.debug("Could not list %s: %s", fd_dir, e)
                return []
            for entry in entries:
                try:
                    target = os.readlink(os.path.join(fd_dir, entry))
                except OSError:
                    continue
                if target.startswith("/"):
                    paths.append(target)
            return paths
        try:
            result = subprocess.run(
                ["lsof", "-Fn", "-p", str(pid)],
                capture_output=True,
                text=True,
                timeout=LSOF_FILES_TIMEOUT,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("lsof open-file lookup failed for PID %d: %s", pid, e)
            return []
        if result.returncode != 0:
            return []
        return parse_lsof_names(result.stdout)

    def newest_open_file(
        self,
        pid: int,
        path_contains: str,
        suffix: str,
        exclude_prefix: str | None = None,
    ) -> str | None:
        """The most recently modified open file of ``pid`` matching the filters."""
        candidates = []
        for path in self.open_files(pid):
            if path_contains not in path or not path.endswith(suffix):
                continue
            if exclude_prefix and os.path.basename(path).startswith(exclude_prefix):
                continue
            try:
                candidates.append((os.path.getmtime(path), path))
            except OSError:
                continue
        if not candidates:
            return None
        return max(candidates)[1]

    def descendants(self, pid: int) -> list[int]:
        """All descendant PIDs of ``pid``, deepest first."""
        children: dict[int, list[int]] = {}
        for snap in self.snapshot(force=True):
            children.setdefault(snap.parent_pid, []).append(snap.pid)
        result: list[int] = []
        visited = {pid}

        def _walk(parent: int) -> None:
            for child in children.get(parent, []):
                if child in visited:
                    continue
                visited.add(child)
                _walk(child)
                result.append(child)

        _walk(pid)
        return result

    @staticmethod
    def is_alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        except OSError:
            return False
        return True

    @staticmethod
    def send_signal(pid: int, sig: int = signal.SIGKILL) -> bool:
        try:
            os.kill(pid, sig)
            return True
        except OSError as e:
            logger.debug("Signal %d to PID %d failed: %s", sig, pid, e)
            return False

    @staticmethod
    def send_signal_to_group(group_id: int, sig: int = signal.SIGKILL) -> bool:
        """Signal a whole process group, never our own."""
        if group_id <= 0 or sys.platform == "win32":
            return False
        if group_id == os.getpgrp():
            logger.debug("Refusing to signal our own process group %d", group_id)
            return False
        try:
            os.killpg(group_id, sig)
            return True
        except OSError as e:
            logger.debug("Signal %d to group %d failed: %s", sig, group_id, e)
            return False
