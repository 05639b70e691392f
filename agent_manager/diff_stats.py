"""
Per-project git diff stats, computed off the detection path.

``DiffStatsCache.request`` is fire-and-forget: it bumps a generation counter
and computes stats on its own executor.  A computation only lands if no
newer request was made meanwhile.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor

from .constants import DIFF_STATS_CACHE_TTL, GIT_DIFF_TIMEOUT
from .models import GitDiffStats

logger = logging.getLogger(__name__)


def parse_numstat(output: str) -> GitDiffStats:
    """Sum ``git diff --numstat`` columns; binary files (``-``) count as zero."""
    additions = deletions = 0
    for line in output.splitlines():
        columns = line.split("\t")
        if len(columns) < 2:
            continue
        if columns[0].isdigit():
            additions += int(columns[0])
        if columns[1].isdigit():
            deletions += int(columns[1])
    return GitDiffStats(additions=additions, deletions=deletions)


def compute_diff_stats(project_path: str) -> GitDiffStats:
    """Uncommitted changes in ``project_path`` relative to HEAD.

    Non-repositories, repositories without commits and timeouts all read as
    zero changes.
    """
    try:
        result = subprocess.run(
            ["git", "-C", project_path, "diff", "--numstat", "HEAD"],
            capture_output=True,
            text=True,
            timeout=GIT_DIFF_TIMEOUT,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("git diff failed for %s: %s", project_path, e)
        return GitDiffStats()
    if result.returncode != 0:
        logger.debug("git diff in %s exited %d: %s", project_path, result.returncode, result.stderr.strip())
        return GitDiffStats()
    return parse_numstat(result.stdout)


class DiffStatsCache:
    def __init__(self, ttl: float = DIFF_STATS_CACHE_TTL, compute=compute_diff_stats):
        self.ttl = ttl
        self._compute = compute
        self._lock = threading.Lock()
        self._generation = 0
        # path -> (fetched_at, stats)
        self._cache: dict[str, tuple[float, GitDiffStats]] = {}
        self._stats: dict[str, GitDiffStats] = {}
        # Created on first request; recreated after shutdown
        self._executor: ThreadPoolExecutor | None = None

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def stats(self) -> dict[str, GitDiffStats]:
        """Latest applied stats keyed by project path."""
        with self._lock:
            return dict(self._stats)

    def request(self, project_paths) -> Future:
        """Schedule a recompute for ``project_paths``; returns the applying future."""
        paths = sorted({p for p in project_paths if p and p != "/"})
        with self._lock:
            self._generation += 1
            generation = self._generation
            cache_snapshot = dict(self._cache)
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="diff-stats")
            executor = self._executor
        return executor.submit(self._compute_and_apply, paths, generation, cache_snapshot)

    def _compute_and_apply(self, paths, generation: int, cache_snapshot) -> bool:
        now = time.monotonic()
        next_cache: dict[str, tuple[float, GitDiffStats]] = {}
        for path in paths:
            cached = cache_snapshot.get(path)
            if cached and now - cached[0] < self.ttl:
                next_cache[path] = cached
                continue
            next_cache[path] = (now, self._compute(path))
        return self.apply(generation, next_cache)

    def apply(self, generation: int, entries: dict[str, tuple[float, GitDiffStats]]) -> bool:
        """Install computed entries unless a newer request superseded them."""
        with self._lock:
            if generation != self._generation:
                logger.debug("Dropping diff stats for superseded generation %d", generation)
                return False
            self._cache = entries
            self._stats = {path: stats for path, (_, stats) in entries.items()}
            return True

    def shutdown(self) -> None:
        """Stop the worker; a later ``request`` starts a fresh one."""
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
