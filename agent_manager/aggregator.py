"""
Merges detector output into one ordered ``SessionsResult``.

Detectors share a single process snapshot per pass and fail independently:
an exception in one agent's detector is logged and costs only that agent's
sessions.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Protocol

from .claude_detector import ClaudeDetector
from .codex_detector import CodexDetector
from .models import (
    AGENT_ORDER,
    AgentProcess,
    AgentType,
    ParsedTranscript,
    ProcessSnapshot,
    Session,
    SessionsResult,
    SessionStatus,
)
from .opencode_detector import OpenCodeDetector
from .process_inventory import ProcessInventory
from .settings import load_config
from .status import status_bucket

logger = logging.getLogger(__name__)

_EPOCH = datetime.fromtimestamp(0, UTC)


class AgentDetector(Protocol):
    """What the aggregator needs from a per-agent detector."""

    agent_type: AgentType

    def matches_process(self, snapshot: ProcessSnapshot) -> bool: ...

    def transcript_roots(self) -> list[str]: ...

    def parse_transcript(self, path: str) -> ParsedTranscript | None: ...

    def match_processes(self, processes: list[AgentProcess], now: datetime | None = None) -> list[Session]: ...

    def detect(self, snapshots: list[ProcessSnapshot] | None = None, now: datetime | None = None) -> list[Session]: ...


def _activity(session: Session) -> datetime:
    return session.last_activity_at or _EPOCH


def foreground_sort_key(session: Session) -> tuple[int, float]:
    return (status_bucket(session.status), -_activity(session).timestamp())


def background_sort_key(session: Session) -> tuple[int, float]:
    return (AGENT_ORDER.index(session.agent_type), -_activity(session).timestamp())


def build_result(sessions: Sequence[Session]) -> SessionsResult:
    """Partition, sort and count a flat list of sessions."""
    foreground = sorted((s for s in sessions if not s.is_background), key=foreground_sort_key)
    background = sorted((s for s in sessions if s.is_background), key=background_sort_key)
    agent_counts = {agent: 0 for agent in AGENT_ORDER}
    for session in foreground:
        agent_counts[session.agent_type] += 1
    return SessionsResult(
        sessions=foreground,
        background_sessions=background,
        total_count=len(foreground),
        waiting_count=sum(1 for s in foreground if s.status == SessionStatus.WAITING),
        agent_counts=agent_counts,
    )


def merge_stable_order(previous: Sequence[Session], incoming: Sequence[Session]) -> list[Session]:
    """Keep the on-screen order between polls unless something moved.

    A new session, or any session changing sort bucket, means the incoming
    order wins.  Otherwise the previous order is kept with fresh values, and
    sessions that disappeared are dropped.
    """
    if not previous:
        return list(incoming)
    old_by_id = {s.render_id: s for s in previous}
    for session in incoming:
        old = old_by_id.get(session.render_id)
        if old is None or status_bucket(old.status) != status_bucket(session.status):
            return list(incoming)

    new_by_id = {s.render_id: s for s in incoming}
    merged = [new_by_id.pop(s.render_id) for s in previous if s.render_id in new_by_id]
    merged.extend(s for s in incoming if s.render_id in new_by_id)
    return merged


def merge_results(previous: SessionsResult | None, incoming: SessionsResult) -> SessionsResult:
    """Apply ``merge_stable_order`` to both lists of a result."""
    if previous is None:
        return incoming
    return SessionsResult(
        sessions=merge_stable_order(previous.sessions, incoming.sessions),
        background_sessions=merge_stable_order(previous.background_sessions, incoming.background_sessions),
        total_count=incoming.total_count,
        waiting_count=incoming.waiting_count,
        agent_counts=incoming.agent_counts,
    )


class SessionDetectionService:
    """Runs every detector against one shared snapshot and aggregates."""

    def __init__(
        self,
        inventory: ProcessInventory | None = None,
        detectors: Sequence[AgentDetector] | None = None,
        config: dict | None = None,
    ):
        self.inventory = inventory or ProcessInventory()
        if detectors is None:
            config = load_config() if config is None else config
            detectors = [
                ClaudeDetector(self.inventory, config),
                CodexDetector(self.inventory, config),
                OpenCodeDetector(self.inventory, config),
            ]
        self.detectors = list(detectors)

    def detect_all(self, now: datetime | None = None) -> list[Session]:
        """Flat session list from every detector.

        Raises ``ScanFailure`` when the process table cannot be read at all;
        per-detector failures are logged and skipped.
        """
        now = now or datetime.now(UTC)
        snapshots = self.inventory.snapshot()
        sessions: list[Session] = []
        for detector in self.detectors:
            try:
                found = detector.detect(snapshots, now)
            except Exception as e:
                logger.warning("%s detector failed: %s", detector.agent_type.value, e, exc_info=True)
                continue
            logger.debug("%s detector found %d sessions", detector.agent_type.value, len(found))
            sessions.extend(found)
        return sessions

    def get_all_sessions(self, now: datetime | None = None) -> SessionsResult:
        return build_result(self.detect_all(now))
