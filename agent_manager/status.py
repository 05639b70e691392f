"""
Status state machine shared by every agent detector.

Turns a normalized event stream plus cpu% into one of the five session
statuses.  Agents differ only in which event kinds count as triggers and
terminals, which lives in ``AgentStatusPolicy``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from .models import AgentType, EventKind, PendingTaskState, SessionStatus, TranscriptEvent
from .settings import StatusThresholds, thresholds_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentStatusPolicy:
    """Which event kinds start and end a task for one agent family."""

    triggers: frozenset[EventKind]
    terminals: frozenset[EventKind]
    signals: frozenset[EventKind] = frozenset(EventKind)

    def is_trigger(self, event: TranscriptEvent) -> bool:
        return not event.control and event.kind in self.triggers

    def is_terminal(self, event: TranscriptEvent) -> bool:
        return event.kind in self.terminals


_BASE_TERMINALS = frozenset({EventKind.ASSISTANT_MESSAGE, EventKind.TASK_COMPLETE, EventKind.INTERRUPT})

POLICIES: dict[AgentType, AgentStatusPolicy] = {
    AgentType.CLAUDE: AgentStatusPolicy(
        triggers=frozenset({EventKind.USER_MESSAGE, EventKind.TASK_STARTED}),
        terminals=_BASE_TERMINALS,
    ),
    # Codex keeps a task open while it reasons, calls tools and streams
    # agent messages; only task_complete, turn_aborted or a rollback close it.
    AgentType.CODEX: AgentStatusPolicy(
        triggers=frozenset(
            {
                EventKind.USER_MESSAGE,
                EventKind.TASK_STARTED,
                EventKind.REASONING,
                EventKind.TOOL_CALL,
                EventKind.TOOL_RESULT,
                EventKind.ASSISTANT_MESSAGE,
            }
        ),
        terminals=frozenset({EventKind.TASK_COMPLETE, EventKind.INTERRUPT, EventKind.ROLLBACK}),
    ),
    # OpenCode closes a step with step-finish, so streamed text mid-step
    # does not end the task.
    AgentType.OPENCODE: AgentStatusPolicy(
        triggers=frozenset({EventKind.USER_MESSAGE, EventKind.TASK_STARTED}),
        terminals=frozenset({EventKind.TASK_COMPLETE, EventKind.INTERRUPT}),
    ),
}


def _order_key(event: TranscriptEvent) -> tuple[datetime, int]:
    return (event.timestamp, event.index)


def newest_event(events: list[TranscriptEvent]) -> TranscriptEvent | None:
    """Newest timestamped event; equal timestamps are ordered by sequence index."""
    dated = [e for e in events if e.timestamp is not None]
    if not dated:
        return None
    return max(dated, key=_order_key)


def compute_pending_state(events: list[TranscriptEvent], policy: AgentStatusPolicy) -> PendingTaskState:
    """Latest trigger vs latest terminal; pending only if the trigger is newer."""
    latest_trigger: TranscriptEvent | None = None
    latest_terminal: TranscriptEvent | None = None
    latest_signal: TranscriptEvent | None = None
    for event in events:
        if event.timestamp is None:
            continue
        key = _order_key(event)
        if policy.is_trigger(event) and (latest_trigger is None or key > _order_key(latest_trigger)):
            latest_trigger = event
        if policy.is_terminal(event) and (latest_terminal is None or key > _order_key(latest_terminal)):
            latest_terminal = event
        if event.kind in policy.signals and (latest_signal is None or key > _order_key(latest_signal)):
            latest_signal = event

    if latest_trigger is None:
        is_pending = False
    elif latest_terminal is None:
        is_pending = True
    else:
        is_pending = _order_key(latest_trigger) > _order_key(latest_terminal)

    return PendingTaskState(
        latest_trigger=latest_trigger.timestamp if latest_trigger else None,
        latest_terminal=latest_terminal.timestamp if latest_terminal else None,
        latest_signal=latest_signal.timestamp if latest_signal else None,
        is_pending=is_pending,
    )


def _age(now: datetime, ts: datetime) -> float:
    return (now - ts).total_seconds()


def age_status(last_activity: datetime, now: datetime, thresholds: StatusThresholds) -> SessionStatus:
    age = _age(now, last_activity)
    if age < thresholds.idle_after:
        return SessionStatus.WAITING
    if age < thresholds.stale_after:
        return SessionStatus.IDLE
    return SessionStatus.STALE


def determine_status(
    agent: AgentType,
    events: list[TranscriptEvent],
    cpu: float,
    now: datetime | None = None,
    thresholds: StatusThresholds | None = None,
    file_modified_at: datetime | None = None,
) -> SessionStatus:
    """Infer the live status of one session from its events and cpu usage.

    Pure: the same inputs always produce the same status.  ``file_modified_at``
    lets a transcript that is being written right now read as busy even if
    its tail events are not yet parseable.
    """
    now = now or datetime.now(UTC)
    thresholds = thresholds or thresholds_for(agent)
    policy = POLICIES[agent]

    newest = newest_event(events)
    if newest is None:
        if file_modified_at is not None and _age(now, file_modified_at) < thresholds.file_recent:
            return SessionStatus.PROCESSING
        return SessionStatus.WAITING

    state = compute_pending_state(events, policy)
    if state.is_pending and state.latest_signal and _age(now, state.latest_signal) < thresholds.pending_window:
        if newest.kind == EventKind.REASONING:
            return SessionStatus.THINKING
        return SessionStatus.PROCESSING

    newest_age = _age(now, newest.timestamp)
    if newest.kind == EventKind.INTERRUPT and newest_age < thresholds.interrupt_window:
        return SessionStatus.WAITING

    if cpu > thresholds.cpu_active:
        return SessionStatus.PROCESSING

    if policy.is_terminal(newest) and newest_age < thresholds.interrupt_window:
        return SessionStatus.WAITING

    if (
        state.is_pending
        and file_modified_at is not None
        and _age(now, file_modified_at) < thresholds.file_recent
    ):
        return SessionStatus.PROCESSING

    return age_status(newest.timestamp, now, thresholds)


def fallback_status(
    cpu: float,
    last_activity: datetime | None,
    now: datetime | None = None,
    thresholds: StatusThresholds | None = None,
) -> SessionStatus:
    """Status for a process with no usable transcript: cpu% plus file recency."""
    now = now or datetime.now(UTC)
    thresholds = thresholds or StatusThresholds()
    if cpu > thresholds.cpu_active:
        return SessionStatus.PROCESSING
    if last_activity is None:
        return SessionStatus.THINKING if cpu > thresholds.cpu_thinking else SessionStatus.WAITING
    if _age(now, last_activity) < thresholds.file_recent:
        return SessionStatus.PROCESSING
    status = age_status(last_activity, now, thresholds)
    if status != SessionStatus.WAITING:
        return status
    return SessionStatus.THINKING if cpu > thresholds.cpu_thinking else SessionStatus.WAITING


def status_bucket(status: SessionStatus) -> int:
    """Sort bucket: active/waiting first, then idle, then stale."""
    if status == SessionStatus.IDLE:
        return 1
    if status == SessionStatus.STALE:
        return 2
    return 0


def status_priority(status: SessionStatus) -> int:
    """Preference order when two sessions compete for one process."""
    return {
        SessionStatus.THINKING: 4,
        SessionStatus.PROCESSING: 4,
        SessionStatus.WAITING: 3,
        SessionStatus.IDLE: 2,
        SessionStatus.STALE: 1,
    }[status]
