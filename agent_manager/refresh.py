"""
Refresh coordination: periodic polling with single-flight passes.

One loop thread owns all coordinator state and consumes messages from an
inbox queue.  Detection passes run on a one-worker executor and report back
through the same inbox, so state is never touched from two threads.

    idle --trigger--> running --explicit trigger--> running_with_pending
     ^                  |                                 |
     +------done--------+          done: run one more pass
"""

from __future__ import annotations

import enum
import logging
import queue
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime

from .aggregator import SessionDetectionService, merge_results
from .constants import POLL_INTERVAL
from .diff_stats import DiffStatsCache
from .errors import AgentManagerError
from .models import RefreshSnapshot, SessionsResult

logger = logging.getLogger(__name__)


class RefreshState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    RUNNING_WITH_PENDING = "running_with_pending"


class _Trigger:
    __slots__ = ("from_timer",)

    def __init__(self, from_timer: bool):
        self.from_timer = from_timer


class _Done:
    __slots__ = ("future",)

    def __init__(self, future: Future):
        self.future = future


class _Sync:
    __slots__ = ("event",)

    def __init__(self):
        self.event = threading.Event()


_STOP = object()


class RefreshCoordinator:
    """Runs detection passes on a timer and on demand, never two at once.

    An explicit trigger that arrives mid-pass is remembered (once) and runs
    right after; timer ticks that arrive mid-pass are dropped.
    """

    def __init__(
        self,
        service: SessionDetectionService,
        interval: float = POLL_INTERVAL,
        diff_stats: DiffStatsCache | None = None,
    ):
        self.service = service
        self.interval = interval
        self.diff_stats = diff_stats
        self.state = RefreshState.IDLE
        self.pass_count = 0

        self._inbox: queue.Queue = queue.Queue()
        self._executor: ThreadPoolExecutor | None = None
        self._loop_thread: threading.Thread | None = None
        self._timer_thread: threading.Thread | None = None
        self._stopping = threading.Event()
        self._idle = threading.Event()
        self._idle.set()
        self._generation = 0
        self._snapshot = RefreshSnapshot(result=SessionsResult(), generation=0, refreshed_at=datetime.now(UTC))
        self._has_result = False
        self._listeners: list[Callable[[RefreshSnapshot], None]] = []

    # -- public API (any thread) ----------------------------------------------

    @property
    def snapshot(self) -> RefreshSnapshot:
        """The most recently published snapshot (immutable)."""
        return self._snapshot

    def add_listener(self, callback: Callable[[RefreshSnapshot], None]) -> None:
        """Call ``callback`` from the loop thread after every publish."""
        self._listeners.append(callback)

    def start(self, run_immediately: bool = True) -> None:
        if self._loop_thread is not None:
            return
        self._stopping.clear()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="refresh-pass")
        self._loop_thread = threading.Thread(target=self._run_loop, name="refresh-loop", daemon=True)
        self._loop_thread.start()
        if self.interval > 0:
            self._timer_thread = threading.Thread(target=self._run_timer, name="refresh-timer", daemon=True)
            self._timer_thread.start()
        if run_immediately:
            self.trigger()
        logger.info("Refresh coordinator started (interval=%.1fs)", self.interval)

    def stop(self, timeout: float = 2.0) -> None:
        """Stop the timer and loop; an in-flight pass is abandoned, not awaited."""
        if self._loop_thread is None:
            return
        self._stopping.set()
        self._inbox.put(_STOP)
        self._loop_thread.join(timeout)
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
        self._loop_thread = None
        self._timer_thread = None
        self._executor = None
        self._idle.set()
        logger.info("Refresh coordinator stopped")

    def trigger(self, from_timer: bool = False) -> None:
        self._inbox.put(_Trigger(from_timer))

    def sync(self, timeout: float | None = None) -> bool:
        """Block until every message queued before this call is handled."""
        message = _Sync()
        self._inbox.put(message)
        return message.event.wait(timeout)

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        self.sync(timeout)
        return self._idle.wait(timeout)

    def refresh_now(self, timeout: float | None = None) -> RefreshSnapshot:
        """Explicit refresh that waits for the resulting pass to publish."""
        self.trigger()
        self.wait_until_idle(timeout)
        return self._snapshot

    # -- loop thread ----------------------------------------------------------

    def _run_timer(self) -> None:
        while not self._stopping.wait(self.interval):
            self.trigger(from_timer=True)

    def _run_loop(self) -> None:
        while True:
            message = self._inbox.get()
            if message is _STOP:
                return
            if isinstance(message, _Trigger):
                self._on_trigger(message.from_timer)
            elif isinstance(message, _Done):
                self._on_done(message.future)
            elif isinstance(message, _Sync):
                message.event.set()

    def _on_trigger(self, from_timer: bool) -> None:
        if self.state == RefreshState.IDLE:
            self._start_pass()
        elif self.state == RefreshState.RUNNING and not from_timer:
            self.state = RefreshState.RUNNING_WITH_PENDING

    def _start_pass(self) -> None:
        if self._executor is None or self._stopping.is_set():
            return
        self.state = RefreshState.RUNNING
        self._idle.clear()
        try:
            future = self._executor.submit(self.service.get_all_sessions)
        except RuntimeError as e:
            # Executor already shut down
            logger.debug("Refresh pass not started: %s", e)
            self.state = RefreshState.IDLE
            self._idle.set()
            return
        future.add_done_callback(lambda f: self._inbox.put(_Done(f)))

    def _on_done(self, future: Future) -> None:
        self.pass_count += 1
        try:
            result = future.result()
        except AgentManagerError as e:
            logger.warning("Refresh pass failed, keeping last result: %s", e)
            self._publish(self._snapshot.result, error=str(e))
        except Exception as e:
            logger.exception("Unexpected error in refresh pass")
            self._publish(self._snapshot.result, error=str(e))
        else:
            merged = merge_results(self._snapshot.result if self._has_result else None, result)
            self._has_result = True
            self._publish(merged)

        if self.state == RefreshState.RUNNING_WITH_PENDING and not self._stopping.is_set():
            self._start_pass()
        else:
            self.state = RefreshState.IDLE
            self._idle.set()

    def _publish(self, result: SessionsResult, error: str | None = None) -> None:
        self._generation += 1
        self._snapshot = RefreshSnapshot(
            result=result,
            generation=self._generation,
            refreshed_at=datetime.now(UTC),
            error=error,
        )
        if self.diff_stats is not None and error is None:
            try:
                self.diff_stats.request({s.project_path for s in result.sessions})
            except RuntimeError as e:
                logger.warning("Could not schedule diff stats: %s", e)
        for callback in list(self._listeners):
            try:
                callback(self._snapshot)
            except Exception:
                logger.exception("Refresh listener failed")
