"""Single-threaded cooperative timer loop.

All exporter work runs as callbacks on one loop. A navigation ends the
current execution context: every timer is cancelled, timers requested
before the new page has loaded are discarded, and the load callback runs as
the first step of the next context. Other threads (the control panel) hand
work to the loop with ``submit``.
"""
from __future__ import annotations

import heapq
import itertools
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from . import config
from .logging_utils import _export_event

OPERATION = "operation"
MONITOR = "monitor"
NAVIGATION = "navigation"


@dataclass
class TimerHandle:
    id: int
    due: float
    callback: Callable[[], Any] = field(repr=False)
    group: str = OPERATION
    label: str = ""
    interval: Optional[float] = None
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class Scheduler:
    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        sleeper: Callable[[float], None] = time.sleep,
        max_wait: Optional[float] = None,
    ) -> None:
        self._clock = clock
        self._sleeper = sleeper
        self._max_wait = max_wait
        self._heap: list[tuple[float, int, TimerHandle]] = []
        self._ids = itertools.count(1)
        self._inbox: "queue.Queue[tuple[Callable[..., Any], tuple, Future]]" = queue.Queue()
        self._running = False
        self._stopped = False
        self._navigating = False
        self._loop_thread: Optional[int] = None

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def now(self) -> float:
        return self._clock()

    def _schedule(
        self,
        delay: float,
        callback: Callable[[], Any],
        *,
        group: str,
        label: str,
        interval: Optional[float] = None,
    ) -> TimerHandle:
        handle = TimerHandle(
            id=next(self._ids),
            due=self._clock() + max(0.0, float(delay)),
            callback=callback,
            group=group,
            label=label,
            interval=interval,
        )
        if self._navigating and group != NAVIGATION:
            # The page is unloading; nothing scheduled now survives it.
            handle.cancelled = True
            return handle
        heapq.heappush(self._heap, (handle.due, handle.id, handle))
        return handle

    def call_later(
        self, delay: float, callback: Callable[[], Any], *, group: str = OPERATION, label: str = ""
    ) -> TimerHandle:
        return self._schedule(delay, callback, group=group, label=label)

    def call_every(
        self,
        interval: float,
        callback: Callable[[], Any],
        *,
        group: str = MONITOR,
        label: str = "",
        first_delay: Optional[float] = None,
    ) -> TimerHandle:
        interval = max(0.001, float(interval))
        delay = interval if first_delay is None else first_delay
        return self._schedule(delay, callback, group=group, label=label, interval=interval)

    def active_timers(self, group: Optional[str] = None) -> list[TimerHandle]:
        return sorted(
            (
                handle
                for _, _, handle in self._heap
                if not handle.cancelled and (group is None or handle.group == group)
            ),
            key=lambda h: (h.due, h.id),
        )

    def cancel_group(self, group: str) -> int:
        cancelled = 0
        for _, _, handle in self._heap:
            if handle.group == group and not handle.cancelled:
                handle.cancel()
                cancelled += 1
        return cancelled

    def cancel_all(self) -> int:
        """Cancel every timer, including a pending navigation load."""

        cancelled = 0
        for _, _, handle in self._heap:
            if not handle.cancelled:
                handle.cancel()
                cancelled += 1
        self._heap = []
        self._navigating = False
        return cancelled

    @property
    def navigating(self) -> bool:
        return self._navigating

    def begin_navigation(self, load: Callable[[], Any], *, label: str = "navigation") -> TimerHandle:
        """End the current context and run ``load`` as the next one."""

        dropped = self.cancel_all()
        self._navigating = True

        def _load() -> Any:
            self._navigating = False
            return load()

        _export_event("state", phase="scheduler", kind="navigation", timer=label, dropped_timers=dropped)
        return self._schedule(0.0, _load, group=NAVIGATION, label=label)

    # ------------------------------------------------------------------
    # Cross-thread submission
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        """Run ``fn`` on the loop thread and return a ``Future`` for its result.

        When the loop is not running, or the caller already is the loop
        thread, ``fn`` runs immediately.
        """

        future: Future = Future()
        if not self._running or threading.get_ident() == self._loop_thread:
            self._resolve(future, fn, args)
            return future
        self._inbox.put((fn, args, future))
        return future

    @staticmethod
    def _resolve(future: Future, fn: Callable[..., Any], args: tuple) -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn(*args))
        except BaseException as exc:  # noqa: BLE001 - delivered to the submitting thread
            future.set_exception(exc)

    def _drain_inbox(self) -> int:
        handled = 0
        while True:
            try:
                fn, args, future = self._inbox.get_nowait()
            except queue.Empty:
                return handled
            self._resolve(future, fn, args)
            handled += 1

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _execute(self, handle: TimerHandle) -> None:
        if handle.interval is not None:
            handle.due = handle.due + handle.interval
            if handle.due < self._clock():
                handle.due = self._clock() + handle.interval
            heapq.heappush(self._heap, (handle.due, handle.id, handle))
        try:
            handle.callback()
        except Exception as exc:  # noqa: BLE001
            _export_event(
                "error",
                phase="scheduler",
                timer=handle.label,
                group=handle.group,
                error=repr(exc),
            )

    def _next_due(self) -> Optional[float]:
        while self._heap and self._heap[0][2].cancelled:
            heapq.heappop(self._heap)
        return self._heap[0][0] if self._heap else None

    def run_once(self) -> bool:
        """Run pending submissions and at most one due timer."""

        ran = self._drain_inbox() > 0
        due = self._next_due()
        if due is not None and due <= self._clock():
            _, _, handle = heapq.heappop(self._heap)
            self._execute(handle)
            ran = True
        return ran

    def run(
        self,
        *,
        until: Optional[Callable[[], bool]] = None,
        timeout: Optional[float] = None,
        exit_when_idle: bool = False,
    ) -> None:
        self._running = True
        self._stopped = False
        self._loop_thread = threading.get_ident()
        deadline = self._clock() + timeout if timeout is not None else None
        max_wait = self._max_wait if self._max_wait is not None else config.LOOP_MAX_WAIT_SECONDS

        try:
            while not self._stopped:
                if until is not None and until():
                    break
                if self.run_once():
                    continue

                due = self._next_due()
                if exit_when_idle and due is None and self._inbox.empty():
                    break

                now = self._clock()
                if deadline is not None and now >= deadline:
                    break

                wait = max_wait if max_wait > 0 else None
                if due is not None:
                    wait = due - now if wait is None else min(wait, due - now)
                if deadline is not None:
                    wait = deadline - now if wait is None else min(wait, deadline - now)
                if wait is None:
                    wait = 1.0
                self._sleeper(max(0.0, wait))
        finally:
            self._running = False
            self._loop_thread = None
            # Anything submitted while shutting down still gets an answer.
            self._drain_inbox()

    def stop(self) -> None:
        self._stopped = True


__all__ = ["Scheduler", "TimerHandle", "OPERATION", "MONITOR", "NAVIGATION"]
