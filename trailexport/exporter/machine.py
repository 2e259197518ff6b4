"""Session state machine for the recording exporter.

Progress is driven by page loads. Each unit of work ends by writing its
checkpoint to the store and then asking the scheduler for a navigation; the
next page load calls ``on_page_load`` which reads the checkpoint back and
dispatches to the handler for the persisted mode.
"""
from __future__ import annotations

import random
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

from . import config
from .collaborators import ExportResult, LogNotifier, Notifier, PageCollaborator
from .error_codes import ErrorCode
from .errors import ActionNotFound, ActionRejected, ExtractionError, ProtectionDetected, StuckTimeout
from .logging_utils import _export_event
from .metadata import error_record, save_metadata_record
from .modes import PAUSED_MODES, RESUMABLE_MODES, Mode, _safe_mode
from .pacing import Pacing
from .protection import ProtectionDetector, ProtectionKind, ProtectionSignal
from .recovery import RecoveryMonitor
from .scheduler import MONITOR, OPERATION, Scheduler
from .store import Keys, PersistenceStore
from .targets import (
    collect_targets,
    is_discovery_page,
    is_target_url,
    normalize_target,
    parse_import_text,
    target_label,
)
from .utils import log_line
from .work_queue import ImportResult, Outcome, WorkQueue

_TRANSITIONS: dict[Mode, frozenset[Mode]] = {
    Mode.IDLE: frozenset({Mode.IDLE, Mode.DISCOVERING, Mode.DOWNLOADING}),
    Mode.DISCOVERING: frozenset({Mode.DISCOVERING, Mode.IDLE, Mode.CHALLENGE_PAUSED}),
    Mode.DOWNLOADING: frozenset(
        {Mode.DOWNLOADING, Mode.IDLE, Mode.CHALLENGE_PAUSED, Mode.RATE_LIMIT_BACKOFF}
    ),
    Mode.CHALLENGE_PAUSED: frozenset({Mode.IDLE, Mode.DISCOVERING, Mode.DOWNLOADING}),
    Mode.RATE_LIMIT_BACKOFF: frozenset({Mode.DOWNLOADING, Mode.IDLE}),
}

# Only these triggers may take the session out of a challenge pause.
_RESUME_TRIGGERS = frozenset({"resume", "auto_resume"})

# Short pauses around clicks and navigations, not scaled by the multiplier.
_FAILED_SETTLE = (1.5, 3.0)
_FINISH_SETTLE = (1.5, 3.0)
_SCAN_JITTER = (0.5, 1.5)


@dataclass
class MachineSettings:
    stuck_timeout: float = 300.0
    process_timeout: float = 90.0
    heartbeat_interval: float = 30.0
    protection_interval: float = 2.0
    challenge_auto_retry: float = 60.0
    rate_limit_grace: float = 3.0
    max_scan_attempts: int = 100
    zero_yield_limit: int = 3
    scroll_amount: int = 3000
    scroll_jitter: int = 800
    save_metadata: bool = True
    auto_recover: bool = True
    max_navigation_attempts: int = 3

    @classmethod
    def from_config(cls) -> "MachineSettings":
        return cls(
            stuck_timeout=float(config.STUCK_TIMEOUT_SECONDS),
            process_timeout=float(config.PROCESS_TIMEOUT_SECONDS),
            heartbeat_interval=float(config.HEARTBEAT_INTERVAL_SECONDS),
            protection_interval=float(config.PROTECTION_CHECK_INTERVAL_SECONDS),
            challenge_auto_retry=float(config.CHALLENGE_AUTO_RETRY_SECONDS),
            rate_limit_grace=float(config.RATE_LIMIT_GRACE_SECONDS),
            max_scan_attempts=config.MAX_SCAN_ATTEMPTS,
            zero_yield_limit=config.ZERO_YIELD_LIMIT,
            scroll_amount=config.SCROLL_AMOUNT,
            scroll_jitter=config.SCROLL_JITTER,
            save_metadata=config.SAVE_METADATA,
            auto_recover=config.AUTO_RECOVER,
            max_navigation_attempts=config.MAX_NAVIGATION_ATTEMPTS,
        )


@dataclass
class SessionSnapshot:
    """Read-only view of the session for the control panel and CLI."""

    mode: str
    mode_data: dict[str, Any]
    last_activity: Optional[float]
    last_mode_change: Optional[float]
    last_heartbeat: Optional[float]
    counters: dict[str, int]
    head: Optional[str]
    delay_multiplier: float
    challenge: Optional[dict[str, Any]]
    origin_url: Optional[str]
    scan_attempts: int
    page_url: str = ""
    banners: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SessionStateMachine:
    def __init__(
        self,
        store: PersistenceStore,
        page: PageCollaborator,
        scheduler: Scheduler,
        *,
        notifier: Optional[Notifier] = None,
        detector: Optional[ProtectionDetector] = None,
        settings: Optional[MachineSettings] = None,
        rng: Optional[random.Random] = None,
        metadata_sink: Optional[Callable[[dict[str, Any]], Any]] = None,
    ) -> None:
        self.store = store
        self.page = page
        self.scheduler = scheduler
        self.settings = settings or MachineSettings.from_config()
        self.notifier: Notifier = notifier or LogNotifier()
        self.detector = detector or ProtectionDetector(page.snapshot)
        self._rng = rng or random.Random()
        self._clock = scheduler.now
        self.queue = WorkQueue(store, clock=self._clock, rng=self._rng)
        self.pacing = Pacing(store, rng=self._rng)
        self.recovery = RecoveryMonitor(
            store,
            clock=self._clock,
            stuck_timeout=self.settings.stuck_timeout,
            on_stuck=self._on_stuck,
        )
        self._metadata_sink = metadata_sink or save_metadata_record
        self._idle_signal_seen: Optional[str] = None
        self._discovery_retry_pending = False

    # ------------------------------------------------------------------
    # Persisted session state
    # ------------------------------------------------------------------

    @property
    def mode(self) -> Mode:
        return _safe_mode(self.store.get(Keys.MODE, Mode.IDLE.value))

    @property
    def mode_data(self) -> dict[str, Any]:
        data = self.store.get(Keys.MODE_DATA) or {}
        return data if isinstance(data, dict) else {}

    def _ensure_can_transition(self, current: Mode, target: Mode, trigger: str) -> bool:
        allowed = target in _TRANSITIONS.get(current, frozenset())
        if allowed and current == Mode.CHALLENGE_PAUSED:
            allowed = trigger in _RESUME_TRIGGERS
        if not allowed:
            _export_event(
                "error",
                phase="transition",
                from_mode=current.value,
                to_mode=target.value,
                trigger=trigger,
                error="invalid_transition",
            )
        return allowed

    def _set_mode(self, target: Mode, data: Optional[dict[str, Any]] = None, *, trigger: str) -> bool:
        current = self.mode
        if not self._ensure_can_transition(current, target, trigger):
            return False

        now = self._clock()
        updates: dict[str, Any] = {
            Keys.MODE: target.value,
            Keys.MODE_DATA: data or {},
            Keys.LAST_ACTIVITY: now,
        }
        if target != current:
            updates[Keys.LAST_MODE_CHANGE] = now
        self.store.set_many(updates)

        if target != current:
            _export_event(
                "transition",
                from_mode=current.value,
                to_mode=target.value,
                trigger=trigger,
            )
            log_line(f"Mode changed to: {target.value}")
        return True

    def _touch(self) -> None:
        self.store.set(Keys.LAST_ACTIVITY, self._clock())

    def _navigate(self, url: str, *, label: str) -> None:
        def _load() -> None:
            if not self.page.navigate_to(url):
                _export_event("error", phase="navigation", url=url, landed=self.page.current_url)
            self.on_page_load()

        self.scheduler.begin_navigation(_load, label=label)

    def _reload(self, *, label: str) -> None:
        self._navigate(self.page.current_url, label=label)

    def entry_url(self, start_url: Optional[str] = None) -> str:
        """Pick the page a fresh browser should open for the persisted mode."""

        mode = self.mode
        origin = self.store.get(Keys.ORIGIN_URL)
        if mode in (Mode.DOWNLOADING, Mode.RATE_LIMIT_BACKOFF):
            target = self.mode_data.get("navigatingTo") or self.queue.head()
            if target:
                return target
        elif mode == Mode.DISCOVERING and origin:
            return origin
        elif mode == Mode.CHALLENGE_PAUSED:
            record = self.store.get(Keys.CHALLENGE) or {}
            if record.get("url"):
                return record["url"]
        return start_url or origin or config.DEFAULT_ORIGIN_URL

    def open_session(self, url: str, *, after_load: Optional[Callable[[], Any]] = None) -> None:
        """Load ``url`` as the first page of this process.

        ``after_load`` runs once the persisted mode has been restored, for a
        start action requested on the command line.
        """

        log_line(f"Opening {url} (persisted mode: {self.mode.value})")

        def _load() -> None:
            self.page.navigate_to(url)
            self.on_page_load()
            if after_load is not None and not self.scheduler.navigating:
                self.scheduler.call_later(1.0, after_load, label="after_open")

        self.scheduler.begin_navigation(_load, label="open_session")

    # ------------------------------------------------------------------
    # Page-load entry point
    # ------------------------------------------------------------------

    def _register_monitors(self) -> None:
        self.scheduler.cancel_group(MONITOR)
        self.scheduler.call_every(
            self.settings.heartbeat_interval, self.recovery.beat, group=MONITOR, label="heartbeat"
        )
        self.scheduler.call_every(
            self.settings.protection_interval,
            self._protection_tick,
            group=MONITOR,
            label="protection",
            first_delay=min(1.0, self.settings.protection_interval),
        )

    def on_page_load(self) -> None:
        """Restore the persisted mode for the page that has just loaded."""

        self._idle_signal_seen = None
        self._discovery_retry_pending = False
        self._register_monitors()

        if self.settings.auto_recover and self.recovery.check_and_recover():
            if self.scheduler.navigating:
                return

        mode = self.mode
        url = self.page.current_url
        _export_event("state", phase="page_load", mode=mode.value, url=url)

        if mode == Mode.CHALLENGE_PAUSED:
            self._restore_challenge_pause()
        elif mode == Mode.RATE_LIMIT_BACKOFF:
            self._restore_backoff()
        elif mode == Mode.DISCOVERING:
            if not is_discovery_page(url):
                self._self_correct("not_a_discovery_page", url)
                return
            delay = self.pacing.delay("page_load")
            self.scheduler.call_later(delay, self._handle_discovery, label="discovery_scan")
        elif mode == Mode.DOWNLOADING:
            self._resume_download(url)

    def _self_correct(self, reason: str, url: str) -> None:
        _export_event("state", phase="self_correct", mode=self.mode.value, reason=reason, url=url)
        log_line(f"Persisted mode {self.mode.value} does not match {url}; returning to idle")
        self._set_mode(Mode.IDLE, {}, trigger="self_correct")

    # ------------------------------------------------------------------
    # Protection handling
    # ------------------------------------------------------------------

    def _protection_tick(self) -> None:
        if self.scheduler.navigating or self.mode in PAUSED_MODES:
            return
        signal = self.detector.detect()
        if signal.present:
            self._handle_protection(signal)

    def _handle_protection(self, signal: ProtectionSignal) -> None:
        mode = self.mode

        if signal.kind == ProtectionKind.CHALLENGE:
            if mode in (Mode.DISCOVERING, Mode.DOWNLOADING):
                self._pause_for_challenge(signal)
            elif mode == Mode.IDLE and self._idle_signal_seen != signal.kind.value:
                self._idle_signal_seen = signal.kind.value
                self.notifier.banner(
                    "challenge",
                    f"Verification challenge detected ({signal.widget or signal.detail}). "
                    "Complete it manually; nothing is running.",
                )
            return

        if signal.kind == ProtectionKind.RATE_LIMIT:
            if mode == Mode.DOWNLOADING:
                self._enter_backoff(signal)
            elif mode == Mode.DISCOVERING:
                self._delay_discovery(signal)
            elif mode == Mode.IDLE and self._idle_signal_seen != signal.kind.value:
                self._idle_signal_seen = signal.kind.value
                log_line(f"Rate limit message visible while idle: {signal.detail}")

    def _pause_for_challenge(self, signal: ProtectionSignal) -> None:
        prior = self.mode
        now = self._clock()
        self.scheduler.cancel_group(OPERATION)
        self._discovery_retry_pending = False

        record = {
            "timestamp": now,
            "type": signal.widget or signal.kind.value,
            "detail": signal.detail,
            "url": self.page.current_url,
            "previousMode": prior.value,
            "autoResumeAt": now + self.settings.challenge_auto_retry,
            "autoResumeAttempted": False,
        }
        self.store.set(Keys.CHALLENGE, record)
        if not self._set_mode(Mode.CHALLENGE_PAUSED, self.mode_data, trigger="challenge"):
            return

        pending = len(self.queue.pending())
        log_line(f"CHALLENGE detected: {record['type']} at {record['url']} (mode {prior.value}, {pending} pending)")
        self.notifier.banner(
            "challenge",
            f"Verification challenge detected ({record['type']}). Complete it in the browser, "
            "then press Resume.",
        )
        self._arm_auto_resume(self.settings.challenge_auto_retry)

    def _arm_auto_resume(self, delay: float) -> None:
        self.scheduler.call_later(delay, self._auto_resume, label="challenge_auto_resume")

    def _restore_challenge_pause(self) -> None:
        record = self.store.get(Keys.CHALLENGE) or {}
        log_line("Paused for a verification challenge")
        self.notifier.banner(
            "challenge",
            f"Still paused for a verification challenge ({record.get('type', 'unknown')}).",
        )
        if not record.get("autoResumeAttempted"):
            remaining = max(0.0, float(record.get("autoResumeAt") or 0) - self._clock())
            self._arm_auto_resume(remaining)

    def _auto_resume(self) -> None:
        if self.mode != Mode.CHALLENGE_PAUSED:
            return
        record = self.store.get(Keys.CHALLENGE) or {}
        if record.get("autoResumeAttempted"):
            return
        record["autoResumeAttempted"] = True
        self.store.set(Keys.CHALLENGE, record)
        _export_event("state", phase="challenge", kind="auto_resume")
        try:
            self.resume_after_challenge(trigger="auto_resume")
        except ActionRejected as exc:
            log_line(f"Automatic resume skipped: {exc}")

    def _enter_backoff(self, signal: ProtectionSignal) -> None:
        current = self.mode_data.get("current")
        self.scheduler.cancel_group(OPERATION)
        multiplier = self.pacing.escalate()

        data: dict[str, Any] = {
            "enteredAt": self._clock(),
            "graceUntil": self._clock() + self.settings.rate_limit_grace,
            "penalized": current,
            "detail": signal.detail,
        }
        if current:
            decision = self.queue.penalize(current)
            data["attempt"] = decision.attempt
            data["requeued"] = decision.requeue
            if decision.requeue:
                log_line(
                    f"{target_label(current)} moved to end of queue for later retry "
                    f"(attempt {decision.attempt}/{decision.max_attempts})"
                )
            else:
                log_line(f"{target_label(current)} permanently failed after {decision.attempt} rate limits")

        if not self._set_mode(Mode.RATE_LIMIT_BACKOFF, data, trigger="rate_limit"):
            return

        head = self.queue.head()
        self.notifier.banner(
            "rate_limit",
            f"Rate limit detected. Next: {target_label(head) or 'none (finishing)'}; "
            f"{len(self.queue.pending())} remaining; delays now x{multiplier:g}.",
        )
        self.scheduler.call_later(
            self.settings.rate_limit_grace, self._advance_after_backoff, label="backoff_grace"
        )

    def _restore_backoff(self) -> None:
        grace_until = float(self.mode_data.get("graceUntil") or 0)
        remaining = max(0.0, grace_until - self._clock())
        log_line("In rate limit backoff")
        self.scheduler.call_later(remaining, self._advance_after_backoff, label="backoff_grace")

    def _advance_after_backoff(self) -> None:
        if self.mode != Mode.RATE_LIMIT_BACKOFF:
            return
        self.notifier.clear_banner("rate_limit")
        head = self.queue.head()
        if head is None:
            self._finish_download()
            return
        log_line(f"Moving to next target after rate limit: {target_label(head)}")
        self._go_to_target(head, trigger="backoff_elapsed")

    def _delay_discovery(self, signal: ProtectionSignal) -> None:
        if self._discovery_retry_pending:
            return
        self._discovery_retry_pending = True
        self.scheduler.cancel_group(OPERATION)
        self.pacing.escalate()
        delay = self.pacing.delay("rate_limit_retry")
        self._touch()
        log_line(f"Rate limited during discovery ({signal.detail}); next scan in {delay:.0f}s")
        self.scheduler.call_later(delay, self._retry_discovery, label="discovery_rate_limit_retry")

    def _retry_discovery(self) -> None:
        self._discovery_retry_pending = False
        self._handle_discovery()

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def _handle_discovery(self) -> None:
        if self.mode != Mode.DISCOVERING or self._discovery_retry_pending:
            return
        try:
            self._scan_once()
        except ProtectionDetected as exc:
            self._handle_protection(exc.signal)
        except Exception as exc:  # noqa: BLE001
            _export_event("error", phase="discovery", error=repr(exc))
            self._finish_discovery("error")

    def _scan_once(self) -> None:
        self.detector.require_clear()

        snapshot = self.page.snapshot()
        observed = collect_targets(snapshot) if snapshot is not None else []
        merge = self.queue.merge_discovered(observed)

        attempts = int(self.store.get(Keys.SCAN_ATTEMPTS, 0) or 0)
        streak = 0 if merge.new_count else int(self.store.get(Keys.ZERO_YIELD_STREAK, 0) or 0) + 1
        self.store.set(Keys.ZERO_YIELD_STREAK, streak)
        self._set_mode(
            Mode.DISCOVERING,
            {**self.mode_data, "scanAttempts": attempts, "lastNew": merge.new_count},
            trigger="scan",
        )
        log_line(f"Found {merge.new_count} new targets, total: {merge.total_discovered}")

        if streak > self.settings.zero_yield_limit:
            self._finish_discovery("no_new_targets")
            return
        if attempts >= self.settings.max_scan_attempts:
            self._finish_discovery("max_scan_attempts")
            return

        jitter = self.settings.scroll_jitter
        amount = self.settings.scroll_amount + self._rng.randint(-jitter, jitter)
        expanded = self.page.expand_visible_content(amount)
        self.store.set(Keys.SCAN_ATTEMPTS, attempts + 1)
        if not expanded:
            self._finish_discovery("end_of_page")
            return

        delay = self.pacing.delay("scroll") + self.pacing.delay("scroll", _SCAN_JITTER)
        self.scheduler.call_later(delay, self._handle_discovery, label="discovery_scan")

    def _finish_discovery(self, reason: str) -> None:
        counters = self.queue.counters()
        if not self._set_mode(Mode.IDLE, {}, trigger=f"discovery_{reason}"):
            return
        already = max(0, counters.discovered - counters.pending)
        _export_event(
            "state",
            phase="discovery_complete",
            reason=reason,
            discovered=counters.discovered,
            pending=counters.pending,
        )
        self.notifier.alert(
            f"Discovery complete ({reason.replace('_', ' ')}). Total: {counters.discovered}, "
            f"Pending: {counters.pending}, Already processed: {already}",
            kind="summary",
        )
        origin = self.store.get(Keys.ORIGIN_URL)
        if origin and origin != self.page.current_url:
            self.scheduler.call_later(
                self.pacing.delay("click"),
                lambda: self._navigate(origin, label="return_to_origin"),
                label="return_to_origin",
            )

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def _go_to_target(self, target: str, *, trigger: str, attempt: int = 1) -> None:
        data = {"current": None, "navigatingTo": target, "navAttempt": attempt}
        if self._set_mode(Mode.DOWNLOADING, data, trigger=trigger):
            self._navigate(target, label=f"target:{target_label(target)}")

    def _resume_download(self, url: str) -> None:
        head = self.queue.head()
        if head is None:
            self._finish_download()
            return

        if is_target_url(url) and normalize_target(url) == head:
            self._begin_item(head)
        elif self.mode_data.get("navigatingTo") == head:
            self._retry_navigation(head, url)
        elif not is_target_url(url):
            self._self_correct("not_a_target_page", url)
        else:
            log_line(f"On {target_label(url)} but {target_label(head)} is next; navigating")
            self._go_to_target(head, trigger="reposition")

    def _retry_navigation(self, head: str, url: str) -> None:
        """The load for ``head`` left the tab elsewhere; try again or give up on it."""

        attempt = int(self.mode_data.get("navAttempt") or 1)
        limit = self.settings.max_navigation_attempts
        _export_event(
            "error",
            phase="navigation",
            target=target_label(head),
            attempt=attempt,
            max_attempts=limit,
            landed=url,
        )
        if attempt >= limit:
            log_line(f"Could not open {target_label(head)} after {attempt} attempts, marking as failed")
            self._complete(head, Outcome.FAILED, reason=ErrorCode.NAVIGATION_FAILED)
            return
        log_line(f"Page did not reach {target_label(head)}; retrying ({attempt + 1}/{limit})")
        self.scheduler.call_later(
            self.pacing.delay("page_load"),
            lambda: self._go_to_target(head, trigger="navigation_retry", attempt=attempt + 1),
            label="navigation_retry",
        )

    def _begin_item(self, target: str) -> None:
        self._set_mode(Mode.DOWNLOADING, {"current": target, "startedAt": self._clock()}, trigger="item")
        wait = max(self.pacing.delay("page_load"), self.queue.retry_wait(target))
        log_line(f"Processing: {target_label(target)}")
        self.scheduler.call_later(
            wait, lambda: self._run_item_step(target, "prepare", self._step_prepare), label="item_prepare"
        )

    def _run_item_step(self, target: str, step: str, fn: Callable[[str], None]) -> None:
        """Run one step of an item; every failure becomes a terminal outcome."""

        if self.mode != Mode.DOWNLOADING or self.mode_data.get("current") != target:
            return
        try:
            fn(target)
        except ProtectionDetected as exc:
            self._handle_protection(exc.signal)
        except ActionNotFound as exc:
            _export_event("error", phase="item", step=step, target=target_label(target), error=str(exc))
            self._complete(target, Outcome.FAILED, reason=ErrorCode.ACTION_NOT_FOUND)
        except Exception as exc:  # noqa: BLE001
            _export_event("error", phase="item", step=step, target=target_label(target), error=repr(exc))
            self._complete(target, Outcome.FAILED, reason=ErrorCode.INTERNAL)

    def _schedule_step(self, delay: float, target: str, step: str, fn: Callable[[str], None]) -> None:
        self.scheduler.call_later(
            delay, lambda: self._run_item_step(target, step, fn), label=f"item_{step}"
        )

    def _step_prepare(self, target: str) -> None:
        self.detector.require_clear()
        self._touch()
        self.scheduler.call_later(
            self.settings.process_timeout,
            lambda: self._on_process_timeout(target),
            label="process_timeout",
        )
        if self.settings.save_metadata:
            self._schedule_step(0.0, target, "metadata", self._step_metadata)
        else:
            self._schedule_step(self.pacing.delay("click"), target, "export", self._step_export)

    def _step_metadata(self, target: str) -> None:
        self.detector.require_clear()
        try:
            record = self.page.extract_item_metadata()
        except ExtractionError as exc:
            _export_event(
                "error",
                phase="item",
                step="metadata",
                target=target_label(target),
                error_code=ErrorCode.EXTRACTION,
                error=str(exc),
            )
            record = error_record(self.page.current_url, exc)
        self._metadata_sink(record)
        self._touch()
        self._schedule_step(self.pacing.delay("click"), target, "export", self._step_export)

    def _step_export(self, target: str) -> None:
        self.detector.require_clear()
        result = self.page.trigger_artifact_export()
        if result == ExportResult.NOT_FOUND:
            raise ActionNotFound("export", f"No export affordance found for {target_label(target)}")

        reason = None
        if result == ExportResult.AMBIGUOUS:
            # No file arrived; a refusal dialog shown after the click takes precedence.
            self.detector.require_clear()
            reason = ErrorCode.EXPORT_UNCONFIRMED
        self._complete(target, Outcome.DOWNLOADED, reason=reason)

    def _on_process_timeout(self, target: str) -> None:
        if self.mode != Mode.DOWNLOADING or self.mode_data.get("current") != target:
            return
        log_line(f"Processing timeout for {target_label(target)}, marking as failed")
        self._complete(target, Outcome.FAILED, reason=ErrorCode.PROCESS_TIMEOUT)

    def _complete(self, target: str, outcome: Outcome, *, reason: Optional[str] = None) -> None:
        self.scheduler.cancel_group(OPERATION)
        self.queue.mark_processed(target, outcome, reason=reason)
        self._set_mode(
            Mode.DOWNLOADING,
            {"current": None, "last": target, "lastOutcome": outcome.value},
            trigger="item_complete",
        )

        if outcome == Outcome.DOWNLOADED:
            log_line(f"Success: {target_label(target)}" + (f" ({reason})" if reason else ""))
            delay = self.pacing.delay("download")
        else:
            log_line(f"Failed: {target_label(target)} ({reason})")
            delay = self.pacing.delay("click", _FAILED_SETTLE)
        self.scheduler.call_later(delay, self._advance, label="advance")

    def _advance(self) -> None:
        if self.mode != Mode.DOWNLOADING:
            return
        head = self.queue.head()
        if head is None:
            self._finish_download()
            return
        log_line(f"Moving to next: {target_label(head)} ({len(self.queue.pending())} remaining)")
        self._go_to_target(head, trigger="advance")

    def _finish_download(self) -> None:
        counters = self.queue.counters()
        if not self._set_mode(Mode.IDLE, {}, trigger="queue_empty"):
            return
        _export_event(
            "state",
            phase="download_complete",
            downloaded=counters.downloaded,
            failed=counters.failed,
        )
        self.notifier.alert(
            f"Download complete! Downloaded: {counters.downloaded}, Failed: {counters.failed}, "
            f"Total: {counters.downloaded + counters.failed}",
            kind="summary",
        )
        origin = self.store.get(Keys.ORIGIN_URL) or config.DEFAULT_ORIGIN_URL
        if origin != self.page.current_url:
            self._navigate(origin, label="return_to_origin")

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    def _on_stuck(self, stuck: StuckTimeout) -> bool:
        return self.force_recovery(reason=ErrorCode.STUCK_TIMEOUT)

    def force_recovery(self, *, reason: str = "manual") -> bool:
        """Fail-and-advance a download, or drop any other active mode to idle.

        Returns ``True`` when a navigation was started.
        """

        mode = self.mode
        if mode == Mode.IDLE:
            return False

        self.scheduler.cancel_group(OPERATION)
        _export_event("state", phase="recovery", mode=mode.value, reason=reason)

        if mode == Mode.DOWNLOADING:
            # Stuck while processing the head or while loading its page.
            current = self.mode_data.get("current") or self.mode_data.get("navigatingTo")
            if current is not None and current == self.queue.head():
                self.queue.mark_processed(current, Outcome.FAILED, reason=ErrorCode.STUCK_TIMEOUT)
                log_line(f"Marking stuck target as failed: {target_label(current)}")
            self._set_mode(Mode.DOWNLOADING, {"current": None}, trigger="recovery")
            self._advance()
            return self.scheduler.navigating

        self.notifier.clear_banner("rate_limit")
        self._set_mode(Mode.IDLE, {}, trigger="recovery")
        return False

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def _reject(self, message: str, *, action: str) -> None:
        _export_event("error", phase="action", action=action, mode=self.mode.value, error=message)
        self.notifier.alert(message, kind="rejected")
        raise ActionRejected(message)

    def _reject_if_paused(self, action: str) -> None:
        if self.mode == Mode.CHALLENGE_PAUSED:
            self._reject(
                "Paused for a verification challenge. Complete it and press Resume first.",
                action=action,
            )

    def _reject_if_protected(self, action: str) -> None:
        signal = self.detector.detect()
        if signal.present:
            self._handle_protection(signal)
            kind = signal.kind.value.replace("_", " ") if signal.kind else "protection"
            self._reject(f"The page is showing a {kind}; try again once it clears.", action=action)

    def start_discovery(self) -> None:
        self._reject_if_paused("start_discovery")
        if self.mode != Mode.IDLE:
            self._reject(f"Cannot start discovery while {self.mode.value}.", action="start_discovery")

        url = self.page.current_url
        if not is_discovery_page(url):
            self._reject(
                "Please navigate to your AllTrails recordings page first "
                f"(e.g. {config.DEFAULT_ORIGIN_URL}).",
                action="start_discovery",
            )
        self._reject_if_protected("start_discovery")

        self.store.set_many(
            {Keys.ORIGIN_URL: url, Keys.SCAN_ATTEMPTS: 0, Keys.ZERO_YIELD_STREAK: 0}
        )
        existing = len(self.queue.discovered())
        self._set_mode(Mode.DISCOVERING, {"origin": url}, trigger="start_discovery")
        log_line(f"Starting discovery from {url} ({existing} already known)")
        self._reload(label="start_discovery")

    def start_download(self) -> None:
        self._reject_if_paused("start_download")
        if self.mode != Mode.IDLE:
            self._reject(f"Cannot start downloading while {self.mode.value}.", action="start_download")

        head = self.queue.head()
        if head is None:
            self._reject(
                "No targets to download. Run discovery first or import a list.",
                action="start_download",
            )
        self._reject_if_protected("start_download")

        if not self.store.get(Keys.ORIGIN_URL):
            self.store.set(Keys.ORIGIN_URL, self.page.current_url or config.DEFAULT_ORIGIN_URL)
        log_line(f"Starting download of {len(self.queue.pending())} targets")
        if self._set_mode(Mode.DOWNLOADING, {"current": None, "navigatingTo": head}, trigger="start_download"):
            self.scheduler.call_later(
                self.pacing.delay("click"),
                lambda: self._navigate(head, label=f"target:{target_label(head)}"),
                label="start_download",
            )

    def resume_after_challenge(self, *, trigger: str = "resume") -> Mode:
        if self.mode != Mode.CHALLENGE_PAUSED:
            self._reject("Not paused for a challenge; nothing to resume.", action="resume")

        signal = self.detector.detect()
        if signal.is_challenge:
            self._reject(
                "The challenge is still visible. Please complete it first.", action="resume"
            )

        record = self.store.get(Keys.CHALLENGE) or {}
        previous = _safe_mode(record.get("previousMode"))
        if previous not in RESUMABLE_MODES:
            previous = Mode.IDLE

        self.scheduler.cancel_group(OPERATION)
        mode_data = self.mode_data
        self.store.delete(Keys.CHALLENGE)
        if not self._set_mode(previous, mode_data, trigger=trigger):
            return self.mode
        self.notifier.clear_banner("challenge")
        log_line(f"Resuming from previous mode: {previous.value}")

        if previous == Mode.DOWNLOADING:
            head = self.queue.head()
            if head is None:
                self._finish_download()
            else:
                self._go_to_target(head, trigger="resume")
        elif previous == Mode.DISCOVERING:
            origin = self.store.get(Keys.ORIGIN_URL)
            if origin and not is_discovery_page(self.page.current_url):
                self._navigate(origin, label="resume_discovery")
            else:
                self._reload(label="resume_discovery")
        else:
            self._reload(label="resume_idle")
        return previous

    def disable_backoff_mode(self) -> None:
        self.pacing.reset()
        cleared = self.queue.clear_penalties()
        self.notifier.clear_banner("rate_limit")

        if self.mode == Mode.RATE_LIMIT_BACKOFF:
            self.scheduler.cancel_group(OPERATION)
            head = self.queue.head()
            if head is not None:
                log_line("Resuming download after disabling rate limit mode")
                self._go_to_target(head, trigger="disable_backoff")
            else:
                self._set_mode(Mode.IDLE, {}, trigger="disable_backoff")

        self.notifier.alert(
            f"Rate limit mode disabled. Delays reset to original values; {cleared} penalty records cleared."
        )

    def stop_all(self) -> None:
        """Wipe all persisted state and cancel every timer. Allowed in any mode."""

        previous = self.mode
        dropped = self.scheduler.cancel_all()
        self.store.clear()
        self._discovery_retry_pending = False
        self.notifier.clear_banner("challenge")
        self.notifier.clear_banner("rate_limit")
        _export_event("transition", from_mode=previous.value, to_mode=Mode.IDLE.value, trigger="stop", dropped_timers=dropped)
        log_line("All processes stopped and state cleared")
        self._register_monitors()

    def import_targets(self, text: str) -> ImportResult:
        self._reject_if_paused("import")
        if self.mode != Mode.IDLE:
            self._reject(f"Import is only available while idle (currently {self.mode.value}).", action="import")

        parsed = parse_import_text(text)
        log_line(f"Import: {parsed.line_count} lines split by {parsed.split_method}")
        if not parsed.targets:
            self._reject(
                "No valid AllTrails recording URLs found. Entries must contain "
                f"'{config.TARGET_PATH_MARKER}' or be bare recording identifiers.",
                action="import",
            )

        result = self.queue.import_targets(parsed.targets, discarded=len(parsed.discarded))
        self.notifier.alert(
            f"Imported {result.added_count} targets ({result.duplicates} duplicates, "
            f"{result.already_processed} already processed, {result.discarded} discarded). "
            f"Pending: {len(self.queue.pending())}"
        )
        return result

    def export_pending_targets(self) -> str:
        return self.queue.export_pending()

    def recover_from_stuck(self) -> Mode:
        log_line("Manual recovery initiated")
        if self.mode == Mode.CHALLENGE_PAUSED:
            return self.resume_after_challenge()
        self.force_recovery(reason="manual")
        return self.mode

    def snapshot(self) -> SessionSnapshot:
        def _as_float(value: Any) -> Optional[float]:
            try:
                return float(value) if value is not None else None
            except (TypeError, ValueError):
                return None

        return SessionSnapshot(
            mode=self.mode.value,
            mode_data=self.mode_data,
            last_activity=_as_float(self.store.get(Keys.LAST_ACTIVITY)),
            last_mode_change=_as_float(self.store.get(Keys.LAST_MODE_CHANGE)),
            last_heartbeat=self.recovery.last_heartbeat(),
            counters=self.queue.counters().to_dict(),
            head=self.queue.head(),
            delay_multiplier=self.pacing.multiplier,
            challenge=self.store.get(Keys.CHALLENGE),
            origin_url=self.store.get(Keys.ORIGIN_URL),
            scan_attempts=int(self.store.get(Keys.SCAN_ATTEMPTS, 0) or 0),
            page_url=self.page.current_url,
            banners=dict(getattr(self.notifier, "banners", {}) or {}),
        )


__all__ = ["SessionStateMachine", "MachineSettings", "SessionSnapshot"]
