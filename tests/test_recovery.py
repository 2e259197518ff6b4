from __future__ import annotations

import pytest

from trailexport.exporter.errors import StuckTimeout
from trailexport.exporter.modes import Mode
from trailexport.exporter.recovery import RecoveryMonitor
from trailexport.exporter.store import Keys, PersistenceStore
from trailexport.exporter.work_queue import Outcome

from tests.test_scheduler import _FakeClock
from tests.test_session_machine import DISCOVERY_URL, X, Y, Z, _build_machine, _processed


def _monitor(clock: _FakeClock, calls: list[StuckTimeout]) -> RecoveryMonitor:
    store = PersistenceStore(":memory:", namespace="r_", clock=clock)

    def _on_stuck(stuck: StuckTimeout) -> bool:
        calls.append(stuck)
        return False

    return RecoveryMonitor(store, clock=clock, stuck_timeout=300.0, on_stuck=_on_stuck)


def test_idle_is_never_stuck() -> None:
    clock = _FakeClock()
    calls: list[StuckTimeout] = []
    monitor = _monitor(clock, calls)
    monitor.store.set(Keys.LAST_ACTIVITY, clock.now - 10_000)

    assert monitor.check_and_recover() is False
    assert calls == []


@pytest.mark.parametrize("mode", [Mode.CHALLENGE_PAUSED, Mode.RATE_LIMIT_BACKOFF])
def test_paused_modes_are_exempt(mode: Mode) -> None:
    clock = _FakeClock()
    calls: list[StuckTimeout] = []
    monitor = _monitor(clock, calls)
    monitor.store.set_many({Keys.MODE: mode.value, Keys.LAST_ACTIVITY: clock.now - 10_000})

    assert monitor.check_and_recover() is False
    assert calls == []


def test_activity_older_than_timeout_is_stuck() -> None:
    clock = _FakeClock()
    calls: list[StuckTimeout] = []
    monitor = _monitor(clock, calls)
    monitor.store.set_many({Keys.MODE: "downloading", Keys.LAST_ACTIVITY: clock.now - 200})
    assert monitor.check_and_recover() is False

    clock.sleep(101)
    assert monitor.check_and_recover() is True
    assert calls[0].mode == "downloading"
    assert calls[0].elapsed == pytest.approx(301, abs=0.01)


def test_heartbeat_only_written_while_active() -> None:
    clock = _FakeClock()
    monitor = _monitor(clock, [])

    monitor.beat()
    assert monitor.last_heartbeat() is None

    monitor.store.set(Keys.MODE, "discovering")
    clock.sleep(5)
    monitor.beat()
    assert monitor.last_heartbeat() == clock.now


def test_stuck_discovery_returns_to_idle_on_load(monkeypatch: pytest.MonkeyPatch) -> None:
    h = _build_machine(monkeypatch)
    h.machine.import_targets(X)
    h.store.set_many(
        {
            Keys.MODE: Mode.DISCOVERING.value,
            Keys.ORIGIN_URL: DISCOVERY_URL,
            Keys.LAST_ACTIVITY: h.clock.now - 400,
        }
    )

    h.machine.open_session(DISCOVERY_URL)
    h.scheduler.run(timeout=30)

    assert h.machine.mode == Mode.IDLE
    assert h.machine.queue.pending() == [X]
    assert h.machine.queue.processed() == []
    assert h.site.scrolls == 0


def test_stuck_download_fails_head_and_advances(monkeypatch: pytest.MonkeyPatch) -> None:
    h = _build_machine(monkeypatch)
    h.machine.import_targets("\n".join([X, Y]))
    h.store.set_many(
        {
            Keys.MODE: Mode.DOWNLOADING.value,
            Keys.MODE_DATA: {"current": X},
            Keys.ORIGIN_URL: DISCOVERY_URL,
            Keys.LAST_ACTIVITY: h.clock.now - 400,
        }
    )

    h.machine.open_session(h.machine.entry_url())
    h.run_until_idle()

    entries = h.machine.queue.processed()
    assert [(e.target, e.outcome, e.reason) for e in entries] == [
        (X, Outcome.FAILED, "stuck_timeout"),
        (Y, Outcome.DOWNLOADED, None),
    ]
    assert h.site.exports == [Y]


def test_stuck_while_loading_head_fails_it(monkeypatch: pytest.MonkeyPatch) -> None:
    h = _build_machine(monkeypatch)
    h.machine.import_targets("\n".join([X, Y]))
    h.store.set_many(
        {
            Keys.MODE: Mode.DOWNLOADING.value,
            Keys.MODE_DATA: {"current": None, "navigatingTo": X},
            Keys.ORIGIN_URL: DISCOVERY_URL,
            Keys.LAST_ACTIVITY: h.clock.now - 400,
        }
    )

    h.machine.open_session(h.machine.entry_url())
    h.run_until_idle()

    entries = h.machine.queue.processed()
    assert [(e.target, e.outcome, e.reason) for e in entries] == [
        (X, Outcome.FAILED, "stuck_timeout"),
        (Y, Outcome.DOWNLOADED, None),
    ]
    assert h.site.exports == [Y]


def test_stuck_between_items_fails_nobody(monkeypatch: pytest.MonkeyPatch) -> None:
    h = _build_machine(monkeypatch)
    h.machine.import_targets("\n".join([X, Y]))
    h.store.set_many(
        {
            Keys.MODE: Mode.DOWNLOADING.value,
            Keys.MODE_DATA: {"current": None, "last": Z},
            Keys.ORIGIN_URL: DISCOVERY_URL,
            Keys.LAST_ACTIVITY: h.clock.now - 400,
        }
    )

    h.machine.open_session(h.machine.entry_url())
    h.run_until_idle()

    assert _processed(h) == [(X, Outcome.DOWNLOADED), (Y, Outcome.DOWNLOADED)]


def test_stuck_challenge_pause_is_left_alone(monkeypatch: pytest.MonkeyPatch) -> None:
    h = _build_machine(monkeypatch)
    h.machine.import_targets(X)
    h.store.set_many(
        {
            Keys.MODE: Mode.CHALLENGE_PAUSED.value,
            Keys.CHALLENGE: {
                "url": X,
                "type": "reCAPTCHA",
                "previousMode": "downloading",
                "autoResumeAt": h.clock.now - 1000,
                "autoResumeAttempted": True,
            },
            Keys.LAST_ACTIVITY: h.clock.now - 4000,
        }
    )

    h.machine.open_session(h.machine.entry_url())
    h.scheduler.run(timeout=30)

    assert h.site.navigations == [X]
    assert h.machine.mode == Mode.CHALLENGE_PAUSED
    assert h.machine.queue.pending() == [X]


def test_manual_recovery_while_downloading(monkeypatch: pytest.MonkeyPatch) -> None:
    h = _build_machine(monkeypatch)
    h.machine.import_targets("\n".join([X, Y]))
    h.machine.start_download()
    h.run_until(lambda: h.machine.mode_data.get("current") == X)

    assert h.machine.recover_from_stuck() == Mode.DOWNLOADING
    h.run_until_idle()

    assert _processed(h) == [(X, Outcome.FAILED), (Y, Outcome.DOWNLOADED)]
    assert h.site.exports == [Y]


def test_manual_recovery_while_idle_is_a_no_op(monkeypatch: pytest.MonkeyPatch) -> None:
    h = _build_machine(monkeypatch)
    h.machine.import_targets(X)
    assert h.machine.recover_from_stuck() == Mode.IDLE
    assert h.machine.queue.pending() == [X]
    assert not h.scheduler.navigating
