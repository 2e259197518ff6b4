from __future__ import annotations

import random

import pytest

from trailexport.exporter.error_codes import ErrorCode
from trailexport.exporter.store import Keys, PersistenceStore
from trailexport.exporter.work_queue import Outcome, WorkQueue

BASE = "https://www.alltrails.com/explore/recording/"
X, Y, Z = f"{BASE}x", f"{BASE}y", f"{BASE}z"


class _Clock:
    def __init__(self, now: float = 10_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
def queue(clock: _Clock) -> WorkQueue:
    store = PersistenceStore(":memory:", namespace="q_", clock=clock)
    return WorkQueue(store, clock=clock, rng=random.Random(7), max_attempts=3)


def _assert_partition(queue: WorkQueue) -> None:
    pending = queue.pending()
    processed = [entry.target for entry in queue.processed()]
    assert len(pending) == len(set(pending))
    assert not set(pending) & set(processed)
    assert len(processed) == len(set(processed))
    counters = queue.counters()
    assert counters.downloaded + counters.failed == counters.processed


def test_merge_discovered_is_idempotent(queue: WorkQueue) -> None:
    first = queue.merge_discovered([X, Y, X])
    assert first.new_targets == [X, Y]
    assert queue.pending() == [X, Y]

    second = queue.merge_discovered([Y, X])
    assert second.new_count == 0
    assert queue.pending() == [X, Y]
    assert queue.discovered() == [X, Y]


def test_merge_skips_already_processed(queue: WorkQueue) -> None:
    queue.import_targets([X])
    queue.mark_processed(X, Outcome.DOWNLOADED)

    result = queue.merge_discovered([X, Y])
    assert result.new_targets == [Y]
    assert queue.pending() == [Y]


def test_mark_processed_once(queue: WorkQueue) -> None:
    queue.import_targets([X, Y])
    assert queue.mark_processed(X, Outcome.DOWNLOADED) is not None
    assert queue.mark_processed(X, Outcome.FAILED) is None

    counters = queue.counters()
    assert counters.downloaded == 1
    assert counters.failed == 0
    assert queue.pending() == [Y]
    _assert_partition(queue)


def test_penalize_requeues_to_tail_until_cap(queue: WorkQueue, clock: _Clock) -> None:
    queue.import_targets([X, Y, Z])

    first = queue.penalize(Y, retry_bounds=(90.0, 180.0))
    assert first.requeue is True and first.attempt == 1
    assert queue.pending() == [X, Z, Y]
    assert 90.0 <= queue.retry_wait(Y) <= 180.0

    clock.now += 500
    assert queue.retry_wait(Y) == 0.0

    second = queue.penalize(Y)
    assert second.requeue is True and second.attempt == 2
    assert queue.pending() == [X, Z, Y]

    third = queue.penalize(Y)
    assert third.requeue is False and third.exhausted
    assert queue.pending() == [X, Z]
    assert queue.permanently_failed() == [Y]

    entry = queue.processed()[-1]
    assert entry.outcome == Outcome.EXHAUSTED
    assert entry.reason == ErrorCode.RATE_LIMIT_EXHAUSTED
    assert queue.counters().failed == 1
    assert queue.penalties()[Y].attempt == 3
    _assert_partition(queue)


def test_penalize_processed_target_is_a_no_op(queue: WorkQueue) -> None:
    queue.import_targets([X])
    queue.mark_processed(X, Outcome.DOWNLOADED)

    decision = queue.penalize(X)
    assert decision.requeue is False
    assert queue.pending() == []
    assert queue.penalties() == {}


def test_import_appends_and_counts(queue: WorkQueue) -> None:
    queue.import_targets([X])
    queue.mark_processed(X, Outcome.DOWNLOADED)
    queue.import_targets([Y])

    result = queue.import_targets([X, Y, Z, Z], discarded=2)
    assert result.added == [Z]
    assert result.duplicates == 2
    assert result.already_processed == 1
    assert result.discarded == 2
    assert queue.pending() == [Y, Z]
    assert Z in queue.discovered()


def test_clear_penalties_resets_attempts(queue: WorkQueue) -> None:
    queue.import_targets([X])
    queue.penalize(X)
    queue.penalize(X)
    assert queue.clear_penalties() == 1
    assert queue.retry_wait(X) == 0.0

    assert queue.penalize(X).attempt == 1


def test_export_pending_is_newline_separated(queue: WorkQueue) -> None:
    queue.import_targets([X, Y])
    assert queue.export_pending() == f"{X}\n{Y}"


def test_duplicates_in_store_are_ignored(queue: WorkQueue) -> None:
    queue.store.set(Keys.PENDING, [X, X, Y, "", None])
    assert queue.pending() == [X, Y]
    assert queue.head() == X
