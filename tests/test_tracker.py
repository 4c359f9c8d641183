import threading

import pytest

from image_batch_service.errors import TrackerError
from image_batch_service.tracker import BatchTracker

from conftest import make_output


def _record(tracker, group="G", item="a", request="R1"):
    return tracker.record_completion(request, group, make_output((request, group, item)))


def test_completion_updates_count_and_outputs_together(tracker):
    tracker.register_group("R1", "G", 3)

    update = _record(tracker, item="c")
    assert update.accepted
    assert (update.completed, update.expected) == (1, 3)
    assert not tracker.is_batch_complete(update)

    entry = tracker.get("R1", "G")
    assert entry.completed == 1
    assert len(entry.outputs) == entry.completed


def test_last_completion_closes_batch(tracker):
    tracker.register_group("R1", "G", 3)
    updates = [_record(tracker, item=i) for i in ("c", "a", "b")]

    assert [tracker.is_batch_complete(u) for u in updates] == [False, False, True]
    outputs = tracker.drain_and_clear("R1", "G")
    assert sorted(o.item_id for o in outputs) == ["a", "b", "c"]
    assert tracker.get("R1", "G") is None
    assert tracker.status("R1") == []


def test_completion_for_unknown_group_is_not_accepted(tracker, redis_client):
    update = _record(tracker, group="missing")

    assert not update.accepted
    assert not tracker.is_batch_complete(update)
    assert redis_client.exists("tracker:R1:missing") == 0
    assert redis_client.exists("tracker:R1:missing:outputs") == 0


def test_late_duplicate_after_drain_does_not_recreate_entry(tracker):
    tracker.register_group("R1", "G", 1)
    assert tracker.is_batch_complete(_record(tracker))
    tracker.drain_and_clear("R1", "G")

    update = _record(tracker)
    assert not update.accepted
    assert tracker.get("R1", "G") is None


def test_completed_never_exceeds_expected(tracker):
    tracker.register_group("R1", "G", 2)
    _record(tracker, item="a")
    _record(tracker, item="b")

    overflow = _record(tracker, item="c")
    assert not overflow.accepted
    entry = tracker.get("R1", "G")
    assert entry.completed == 2
    assert len(entry.outputs) == 2


@pytest.mark.parametrize("expected", [0, -1])
def test_register_rejects_non_positive_counts(tracker, expected):
    with pytest.raises(ValueError):
        tracker.register_group("R1", "G", expected)


def test_register_refuses_group_with_progress(tracker):
    tracker.register_group("R1", "G", 2)
    _record(tracker)

    with pytest.raises(TrackerError):
        tracker.register_group("R1", "G", 5)
    assert tracker.get("R1", "G").expected == 2


def test_register_refuses_existing_group_without_progress(tracker):
    tracker.register_group("R1", "G", 3)

    with pytest.raises(TrackerError):
        tracker.register_group("R1", "G", 1)
    entry = tracker.get("R1", "G")
    assert (entry.expected, entry.completed) == (3, 0)


def test_status_lists_in_flight_groups(tracker):
    tracker.register_group("R1", "P1", 2)
    tracker.register_group("R1", "P2", 1)
    tracker.register_group("R2", "P9", 1)
    _record(tracker, group="P1", item="x")

    status = {g.group_id: g for g in tracker.status("R1")}
    assert set(status) == {"P1", "P2"}
    assert status["P1"].completed == 1
    assert status["P1"].to_dict()["outputs"] == ["mem://P1/x.jpg"]
    assert status["P2"].completed == 0


def test_failures_do_not_close_batch_by_default(tracker):
    tracker.register_group("R1", "G", 2)
    failure = tracker.record_failure("R1", "G")
    success = _record(tracker)

    assert failure.accepted and failure.failed == 1
    assert not tracker.is_batch_complete(failure)
    assert not tracker.is_batch_complete(success)
    assert tracker.get("R1", "G").failed == 1


def test_failures_close_batch_when_policy_enabled(redis_client, settings):
    settings.failed_items_close_batch = True
    tracker = BatchTracker(redis_client, settings=settings)
    tracker.register_group("R1", "G", 2)

    assert not tracker.is_batch_complete(_record(tracker))
    closing = tracker.record_failure("R1", "G")
    assert tracker.is_batch_complete(closing)
    assert len(tracker.drain_and_clear("R1", "G")) == 1


def test_concurrent_final_completions_close_exactly_once(tracker):
    workers = 8
    tracker.register_group("R1", "G", workers)
    barrier = threading.Barrier(workers)
    closes = []
    lock = threading.Lock()

    def complete(item):
        barrier.wait()
        update = _record(tracker, item=str(item))
        if tracker.is_batch_complete(update):
            with lock:
                closes.append(update)

    threads = [threading.Thread(target=complete, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(closes) == 1
    entry = tracker.get("R1", "G")
    assert entry.completed == workers
    assert len(entry.outputs) == workers
