import logging

import requests

from conftest import make_output


def _close_group(tracker, items=("a", "b")):
    tracker.register_group("R1", "P1", len(items))
    for item in items:
        tracker.record_completion("R1", "P1", make_output(("R1", "P1", item)))


def test_dispatch_posts_once_and_clears_entry(dispatcher, tracker, webhook_session):
    _close_group(tracker)

    assert dispatcher.dispatch("R1", "P1")
    assert len(webhook_session.calls) == 1
    call = webhook_session.calls[0]
    assert call["url"] == "http://hooks.test/webhook"
    assert call["json"] == {
        "request_id": "R1",
        "product_oid": "P1",
        "output_urls": ["mem://P1/a.jpg", "mem://P1/b.jpg"],
    }
    assert tracker.get("R1", "P1") is None


def test_server_error_parks_notification_before_clearing(dispatcher, tracker, webhook_session):
    _close_group(tracker)
    webhook_session.statuses = [500]

    assert not dispatcher.dispatch("R1", "P1")
    assert dispatcher.pending_retries() == 1
    assert tracker.get("R1", "P1") is None


def test_retry_delivers_once_after_backoff(dispatcher, tracker, webhook_session, clock):
    _close_group(tracker)
    webhook_session.statuses = [500]
    dispatcher.dispatch("R1", "P1")

    assert dispatcher.retry_due() == 0
    clock.advance(5)
    assert dispatcher.retry_due() == 1
    assert dispatcher.retry_due() == 0
    assert len(webhook_session.calls) == 2
    assert webhook_session.calls[0]["json"] == webhook_session.calls[1]["json"]
    assert dispatcher.pending_retries() == 0


def test_transport_error_is_retried(dispatcher, tracker, webhook_session, clock):
    _close_group(tracker)
    webhook_session.statuses = [requests.ConnectionError("refused")]

    assert not dispatcher.dispatch("R1", "P1")
    clock.advance(5)
    assert dispatcher.retry_due() == 1


def test_dead_letter_after_max_attempts(dispatcher, tracker, webhook_session, clock):
    _close_group(tracker)
    webhook_session.statuses = [503, 503, 503]
    dispatcher.dispatch("R1", "P1")

    for _ in range(2):
        clock.advance(3600)
        assert dispatcher.retry_due() == 0

    assert dispatcher.pending_retries() == 0
    dead = dispatcher.dead_letters()
    assert len(dead) == 1
    assert dead[0].attempts == 3
    assert dead[0].payload()["output_urls"] == ["mem://P1/a.jpg", "mem://P1/b.jpg"]


def test_failure_for_one_group_leaves_others_untouched(dispatcher, tracker, webhook_session):
    _close_group(tracker)
    tracker.register_group("R1", "P2", 2)
    tracker.record_completion("R1", "P2", make_output(("R1", "P2", "x")))
    webhook_session.statuses = [500]

    dispatcher.dispatch("R1", "P1")
    other = tracker.get("R1", "P2")
    assert other.completed == 1
    assert [g.group_id for g in tracker.status("R1")] == ["P2"]


def test_outputs_changed_during_dispatch_are_logged(dispatcher, tracker, webhook_session, monkeypatch, caplog):
    _close_group(tracker)
    original = tracker.drain_and_clear

    def drain_with_late_output(request_id, group_id):
        return original(request_id, group_id) + [make_output(("R1", "P1", "late"))]

    monkeypatch.setattr(tracker, "drain_and_clear", drain_with_late_output)

    with caplog.at_level(logging.ERROR, logger="image_batch_service.webhook"):
        assert dispatcher.dispatch("R1", "P1")
    assert "Outputs changed during dispatch" in caplog.text
    assert len(webhook_session.calls[0]["json"]["output_urls"]) == 2
