import json
import logging
from unittest.mock import Mock

import httpx
import pytest

from scribedesk.errors import UpstreamUnavailable
from scribedesk.notifications import BestEffortSink, EventHub, FanoutSink, WebhookSink


def test_event_hub_sequences_and_filters():
    hub = EventHub()
    hub.notify(1, "job_claimed", {"job_id": 5})
    hub.broadcast("job_no_longer_available", {"job_id": 5})
    hub.notify(2, "job_completed", {"job_id": 6})
    assert hub.last_seq == 3
    assert [e.event for e in hub.events_since(0, participant_id=1)] == ["job_claimed", "job_no_longer_available"]
    assert [e.seq for e in hub.events_since(1)] == [2, 3]


def test_event_hub_is_bounded():
    hub = EventHub(max_events=2)
    for i in range(5):
        hub.broadcast("tick", {"i": i})
    assert [e.payload["i"] for e in hub.events_since(0)] == [3, 4]
    assert hub.last_seq == 5


def test_webhook_posts_json():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(202)

    sink = WebhookSink("https://hooks.example/events", client=httpx.Client(transport=httpx.MockTransport(handler)))
    sink.notify(7, "job_claimed", {"job_id": 1})
    sink.broadcast("job_available", {"job_id": 1})
    assert bodies == [
        {"participant_id": 7, "event": "job_claimed", "payload": {"job_id": 1}},
        {"participant_id": None, "event": "job_available", "payload": {"job_id": 1}},
    ]


def test_webhook_failure_is_upstream_unavailable():
    sink = WebhookSink(
        "https://hooks.example/events",
        client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500))),
    )
    with pytest.raises(UpstreamUnavailable):
        sink.notify(1, "job_claimed", {})


def test_fanout_delivers_to_all_then_reports_failures():
    hub = EventHub()
    broken = Mock()
    broken.notify.side_effect = UpstreamUnavailable("down")
    fanout = FanoutSink([broken, hub])
    with pytest.raises(UpstreamUnavailable):
        fanout.notify(1, "job_claimed", {"job_id": 1})
    assert hub.named("job_claimed")


def test_best_effort_logs_instead_of_raising(caplog):
    inner = Mock()
    inner.broadcast.side_effect = UpstreamUnavailable("down")
    with caplog.at_level(logging.WARNING, logger="scribedesk.notifications"):
        BestEffortSink(inner).broadcast("job_available", {"job_id": 1})
    assert "Dropped broadcast 'job_available'" in caplog.text


def test_notifier_outage_does_not_undo_claim(store, pricing_rules, direct_job, make_transcriber):
    from scribedesk.config import Settings
    from scribedesk.marketplace import Marketplace
    from scribedesk.store import JobState

    broken = WebhookSink(
        "https://hooks.example/events",
        client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(502))),
    )
    market = Marketplace(store, Settings(db_path=store.db_path), notifier=broken, pricing_rules=pricing_rules)
    job = direct_job()
    tid = make_transcriber()
    claimed = market.claim(job.job_id, tid)
    assert claimed.state == JobState.CLAIMED
    # The in-process hub still got the event
    assert market.events.named("job_claimed")


def test_close_reaches_every_wrapped_sink():
    first, second = Mock(), Mock()
    BestEffortSink(FanoutSink([first, second])).close()
    first.close.assert_called_once_with()
    second.close.assert_called_once_with()
    # The in-process hub has nothing to release
    EventHub().close()
