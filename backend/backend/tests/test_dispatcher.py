import asyncio
import threading

import httpx
import pytest
from fastapi.testclient import TestClient

from app.db.session import SessionLocal
from app.events import bus, dispatcher
from app.events.dispatcher import _pattern_matches, dispatch_batch
from app.events.models import EventSubscription, OutboxEvent


@pytest.mark.parametrize(
    "pattern,topic,expected",
    [
        ("card.step.completed", "card.step.completed", True),
        ("card.*", "card.step.started", True),
        ("card.", "card.created", True),
        ("card.*", "cards.created", False),
        ("tracking", "tracking.status.changed", False),
        ("", "card.created", False),
    ],
)
def test_pattern_matching(pattern, topic, expected):
    assert _pattern_matches(pattern, topic) is expected


def _run(handler):
    async def _go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await dispatch_batch(client, SessionLocal)

    return asyncio.run(_go())


def test_events_reach_matching_subscribers(db):
    db.add(EventSubscription(name="mes", topic_pattern="card.*", target_url="http://mes.local/hook", headers={"X-Key": "k"}))
    db.commit()
    bus.publish(db, "card.step.completed", {"card_number": "KART-1000"}, aggregate_type="card", aggregate_id="c1")
    bus.publish(db, "transfer.created", {"transfer_id": "t1"})
    seen = []

    def handler(request):
        seen.append((request.url.path, request.headers["X-Key"], request.read()))
        return httpx.Response(204)

    assert _run(handler) == 2
    assert len(seen) == 1
    assert seen[0][0] == "/hook"
    assert b"KART-1000" in seen[0][2]
    db.expire_all()
    assert db.query(OutboxEvent).filter(OutboxEvent.delivered == False).count() == 0  # noqa: E712


def test_failed_delivery_is_retried_later(db):
    db.add(EventSubscription(name="flaky", topic_pattern="delay.approved", target_url="http://erp.local/hook", headers={}))
    db.commit()
    evt = bus.publish(db, "delay.approved", {"delay_id": "d1"})

    _run(lambda request: httpx.Response(500, text="boom"))

    db.expire_all()
    evt = db.query(OutboxEvent).filter(OutboxEvent.id == evt.id).one()
    sub = db.query(EventSubscription).one()
    assert evt.delivered is False
    assert evt.attempt_count == 1
    assert "HTTP 500" in evt.last_error
    assert sub.failure_count == 1

    # Backed off: not due again yet.
    assert _run(lambda request: httpx.Response(200)) == 0


def test_batch_queries_run_off_the_event_loop(db, monkeypatch):
    bus.publish(db, "card.created", {"card_number": "KART-1000"})
    threads = []
    load = dispatcher._load_batch

    def _tracking_load(session):
        threads.append(threading.get_ident())
        return load(session)

    monkeypatch.setattr(dispatcher, "_load_batch", _tracking_load)

    async def _go():
        loop_thread = threading.get_ident()
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(204))) as client:
            seen = await dispatch_batch(client, SessionLocal)
        return loop_thread, seen

    loop_thread, seen = asyncio.run(_go())
    assert seen == 1
    assert threads and threads[0] != loop_thread


def test_app_keeps_and_stops_the_dispatcher_task(monkeypatch):
    import main

    started = []

    async def _forever(*, poll_interval_seconds):
        started.append(poll_interval_seconds)
        await asyncio.Event().wait()

    monkeypatch.setattr(main, "RUN_EVENT_DISPATCHER", True)
    monkeypatch.setattr(dispatcher, "run_dispatcher_forever", _forever)

    with TestClient(main.app) as c:
        assert c.get("/health").json() == {"ok": True}
        task = main.app.state.dispatcher
        assert task is not None and not task.done()

    assert started == [1.0]
    assert task.cancelled()
