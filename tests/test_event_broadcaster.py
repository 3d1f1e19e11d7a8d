"""Tests for event fan-out."""

from __future__ import annotations

import json
import threading

from sdqueue.backend.models.event import Event, EventKind
from sdqueue.backend.services.event_broadcaster import EventBroadcaster


def _progress(job_id: str, step: int) -> Event:
    return Event(kind=EventKind.JOB_PROGRESS, data={"job_id": job_id, "step": step})


class TestEvent:
    def test_to_sse(self):
        event = Event(kind=EventKind.JOB_FINISHED, data={"job_id": "a", "status": "completed"}, timestamp=1.5)
        text = event.to_sse()
        assert text.startswith("event: job_finished\ndata: ")
        assert text.endswith("\n\n")
        payload = json.loads(text.split("data: ", 1)[1])
        assert payload == {"type": "job_finished", "data": {"job_id": "a", "status": "completed"}, "timestamp": 1.5}

    def test_job_id(self):
        assert _progress("a", 1).job_id == "a"
        assert Event(kind=EventKind.MODEL_LOADED, data={}).job_id is None


class TestEventBroadcaster:
    """Tests for subscribe/publish semantics."""

    def test_delivers_to_every_subscriber_in_order(self):
        broadcaster = EventBroadcaster()
        first = broadcaster.subscribe()
        second = broadcaster.subscribe()
        for step in range(3):
            broadcaster.publish(_progress("a", step))
        assert [e.data["step"] for e in first.drain()] == [0, 1, 2]
        assert [e.data["step"] for e in second.drain()] == [0, 1, 2]

    def test_full_mailbox_drops_oldest(self):
        broadcaster = EventBroadcaster(queue_size=2)
        sub = broadcaster.subscribe()
        for step in range(5):
            broadcaster.publish(_progress("a", step))
        assert [e.data["step"] for e in sub.drain()] == [3, 4]
        assert sub.dropped == 3

    def test_unsubscribe(self):
        broadcaster = EventBroadcaster()
        sub = broadcaster.subscribe()
        assert broadcaster.subscriber_count == 1
        assert broadcaster.unsubscribe(sub) is True
        assert broadcaster.unsubscribe(sub) is False
        broadcaster.publish(_progress("a", 1))
        assert sub.drain() == []

    def test_context_manager_unsubscribes(self):
        broadcaster = EventBroadcaster()
        with broadcaster.subscribe():
            assert broadcaster.subscriber_count == 1
        assert broadcaster.subscriber_count == 0

    def test_filters_by_kind_and_job(self):
        broadcaster = EventBroadcaster()
        finished_only = broadcaster.subscribe(kinds=[EventKind.JOB_FINISHED])
        job_b = broadcaster.subscribe(job_id="b")
        broadcaster.publish(_progress("a", 1))
        broadcaster.publish(_progress("b", 1))
        broadcaster.emit(EventKind.JOB_FINISHED, job_id="a", status="completed")
        broadcaster.emit(EventKind.MODEL_LOADED, model_name="modelA")

        assert [e.kind for e in finished_only.drain()] == [EventKind.JOB_FINISHED]
        # Events without a job id still reach job-scoped subscribers
        assert [e.kind for e in job_b.drain()] == [EventKind.JOB_PROGRESS, EventKind.MODEL_LOADED]

    def test_failing_subscriber_is_isolated(self):
        broadcaster = EventBroadcaster()
        broken = broadcaster.subscribe()
        healthy = broadcaster.subscribe()

        def _explode(event):
            raise RuntimeError("socket closed")

        broken.offer = _explode
        broadcaster.publish(_progress("a", 1))
        assert len(healthy.drain()) == 1

    def test_get_with_timeout(self):
        broadcaster = EventBroadcaster()
        sub = broadcaster.subscribe()
        assert sub.get(timeout=0.01) is None
        threading.Timer(0.02, broadcaster.publish, args=[_progress("a", 9)]).start()
        event = sub.get(timeout=2.0)
        assert event is not None and event.data["step"] == 9

    def test_concurrent_subscribe_and_publish(self):
        broadcaster = EventBroadcaster()
        stop = threading.Event()

        def _churn():
            while not stop.is_set():
                broadcaster.subscribe().close()

        worker = threading.Thread(target=_churn)
        worker.start()
        try:
            for step in range(200):
                broadcaster.publish(_progress("a", step))
        finally:
            stop.set()
            worker.join()
        assert broadcaster.subscriber_count == 0
