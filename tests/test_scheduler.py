import threading
import time

import pytest

from feedbackhub.integrations import RetryScheduler


@pytest.fixture
def scheduler():
    instance = RetryScheduler(max_workers=2)
    yield instance
    instance.shutdown(wait=True)


def test_runs_job_after_delay(scheduler):
    done = threading.Event()

    scheduler.schedule("event-1", 0.01, done.set)

    assert done.wait(2)


def test_rescheduling_replaces_pending_job(scheduler):
    ran: list[str] = []
    done = threading.Event()

    scheduler.schedule("event-1", 30, lambda: ran.append("first"))
    assert list(scheduler.pending()) == ["event-1"]
    scheduler.schedule("event-1", 0, lambda: (ran.append("second"), done.set()))

    assert done.wait(2)
    assert ran == ["second"]


def test_cancel_drops_pending_job(scheduler):
    ran = threading.Event()

    scheduler.schedule("event-1", 0.2, ran.set)
    scheduler.cancel("event-1")

    assert list(scheduler.pending()) == []
    assert not ran.wait(0.5)


def test_failing_job_does_not_stop_the_scheduler(scheduler):
    done = threading.Event()

    def _boom():
        raise RuntimeError("handler exploded")

    scheduler.schedule("bad", 0, _boom)
    scheduler.schedule("good", 0.05, done.set)

    assert done.wait(2)


def test_shutdown_cancels_timers_and_rejects_new_jobs():
    scheduler = RetryScheduler(max_workers=1)
    ran = threading.Event()
    scheduler.schedule("event-1", 0.2, ran.set)

    scheduler.shutdown(wait=True)
    scheduler.schedule("event-2", 0, ran.set)

    assert list(scheduler.pending()) == []
    assert not ran.wait(0.5)


def test_job_rescheduled_while_running_stays_tracked(scheduler):
    second_started = threading.Event()
    first_returned = threading.Event()
    release = threading.Event()

    def second():
        second_started.set()
        release.wait(2)

    def first():
        scheduler.schedule("event-1", 0, second)
        second_started.wait(2)
        first_returned.set()

    scheduler.schedule("event-1", 0, first)
    assert first_returned.wait(2)
    time.sleep(0.1)

    try:
        running = scheduler._futures.get("event-1")
        assert running is not None
        assert not running.done()
    finally:
        release.set()
