import logging
import threading
import time
from datetime import timedelta

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from orderflow.jobs.base import JobState, PollingJob
from orderflow.models.order import OrderStatus
from orderflow.models.stock_reservation import ReservationStatus
from orderflow.utils.clock import utcnow


def ago(**kwargs):
    return utcnow() - timedelta(**kwargs)


class BlockingJob(PollingJob):
    name = "blocking"

    def __init__(self, scheduler):
        super().__init__(scheduler, 3600)
        self.entered = threading.Event()
        self.release = threading.Event()
        self.runs = 0

    def scan(self):
        self.runs += 1
        self.entered.set()
        while not self.release.wait(0.01):
            if self.should_stop():
                return "stopped"
        return "done"


@pytest.fixture
def scheduler():
    s = BackgroundScheduler(timezone="UTC")
    s.start()
    yield s
    s.shutdown(wait=False)


def test_expired_reservations_are_released(container, checked_out, stock, reservations_of, assert_invariant):
    order, product = checked_out(qty=3, stock=5, ttl_seconds=0.1)
    time.sleep(0.15)

    run = container.jobs["reservation-expiration"].run_once()
    assert run.ok
    assert run.result == {"found": 1, "released": 1, "failed": 0}
    assert stock(product.id)["stock_available"] == 5
    row = reservations_of(order.id)[0]
    assert row.status == ReservationStatus.RELEASED.value
    assert row.release_reason == "EXPIRED"
    assert_invariant()

    assert container.jobs["reservation-expiration"].run_once().result["found"] == 0


def test_expiration_skips_unexpired(container, checked_out, stock):
    order, product = checked_out(qty=1, stock=2, ttl_seconds=600)
    run = container.jobs["reservation-expiration"].run_once()
    assert run.result["found"] == 0
    assert stock(product.id)["stock_reserved"] == 1


def test_expiration_continues_after_one_failure(container, checked_out, monkeypatch):
    first, _ = checked_out(ttl_seconds=0.05)
    second, _ = checked_out(ttl_seconds=0.05)
    time.sleep(0.1)

    real_release = container.reservations.release

    def flaky(order_id, reason="MANUAL"):
        if order_id == first.id:
            raise RuntimeError("db hiccup")
        return real_release(order_id, reason)

    monkeypatch.setattr(container.reservations, "release", flaky)
    run = container.jobs["reservation-expiration"].run_once()
    assert run.ok
    assert run.result == {"found": 2, "released": 1, "failed": 1}


def test_state_timeout_cancels_stale_checkouts(container, checked_out, set_order_fields, load_order, stock):
    stale, product = checked_out(qty=2, stock=4)
    fresh, _ = checked_out(qty=1, stock=4)
    set_order_fields(stale.id, checkout_at=ago(minutes=20))

    run = container.jobs["state-timeout"].run_once()
    assert run.result["cancelled"] == 1
    assert run.result["failed"] == 0

    assert load_order(stale.id).status == "CANCELLED"
    assert load_order(fresh.id).status == "CHECKOUT"
    assert stock(product.id)["stock_available"] == 4
    audit = container.state_machine.get_audit_trail(stale.id)[-1]
    assert (audit.reason, audit.actor) == ("CHECKOUT_TIMEOUT", "SYSTEM")


def test_state_timeout_only_alerts_on_stuck_preparing(container, make_order, set_order_fields, load_order, caplog):
    stuck = make_order(OrderStatus.PREPARING)
    recent = make_order(OrderStatus.PREPARING)
    set_order_fields(stuck.id, updated_at=ago(hours=50))

    with caplog.at_level(logging.WARNING):
        run = container.jobs["state-timeout"].run_once()

    assert run.result["alerts"] == [stuck.id]
    assert f"ALERT: Order {stuck.id} in PREPARING for 50h" in caplog.text
    assert load_order(stuck.id).status == "PREPARING"
    assert load_order(recent.id).status == "PREPARING"


def test_cart_reminder_sends_once(container, make_user, make_order):
    user = make_user(email="late@example.com")
    make_order(OrderStatus.CART, user=user, created_at=ago(hours=24))
    job = container.jobs["cart-reminder"]

    assert job.run_once().result["sent"] == 1
    assert job.run_once().result["processed"] == 0
    [mail] = container.email_sender.sent_to("late@example.com")
    assert mail["template"] == "cart_recovery"


def test_overlapping_run_is_skipped(scheduler):
    job = BlockingJob(scheduler)
    results = []
    t = threading.Thread(target=lambda: results.append(job.run_once()))
    t.start()
    assert job.entered.wait(2)
    assert job.processing

    skipped = job.run_once()
    assert skipped.skipped
    assert job.runs == 1

    job.release.set()
    t.join(2)
    assert results[0].result == "done"
    assert not job.processing


def test_start_and_stop_are_guarded(scheduler, caplog):
    job = BlockingJob(scheduler)
    job.release.set()

    with caplog.at_level(logging.WARNING):
        assert job.stop() is False
        assert job.start() is True
        assert job.start() is False
    assert "Job is not running" in caplog.text
    assert "Job already running" in caplog.text
    assert job.state is JobState.RUNNING
    assert scheduler.get_job(job.job_id) is not None

    assert job.stop() is True
    assert job.state is JobState.STOPPED
    assert scheduler.get_job(job.job_id) is None


def test_first_run_happens_on_start(scheduler):
    job = BlockingJob(scheduler)
    job.release.set()
    job.start()
    try:
        assert job.entered.wait(2)
    finally:
        job.stop()
    assert job.runs >= 1


def test_stop_interrupts_running_scan(scheduler):
    job = BlockingJob(scheduler)
    job.start()
    assert job.entered.wait(2)

    job.stop()
    deadline = time.time() + 2
    while job.processing and time.time() < deadline:
        time.sleep(0.01)
    assert not job.processing
    assert job.last_run.result == "stopped"


def test_scan_errors_are_contained(scheduler, caplog):
    class Exploding(PollingJob):
        name = "exploding"

        def scan(self):
            raise ValueError("boom")

    job = Exploding(scheduler)
    with caplog.at_level(logging.ERROR):
        run = job.run_once()
    assert not run.ok
    assert run.error == "boom"
    assert job.status()["last_result"]["error"] == "boom"
    assert "[exploding] Scan failed" in caplog.text


def test_run_dispatched_after_stop_does_not_scan():
    idle = BackgroundScheduler(timezone="UTC")
    job = BlockingJob(idle)
    job.release.set()
    job.start()
    job.stop()

    late = job.run_once(scheduled=True)
    assert late.skipped
    assert job.runs == 0

    manual = job.run_once()
    assert manual.result == "done"
    assert job.runs == 1
    assert job.should_stop()


def test_state_timeout_reports_failed_step(container, make_order, set_order_fields, monkeypatch):
    stuck = make_order(OrderStatus.PREPARING)
    set_order_fields(stuck.id, updated_at=ago(hours=50))
    job = container.jobs["state-timeout"]

    def broken(stats):
        raise RuntimeError("checkout query failed")

    monkeypatch.setattr(job, "_cancel_expired_checkouts", broken)
    run = job.run_once()

    assert not run.ok
    assert "checkout" in run.error
    assert run.result["alerts"] == [stuck.id]
    assert run.result["errors"] == [{"step": "checkout", "error": "checkout query failed"}]
    assert job.status()["last_result"]["ok"] is False
