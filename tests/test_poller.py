"""Poller: state machine, cycle outcomes, publication, side effects."""

from datetime import timedelta

import pytest

from errors import DecodeError, StoreError, TransportError
from models import MetricType, QueueHealth
from poller import Poller, PollerState, classify_health, estimate_completion
from rate_estimator import RateEstimator

from conftest import T0, ScriptedFetcher, snap


def make_poller(scheduler, clock, fetcher, interval=3.0, **kw):
    return Poller(
        fetcher=fetcher,
        scheduler=scheduler,
        interval_sec=interval,
        estimator=RateEstimator(clock=clock),
        clock=clock,
        **kw,
    )


@pytest.fixture
def published():
    return []


# =============================================================================
# STATE MACHINE
# =============================================================================

def test_start_runs_cycle_zero_immediately(scheduler, clock):
    fetcher = ScriptedFetcher([snap(waiting=1)])
    poller = make_poller(scheduler, clock, fetcher)

    poller.start()
    assert poller.state is PollerState.POLLING
    scheduler.advance(0)

    assert fetcher.calls == 1
    assert poller.status.connected is True


def test_ticks_follow_interval(scheduler, clock):
    fetcher = ScriptedFetcher([snap(waiting=1)])
    poller = make_poller(scheduler, clock, fetcher, interval=3)

    poller.start()
    scheduler.advance(10)

    # t = 0, 3, 6, 9
    assert poller.cycle_count == 4


def test_start_twice_keeps_a_single_timer(scheduler, clock):
    fetcher = ScriptedFetcher([snap(waiting=1)])
    poller = make_poller(scheduler, clock, fetcher, interval=3)

    poller.start()
    poller.start()
    scheduler.advance(10)

    assert len(scheduler.active_handles) == 1
    assert poller.cycle_count == 4


def test_stop_is_idempotent_and_halts_ticks(scheduler, clock):
    fetcher = ScriptedFetcher([snap(waiting=1)])
    poller = make_poller(scheduler, clock, fetcher, interval=3)

    poller.start()
    scheduler.advance(4)
    poller.stop()
    poller.stop()
    scheduler.advance(30)

    assert poller.state is PollerState.IDLE
    assert poller.cycle_count == 2
    assert scheduler.active_handles == []


def test_reconfigure_restarts_with_new_interval(scheduler, clock):
    fetcher = ScriptedFetcher([snap(waiting=1)])
    poller = make_poller(scheduler, clock, fetcher, interval=3)
    poller.start()
    scheduler.advance(0)

    poller.reconfigure(interval_sec=10)
    scheduler.advance(25)

    # 1 before, then t = 0, 10, 20 relative to reconfigure
    assert poller.cycle_count == 4
    assert poller.interval_sec == 10
    assert len(scheduler.active_handles) == 1


def test_reconfigure_from_idle_starts_polling(scheduler, clock):
    fetcher = ScriptedFetcher([snap(waiting=1)])
    poller = make_poller(scheduler, clock, fetcher, interval=3)

    poller.reconfigure(interval_sec=5)
    scheduler.advance(11)

    # t = 0, 5, 10
    assert poller.state is PollerState.POLLING
    assert fetcher.calls == 3
    assert len(scheduler.active_handles) == 1


def test_reconfigure_swaps_fetcher(scheduler, clock):
    old = ScriptedFetcher([snap(waiting=1)])
    new = ScriptedFetcher([snap(waiting=2)])
    poller = make_poller(scheduler, clock, old)
    poller.start()
    scheduler.advance(0)

    poller.reconfigure(fetcher=new)
    scheduler.advance(0)

    assert (old.calls, new.calls) == (1, 1)
    assert poller.status.queues[0].waiting_count == 2


def test_invalid_interval_rejected(scheduler, clock):
    with pytest.raises(ValueError):
        make_poller(scheduler, clock, ScriptedFetcher([]), interval=0)
    poller = make_poller(scheduler, clock, ScriptedFetcher([snap()]))
    with pytest.raises(ValueError):
        poller.reconfigure(interval_sec=-1)


def test_refresh_works_while_idle(scheduler, clock):
    poller = make_poller(scheduler, clock, ScriptedFetcher([snap(waiting=3)]))
    status = poller.refresh()
    assert status.connected
    assert poller.state is PollerState.IDLE


# =============================================================================
# CYCLE OUTCOMES
# =============================================================================

def test_two_cycle_rate_scenario(scheduler, clock):
    fetcher = ScriptedFetcher(
        [snap(waiting=100, active=5)],
        [snap(waiting=80, active=5)],
    )
    poller = make_poller(scheduler, clock, fetcher, interval=60)

    poller.start()
    scheduler.advance(0)
    scheduler.advance(60)

    history = poller.estimator.history()
    assert len(history) == 1
    assert history[0].rate_per_minute == pytest.approx(20.0)
    stats = poller.status.stats
    assert stats.jobs_processed_since_start == 20
    assert stats.average_processing_rate == pytest.approx(20.0)
    assert stats.active_workers == 5
    # 85 jobs left at 20 jobs/min
    assert stats.estimated_completion == stats.timestamp + timedelta(minutes=4.25)
    assert stats.health is QueueHealth.PROCESSING


def test_failed_fetch_in_the_middle(scheduler, clock, published):
    fetcher = ScriptedFetcher(
        [snap(waiting=100, active=5)],
        TransportError("connection refused"),
        [snap(waiting=80, active=5)],
    )
    poller = make_poller(scheduler, clock, fetcher, interval=30)
    poller.subscribe(published.append)

    poller.start()
    scheduler.advance(0)
    scheduler.advance(30)

    # failed cycle leaves the estimator untouched
    assert poller.estimator.last_totals == (100, 5)
    assert poller.estimator.last_sample_time == T0

    scheduler.advance(30)

    assert [s.connected for s in published] == [True, False, True]
    assert published[1].error_message == "connection refused"
    assert published[2].error_message is None

    # cycle 3 delta is measured against cycle 1: 20 jobs over 60 s
    assert poller.estimator.history()[0].rate_per_minute == pytest.approx(20.0)
    assert poller.status.stats.jobs_processed_since_start == 20


def test_disconnected_status_keeps_last_known_data(scheduler, clock):
    fetcher = ScriptedFetcher([snap(waiting=4)], DecodeError("bad shape"))
    poller = make_poller(scheduler, clock, fetcher)

    first = poller.refresh()
    second = poller.refresh()

    assert second.connected is False
    assert second.error_message == "bad shape"
    assert second.queues == first.queues
    assert second.last_updated == first.last_updated


def test_unexpected_fetch_exception_never_escapes(scheduler, clock):
    poller = make_poller(scheduler, clock, ScriptedFetcher(RuntimeError("kaboom")))
    status = poller.refresh()
    assert status.connected is False
    assert "kaboom" in status.error_message


def test_jobs_failed_today_sums_current_failed_counts(scheduler, clock):
    poller = make_poller(
        scheduler, clock,
        ScriptedFetcher([snap("a", failed_count=3, active=1), snap("b", failed_count=4, active=2)]),
    )
    stats = poller.refresh().stats
    assert stats.jobs_failed_today == 7
    assert stats.active_workers == 3


def test_no_estimate_without_a_rate(scheduler, clock):
    stats = make_poller(scheduler, clock, ScriptedFetcher([snap(waiting=50)])).refresh().stats
    assert stats.average_processing_rate == 0.0
    assert stats.estimated_completion is None


def test_estimate_completion_edges():
    queues = [snap("a", waiting=30), snap("b", active=10, delayed_count=5, paused_count=5)]
    assert estimate_completion(queues, 10.0, T0) == T0 + timedelta(minutes=5)
    assert estimate_completion(queues, 0.0, T0) is None
    assert estimate_completion(queues, -3.0, T0) is None
    assert estimate_completion([snap("a", completed_count=9)], 10.0, T0) is None


@pytest.mark.parametrize("queues, expected", [
    ([], QueueHealth.NO_DATA),
    ([snap("a", failed_count=11, waiting=5000, active=2)], QueueHealth.DEGRADED),
    ([snap("a", failed_count=10, waiting=1001)], QueueHealth.BUSY),
    ([snap("a", waiting=1000, active=1)], QueueHealth.PROCESSING),
    ([snap("a", completed_count=40), snap("b")], QueueHealth.HEALTHY),
])
def test_classify_health(queues, expected):
    assert classify_health(queues) is expected


def test_result_arriving_after_stop_is_discarded(scheduler, clock, published):
    fetcher = ScriptedFetcher([snap(waiting=9)])
    poller = make_poller(scheduler, clock, fetcher)
    poller.subscribe(published.append)
    poller.start()
    fetcher.on_fetch = poller.stop

    scheduler.advance(0)

    assert fetcher.calls == 1
    assert published == []
    assert poller.estimator.last_totals is None


def test_overlapping_tick_is_skipped(scheduler, clock):
    fetcher = ScriptedFetcher([snap(waiting=1)])
    poller = make_poller(scheduler, clock, fetcher)
    nested = []
    fetcher.on_fetch = lambda: nested.append(poller.run_cycle()) if not nested else None

    poller.refresh()

    assert nested == [None]
    assert poller.skipped_ticks == 1
    assert fetcher.calls == 1


# =============================================================================
# SUBSCRIBERS
# =============================================================================

def test_subscribers_get_full_status_and_can_unsubscribe(scheduler, clock):
    poller = make_poller(scheduler, clock, ScriptedFetcher([snap(waiting=5)]))
    a, b = [], []
    unsub_a = poller.subscribe(a.append)
    poller.subscribe(b.append)

    poller.refresh()
    unsub_a()
    unsub_a()
    poller.refresh()

    assert len(a) == 1 and len(b) == 2
    status = a[0]
    assert status.connected and status.stats is not None
    assert status.queues[0].waiting_count == 5
    assert status.last_updated == T0


def test_raising_subscriber_does_not_block_others(scheduler, clock):
    poller = make_poller(scheduler, clock, ScriptedFetcher([snap()]))
    seen = []

    def broken(status):
        raise RuntimeError("ui went away")

    poller.subscribe(broken)
    poller.subscribe(seen.append)

    assert poller.refresh().connected
    assert len(seen) == 1


# =============================================================================
# SIDE EFFECTS
# =============================================================================

def test_cycle_persists_metrics(scheduler, clock, metric_store):
    fetcher = ScriptedFetcher([snap("a", waiting=10, active=2), snap("b", waiting=4, active=1, failed_count=2)])
    poller = make_poller(scheduler, clock, fetcher, metric_store=metric_store)

    poller.refresh()

    depth = {r.queue_name: r.value for r in metric_store.query(MetricType.QUEUE_DEPTH)}
    assert depth == {"a": 10, "b": 4}
    assert [r.value for r in metric_store.query(MetricType.ACTIVE_WORKERS)] == [3]
    assert [r.value for r in metric_store.query(MetricType.ERROR_RATE)] == [2]
    assert [r.value for r in metric_store.query(MetricType.COMPLETION_RATE)] == [0]
    assert len(metric_store.query(MetricType.API_LATENCY)) == 1
    assert metric_store.query(MetricType.ACTIVE_WORKERS)[0].timestamp == T0


def test_failed_fetch_writes_no_metrics(scheduler, clock, metric_store):
    poller = make_poller(scheduler, clock, ScriptedFetcher(TransportError("down")), metric_store=metric_store)
    poller.refresh()
    assert metric_store.count() == 0


class BrokenStore:
    def append_many(self, records):
        raise StoreError("disk full")


def test_store_failure_does_not_fail_cycle(scheduler, clock, published):
    poller = make_poller(scheduler, clock, ScriptedFetcher([snap(waiting=1)]), metric_store=BrokenStore())
    poller.subscribe(published.append)

    status = poller.refresh()

    assert status.connected is True
    assert poller.status is status
    assert len(published) == 1


def test_rising_failed_count_is_recorded_in_ledger(scheduler, clock, ledger):
    fetcher = ScriptedFetcher(
        [snap("thumbnailGeneration", failed_count=2), snap("smartSearch", failed_count=0)],
        [snap("thumbnailGeneration", failed_count=5), snap("smartSearch", failed_count=0)],
        [snap("thumbnailGeneration", failed_count=1), snap("smartSearch", failed_count=0)],
    )
    poller = make_poller(scheduler, clock, fetcher, failure_ledger=ledger)

    poller.refresh()
    assert ledger.list() == []

    clock.advance(3)
    poller.refresh()
    clock.advance(3)
    poller.refresh()

    records = ledger.list()
    assert len(records) == 1
    assert records[0].job_id == "thumbnailGeneration-failed"
    assert records[0].queue_name == "thumbnailGeneration"
    assert records[0].error_message == "3 job(s) failed in thumbnailGeneration"
    assert records[0].failed_at == T0 + timedelta(seconds=3)
