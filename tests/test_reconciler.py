"""Unit tests for Reconciler orchestration.

Tests the per-cycle algorithm (observe, detect, submit, track) and the loop
behaviour around it: transient failures are retried on the next tick, fatal
ones stop the loop.
"""

import ipaddress
import logging
from typing import List, Sequence

import pytest

from fakes import FakeSleep, MockAddressOracle, MockRecordStore, make_record
from r53_ddns.cli import (
    AddressUnavailable,
    AmbiguousRecordError,
    ChangeNotFound,
    ChangeStatus,
    ChangeSubmitter,
    CycleOutcome,
    DriftDetector,
    MalformedRecordError,
    NoRecordAvailable,
    PropagationTracker,
    ProviderError,
    Reconciler,
    RecordType,
    ResourceRecordSet,
)

ZONE_ID = "Z0123456789"
DOMAIN = "home.example.com."

# =============================================================================
# Test Helpers
# =============================================================================


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


def create_test_reconciler(
    record_sets: List[ResourceRecordSet] | None = None,
    addresses: Sequence[object] = ("1.2.3.4",),
    statuses: Sequence[object] = (ChangeStatus.INSYNC,),
    record_type: RecordType = RecordType.A,
    store: MockRecordStore | None = None,
    clock: FakeClock | None = None,
    interval_seconds: int = 180,
    poll_interval_seconds: int = 60,
) -> tuple[Reconciler, MockRecordStore, MockAddressOracle, FakeSleep]:
    """Create a test reconciler wired to in-memory collaborators.

    Returns tuple of (reconciler, store, oracle, sleep) for verification.
    """
    store = store or MockRecordStore(record_sets=record_sets, statuses=list(statuses))
    oracle = MockAddressOracle(list(addresses))
    sleep = FakeSleep()

    reconciler = Reconciler(
        oracle=oracle,
        detector=DriftDetector(store, ZONE_ID),
        submitter=ChangeSubmitter(store),
        tracker=PropagationTracker(store, poll_interval_seconds, sleep=sleep),
        zone_id=ZONE_ID,
        domain_name=DOMAIN,
        record_type=record_type,
        interval_seconds=interval_seconds,
        status_interval_seconds=3600,
        sleep=sleep,
        clock=clock or FakeClock(),
    )
    return reconciler, store, oracle, sleep


# =============================================================================
# End-to-End Scenarios
# =============================================================================


def test_no_submission_when_record_matches_observed_address() -> None:
    """Record holds 1.2.3.4 and we observe 1.2.3.4: nothing to do."""
    reconciler, store, _, _ = create_test_reconciler(
        record_sets=[make_record(values=["1.2.3.4"])], addresses=["1.2.3.4"]
    )

    result = reconciler.reconcile_once()

    assert result.outcome is CycleOutcome.CURRENT
    assert result.change_id is None
    assert store.submit_calls == []
    assert store.status_calls == []


def test_drift_submits_single_upsert_and_polls_until_in_sync() -> None:
    """Record holds 1.2.3.4 and we observe 5.6.7.8: one upsert, polled to INSYNC."""
    reconciler, store, _, sleep = create_test_reconciler(
        record_sets=[make_record(values=["1.2.3.4"])],
        addresses=["5.6.7.8"],
        statuses=[ChangeStatus.PENDING, ChangeStatus.PENDING, ChangeStatus.INSYNC],
    )

    result = reconciler.reconcile_once()

    assert result.outcome is CycleOutcome.UPDATED
    assert result.record_address == ipaddress.ip_address("1.2.3.4")
    assert result.observed_address == ipaddress.ip_address("5.6.7.8")
    assert len(store.submit_calls) == 1
    zone_id, changes, _ = store.submit_calls[0]
    assert zone_id == ZONE_ID
    assert [c.record_set.values for c in changes] == [("5.6.7.8",)]
    assert store.status_calls == [result.change_id] * 3
    assert sleep.calls == [60, 60]


def test_missing_record_is_fatal() -> None:
    """Zone without an A record named example.com fails with NoRecordAvailable."""
    reconciler, store, _, _ = create_test_reconciler(
        record_sets=[make_record(name="other.example.com.")], addresses=["1.2.3.4"]
    )

    with pytest.raises(NoRecordAvailable):
        reconciler.reconcile_once()

    assert store.submit_calls == []


def test_second_cycle_without_address_change_submits_nothing() -> None:
    """Reconciling twice with the same address performs one submit in total."""
    reconciler, store, _, _ = create_test_reconciler(
        record_sets=[make_record(values=["1.2.3.4"])], addresses=["5.6.7.8"]
    )

    first = reconciler.reconcile_once()
    second = reconciler.reconcile_once()

    assert first.outcome is CycleOutcome.UPDATED
    assert second.outcome is CycleOutcome.CURRENT
    assert len(store.submit_calls) == 1


def test_record_is_read_fresh_every_cycle() -> None:
    """No caching across ticks: every cycle lists the zone again."""
    reconciler, store, _, _ = create_test_reconciler(record_sets=[make_record()])

    reconciler.reconcile_once()
    reconciler.reconcile_once()

    assert store.list_calls == [(ZONE_ID, DOMAIN), (ZONE_ID, DOMAIN)]


def test_aaaa_record_is_reconciled_with_ipv6_address() -> None:
    """AAAA records are observed and compared as IPv6."""
    reconciler, store, oracle, _ = create_test_reconciler(
        record_sets=[make_record(values=["2001:db8::1"], record_type=RecordType.AAAA)],
        addresses=["2001:db8::2"],
        record_type=RecordType.AAAA,
    )

    result = reconciler.reconcile_once()

    assert oracle.observe_calls == [RecordType.AAAA]
    assert result.outcome is CycleOutcome.UPDATED
    assert store.submit_calls[0][1][0].record_set.values == ("2001:db8::2",)


# =============================================================================
# Error Propagation From A Single Cycle
# =============================================================================


def test_address_unavailable_aborts_cycle_before_touching_store() -> None:
    reconciler, store, _, _ = create_test_reconciler(
        record_sets=[make_record()], addresses=[AddressUnavailable("timeout")]
    )

    with pytest.raises(AddressUnavailable):
        reconciler.reconcile_once()

    assert store.list_calls == []


def test_submit_failure_is_not_retried_within_cycle() -> None:
    store = MockRecordStore(
        record_sets=[make_record(values=["1.2.3.4"])],
        submit_error=ProviderError("connection reset"),
    )
    reconciler, _, _, _ = create_test_reconciler(store=store, addresses=["5.6.7.8"])

    with pytest.raises(ProviderError):
        reconciler.reconcile_once()

    assert len(store.submit_calls) == 1
    assert store.status_calls == []


@pytest.mark.parametrize(
    "record_sets, error",
    [
        ([], NoRecordAvailable),
        ([make_record(values=["not-an-ip"])], MalformedRecordError),
        ([make_record(values=[], ttl=None)], MalformedRecordError),
        ([make_record(), make_record(values=["9.9.9.9"])], AmbiguousRecordError),
    ],
)
def test_unreconcilable_record_raises_fatal_error(record_sets, error) -> None:
    reconciler, _, _, _ = create_test_reconciler(record_sets=record_sets)

    with pytest.raises(error):
        reconciler.reconcile_once()


# =============================================================================
# Run Loop
# =============================================================================


def test_run_sleeps_interval_between_cycles() -> None:
    reconciler, store, _, sleep = create_test_reconciler(
        record_sets=[make_record()], interval_seconds=300
    )

    reconciler.run(max_cycles=3)

    assert len(store.list_calls) == 3
    assert sleep.calls == [300, 300]


def test_run_continues_after_transient_errors() -> None:
    """Oracle and provider hiccups are logged and retried on the next tick."""
    store = MockRecordStore(record_sets=[make_record(values=["1.2.3.4"])])
    reconciler, _, oracle, sleep = create_test_reconciler(
        store=store,
        addresses=[AddressUnavailable("no route to host"), "1.2.3.4", "5.6.7.8"],
    )

    reconciler.run(max_cycles=3)

    assert len(oracle.observe_calls) == 3
    assert len(store.submit_calls) == 1
    assert store.record_sets[0].values == ("5.6.7.8",)


def test_run_retries_provider_error_on_next_cycle() -> None:
    store = MockRecordStore(
        record_sets=[make_record(values=["1.2.3.4"])],
        list_error=ProviderError("AccessDenied"),
    )
    reconciler, _, _, _ = create_test_reconciler(store=store, addresses=["5.6.7.8"])

    reconciler.run(max_cycles=2)

    assert len(store.list_calls) == 2
    assert store.submit_calls == []


def test_run_treats_unknown_change_id_as_cycle_failure() -> None:
    """An invalid change id aborts the cycle; the next cycle re-detects drift."""
    store = MockRecordStore(
        record_sets=[make_record(values=["1.2.3.4"])],
        statuses=[ChangeNotFound("NoSuchChange")],
    )
    reconciler, _, _, _ = create_test_reconciler(store=store, addresses=["5.6.7.8"])

    reconciler.run(max_cycles=2)

    # The mock applied the first upsert, so the second cycle sees the record current.
    assert len(store.submit_calls) == 1
    assert store.status_calls == ["C1"]


def test_run_stops_on_fatal_error() -> None:
    reconciler, store, _, sleep = create_test_reconciler(record_sets=[])

    with pytest.raises(NoRecordAvailable):
        reconciler.run(max_cycles=5)

    assert len(store.list_calls) == 1
    assert sleep.calls == []


def test_transient_failure_log_includes_context(caplog: pytest.LogCaptureFixture) -> None:
    store = MockRecordStore(
        record_sets=[make_record(values=["1.2.3.4"])],
        submit_error=ProviderError("Throttling"),
    )
    reconciler, _, _, _ = create_test_reconciler(store=store, addresses=["5.6.7.8"])

    with caplog.at_level(logging.WARNING):
        reconciler.run(max_cycles=1)

    message = next(r.getMessage() for r in caplog.records if r.levelno == logging.WARNING)
    assert f"zone={ZONE_ID}" in message
    assert f"domain={DOMAIN}" in message
    assert "type=A" in message
    assert "observed=5.6.7.8" in message
    assert "recorded=1.2.3.4" in message
    assert "Throttling" in message


# =============================================================================
# Status Reporting
# =============================================================================


def test_status_report_is_rate_limited(caplog: pytest.LogCaptureFixture) -> None:
    clock = FakeClock()
    reconciler, _, _, _ = create_test_reconciler(record_sets=[make_record()], clock=clock)

    with caplog.at_level(logging.INFO):
        reconciler.reconcile_once()
        clock.now += 1800
        reconciler.reconcile_once()
        clock.now += 1800
        reconciler.reconcile_once()

    reports = [r for r in caplog.records if "current public address is" in r.getMessage()]
    assert len(reports) == 2
    assert reports[0].getMessage() == "current public address is: 1.2.3.4"


def test_injected_logger_is_used() -> None:
    injected = logging.getLogger("test.injected")
    store = MockRecordStore(record_sets=[make_record()])
    sleep = FakeSleep()
    reconciler = Reconciler(
        oracle=MockAddressOracle(["1.2.3.4"]),
        detector=DriftDetector(store, ZONE_ID),
        submitter=ChangeSubmitter(store),
        tracker=PropagationTracker(store, sleep=sleep),
        zone_id=ZONE_ID,
        domain_name=DOMAIN,
        record_type=RecordType.A,
        sleep=sleep,
        clock=FakeClock(),
        logger=injected,
    )

    records: List[logging.LogRecord] = []

    class Collector(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            records.append(record)

    handler = Collector(level=logging.DEBUG)
    injected.addHandler(handler)
    injected.setLevel(logging.DEBUG)
    try:
        reconciler.reconcile_once()
    finally:
        injected.removeHandler(handler)

    assert any("current public address is" in r.getMessage() for r in records)
