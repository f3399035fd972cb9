import time

from rpo_probe.config import Role
from rpo_probe.errors import ErrorKind, ReadError, WriteError
from rpo_probe.prober import (
    PROBE_PROFILES,
    REASON_READ_ERROR,
    REASON_TIMEOUT,
    REASON_WRITE_ERROR,
    ProbeSettings,
    ReplicationLagProber,
)

from tests.fakes import FakeClock, FakeStore


def make_settings(max_wait_ms=1000, poll_interval_ms=5):
    return ProbeSettings(
        target="regional",
        reader_role=Role.REGIONAL_READER,
        max_wait_ms=max_wait_ms,
        poll_interval_ms=poll_interval_ms,
        inter_trial_delay_ms=0,
        max_iterations=10,
    )


def make_prober(store, settings=None, clock=None):
    clock = clock or FakeClock()
    return ReplicationLagProber(
        store,
        settings or make_settings(),
        clock=clock,
        sleep=clock.sleep,
        wall_clock=lambda: 1_700_000_000.0,
        id_factory=lambda: "rpo-1-testtest",
    )


def test_profiles():
    regional = PROBE_PROFILES["regional"]
    remote = PROBE_PROFILES["remote-region"]
    assert (regional.max_wait_ms, regional.poll_interval_ms, regional.inter_trial_delay_ms) == (10000, 5, 100)
    assert (remote.max_wait_ms, remote.poll_interval_ms, remote.inter_trial_delay_ms) == (30000, 10, 500)
    assert regional.reader_role is Role.REGIONAL_READER
    assert remote.reader_role is Role.REMOTE_READER


def test_write_precedes_reads_and_marker_is_cleaned_up():
    store = FakeStore(visible_after=3)
    result = make_prober(store).measure()
    assert result.ok
    assert store.kinds() == ["write", "read", "read", "read", "read", "delete"]
    assert store.ops[0][1] is Role.PRIMARY
    assert {role for op, role, _ in store.ops if op == "read"} == {Role.REGIONAL_READER}
    assert store.ops[-1][1] is Role.PRIMARY
    assert store.rows == {}


def test_elapsed_counts_poll_intervals():
    clock = FakeClock()
    result = make_prober(FakeStore(visible_after=3), clock=clock).measure()
    assert abs(result.elapsed_ms - 15) <= 1
    assert result.polls == 4
    assert clock.sleeps == [0.005, 0.005, 0.005]


def test_immediate_visibility():
    result = make_prober(FakeStore(visible_after=0)).measure()
    assert result.ok
    assert result.elapsed_ms < 2 * 5
    assert result.polls == 1


def test_write_failure_skips_reads_and_cleanup():
    store = FakeStore(write_error=WriteError("duplicate", ErrorKind.DUPLICATE_KEY))
    result = make_prober(store).measure()
    assert not result.ok
    assert result.reason == REASON_WRITE_ERROR
    assert store.kinds() == ["write"]


def test_timeout_deletes_marker_once():
    store = FakeStore(visible_after=None)
    result = make_prober(store, make_settings(max_wait_ms=50)).measure()
    assert result.reason == REASON_TIMEOUT
    assert result.message == "Replication timeout: data not replicated within 50ms"
    assert result.polls == 10
    assert store.kinds().count("delete") == 1
    assert store.kinds()[-1] == "delete"


def test_timeout_with_real_clock():
    store = FakeStore(visible_after=None)
    prober = ReplicationLagProber(store, make_settings(max_wait_ms=50, poll_interval_ms=5))
    started = time.monotonic()
    result = prober.measure()
    elapsed = time.monotonic() - started
    assert result.reason == REASON_TIMEOUT
    assert 0.05 <= elapsed < 2.0


def test_transient_read_error_keeps_polling():
    store = FakeStore(visible_after=0, read_errors=[ReadError("lost connection", ErrorKind.CONNECTION)])
    result = make_prober(store).measure()
    assert result.ok
    assert result.polls == 2


def test_structural_read_error_ends_trial():
    store = FakeStore(visible_after=0, read_errors=[ReadError("pool exhausted", ErrorKind.POOL_EXHAUSTED)])
    result = make_prober(store).measure()
    assert result.reason == REASON_READ_ERROR
    assert "pool exhausted" in result.message
    assert store.kinds() == ["write", "read", "delete"]


def test_cleanup_failure_does_not_change_outcome():
    store = FakeStore(visible_after=1, delete_error=RuntimeError("primary went away"))
    result = make_prober(store).measure()
    assert result.ok
    assert store.kinds()[-1] == "delete"
