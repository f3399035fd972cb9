"""Entry points used by the CLI or any other outer surface."""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional

from . import failover
from .aggregate import AggregateReport, TrialAggregator
from .config import Role
from .markers import MarkerStore, new_marker_id
from .pools import EndpointRegistry, RoleLike
from .prober import PROBE_PROFILES, ProbeSettings, ReplicationLagProber

TARGETS = tuple(PROBE_PROFILES)


def resolve_settings(target: str) -> ProbeSettings:
    try:
        return PROBE_PROFILES[target]
    except KeyError:
        raise ValueError(f"target must be one of {', '.join(TARGETS)} (got {target!r})") from None


def validate_iterations(settings: ProbeSettings, iterations: int) -> None:
    if not isinstance(iterations, int) or isinstance(iterations, bool):
        raise ValueError(f"iterations must be an integer (got {iterations!r})")
    if iterations < 1 or iterations > settings.max_iterations:
        raise ValueError(
            f"iterations must be 1-{settings.max_iterations} for {settings.target} (got {iterations})"
        )


def run_replication_lag_trial(
    registry: EndpointRegistry,
    target: str,
    iterations: int,
    *,
    stop_event: Optional[threading.Event] = None,
    prober_factory: Callable[..., ReplicationLagProber] = ReplicationLagProber,
    sleep: Callable[[float], None] = time.sleep,
) -> AggregateReport:
    """Measure replication lag from the primary to ``target`` ``iterations`` times.

    Argument and configuration errors raise; failed trials are reported.
    """
    settings = resolve_settings(target)
    validate_iterations(settings, iterations)

    # Fail on missing configuration before anything is written.
    registry.get_pool(Role.PRIMARY)
    registry.get_pool(settings.reader_role)

    store = MarkerStore(registry)
    store.ensure_schema(Role.PRIMARY)

    primary = registry.config.role(Role.PRIMARY)
    reader = registry.config.role(settings.reader_role)
    logging.info(
        "[rpo %s] writer=%s reader=%s iterations=%d max_wait=%dms poll=%dms",
        settings.target,
        primary.target,
        reader.target,
        iterations,
        settings.max_wait_ms,
        settings.poll_interval_ms,
    )
    prober = prober_factory(store, settings, sleep=sleep)
    aggregator = TrialAggregator(prober, sleep=sleep, stop_event=stop_event)
    return aggregator.run(iterations)


def health_check(registry: EndpointRegistry, role: RoleLike) -> Dict[str, str]:
    return registry.health_check(role)


def health_report(registry: EndpointRegistry) -> Dict[str, object]:
    """Check every role; an absent remote reader is reported, not failed."""
    databases: Dict[str, Dict[str, object]] = {}
    for role in Role:
        cfg = registry.config.role(role)
        if role is Role.REMOTE_READER and not cfg.host:
            databases[role.value] = {"host": None, "status": "not_configured"}
            continue
        entry: Dict[str, object] = {"host": cfg.host}
        entry.update(registry.health_check(role))
        databases[role.value] = entry
    primary_ok = databases[Role.PRIMARY.value]["status"] == "ok"
    return {"status": "ok" if primary_ok else "degraded", "databases": databases}


def write_marker(store: MarkerStore, *, wall_clock: Callable[[], float] = time.time) -> Dict[str, object]:
    """Write one marker for a manual cross-host check; the caller owns its cleanup."""
    store.ensure_schema(Role.PRIMARY)
    marker_id = new_marker_id()
    write_timestamp = int(wall_clock() * 1000)
    store.write(Role.PRIMARY, marker_id, write_timestamp)
    logging.info("Wrote marker %s at %d", marker_id, write_timestamp)
    return {"markerId": marker_id, "writeTimestamp": write_timestamp}


def read_marker(
    store: MarkerStore,
    marker_id: str,
    role: RoleLike = Role.REGIONAL_READER,
    *,
    wall_clock: Callable[[], float] = time.time,
) -> Dict[str, object]:
    # Compares two hosts' wall clocks, so the lag is indicative only.
    write_timestamp = store.read(role, marker_id)
    if write_timestamp is None:
        return {"markerId": marker_id, "found": False}
    return {
        "markerId": marker_id,
        "found": True,
        "writeTimestamp": write_timestamp,
        "lagMs": int(wall_clock() * 1000) - write_timestamp,
    }


def delete_marker(store: MarkerStore, marker_id: str) -> Dict[str, object]:
    deleted = store.delete(Role.PRIMARY, marker_id)
    return {"markerId": marker_id, "deleted": deleted}


def sweep_orphans(registry: EndpointRegistry, older_than_seconds: int = 600) -> Dict[str, int]:
    """Delete probe rows left behind by trials whose own cleanup failed.

    Meant to be run periodically by an external scheduler.
    """
    store = MarkerStore(registry)
    store.ensure_schema(Role.PRIMARY)
    failover.ensure_table(registry)
    markers = store.delete_older_than(Role.PRIMARY, older_than_seconds)
    traffic = failover.cleanup_old_traffic(registry, minutes=max(1, older_than_seconds // 60))
    return {"markers": markers, "failoverTraffic": traffic}
