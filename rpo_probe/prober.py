"""Write-then-poll replication lag measurement."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .config import Role
from .errors import ReadError, WriteError, is_structural
from .markers import MarkerStore, new_marker_id

REASON_TIMEOUT = "timeout"
REASON_WRITE_ERROR = "write_error"
REASON_READ_ERROR = "read_error"


@dataclass(frozen=True)
class ProbeSettings:
    target: str
    reader_role: Role
    max_wait_ms: int
    poll_interval_ms: int
    inter_trial_delay_ms: int
    max_iterations: int


PROBE_PROFILES: Dict[str, ProbeSettings] = {
    "regional": ProbeSettings(
        target="regional",
        reader_role=Role.REGIONAL_READER,
        max_wait_ms=10_000,
        poll_interval_ms=5,
        inter_trial_delay_ms=100,
        max_iterations=100,
    ),
    # Cross-region replication is slower; a tighter bound would count healthy
    # trials as timeouts.
    "remote-region": ProbeSettings(
        target="remote-region",
        reader_role=Role.REMOTE_READER,
        max_wait_ms=30_000,
        poll_interval_ms=10,
        inter_trial_delay_ms=500,
        max_iterations=50,
    ),
}


@dataclass(frozen=True)
class TrialResult:
    marker_id: str
    ok: bool
    elapsed_ms: Optional[int] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    polls: int = 0

    @classmethod
    def success(cls, marker_id: str, elapsed_ms: int, polls: int) -> "TrialResult":
        return cls(marker_id=marker_id, ok=True, elapsed_ms=elapsed_ms, polls=polls)

    @classmethod
    def failure(cls, marker_id: str, reason: str, message: str, polls: int = 0) -> "TrialResult":
        return cls(marker_id=marker_id, ok=False, reason=reason, message=message, polls=polls)


class ReplicationLagProber:
    """Measure how long one primary write takes to become readable on a reader.

    The write timestamp stored in the marker row comes from the wall clock so
    rows stay meaningful to an operator; the lag itself is measured on the
    monotonic ``clock`` from just before the insert to the first successful
    read, so server clocks in other regions never enter the result.
    """

    def __init__(
        self,
        store: MarkerStore,
        settings: ProbeSettings,
        *,
        primary_role: Role = Role.PRIMARY,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        id_factory: Callable[[], str] = new_marker_id,
    ) -> None:
        self.store = store
        self.settings = settings
        self.primary_role = primary_role
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep
        self._id_factory = id_factory

    def measure(self) -> TrialResult:
        marker_id = self._id_factory()
        write_timestamp_ms = int(self._wall_clock() * 1000)
        started = self._clock()
        try:
            self.store.write(self.primary_role, marker_id, write_timestamp_ms)
        except WriteError as exc:
            logging.warning("[probe %s] write failed for %s: %s", self.settings.target, marker_id, exc)
            return TrialResult.failure(marker_id, REASON_WRITE_ERROR, str(exc))

        try:
            return self._poll(marker_id, started)
        finally:
            self._cleanup(marker_id)

    def _poll(self, marker_id: str, started: float) -> TrialResult:
        settings = self.settings
        deadline = started + settings.max_wait_ms / 1000.0
        interval = settings.poll_interval_ms / 1000.0
        polls = 0
        while self._clock() < deadline:
            polls += 1
            try:
                found = self.store.read(settings.reader_role, marker_id)
            except ReadError as exc:
                if is_structural(exc.kind):
                    logging.warning(
                        "[probe %s] read aborted for %s after %d poll(s): %s",
                        settings.target,
                        marker_id,
                        polls,
                        exc,
                    )
                    return TrialResult.failure(marker_id, REASON_READ_ERROR, str(exc), polls)
                logging.debug("[probe %s] transient read error, retrying: %s", settings.target, exc)
                found = None
            if found is not None:
                elapsed_ms = int((self._clock() - started) * 1000)
                logging.debug(
                    "[probe %s] %s visible after %d ms (%d poll(s))",
                    settings.target,
                    marker_id,
                    elapsed_ms,
                    polls,
                )
                return TrialResult.success(marker_id, elapsed_ms, polls)
            self._sleep(interval)

        message = f"Replication timeout: data not replicated within {settings.max_wait_ms}ms"
        logging.warning("[probe %s] %s (%s, %d poll(s))", settings.target, message, marker_id, polls)
        return TrialResult.failure(marker_id, REASON_TIMEOUT, message, polls)

    def _cleanup(self, marker_id: str) -> None:
        # Deletes go to the primary; readers may be read-only.
        try:
            self.store.delete(self.primary_role, marker_id)
        except Exception:
            logging.warning(
                "[probe %s] unable to delete marker %s; orphan sweep will remove it",
                self.settings.target,
                marker_id,
                exc_info=True,
            )
