"""Repeated trials and their summary statistics."""
from __future__ import annotations

import logging
import math
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .prober import ReplicationLagProber, TrialResult

ALL_FAILED_MESSAGE = "All measurements failed"


@dataclass(frozen=True)
class LagStats:
    min_ms: int
    max_ms: int
    avg_ms: int
    median_ms: int
    p95_ms: int

    @classmethod
    def from_samples(cls, samples: Sequence[int]) -> "LagStats":
        """Summarize lag samples.

        median is the element at ``n // 2`` of the sorted list (the upper
        middle on even counts) and p95 the element at ``floor(0.95 * n)``
        clamped to the last index. The mean is rounded half up.
        """
        if not samples:
            raise ValueError("cannot summarize an empty sample list")
        ordered = sorted(samples)
        count = len(ordered)
        p95_index = min((count * 95) // 100, count - 1)
        return cls(
            min_ms=ordered[0],
            max_ms=ordered[-1],
            avg_ms=int(math.floor(sum(ordered) / count + 0.5)),
            median_ms=ordered[count // 2],
            p95_ms=ordered[p95_index],
        )


@dataclass
class AggregateReport:
    target: str
    iterations: int
    results: List[TrialResult] = field(default_factory=list)
    stats: Optional[LagStats] = None
    aborted: int = 0

    @property
    def lags_ms(self) -> List[int]:
        return [r.elapsed_ms for r in self.results if r.ok and r.elapsed_ms is not None]

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)

    @property
    def errors(self) -> List[str]:
        return [r.message or r.reason or "unknown" for r in self.results if not r.ok]

    @property
    def failure_reasons(self) -> Dict[str, int]:
        return dict(Counter(r.reason or "unknown" for r in self.results if not r.ok))

    @property
    def ok(self) -> bool:
        return self.stats is not None

    def to_dict(self) -> Dict[str, object]:
        if self.stats is None:
            payload: Dict[str, object] = {
                "status": "error",
                "message": ALL_FAILED_MESSAGE,
                "target": self.target,
                "iterations": self.iterations,
                "successful": 0,
                "failed": self.failed,
                "failureReasons": self.failure_reasons,
                "errors": self.errors,
            }
        else:
            payload = {
                "status": "ok",
                "target": self.target,
                "iterations": self.iterations,
                "successful": self.successful,
                "failed": self.failed,
                "avgLagMs": self.stats.avg_ms,
                "minLagMs": self.stats.min_ms,
                "maxLagMs": self.stats.max_ms,
                "medianLagMs": self.stats.median_ms,
                "p95LagMs": self.stats.p95_ms,
                "allLagsMs": self.lags_ms,
            }
            if self.failed:
                payload["failureReasons"] = self.failure_reasons
                payload["errors"] = self.errors
        if self.aborted:
            payload["aborted"] = self.aborted
        return payload


def summarize(target: str, iterations: int, results: Sequence[TrialResult]) -> AggregateReport:
    report = AggregateReport(target=target, iterations=iterations, results=list(results))
    report.aborted = max(0, iterations - len(report.results))
    lags = report.lags_ms
    if lags:
        report.stats = LagStats.from_samples(lags)
    return report


class TrialAggregator:
    """Run trials one after another and fold them into a report.

    Trials never overlap: concurrent markers on the same primary/reader pair
    would share a replication stream and contaminate each other's samples.
    ``stop_event`` is checked between trials only; an in-flight trial ends
    through its own timeout and cleanup.
    """

    def __init__(
        self,
        prober: ReplicationLagProber,
        *,
        sleep: Callable[[float], None] = time.sleep,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self.prober = prober
        self._sleep = sleep
        self._stop_event = stop_event

    def run(self, iterations: int) -> AggregateReport:
        settings = self.prober.settings
        delay = settings.inter_trial_delay_ms / 1000.0
        results: List[TrialResult] = []
        started = time.perf_counter()
        for index in range(iterations):
            if self._stop_event is not None and self._stop_event.is_set():
                logging.warning(
                    "[rpo %s] stop requested; skipping %d remaining trial(s)",
                    settings.target,
                    iterations - index,
                )
                break
            result = self.prober.measure()
            results.append(result)
            if result.ok:
                logging.info("[rpo %s] trial %d/%d lag=%dms", settings.target, index + 1, iterations, result.elapsed_ms)
            else:
                logging.info("[rpo %s] trial %d/%d failed: %s", settings.target, index + 1, iterations, result.reason)
            if index < iterations - 1:
                self._sleep(delay)

        report = summarize(settings.target, iterations, results)
        logging.info(
            "[rpo %s] COMPLETE: %d/%d successful in %.1fs",
            settings.target,
            report.successful,
            iterations,
            time.perf_counter() - started,
        )
        return report
