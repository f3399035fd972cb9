"""Background CPU load for autoscaling checks.

Kept separate from the measurement code and never started implicitly; CPU
contention on the probing host would skew lag samples.
"""
from __future__ import annotations

import hashlib
import logging
import multiprocessing
import os
import time
from typing import Any, Dict, List, Optional

CYCLE_SECONDS = 0.1


def burn_cycles(target_cpu: int, stop_event: Any, cycle: float = CYCLE_SECONDS) -> None:
    """Stay busy for ``target_cpu`` percent of every cycle until stopped."""
    busy = cycle * (target_cpu / 100.0)
    idle = cycle - busy
    while not stop_event.is_set():
        busy_end = time.perf_counter() + busy
        while time.perf_counter() < busy_end:
            hashlib.pbkdf2_hmac("sha256", b"load", b"salt", 1000, 32)
        if idle > 0:
            stop_event.wait(idle)


class BackgroundLoad:
    def __init__(self, context: Optional[Any] = None) -> None:
        self._ctx = context or multiprocessing.get_context()
        self._workers: List[Any] = []
        self._stop_event: Optional[Any] = None
        self.target_cpu: Optional[int] = None

    @property
    def active(self) -> bool:
        return bool(self._workers)

    def start(self, target_cpu: int = 60, cores: int = 1) -> Dict[str, object]:
        if not 1 <= target_cpu <= 100:
            raise ValueError(f"target_cpu must be 1-100 (got {target_cpu})")
        if cores < 1:
            raise ValueError(f"cores must be >= 1 (got {cores})")
        if self.active:
            return {"status": "already_running", "workers": len(self._workers)}

        total_cores = os.cpu_count() or 1
        worker_count = min(cores, total_cores)
        self._stop_event = self._ctx.Event()
        for index in range(worker_count):
            process = self._ctx.Process(
                target=burn_cycles,
                args=(target_cpu, self._stop_event),
                name=f"warm-up-{index + 1:02d}",
                daemon=True,
            )
            process.start()
            self._workers.append(process)
        self.target_cpu = target_cpu
        logging.info("[warm-up] started %d worker(s) at %d%% CPU", worker_count, target_cpu)
        return {
            "status": "started",
            "workers": worker_count,
            "targetCpuPercent": target_cpu,
            "totalCores": total_cores,
        }

    def stop(self, timeout: float = 2.0) -> Dict[str, object]:
        if not self.active:
            return {"status": "not_running"}
        worker_count = len(self._workers)
        if self._stop_event is not None:
            self._stop_event.set()
        deadline = time.time() + timeout
        for process in self._workers:
            process.join(max(0.0, deadline - time.time()))
        for process in self._workers:
            if process.is_alive():
                logging.warning("[warm-up] %s unresponsive; terminating", process.name)
                process.terminate()
                process.join(1)
        self._workers = []
        self._stop_event = None
        self.target_cpu = None
        logging.info("[warm-up] stopped %d worker(s)", worker_count)
        return {"status": "stopped", "workers": worker_count}

    def status(self) -> Dict[str, object]:
        return {
            "active": self.active,
            "workers": len(self._workers),
            "targetCpuPercent": self.target_cpu,
            "totalCores": os.cpu_count() or 1,
        }
