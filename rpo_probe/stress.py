"""Database read/write load used to push the cluster toward autoscaling.

Independent of lag measurement; do not run it against the same endpoints
while an RPO run is in progress unless the combined effect is what is being
tested.
"""
from __future__ import annotations

import logging
import random
import string
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .config import Role
from .pools import EndpointRegistry

STRESS_TABLE = "stress_test_logs"
STRESS_KINDS: Tuple[str, ...] = ("write", "read", "mixed")
WRITE_BATCH_SIZE = 100
MIXED_WRITE_SHARE = 0.7


@dataclass
class StressReport:
    test_id: str
    kind: str
    operations: int
    concurrency: int
    total_writes: int = 0
    total_reads: int = 0
    elapsed_ms: int = 0

    @property
    def ops_per_second(self) -> int:
        if not self.elapsed_ms:
            return 0
        return round((self.total_writes + self.total_reads) / (self.elapsed_ms / 1000.0))

    def to_dict(self) -> Dict[str, object]:
        return {
            "testId": self.test_id,
            "type": self.kind,
            "operations": self.operations,
            "concurrency": self.concurrency,
            "totalWrites": self.total_writes,
            "totalReads": self.total_reads,
            "elapsedMs": self.elapsed_ms,
            "opsPerSecond": self.ops_per_second,
        }


def new_test_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"stress-{int(time.time() * 1000)}-{suffix}"


def ensure_table(registry: EndpointRegistry) -> None:
    with registry.connection(Role.PRIMARY) as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"CREATE TABLE IF NOT EXISTS `{STRESS_TABLE}` ("
                " id BIGINT AUTO_INCREMENT PRIMARY KEY,"
                " test_id VARCHAR(36) NOT NULL,"
                " data VARCHAR(255) NOT NULL,"
                " created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,"
                " INDEX idx_test_id (test_id),"
                " INDEX idx_created_at (created_at)"
                ") ENGINE=InnoDB"
            )


def run_write_stress(registry: EndpointRegistry, test_id: str, count: int) -> int:
    inserted = 0
    while inserted < count:
        batch = min(WRITE_BATCH_SIZE, count - inserted)
        stamp = int(time.time() * 1000)
        rows = [(test_id, f"stress-data-{stamp}-{i}") for i in range(batch)]
        with registry.connection(Role.PRIMARY) as conn:
            with conn.cursor() as cur:
                cur.executemany(f"INSERT INTO `{STRESS_TABLE}` (test_id, data) VALUES (%s, %s)", rows)
        inserted += batch
    return inserted


def run_read_stress(registry: EndpointRegistry, count: int) -> int:
    reads = 0
    for _ in range(count):
        with registry.connection(Role.PRIMARY) as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT * FROM `{STRESS_TABLE}` ORDER BY created_at DESC LIMIT 100")
                cur.fetchall()
        reads += 1
    return reads


def run_mixed_stress(registry: EndpointRegistry, test_id: str, count: int) -> Tuple[int, int]:
    write_count = int(count * MIXED_WRITE_SHARE)
    writes = run_write_stress(registry, test_id, write_count)
    reads = run_read_stress(registry, count - write_count)
    return writes, reads


def split_operations(operations: int, concurrency: int) -> List[int]:
    """Share ``operations`` across at most ``concurrency`` workers."""
    per_worker = -(-operations // concurrency)
    shares: List[int] = []
    for index in range(concurrency):
        share = min(per_worker, operations - index * per_worker)
        if share <= 0:
            break
        shares.append(share)
    return shares


def run_db_stress(
    registry: EndpointRegistry,
    operations: int = 1000,
    concurrency: int = 10,
    kind: str = "mixed",
    test_id: Optional[str] = None,
) -> StressReport:
    if kind not in STRESS_KINDS:
        raise ValueError(f"type must be one of {', '.join(STRESS_KINDS)} (got {kind!r})")
    if operations < 1 or concurrency < 1:
        raise ValueError("operations and concurrency must be >= 1")

    report = StressReport(
        test_id=test_id or new_test_id(),
        kind=kind,
        operations=operations,
        concurrency=concurrency,
    )
    ensure_table(registry)
    shares = split_operations(operations, concurrency)
    logging.info(
        "[stress %s] %s load: %d op(s) across %d worker(s)",
        report.test_id,
        kind,
        operations,
        len(shares),
    )

    start = time.perf_counter()
    with ThreadPoolExecutor(max_workers=len(shares), thread_name_prefix="db-stress") as executor:
        futures: List[Future] = []
        for share in shares:
            if kind == "write":
                futures.append(executor.submit(run_write_stress, registry, report.test_id, share))
            elif kind == "read":
                futures.append(executor.submit(run_read_stress, registry, share))
            else:
                futures.append(executor.submit(run_mixed_stress, registry, report.test_id, share))
        for future in futures:
            result = future.result()
            if kind == "write":
                report.total_writes += result
            elif kind == "read":
                report.total_reads += result
            else:
                writes, reads = result
                report.total_writes += writes
                report.total_reads += reads
    report.elapsed_ms = int((time.perf_counter() - start) * 1000)
    logging.info(
        "[stress %s] COMPLETE: writes=%d reads=%d in %dms (%d ops/s)",
        report.test_id,
        report.total_writes,
        report.total_reads,
        report.elapsed_ms,
        report.ops_per_second,
    )
    return report


def cleanup_stress_data(registry: EndpointRegistry, test_id: Optional[str] = None) -> int:
    """Delete one test's rows, or every row older than an hour."""
    with registry.connection(Role.PRIMARY) as conn:
        with conn.cursor() as cur:
            if test_id:
                deleted = cur.execute(f"DELETE FROM `{STRESS_TABLE}` WHERE test_id = %s", (test_id,))
            else:
                deleted = cur.execute(
                    f"DELETE FROM `{STRESS_TABLE}` WHERE created_at < DATE_SUB(NOW(), INTERVAL 1 HOUR)"
                )
    logging.info("[stress] removed %d row(s)", deleted)
    return deleted
