"""Light read/write probes used while a regional failover is exercised.

With write forwarding disabled on a secondary cluster, writes issued there are
rejected as read-only; that rejection is the observation, not a fault.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

import pymysql
from sqlalchemy.exc import SQLAlchemyError

from .config import Role
from .errors import ErrorKind, classify_error
from .pools import EndpointRegistry

FAILOVER_TABLE = "failover_traffic"


@dataclass
class FailoverOutcome:
    type: str
    status: str
    region: Optional[str] = None
    marker: Optional[str] = None
    error: Optional[str] = None
    elapsed_ms: int = 0

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"status": self.status, "type": self.type, "elapsedMs": self.elapsed_ms}
        if self.region is not None:
            payload["region"] = self.region
        if self.marker is not None:
            payload["marker"] = self.marker
        if self.error is not None:
            payload["error"] = self.error
        return payload


def ensure_table(registry: EndpointRegistry) -> None:
    with registry.connection(Role.PRIMARY) as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"CREATE TABLE IF NOT EXISTS `{FAILOVER_TABLE}` ("
                " id BIGINT AUTO_INCREMENT PRIMARY KEY,"
                " marker VARCHAR(64) NOT NULL,"
                " region VARCHAR(16) NOT NULL,"
                " created_at TIMESTAMP(3) DEFAULT CURRENT_TIMESTAMP(3),"
                " INDEX idx_marker (marker),"
                " INDEX idx_created_at (created_at)"
                ") ENGINE=InnoDB"
            )


def perform_read(registry: EndpointRegistry) -> FailoverOutcome:
    start = time.perf_counter()
    with registry.connection(Role.REGIONAL_READER) as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT 1 AS ping")
            cur.fetchone()
    return FailoverOutcome(type="read", status="success", elapsed_ms=int((time.perf_counter() - start) * 1000))


def perform_write(registry: EndpointRegistry, region: str) -> FailoverOutcome:
    """Insert one traffic row through the primary endpoint.

    A read-only rejection comes back as status ``rejected``; anything else
    propagates.
    """
    marker = f"{region}-{int(time.time() * 1000)}"
    start = time.perf_counter()
    try:
        ensure_table(registry)
        with registry.connection(Role.PRIMARY) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"INSERT INTO `{FAILOVER_TABLE}` (marker, region) VALUES (%s, %s)",
                    (marker, region),
                )
    except (pymysql.MySQLError, SQLAlchemyError) as exc:
        if classify_error(exc) is not ErrorKind.READ_ONLY:
            raise
        logging.info("[failover] write from %s rejected as read-only: %s", region, exc)
        return FailoverOutcome(
            type="write",
            status="rejected",
            region=region,
            marker=marker,
            error=str(exc),
            elapsed_ms=int((time.perf_counter() - start) * 1000),
        )
    return FailoverOutcome(
        type="write",
        status="success",
        region=region,
        marker=marker,
        elapsed_ms=int((time.perf_counter() - start) * 1000),
    )


def cleanup_old_traffic(registry: EndpointRegistry, minutes: int = 10) -> int:
    with registry.connection(Role.PRIMARY) as conn:
        with conn.cursor() as cur:
            deleted = cur.execute(
                f"DELETE FROM `{FAILOVER_TABLE}` WHERE created_at < DATE_SUB(NOW(), INTERVAL %s MINUTE)",
                (int(minutes),),
            )
    logging.info("[failover] removed %d traffic row(s) older than %d minute(s)", deleted, minutes)
    return deleted
