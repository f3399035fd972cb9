"""Marker rows: the unit of observation for replication."""
from __future__ import annotations

import logging
import random
import string
import time
from typing import Optional

import pymysql
from sqlalchemy.exc import SQLAlchemyError

from .config import Role
from .errors import ErrorKind, ReadError, WriteError, classify_error
from .pools import EndpointRegistry, RoleLike

MARKER_TABLE = "rpo_test_markers"

_ID_ALPHABET = string.digits + string.ascii_lowercase


def new_marker_id(rng: Optional[random.Random] = None) -> str:
    """Return ``rpo-<epoch ms>-<8 base36 chars>``."""
    rng = rng or random.SystemRandom()
    suffix = "".join(rng.choice(_ID_ALPHABET) for _ in range(8))
    return f"rpo-{int(time.time() * 1000)}-{suffix}"


class MarkerStore:
    def __init__(self, registry: EndpointRegistry, table: str = MARKER_TABLE) -> None:
        self.registry = registry
        self.table = table

    def ensure_schema(self, role: RoleLike = Role.PRIMARY) -> None:
        # CREATE ... IF NOT EXISTS keeps concurrent callers race-free.
        with self.registry.connection(role) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"CREATE TABLE IF NOT EXISTS `{self.table}` ("
                    " id BIGINT AUTO_INCREMENT PRIMARY KEY,"
                    " marker_id VARCHAR(64) NOT NULL UNIQUE,"
                    " write_timestamp BIGINT NOT NULL,"
                    " created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,"
                    " INDEX idx_marker_id (marker_id),"
                    " INDEX idx_created_at (created_at)"
                    ") ENGINE=InnoDB"
                )

    def write(self, role: RoleLike, marker_id: str, write_timestamp_ms: int) -> None:
        try:
            with self.registry.connection(role) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"INSERT INTO `{self.table}` (marker_id, write_timestamp) VALUES (%s, %s)",
                        (marker_id, write_timestamp_ms),
                    )
        except (pymysql.MySQLError, SQLAlchemyError) as exc:
            kind = classify_error(exc)
            if kind is ErrorKind.DUPLICATE_KEY:
                logging.error("Marker id collision for %s; refusing to overwrite", marker_id)
            raise WriteError(f"marker write failed ({kind.value}): {exc}", kind) from exc

    def read(self, role: RoleLike, marker_id: str) -> Optional[int]:
        """Point lookup; return the stored write timestamp or None when absent."""
        try:
            with self.registry.connection(role) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"SELECT write_timestamp FROM `{self.table}` WHERE marker_id = %s",
                        (marker_id,),
                    )
                    row = cur.fetchone()
        except (pymysql.MySQLError, SQLAlchemyError) as exc:
            kind = classify_error(exc)
            raise ReadError(f"marker read failed ({kind.value}): {exc}", kind) from exc
        if not row:
            return None
        return int(row["write_timestamp"])

    def delete(self, role: RoleLike, marker_id: str) -> int:
        with self.registry.connection(role) as conn:
            with conn.cursor() as cur:
                return cur.execute(f"DELETE FROM `{self.table}` WHERE marker_id = %s", (marker_id,))

    def delete_older_than(self, role: RoleLike, seconds: int) -> int:
        with self.registry.connection(role) as conn:
            with conn.cursor() as cur:
                deleted = cur.execute(
                    f"DELETE FROM `{self.table}` "
                    "WHERE created_at < DATE_SUB(NOW(), INTERVAL %s SECOND)",
                    (int(seconds),),
                )
        logging.info("Removed %d marker row(s) older than %ds from %s", deleted, seconds, self.table)
        return deleted
