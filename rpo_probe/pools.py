"""One bounded connection pool per endpoint role."""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Union

import pymysql
from pymysql.cursors import DictCursor
from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool

from .config import HarnessConfig, Role, RoleConfig
from .errors import ConfigurationError, ErrorKind, classify_error

READ_CONSISTENCY_SQL = "SET aurora_replica_read_consistency = 'SESSION'"

RoleLike = Union[Role, str]


def _install_read_consistency(pool: QueuePool, role: Role) -> None:
    """Issue the session consistency directive on every checkout.

    Only Aurora secondary clusters with write forwarding know the variable, so
    a rejection is expected on a primary cluster and must not fail the caller.
    """

    def on_checkout(dbapi_connection: Any, connection_record: Any, connection_proxy: Any) -> None:
        try:
            with dbapi_connection.cursor() as cur:
                cur.execute(READ_CONSISTENCY_SQL)
        except pymysql.MySQLError as exc:
            kind = classify_error(exc)
            if kind is ErrorKind.UNKNOWN_VARIABLE:
                logging.debug("[%s] read consistency variable not supported; continuing", role.value)
            else:
                logging.debug("[%s] unable to set read consistency (%s): %s", role.value, kind.value, exc)

    event.listen(pool, "checkout", on_checkout)


class EndpointRegistry:
    """Lazily builds and caches one pool per role.

    Construct once per process and pass it to the probes; tests inject a fake
    ``connect`` callable in place of :func:`pymysql.connect`.
    """

    def __init__(
        self,
        config: HarnessConfig,
        connect: Callable[..., Any] = pymysql.connect,
    ) -> None:
        self.config = config
        self._connect = connect
        self._pools: Dict[Role, QueuePool] = {}
        self._lock = threading.Lock()

    def _creator(self, cfg: RoleConfig) -> Callable[[], Any]:
        def create() -> Any:
            return self._connect(
                host=cfg.host,
                port=cfg.port,
                user=cfg.user,
                password=cfg.password or "",
                database=cfg.database,
                charset="utf8mb4",
                autocommit=True,
                connect_timeout=cfg.connect_timeout,
                read_timeout=cfg.query_timeout,
                write_timeout=cfg.query_timeout,
                cursorclass=DictCursor,
            )

        return create

    def _build_pool(self, cfg: RoleConfig) -> QueuePool:
        pool = QueuePool(
            self._creator(cfg),
            pool_size=cfg.max_connections,
            max_overflow=0,
            timeout=cfg.acquire_timeout,
        )
        if cfg.read_consistency_override:
            _install_read_consistency(pool, cfg.role)
        return pool

    def get_pool(self, role: RoleLike) -> QueuePool:
        """Return the pool for ``role``, building it on first use.

        Raises ConfigurationError before any network attempt when the role is
        missing connection parameters.
        """
        role = Role(role)
        pool = self._pools.get(role)
        if pool is not None:
            return pool
        with self._lock:
            pool = self._pools.get(role)
            if pool is None:
                cfg = self.config.role(role).validate()
                pool = self._build_pool(cfg)
                self._pools[role] = pool
                logging.info(
                    "[%s] pool ready target=%s db=%s max_connections=%d acquire_timeout=%.1fs",
                    role.value,
                    cfg.target,
                    cfg.database,
                    cfg.max_connections,
                    cfg.acquire_timeout,
                )
        return pool

    @contextmanager
    def connection(self, role: RoleLike) -> Iterator[Any]:
        conn = self.get_pool(role).connect()
        try:
            yield conn
        finally:
            conn.close()

    def is_configured(self, role: RoleLike) -> bool:
        return not self.config.role(Role(role)).missing_fields()

    def health_check(self, role: RoleLike) -> Dict[str, str]:
        """Run a trivial round trip; never raises."""
        role = Role(role)
        try:
            with self.connection(role) as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
        except ConfigurationError as exc:
            return {"status": "error", "message": str(exc)}
        except (pymysql.MySQLError, SQLAlchemyError, OSError) as exc:
            logging.warning("[%s] health check failed: %s", role.value, exc)
            return {"status": "error", "message": str(exc) or exc.__class__.__name__}
        return {"status": "ok"}

    def dispose(self) -> None:
        with self._lock:
            for role, pool in self._pools.items():
                pool.dispose()
                logging.debug("[%s] pool disposed", role.value)
            self._pools.clear()
