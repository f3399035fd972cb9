import threading
from dataclasses import replace

import pymysql
import pytest
from pymysql.cursors import DictCursor
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from rpo_probe.config import Role, load_config
from rpo_probe.errors import ConfigurationError, ErrorKind, ReadError
from rpo_probe.markers import MarkerStore
from rpo_probe.pools import READ_CONSISTENCY_SQL, EndpointRegistry

from tests.conftest import FULL_ENV


def test_pool_is_built_once_per_role(registry):
    assert registry.get_pool(Role.PRIMARY) is registry.get_pool("primary")
    assert registry.get_pool(Role.PRIMARY) is not registry.get_pool(Role.REGIONAL_READER)


def test_concurrent_first_use_builds_a_single_pool(registry):
    pools = []

    def grab():
        pools.append(registry.get_pool(Role.REGIONAL_READER))

    threads = [threading.Thread(target=grab) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len({id(pool) for pool in pools}) == 1


def test_missing_configuration_raises_before_connecting(server):
    env = dict(FULL_ENV)
    del env["DB_TOKYO_READER_HOST"]
    registry = EndpointRegistry(load_config(environ=env), connect=server.connect)
    with pytest.raises(ConfigurationError) as excinfo:
        registry.get_pool(Role.REMOTE_READER)
    assert excinfo.value.missing == ["DB_TOKYO_READER_HOST"]
    assert server.connect_calls == []


def test_connection_parameters(registry, server):
    with registry.connection(Role.REMOTE_READER):
        pass
    (call,) = server.connect_calls
    assert call["host"] == "tokyo-reader.local"
    assert call["port"] == 3306
    assert call["database"] == "drtest"
    assert call["autocommit"] is True
    assert call["cursorclass"] is DictCursor


def test_read_consistency_set_on_primary_checkout_only(registry, server):
    with registry.connection(Role.PRIMARY):
        pass
    with registry.connection(Role.PRIMARY):
        pass
    with registry.connection(Role.REGIONAL_READER):
        pass
    assert len(server.statements(READ_CONSISTENCY_SQL)) == 2


def test_unknown_consistency_variable_is_tolerated(registry, server):
    server.fail(
        "aurora_replica_read_consistency",
        pymysql.err.InternalError(1193, "Unknown system variable 'aurora_replica_read_consistency'"),
    )
    assert registry.health_check(Role.PRIMARY) == {"status": "ok"}


def test_health_check_reports_errors(registry, server):
    server.connect_error = pymysql.err.OperationalError(2003, "Can't connect to MySQL server")
    result = registry.health_check(Role.REGIONAL_READER)
    assert result["status"] == "error"
    assert "Can't connect" in result["message"]


def test_health_check_reports_missing_configuration(server):
    registry = EndpointRegistry(load_config(environ={}), connect=server.connect)
    result = registry.health_check(Role.PRIMARY)
    assert result == {"status": "error", "message": "missing env: DB_HOST, DB_USER, DB_PASSWORD, DB_NAME"}
    assert not registry.is_configured(Role.PRIMARY)


def test_exhausted_pool_times_out(config, server):
    config.roles[Role.REGIONAL_READER] = replace(
        config.role(Role.REGIONAL_READER), max_connections=1, acquire_timeout=0.05
    )
    registry = EndpointRegistry(config, connect=server.connect)
    store = MarkerStore(registry)
    try:
        with registry.connection(Role.REGIONAL_READER):
            with pytest.raises(PoolTimeoutError):
                registry.get_pool(Role.REGIONAL_READER).connect()
            with pytest.raises(ReadError) as excinfo:
                store.read(Role.REGIONAL_READER, "rpo-1-abcdefgh")
        assert excinfo.value.kind is ErrorKind.POOL_EXHAUSTED
    finally:
        registry.dispose()


def test_dispose_allows_rebuilding(registry):
    first = registry.get_pool(Role.PRIMARY)
    registry.dispose()
    assert registry.get_pool(Role.PRIMARY) is not first


def test_queries_have_bounded_duration(registry, server):
    with registry.connection(Role.REGIONAL_READER):
        pass
    (call,) = server.connect_calls
    assert call["connect_timeout"] == 10
    assert call["read_timeout"] == 30
    assert call["write_timeout"] == 30
