import random
import re
import threading

import pymysql
import pytest

from rpo_probe.config import Role
from rpo_probe.errors import ErrorKind, ReadError, WriteError
from rpo_probe.markers import MARKER_TABLE, MarkerStore, new_marker_id


def test_marker_id_format():
    marker_id = new_marker_id(random.Random(7))
    assert re.fullmatch(r"rpo-\d{13}-[0-9a-z]{8}", marker_id)
    assert new_marker_id() != new_marker_id()


def test_concurrent_schema_setup(registry, server):
    store = MarkerStore(registry)
    errors = []

    def setup():
        try:
            store.ensure_schema()
        except Exception as exc:  # pragma: no cover - surfaced by the assert below
            errors.append(exc)

    threads = [threading.Thread(target=setup) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert errors == []
    assert server.tables[MARKER_TABLE] == 5
    assert all("IF NOT EXISTS" in sql for sql, _ in server.statements("CREATE TABLE"))


def test_write_read_delete(registry, server):
    store = MarkerStore(registry)
    store.write(Role.PRIMARY, "rpo-1-aaaaaaaa", 1_700_000_000_000)
    assert store.read(Role.REGIONAL_READER, "rpo-1-aaaaaaaa") == 1_700_000_000_000
    assert store.read(Role.REGIONAL_READER, "rpo-1-missing0") is None
    assert store.delete(Role.PRIMARY, "rpo-1-aaaaaaaa") == 1
    assert store.delete(Role.PRIMARY, "rpo-1-aaaaaaaa") == 0
    assert server.markers == {}


def test_duplicate_marker_is_not_overwritten(registry, server):
    store = MarkerStore(registry)
    store.write(Role.PRIMARY, "rpo-1-dupdupdu", 1)
    with pytest.raises(WriteError) as excinfo:
        store.write(Role.PRIMARY, "rpo-1-dupdupdu", 2)
    assert excinfo.value.kind is ErrorKind.DUPLICATE_KEY
    assert server.markers["rpo-1-dupdupdu"] == 1


def test_read_failure_is_classified(registry, server):
    server.fail("SELECT write_timestamp", pymysql.err.OperationalError(2013, "Lost connection"))
    with pytest.raises(ReadError) as excinfo:
        MarkerStore(registry).read(Role.REGIONAL_READER, "rpo-1-aaaaaaaa")
    assert excinfo.value.kind is ErrorKind.CONNECTION


def test_read_only_write_is_classified(registry, server):
    server.fail("INSERT INTO", pymysql.err.OperationalError(1290, "running with the --read-only option"))
    with pytest.raises(WriteError) as excinfo:
        MarkerStore(registry).write(Role.PRIMARY, "rpo-1-aaaaaaaa", 1)
    assert excinfo.value.kind is ErrorKind.READ_ONLY


def test_delete_older_than(registry, server):
    server.old_rows = 4
    assert MarkerStore(registry).delete_older_than(Role.PRIMARY, 600) == 4
    ((sql, params),) = server.statements("DATE_SUB")
    assert sql.startswith(f"DELETE FROM `{MARKER_TABLE}`")
    assert params == (600,)
