"""Pytest configuration shared by the harness tests."""

import os
import sys

import pytest

root = os.path.dirname(os.path.abspath(__file__))
proj = os.path.abspath(os.path.join(root, ".."))
if proj not in sys.path:
    sys.path.insert(0, proj)

from rpo_probe.config import HarnessConfig, load_config  # noqa: E402
from rpo_probe.pools import EndpointRegistry  # noqa: E402
from tests.fakes import FakeServer  # noqa: E402

FULL_ENV = {
    "DB_HOST": "writer.local",
    "DB_READER_HOST": "reader.local",
    "DB_TOKYO_READER_HOST": "tokyo-reader.local",
    "DB_USER": "harness",
    "DB_PASSWORD": "secret",
    "DB_NAME": "drtest",
}


@pytest.fixture
def config() -> HarnessConfig:
    return load_config(environ=dict(FULL_ENV))


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def registry(config: HarnessConfig, server: FakeServer):
    reg = EndpointRegistry(config, connect=server.connect)
    yield reg
    reg.dispose()
