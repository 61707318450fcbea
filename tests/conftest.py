"""Shared fixtures: a clean client config and a running fake nREPL server."""

from collections.abc import Iterator

import pytest

from nreplops.config import CONNECT_TIMEOUT, DEFAULT_SSH_BINARY, config
from tests.fixtures.fake_nrepl import FakeNreplServer

ENV_VARS = ("NR_TIMEOUT", "NR_CONNECT_TIMEOUT", "NR_SSH", "NR_TRACE", "NR_VERBOSE")


@pytest.fixture(autouse=True)
def clean_config(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Reset the process-wide config so tests cannot leak settings."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(config, "TIMEOUT", None)
    monkeypatch.setattr(config, "CONNECT_TIMEOUT", CONNECT_TIMEOUT)
    monkeypatch.setattr(config, "SSH_BINARY", DEFAULT_SSH_BINARY)
    monkeypatch.setattr(config, "TRACE_PATH", None)
    monkeypatch.setattr(config, "VERBOSE", False)
    yield


@pytest.fixture
def nrepl_server() -> Iterator[FakeNreplServer]:
    with FakeNreplServer() as server:
        yield server
