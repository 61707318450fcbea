"""Tests for .nrepl-port discovery."""

import os
import threading
import time
from pathlib import Path

import pytest

from nreplops.conn_expr import LocalRoute, RemoteRoute
from nreplops.errors import HostConnectionError
from nreplops.port_file import PortFileMissing, find_port_file, load_port_file, route_from_port_file


def test_finds_port_file_in_ancestor(tmp_path: Path) -> None:
    (tmp_path / ".nrepl-port").write_text("7888\n")
    nested = tmp_path / "src" / "app"
    nested.mkdir(parents=True)
    assert find_port_file(str(nested)) == str(tmp_path / ".nrepl-port")
    assert route_from_port_file(start_dir=str(nested)) == LocalRoute(ports=(7888,))


def test_explicit_port_file_may_hold_any_expression(tmp_path: Path) -> None:
    port_file = tmp_path / "port"
    port_file.write_text("localhost:7888")
    spec = load_port_file(str(port_file))
    assert isinstance(spec, RemoteRoute)
    assert spec.ports == (7888,)


def test_bad_port_file(tmp_path: Path) -> None:
    port_file = tmp_path / ".nrepl-port"
    port_file.write_text("not a port\n")
    with pytest.raises(HostConnectionError, match="bad port file"):
        load_port_file(str(port_file))


def test_missing_port_file(tmp_path: Path) -> None:
    with pytest.raises(PortFileMissing):
        route_from_port_file(str(tmp_path / "nope"))


def test_waits_for_port_file(tmp_path: Path) -> None:
    port_file = tmp_path / ".nrepl-port"
    staged = tmp_path / "staged"
    staged.write_text("5555")
    timer = threading.Timer(0.2, os.replace, args=(staged, port_file))
    timer.start()
    try:
        spec = route_from_port_file(str(port_file), wait_for=5)
    finally:
        timer.cancel()
    assert spec == LocalRoute(ports=(5555,))


def test_wait_for_port_file_times_out(tmp_path: Path) -> None:
    started = time.monotonic()
    with pytest.raises(HostConnectionError, match="timeout while waiting for port file"):
        route_from_port_file(str(tmp_path / ".nrepl-port"), wait_for=0.2)
    assert time.monotonic() - started < 2
