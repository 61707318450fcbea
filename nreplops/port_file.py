import os
import time
from typing import Optional

from nreplops.config import PORT_FILE_NAME, PORT_FILE_POLL_INTERVAL
from nreplops.conn_expr import RouteSpec, parse_conn_expr
from nreplops.errors import ConnExprParseError, HostConnectionError


class PortFileMissing(HostConnectionError):
    pass


def find_port_file(start_dir: Optional[str] = None) -> Optional[str]:
    """Return the nearest .nrepl-port in ``start_dir`` or its ancestors."""
    current = os.path.abspath(start_dir or os.getcwd())
    while True:
        candidate = os.path.join(current, PORT_FILE_NAME)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(current)
        if parent == current:
            return None
        current = parent


def load_port_file(path: str) -> RouteSpec:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            content = handle.read().strip()
    except FileNotFoundError:
        raise PortFileMissing(f"port file {path} not found") from None
    except OSError as exc:
        raise HostConnectionError(f"cannot read port file {path}: {exc}") from exc
    try:
        return parse_conn_expr(content)
    except ConnExprParseError:
        raise HostConnectionError(f"bad port file {path}") from None


def _try_load(path: Optional[str], start_dir: Optional[str]) -> RouteSpec:
    if path:
        return load_port_file(path)
    found = find_port_file(start_dir)
    if found is None:
        raise PortFileMissing(
            "the nREPL server address not specified; use --port or --port-file, "
            f"or make sure there is a {PORT_FILE_NAME} file in the current directory or its ancestors"
        )
    return load_port_file(found)


def route_from_port_file(
    path: Optional[str] = None,
    wait_for: Optional[float] = None,
    start_dir: Optional[str] = None,
) -> RouteSpec:
    """Read the route from a port file, optionally waiting for it to appear."""
    if not wait_for:
        return _try_load(path, start_dir)
    deadline = time.monotonic() + wait_for
    while True:
        try:
            return _try_load(path, start_dir)
        except PortFileMissing:
            if time.monotonic() >= deadline:
                raise HostConnectionError("timeout while waiting for port file") from None
        time.sleep(PORT_FILE_POLL_INTERVAL)
