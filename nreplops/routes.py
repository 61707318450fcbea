import os
import socket
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

import paramiko

from nreplops.config import SSH_CONFIG_PATH, config
from nreplops.conn_expr import (
    AliasRoute, LocalRoute, RemoteRoute, RouteSpec, TunneledRoute, parse_conn_expr
)
from nreplops.connection import Connection
from nreplops.errors import DeadlineExceededError, HostConnectionError
from nreplops.tunnel import TunnelProcess, TunnelSpec, find_ssh_client, reserve_local_port
from nreplops.utils import log_debug

AliasLookup = Callable[[str], Union[RouteSpec, str, None]]


@dataclass(frozen=True)
class Candidate:
    """One concrete connection attempt.

    ``ip`` is the resolved address of the first hop: the nREPL host itself
    for direct routes, the ssh host for tunneled ones.
    """

    ip: str
    port: int
    tunnel: Optional[TunnelSpec] = None

    def describe(self) -> str:
        if self.tunnel is not None:
            return f"{self.tunnel.describe()} (ssh host {self.ip})"
        if ":" in self.ip:
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"


def resolve_alias(spec: RouteSpec, aliases: Optional[AliasLookup] = None) -> RouteSpec:
    seen = []
    while isinstance(spec, AliasRoute):
        if spec.key in seen:
            raise HostConnectionError(f"host alias cycle: {' -> '.join(seen + [spec.key])}")
        seen.append(spec.key)
        target = aliases(spec.key) if aliases is not None else None
        if target is None:
            raise HostConnectionError(f"unknown host alias {spec.key!r}")
        spec = parse_conn_expr(target) if isinstance(target, str) else target
    return spec


def ssh_host_name(host: str, config_path: str = SSH_CONFIG_PATH) -> str:
    """Map an ssh ``Host`` alias to its ``HostName`` using the user's ssh config."""
    path = os.path.expanduser(config_path)
    if not os.path.isfile(path):
        return host
    try:
        ssh_config = paramiko.SSHConfig.from_path(path)
        return ssh_config.lookup(host).get("hostname", host)
    except (OSError, paramiko.SSHException) as exc:
        log_debug(f"ignoring ssh config {path}: {exc}")
        return host


def lookup_ips(host: str) -> List[str]:
    """Resolve ``host``; IPv4 addresses come first, duplicates dropped."""
    try:
        infos = socket.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as exc:
        raise HostConnectionError(f"cannot resolve the IP address for the domain {host}: {exc}") from exc
    ipv4: List[str] = []
    ipv6: List[str] = []
    for family, _, _, _, sockaddr in infos:
        ip = sockaddr[0]
        if family == socket.AF_INET and ip not in ipv4:
            ipv4.append(ip)
        elif family == socket.AF_INET6 and ip not in ipv6:
            ipv6.append(ip)
    if not ipv4 and not ipv6:
        raise HostConnectionError(f"cannot resolve the IP address for the domain {host}")
    return ipv4 + ipv6


def generate_candidates(spec: RouteSpec) -> List[Candidate]:
    if isinstance(spec, AliasRoute):
        raise HostConnectionError(f"unresolved host alias {spec.key!r}")

    if isinstance(spec, TunneledRoute):
        # Only the ssh host is resolved here; the final host is resolved by
        # the ssh server, exactly as a manual `ssh -L` would do it.
        tunnel_host = spec.tunnel_addr.host
        resolvable = tunnel_host if spec.tunnel_addr.is_ip else ssh_host_name(tunnel_host)
        ip = lookup_ips(resolvable)[0]
        return [
            Candidate(
                ip=ip,
                port=port,
                tunnel=TunnelSpec(
                    user=spec.user,
                    host=tunnel_host,
                    port=spec.tunnel_port,
                    remote_host=spec.remote_addr.bracketed(),
                    remote_port=port,
                ),
            )
            for port in spec.ports
        ]

    if isinstance(spec, LocalRoute):
        ips = lookup_ips("localhost")
    elif spec.addr.is_ip:
        ips = [spec.addr.host]
    else:
        ips = lookup_ips(spec.addr.host)
    return [Candidate(ip=ip, port=port) for port in spec.ports for ip in ips]


def _remaining(seconds: float, deadline: Optional[float]) -> float:
    if deadline is None:
        return seconds
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise DeadlineExceededError("timed out while connecting")
    return min(seconds, remaining)


def _connect_direct(candidate: Candidate, deadline: Optional[float]) -> Connection:
    timeout = _remaining(config.CONNECT_TIMEOUT, deadline)
    return Connection.open_tcp((candidate.ip, candidate.port), timeout)


def _connect_tunneled(candidate: Candidate, ssh_path: str, deadline: Optional[float]) -> Connection:
    _remaining(config.CONNECT_TIMEOUT, deadline)
    tunnel = TunnelProcess(candidate.tunnel, ssh_path, reserve_local_port())
    tunnel.start()
    try:
        sock = tunnel.wait_until_ready(config.CONNECT_TIMEOUT, deadline)
        return Connection(sock, f"{tunnel.local_host}:{tunnel.local_port}", tunnel=tunnel)
    except BaseException:
        tunnel.terminate()
        raise


def connect(
    spec: RouteSpec,
    aliases: Optional[AliasLookup] = None,
    deadline: Optional[float] = None,
) -> Connection:
    """Turn a route spec into a live connection.

    Candidates are tried in order and the first working one wins.  Name
    resolution and ssh client failures are fatal before any attempt is made.
    """
    spec = resolve_alias(spec, aliases)
    candidates = generate_candidates(spec)
    ssh_path = find_ssh_client(config.SSH_BINARY) if isinstance(spec, TunneledRoute) else None

    attempts = []
    for candidate in candidates:
        log_debug(f"trying {candidate.describe()}")
        try:
            if candidate.tunnel is None:
                connection = _connect_direct(candidate, deadline)
            else:
                connection = _connect_tunneled(candidate, ssh_path, deadline)
        except (OSError, HostConnectionError) as exc:
            attempts.append((candidate.describe(), str(exc) or type(exc).__name__))
            continue
        log_debug(f"connected to {candidate.describe()}")
        return connection
    if deadline is not None and time.monotonic() >= deadline:
        raise DeadlineExceededError("timed out while connecting")
    raise HostConnectionError(f"cannot connect to {spec}", attempts)
