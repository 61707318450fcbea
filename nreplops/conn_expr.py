"""Connection expression grammar.

Four surface forms, tried in this order:

    [user@]tunnel-host[:tunnel-port]:host:port-set    tunneled
    host:port-set                                     remote
    port-set                                          local
    identifier                                        host alias

A port-set is a comma separated list of ports and inclusive ranges
(``8000,9000-9002``).  Hosts are IPv4 literals, bracketed IPv6 literals or
domain names.  The whole input must match; nothing is silently dropped.
"""

import ipaddress
import re
from dataclasses import dataclass
from typing import Iterable, Tuple, Union

from nreplops.config import MAX_DOMAIN_LENGTH, MAX_LABEL_LENGTH
from nreplops.errors import ConnExprParseError

_OCTET = r"(?:25[0-5]|2[0-4][0-9]|1[0-9][0-9]|[1-9][0-9]|[0-9])"
_IPV4 = rf"{_OCTET}(?:\.{_OCTET}){{3}}"
_IPV6 = r"\[[0-9A-Fa-f:.]+\]"
_LABEL = r"[A-Za-z](?:[A-Za-z0-9-]*[A-Za-z0-9])?"
_DOMAIN = rf"{_LABEL}(?:\.{_LABEL})*\.?"
_ADDR = rf"(?:{_IPV4}|{_IPV6}|{_DOMAIN})"
_PORT = r"[0-9]{1,5}"
_PORT_ENTRY = rf"{_PORT}(?:-{_PORT})?"
_PORT_SET = rf"{_PORT_ENTRY}(?:,{_PORT_ENTRY})*"
_USER = r"[A-Za-z_][A-Za-z0-9._-]*"

TUNNELED_RE = re.compile(
    rf"(?:(?P<user>{_USER})@)?(?P<tunnel>{_ADDR})(?::(?P<tunnel_port>{_PORT}))?"
    rf":(?P<addr>{_ADDR}):(?P<ports>{_PORT_SET})"
)
REMOTE_RE = re.compile(rf"(?P<addr>{_ADDR}):(?P<ports>{_PORT_SET})")
LOCAL_RE = re.compile(rf"(?P<ports>{_PORT_SET})")
ALIAS_RE = re.compile(r"(?P<key>[A-Za-z][A-Za-z0-9_-]*)")
ADDR_RE = re.compile(_ADDR)


@dataclass(frozen=True)
class Addr:
    host: str
    kind: str  # "ipv4", "ipv6" or "domain"

    @property
    def is_ip(self) -> bool:
        return self.kind != "domain"

    def bracketed(self) -> str:
        if self.kind == "ipv6":
            return f"[{self.host}]"
        return self.host

    def __str__(self) -> str:
        return self.bracketed()


@dataclass(frozen=True)
class LocalRoute:
    ports: Tuple[int, ...]

    def __str__(self) -> str:
        return format_ports(self.ports)


@dataclass(frozen=True)
class RemoteRoute:
    addr: Addr
    ports: Tuple[int, ...]

    def __str__(self) -> str:
        return f"{self.addr}:{format_ports(self.ports)}"


@dataclass(frozen=True)
class TunneledRoute:
    user: Union[str, None]
    tunnel_addr: Addr
    tunnel_port: Union[int, None]
    remote_addr: Addr
    ports: Tuple[int, ...]

    def __str__(self) -> str:
        user = f"{self.user}@" if self.user else ""
        port = f":{self.tunnel_port}" if self.tunnel_port is not None else ""
        return f"{user}{self.tunnel_addr}{port}:{self.remote_addr}:{format_ports(self.ports)}"


@dataclass(frozen=True)
class AliasRoute:
    key: str

    def __str__(self) -> str:
        return self.key


RouteSpec = Union[LocalRoute, RemoteRoute, TunneledRoute, AliasRoute]


def format_ports(ports: Iterable[int]) -> str:
    return ",".join(str(port) for port in ports)


def _port(text: str, expr: str) -> int:
    value = int(text)
    if not 1 <= value <= 65535:
        raise ConnExprParseError(expr, f"port {value} out of range")
    return value


def parse_port_set(text: str, expr: str = "") -> Tuple[int, ...]:
    """Expand ``8000,9000-9002`` into ports, keeping first-seen order."""
    expr = expr or text
    if not LOCAL_RE.fullmatch(text):
        raise ConnExprParseError(expr, "bad port set")
    ports = []
    seen = set()
    for entry in text.split(","):
        low_text, _, high_text = entry.partition("-")
        low = _port(low_text, expr)
        high = _port(high_text, expr) if high_text else low
        if low > high:
            raise ConnExprParseError(expr, f"empty port range {entry}")
        for port in range(low, high + 1):
            if port not in seen:
                seen.add(port)
                ports.append(port)
    return tuple(ports)


def parse_addr(text: str, expr: str = "") -> Addr:
    expr = expr or text
    if not ADDR_RE.fullmatch(text):
        raise ConnExprParseError(expr, f"bad address {text!r}")
    if text.startswith("["):
        try:
            ip = ipaddress.IPv6Address(text[1:-1])
        except ValueError:
            raise ConnExprParseError(expr, f"bad IPv6 address {text!r}") from None
        return Addr(str(ip), "ipv6")
    try:
        ip4 = ipaddress.IPv4Address(text)
    except ValueError:
        pass
    else:
        return Addr(str(ip4), "ipv4")
    labels = text.rstrip(".").split(".")
    if len(text) > MAX_DOMAIN_LENGTH or any(len(label) > MAX_LABEL_LENGTH for label in labels):
        raise ConnExprParseError(expr, f"domain name too long {text!r}")
    return Addr(text, "domain")


def parse_conn_expr(text: str) -> RouteSpec:
    """Parse a connection expression into a route spec.

    Raises ``ConnExprParseError`` when the text is not a complete match for
    any of the forms.
    """
    match = TUNNELED_RE.fullmatch(text)
    if match:
        tunnel_port = match.group("tunnel_port")
        return TunneledRoute(
            user=match.group("user"),
            tunnel_addr=parse_addr(match.group("tunnel"), text),
            tunnel_port=_port(tunnel_port, text) if tunnel_port else None,
            remote_addr=parse_addr(match.group("addr"), text),
            ports=parse_port_set(match.group("ports"), text),
        )
    match = REMOTE_RE.fullmatch(text)
    if match:
        return RemoteRoute(
            addr=parse_addr(match.group("addr"), text),
            ports=parse_port_set(match.group("ports"), text),
        )
    match = LOCAL_RE.fullmatch(text)
    if match:
        return LocalRoute(ports=parse_port_set(match.group("ports"), text))
    match = ALIAS_RE.fullmatch(text)
    if match:
        return AliasRoute(key=match.group("key"))
    raise ConnExprParseError(text)
