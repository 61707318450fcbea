import select
import socket
import threading
import time
from typing import Optional, Tuple

from nreplops.config import SEND_TIMEOUT
from nreplops.tunnel import TunnelProcess
from nreplops.utils import log_debug

# Windows has no MSG_DONTWAIT; there the select above each send bounds the wait.
SEND_FLAGS = getattr(socket, "MSG_DONTWAIT", 0)


class Connection:
    """The live transport to the nREPL host.

    Owns the socket and, for tunneled routes, the ssh child process that
    forwards it.  ``close`` releases both, the tunnel strictly after the
    socket, and is safe to call from any exit path more than once.
    """

    def __init__(self, sock: socket.socket, peer: str, tunnel: Optional[TunnelProcess] = None):
        self.sock = sock
        self.peer = peer
        self.tunnel = tunnel
        self.closed = False
        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        sock.settimeout(None)
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass

    @classmethod
    def open_tcp(cls, address: Tuple[str, int], timeout: float) -> "Connection":
        sock = socket.create_connection(address, timeout=timeout)
        return cls(sock, f"{address[0]}:{address[1]}")

    def recv(self, size: int) -> bytes:
        return self.sock.recv(size)

    def sendall(self, data: bytes, timeout: float = SEND_TIMEOUT) -> None:
        # The socket stays in blocking mode for the reader thread, so the
        # send bound is enforced per call instead of through settimeout().
        view = memoryview(data)
        deadline = time.monotonic() + timeout
        with self._send_lock:
            while view:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise socket.timeout(f"send to {self.peer} timed out")
                _, writable, _ = select.select([], [self.sock], [], remaining)
                if not writable:
                    continue
                try:
                    sent = self.sock.send(view, SEND_FLAGS)
                except BlockingIOError:
                    continue
                view = view[sent:]

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            self.closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()
        log_debug(f"connection to {self.peer} closed")
        if self.tunnel is not None:
            self.tunnel.terminate()

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Connection({self.peer}, tunnel={self.tunnel!r}, closed={self.closed})"
