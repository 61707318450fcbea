import select
import shutil
import socket
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional

from nreplops.config import (
    TUNNEL_BACKOFF_INITIAL, TUNNEL_BACKOFF_MAX, TUNNEL_LOCAL_HOST,
    TUNNEL_CHANNEL_GRACE, TUNNEL_READY_TIMEOUT, TUNNEL_STDERR_LINES, TUNNEL_TERMINATE_GRACE
)
from nreplops.errors import DeadlineExceededError, HostConnectionError
from nreplops.utils import log_debug


@dataclass(frozen=True)
class TunnelSpec:
    """One SSH hop: forward a local port to ``remote_host:remote_port``."""

    user: Optional[str]
    host: str
    port: Optional[int]
    remote_host: str
    remote_port: int

    def describe(self) -> str:
        user = f"{self.user}@" if self.user else ""
        port = f":{self.port}" if self.port is not None else ""
        return f"{user}{self.host}{port} -> {self.remote_host}:{self.remote_port}"


def find_ssh_client(binary: str) -> str:
    path = shutil.which(binary)
    if path is None:
        raise HostConnectionError(f"ssh client {binary!r} not found; it is required for tunneling")
    return path


def reserve_local_port(host: str = TUNNEL_LOCAL_HOST) -> int:
    holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        holder.bind((host, 0))
        return holder.getsockname()[1]
    finally:
        holder.close()


class TunnelProcess:
    """An ssh child process forwarding a local port.

    ``terminate`` is idempotent; the child is signalled and reaped exactly
    once no matter how many release paths reach it.
    """

    def __init__(self, spec: TunnelSpec, ssh_path: str, local_port: int, local_host: str = TUNNEL_LOCAL_HOST):
        self.spec = spec
        self.ssh_path = ssh_path
        self.local_host = local_host
        self.local_port = local_port
        self.process: Optional[subprocess.Popen] = None
        self.returncode: Optional[int] = None
        self._stderr_tail: Deque[str] = deque(maxlen=TUNNEL_STDERR_LINES)
        self._drainer: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._terminated = False

    def command(self) -> List[str]:
        forward = f"{self.local_host}:{self.local_port}:{self.spec.remote_host}:{self.spec.remote_port}"
        cmd = [
            self.ssh_path, "-x", "-N", "-T",
            "-o", "ExitOnForwardFailure=yes",
            "-L", forward,
        ]
        if self.spec.user:
            cmd += ["-l", self.spec.user]
        if self.spec.port is not None:
            cmd += ["-p", str(self.spec.port)]
        cmd.append(self.spec.host)
        return cmd

    def start(self) -> None:
        cmd = self.command()
        log_debug(f"starting tunnel: {' '.join(cmd)}")
        try:
            self.process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                close_fds=True,
            )
        except OSError as exc:
            raise HostConnectionError(f"cannot start ssh client: {exc}") from exc
        self._drainer = threading.Thread(target=self._drain_stderr, name="ssh-stderr", daemon=True)
        self._drainer.start()

    def _drain_stderr(self) -> None:
        # Read until EOF; a full pipe blocks ssh.
        stream = self.process.stderr
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    self._stderr_tail.append(line)
                    log_debug(f"ssh: {line[:200]}")
        except (OSError, ValueError):
            pass
        finally:
            stream.close()

    @property
    def stderr_text(self) -> str:
        return "\n".join(self._stderr_tail)

    def is_running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def wait_until_ready(self, connect_timeout: float, deadline: Optional[float] = None) -> socket.socket:
        """Poll the forwarded port with backoff until a working channel opens.

        Gives up when ssh exits, when ``TUNNEL_READY_TIMEOUT`` passes, or
        when the overall ``deadline`` (monotonic) expires.  A channel that ssh
        closes right after accepting means the remote port is dead; that is
        reported as a ``HostConnectionError``.
        """
        started = time.monotonic()
        delay = TUNNEL_BACKOFF_INITIAL
        last_error = "not connectable"
        while True:
            if not self.is_running():
                self._collect_exit()
                detail = self.stderr_text.strip().splitlines()
                reason = detail[-1] if detail else f"exit status {self.returncode}"
                raise HostConnectionError(f"ssh tunnel exited: {reason}")
            now = time.monotonic()
            if deadline is not None and now >= deadline:
                raise DeadlineExceededError("timed out while waiting for the ssh tunnel")
            try:
                sock = socket.create_connection(
                    (self.local_host, self.local_port),
                    timeout=_bounded(connect_timeout, deadline),
                )
            except OSError as exc:
                last_error = str(exc)
            else:
                self._check_channel(sock, deadline)
                return sock
            if now - started >= TUNNEL_READY_TIMEOUT:
                raise HostConnectionError(f"ssh tunnel did not become ready: {last_error}")
            time.sleep(_bounded(delay, deadline))
            delay = min(delay * 2, TUNNEL_BACKOFF_MAX)

    def _check_channel(self, sock: socket.socket, deadline: Optional[float]) -> None:
        # nREPL stays silent until it gets a request, so only EOF or a reset
        # within the grace period counts as a dead forward.
        try:
            readable, _, _ = select.select([sock], [], [], _bounded(TUNNEL_CHANNEL_GRACE, deadline))
            if not readable or sock.recv(1, socket.MSG_PEEK):
                return
            reason = "connection closed by ssh"
        except OSError as exc:
            reason = str(exc) or type(exc).__name__
        sock.close()
        target = f"{self.spec.remote_host}:{self.spec.remote_port}"
        raise HostConnectionError(f"ssh tunnel could not reach {target}: {reason}")

    def _collect_exit(self) -> None:
        if self.process is None:
            return
        self.returncode = self.process.poll()
        if self._drainer is not None and self.returncode is not None:
            self._drainer.join(timeout=1.0)

    def terminate(self) -> None:
        with self._lock:
            if self._terminated:
                return
            self._terminated = True
        process = self.process
        if process is None:
            return
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=TUNNEL_TERMINATE_GRACE)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
        self._collect_exit()
        log_debug(f"tunnel {self.spec.describe()} (pid {process.pid}) exited with {self.returncode}")

    def __repr__(self) -> str:
        pid = self.process.pid if self.process is not None else None
        return f"TunnelProcess({self.spec.describe()}, local_port={self.local_port}, pid={pid})"


def _bounded(seconds: float, deadline: Optional[float]) -> float:
    if deadline is None:
        return seconds
    return max(0.01, min(seconds, deadline - time.monotonic()))
