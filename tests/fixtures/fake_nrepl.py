"""Scripted in-process nREPL server used by the end-to-end tests.

The code string of each eval request selects a canned behavior, see
``FakeNreplServer.BEHAVIORS``.
"""

import socket
import threading
import time
from typing import Any, Dict, List, Optional

from nreplops.bencode import Decoder, encode
from nreplops.utils import as_text

SESSION_ID = "fake-session-1"


class FakeNreplServer:
    BEHAVIORS = (
        "hello", "value", "boom", "hang", "disconnect", "chatter",
        "interleave", "need-input", "garbage", "slow",
    )

    def __init__(self):
        self.listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.listener.bind(("127.0.0.1", 0))
        self.listener.listen(5)
        self.port = self.listener.getsockname()[1]
        self.requests: List[Dict[str, Any]] = []
        self.lock = threading.Lock()
        self.changed = threading.Condition(self.lock)
        self.connections: List[socket.socket] = []
        self._pending_input: Optional[Dict[str, Any]] = None
        self._stopped = False
        self._thread = threading.Thread(target=self._accept_loop, daemon=True)

    def __enter__(self) -> "FakeNreplServer":
        self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    @property
    def address(self) -> str:
        return f"127.0.0.1:{self.port}"

    def stop(self) -> None:
        self._stopped = True
        try:
            self.listener.close()
        except OSError:
            pass
        for conn in list(self.connections):
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            conn.close()

    def ops(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.lock:
            return [r for r in self.requests if name is None or r.get("op") == name]

    def wait_for_op(self, name: str, timeout: float = 2.0) -> bool:
        deadline = time.monotonic() + timeout
        with self.changed:
            while not any(r.get("op") == name for r in self.requests):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self.changed.wait(remaining)
            return True

    def _accept_loop(self) -> None:
        while not self._stopped:
            try:
                conn, _ = self.listener.accept()
            except OSError:
                return
            self.connections.append(conn)
            threading.Thread(target=self._serve, args=(conn,), daemon=True).start()

    def _serve(self, conn: socket.socket) -> None:
        decoder = Decoder()
        try:
            while True:
                data = conn.recv(4096)
                if not data:
                    return
                for message in decoder.feed(data):
                    if not self._handle(conn, as_text(message)):
                        return
        except OSError:
            return

    def _send(self, conn: socket.socket, payload: Dict[str, Any]) -> None:
        conn.sendall(encode(payload))

    def _reply(self, conn: socket.socket, request: Dict[str, Any], **fields: Any) -> None:
        payload = {"id": request.get("id", ""), "session": request.get("session", SESSION_ID)}
        for key, value in fields.items():
            payload[key.replace("_", "-")] = value
        self._send(conn, payload)

    def _handle(self, conn: socket.socket, request: Dict[str, Any]) -> bool:
        with self.changed:
            self.requests.append(request)
            self.changed.notify_all()
        op = request.get("op")
        if op == "clone":
            self._reply(conn, request, new_session=SESSION_ID, status=["done"])
        elif op == "close":
            self._reply(conn, request, status=["done", "session-closed"])
        elif op == "stdin":
            self._reply(conn, request, status=["done"])
            pending, self._pending_input = self._pending_input, None
            if pending is not None:
                self._reply(conn, pending, value=repr(request.get("stdin", "")))
                self._reply(conn, pending, status=["done"])
        elif op == "eval":
            return self._eval(conn, request)
        else:
            self._reply(conn, request, status=["done", "error", "unknown-op"])
        return True

    def _eval(self, conn: socket.socket, request: Dict[str, Any]) -> bool:
        code = request.get("code", "")
        if code == "hello":
            self._reply(conn, request, out="Hello, world!\n")
            self._reply(conn, request, value="nil")
            self._reply(conn, request, status=["done"])
        elif code == "value":
            self._reply(conn, request, value="42")
            self._reply(conn, request, status=["done"])
        elif code == "boom":
            self._reply(conn, request, err="Execution error (ArithmeticException)\n")
            self._reply(
                conn, request,
                ex="class java.lang.ArithmeticException",
                root_ex="class java.lang.ArithmeticException",
                status=["eval-error"],
            )
            self._reply(conn, request, status=["done"])
        elif code == "hang":
            pass
        elif code == "disconnect":
            conn.shutdown(socket.SHUT_RDWR)
            conn.close()
            return False
        elif code == "chatter":
            self._send(conn, {"id": "somebody-else", "out": "not for you\n", "x-extra": 1})
            self._reply(conn, request, value="1", x_future_field=["a", "b"])
            self._reply(conn, request, status=["done"])
        elif code == "interleave":
            self._reply(conn, request, out="a")
            self._reply(conn, request, value="1")
            self._reply(conn, request, err="b")
            self._reply(conn, request, out="c\n")
            self._reply(conn, request, value="2")
            self._reply(conn, request, status=["done"])
        elif code == "need-input":
            self._pending_input = request
            self._reply(conn, request, status=["need-input"])
        elif code == "garbage":
            conn.sendall(b"d2:id3:abcx")
        elif code == "slow":
            time.sleep(0.3)
            self._reply(conn, request, value=":slow")
            self._reply(conn, request, status=["done"])
        else:
            self._reply(conn, request, value=repr(code))
            self._reply(conn, request, status=["done"])
        return True
