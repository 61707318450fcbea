import itertools
import queue
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from nreplops.bencode import Decoder, encode
from nreplops.config import BUFFER_SIZE, CLOSE_TIMEOUT
from nreplops.connection import Connection
from nreplops.errors import (
    DeadlineExceededError, DisconnectionError, EvaluationError, NreplOpsError, ProtocolError
)
from nreplops.outputs import OutputRouter
from nreplops.utils import as_text, iso_now, json_line, log_debug

OP_PENDING = "pending"
OP_RUNNING = "running"
OP_DONE = "done"
OP_ERRORED = "errored"
OP_ABORTED = "aborted"
TERMINAL_STATES = {OP_DONE, OP_ERRORED, OP_ABORTED}

STATE_CONNECTED = "connected"
STATE_SESSION_OPEN = "session_open"
STATE_EVALUATING = "evaluating"
STATE_CLOSING = "closing"
STATE_CLOSED = "closed"
STATE_ABORTED = "aborted"

EVENT_MESSAGE = "message"
EVENT_CLOSED = "closed"
EVENT_FAILED = "failed"

ERROR_STATUSES = ("eval-error", "error", "unknown-session", "unknown-op", "session-closed")


class Response:
    """One decoded message from the host.

    All fields are kept in ``fields`` as received, recognized or not.
    """

    def __init__(self, fields: Dict[str, Any]):
        self.fields = fields

    @classmethod
    def from_wire(cls, value: Any) -> "Response":
        if not isinstance(value, dict):
            raise ProtocolError(f"expected a message map, got {type(value).__name__}")
        return cls({key.decode("utf-8", errors="replace"): item for key, item in value.items()})

    def _text(self, name: str) -> Optional[str]:
        value = self.fields.get(name)
        if value is None:
            return None
        if not isinstance(value, bytes):
            raise ProtocolError(f"message field {name!r} is not a string")
        return value.decode("utf-8", errors="replace")

    @property
    def id(self) -> Optional[str]:
        return self._text("id")

    @property
    def session(self) -> Optional[str]:
        return self._text("session")

    @property
    def new_session(self) -> Optional[str]:
        return self._text("new-session")

    @property
    def value(self) -> Optional[str]:
        return self._text("value")

    @property
    def out(self) -> Optional[str]:
        return self._text("out")

    @property
    def err(self) -> Optional[str]:
        return self._text("err")

    @property
    def ex(self) -> Optional[str]:
        return self._text("ex")

    @property
    def root_ex(self) -> Optional[str]:
        return self._text("root-ex")

    @property
    def status(self) -> List[str]:
        raw = self.fields.get("status")
        if raw is None:
            return []
        if isinstance(raw, bytes):
            raw = [raw]
        if not isinstance(raw, list) or not all(isinstance(tag, bytes) for tag in raw):
            raise ProtocolError("message field 'status' is not a list of strings")
        return [tag.decode("utf-8", errors="replace") for tag in raw]

    def has_status(self, *tags: str) -> bool:
        status = self.status
        return any(tag in status for tag in tags)

    def __repr__(self) -> str:
        return f"Response({as_text(self.fields)!r})"


@dataclass
class Operation:
    code: str
    ns: Optional[str] = None
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None

    op_id: str = ""
    status: str = OP_PENDING
    values: List[str] = field(default_factory=list)
    error: Optional[NreplOpsError] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def request(self, op_id: str, session_id: str) -> Dict[str, Any]:
        request: Dict[str, Any] = {"op": "eval", "id": op_id, "session": session_id, "code": self.code}
        if self.ns:
            request["ns"] = self.ns
        if self.file:
            request["file"] = self.file
        if self.line is not None:
            request["line"] = self.line
        if self.column is not None:
            request["column"] = self.column
        return request

    def mark_running(self, op_id: str) -> None:
        self.op_id = op_id
        self.status = OP_RUNNING
        self.started_at = time.time()

    def record_exception(self, ex: Optional[str], root_ex: Optional[str]) -> None:
        if self.error is None:
            self.error = EvaluationError(self.op_id, ex=ex, root_ex=root_ex)

    def mark_done(self, status: str, error: Optional[NreplOpsError] = None) -> None:
        if self.is_terminal:
            return
        self.status = status
        if error is not None:
            self.error = error
        self.finished_at = time.time()


class NreplSession:
    """One nREPL session over an exclusively owned connection.

    A reader thread is the only consumer of the socket; it decodes messages
    and queues them, together with end-of-stream and decode failures, as
    events.  Every wait in the session takes the next event with the
    deadline as its timeout, so message arrival, disconnection and timeout
    all end the same blocking call.
    """

    def __init__(
        self,
        connection: Connection,
        router: OutputRouter,
        deadline: Optional[float] = None,
        stdin_data: Optional[str] = None,
        trace_path: Optional[str] = None,
        close_timeout: float = CLOSE_TIMEOUT,
    ):
        self.connection = connection
        self.router = router
        self.deadline = deadline
        self.stdin_data = stdin_data
        self.trace_path = trace_path
        self.close_timeout = close_timeout

        self.session_id: Optional[str] = None
        self.state = STATE_CONNECTED
        self.operations: Dict[str, Operation] = {}

        self._events: "queue.Queue" = queue.Queue()
        self._transport_error: Optional[NreplOpsError] = None
        self._id_prefix = uuid.uuid4().hex[:8]
        self._counter = itertools.count(1)
        self._control_ids = set()
        self._stdin_sent = False
        self._close_attempted = False

        self._reader = threading.Thread(target=self._reader_loop, name="nrepl-reader", daemon=True)
        self._reader.start()
        self._log("SYS", {"event": "connected", "peer": connection.peer})

    def _log(self, direction: str, payload: Dict[str, Any]) -> None:
        if not self.trace_path:
            return
        data = {"ts": iso_now(), "dir": direction, "nrepl_session": self.session_id}
        data.update(payload)
        json_line(self.trace_path, data)

    def _next_id(self) -> str:
        return f"{self._id_prefix}-{next(self._counter)}"

    def _reader_loop(self) -> None:
        decoder = Decoder()
        try:
            while True:
                chunk = self.connection.recv(BUFFER_SIZE)
                if not chunk:
                    self._events.put((EVENT_CLOSED, DisconnectionError("the nREPL host disconnected")))
                    return
                for value in decoder.feed(chunk):
                    self._events.put((EVENT_MESSAGE, value))
        except ProtocolError as exc:
            self._events.put((EVENT_FAILED, ProtocolError(f"corrupted response from the nREPL host: {exc}")))
        except OSError as exc:
            self._events.put((EVENT_CLOSED, DisconnectionError(f"the nREPL host disconnected: {exc}")))

    def _next_response(self, deadline: Optional[float] = None) -> Response:
        if self._transport_error is not None:
            raise self._transport_error
        limits = [d for d in (deadline, self.deadline) if d is not None]
        timeout = None
        if limits:
            timeout = min(limits) - time.monotonic()
            if timeout <= 0:
                raise DeadlineExceededError("timed out waiting for the nREPL host")
        try:
            kind, payload = self._events.get(timeout=timeout)
        except queue.Empty:
            raise DeadlineExceededError("timed out waiting for the nREPL host") from None
        if kind != EVENT_MESSAGE:
            self._transport_error = payload
            self._log("SYS", {"event": kind, "error": str(payload)})
            raise payload
        response = Response.from_wire(payload)
        self._log("IN", response.fields)
        return response

    def _send(self, request: Dict[str, Any]) -> None:
        self._log("OUT", request)
        try:
            self.connection.sendall(encode(request))
        except OSError as exc:
            raise DisconnectionError(f"cannot send to the nREPL host: {exc}") from exc

    def _discard(self, response: Response) -> None:
        if response.id not in self._control_ids:
            log_debug(f"discarding message for unknown id {response.id!r}")

    def open(self) -> str:
        request_id = self._next_id()
        self._control_ids.add(request_id)
        try:
            self._send({"op": "clone", "id": request_id})
            while True:
                response = self._next_response()
                if response.id != request_id:
                    self._discard(response)
                    continue
                new_session = response.new_session
                if new_session:
                    self.session_id = new_session
                    self.state = STATE_SESSION_OPEN
                    self._log("SYS", {"event": "session_open"})
                    return new_session
                if response.has_status("done", "error"):
                    raise ProtocolError("the nREPL host did not create a session")
        except NreplOpsError:
            self.state = STATE_ABORTED
            raise

    def evaluate(self, op: Operation) -> Operation:
        """Run one operation to a terminal state.

        Remote exceptions leave it ``errored`` and return normally; transport
        failures and the deadline abort it and propagate.
        """
        if self.session_id is None or self.state != STATE_SESSION_OPEN:
            raise ProtocolError(f"cannot evaluate in state {self.state}")
        op_id = self._next_id()
        self.operations[op_id] = op
        op.mark_running(op_id)
        self.state = STATE_EVALUATING
        try:
            self._send(op.request(op_id, self.session_id))
            while not op.is_terminal:
                self._dispatch(self._next_response())
        except NreplOpsError as exc:
            op.mark_done(OP_ABORTED, error=exc)
            self.state = STATE_ABORTED
            raise
        self.state = STATE_SESSION_OPEN
        for value in op.values:
            self.router.write_result(value)
        return op

    def _dispatch(self, response: Response) -> None:
        op = self.operations.get(response.id) if response.id else None
        if op is None or op.is_terminal:
            self._discard(response)
            return
        out = response.out
        if out is not None:
            self.router.write_out(out)
        err = response.err
        if err is not None:
            self.router.write_err(err)
        value = response.value
        if value is not None:
            op.values.append(value)
        if response.ex is not None or response.root_ex is not None or response.has_status(*ERROR_STATUSES):
            op.record_exception(response.ex, response.root_ex)
        if response.has_status("need-input"):
            self._send_stdin()
        if response.has_status("done"):
            op.mark_done(OP_ERRORED if op.error is not None else OP_DONE)
            if op.error is not None:
                log_debug(str(op.error))

    def _send_stdin(self) -> None:
        payload = ""
        if self.stdin_data and not self._stdin_sent:
            payload = self.stdin_data
        self._stdin_sent = True
        request_id = self._next_id()
        self._control_ids.add(request_id)
        self._send({"op": "stdin", "id": request_id, "session": self.session_id, "stdin": payload})

    def close(self) -> None:
        """Close the session best-effort, then release the connection.

        After an abort the close request is only sent; otherwise the
        ``session-closed`` reply is awaited for at most ``close_timeout``.
        Failures here are logged and never raised.
        """
        if self._close_attempted:
            return
        self._close_attempted = True
        aborted = self.state == STATE_ABORTED
        self.state = STATE_CLOSING
        try:
            if self.session_id is not None:
                request_id = self._next_id()
                self._control_ids.add(request_id)
                self._send({"op": "close", "id": request_id, "session": self.session_id})
                if not aborted:
                    self._await_closed(request_id)
        except NreplOpsError as exc:
            log_debug(f"session close failed: {exc}")
        finally:
            self.state = STATE_ABORTED if aborted else STATE_CLOSED
            self._log("SYS", {"event": "session_closed", "state": self.state})
            self.connection.close()
            self._reader.join(timeout=0.5)

    def _await_closed(self, request_id: str) -> None:
        limit = time.monotonic() + self.close_timeout
        while True:
            response = self._next_response(deadline=limit)
            if response.id == request_id and response.has_status("session-closed", "done"):
                return

    def __enter__(self) -> "NreplSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def run_operations(
    session: NreplSession,
    operations: List[Operation],
    stop_on_error: bool = False,
) -> List[Operation]:
    """Evaluate operations one at a time, in order.

    With ``stop_on_error`` the operations after the first errored one stay
    pending.
    """
    for op in operations:
        session.evaluate(op)
        if stop_on_error and op.status == OP_ERRORED:
            break
    return operations
