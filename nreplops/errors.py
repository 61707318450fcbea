"""Error taxonomy for the nREPL client."""

from typing import List, Optional, Tuple


class NreplOpsError(Exception):
    """Base class for all client errors."""


class HostConnectionError(NreplOpsError):
    """Raised when no working connection to the nREPL host can be made."""

    def __init__(self, message: str, attempts: Optional[List[Tuple[str, str]]] = None) -> None:
        self.attempts = list(attempts or [])
        if self.attempts:
            tried = "; ".join(f"{target}: {reason}" for target, reason in self.attempts)
            message = f"{message} (tried {tried})"
        super().__init__(message)


class ConnExprParseError(HostConnectionError):
    """Raised when a connection expression does not match the grammar."""

    def __init__(self, text: str, reason: str = "") -> None:
        self.text = text
        suffix = f": {reason}" if reason else ""
        super().__init__(f"bad connection expression {text!r}{suffix}")


class ProtocolError(NreplOpsError):
    """Raised for malformed wire data or unexpected message shapes."""


class EvaluationError(NreplOpsError):
    """Remote exception reported for one evaluation."""

    def __init__(self, op_id: str, ex: Optional[str] = None, root_ex: Optional[str] = None) -> None:
        self.op_id = op_id
        self.ex = ex
        self.root_ex = root_ex
        cause = ex or root_ex or "evaluation error"
        super().__init__(f"evaluation {op_id} raised {cause}")


class DisconnectionError(NreplOpsError):
    """Raised when the host closes or resets the connection unexpectedly."""


class DeadlineExceededError(NreplOpsError):
    """Raised when the configured timeout expires."""
