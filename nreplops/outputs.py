import os
import sys
from typing import Dict, List, Optional, TextIO

from nreplops.utils import log_error

PIPE = "-"


class Sink:
    """One local destination: a standard stream or a file."""

    def __init__(self, name: str, stream: TextIO, owned: bool = False):
        self.name = name
        self.stream = stream
        self.owned = owned
        self.broken = False
        self.error = ""

    def write(self, text: str) -> None:
        if self.broken or not text:
            return
        try:
            try:
                self.stream.write(text)
            except UnicodeEncodeError:
                encoding = getattr(self.stream, "encoding", None) or "utf-8"
                self.stream.write(text.encode(encoding, errors="replace").decode(encoding))
            self.stream.flush()
        except (OSError, ValueError) as exc:
            # Local write failures never reach the protocol engine.
            self.broken = True
            self.error = str(exc)
            log_error(f"cannot write to {self.name}: {exc}")

    def close(self) -> None:
        if not self.owned:
            return
        try:
            self.stream.close()
        except OSError as exc:
            log_error(f"cannot close {self.name}: {exc}")


class OutputRouter:
    """Routes remote stdout, stderr and result values to their sinks.

    ``None`` sinks discard.  Values go out one per line.
    """

    def __init__(self, out: Optional[Sink], err: Optional[Sink], results: Optional[Sink]):
        self.out = out
        self.err = err
        self.results = results

    def write_out(self, text: str) -> None:
        if self.out is not None:
            self.out.write(text)

    def write_err(self, text: str) -> None:
        if self.err is not None:
            self.err.write(text)

    def write_result(self, value: str) -> None:
        if self.results is not None:
            self.results.write(value + "\n")

    def sinks(self) -> List[Sink]:
        unique: List[Sink] = []
        for sink in (self.out, self.err, self.results):
            if sink is not None and all(sink is not other for other in unique):
                unique.append(sink)
        return unique

    def failures(self) -> List[str]:
        return [f"{sink.name}: {sink.error}" for sink in self.sinks() if sink.broken]

    def close(self) -> None:
        for sink in self.sinks():
            sink.close()


def open_outputs(
    stdout_to: Optional[str] = PIPE,
    stderr_to: Optional[str] = PIPE,
    results_to: Optional[str] = PIPE,
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
) -> OutputRouter:
    """Build a router from three targets: ``PIPE``, a file path, or ``None``.

    Piped remote stdout and results share the local stdout; channels naming
    the same file share one handle.  Raises ``OSError`` when a file cannot be
    created.
    """
    stdout_sink = Sink("stdout", stdout if stdout is not None else sys.stdout)
    stderr_sink = Sink("stderr", stderr if stderr is not None else sys.stderr)
    files: Dict[str, Sink] = {}
    opened: List[Sink] = []

    def sink_for(target: Optional[str], pipe: Sink) -> Optional[Sink]:
        if target is None:
            return None
        if target == PIPE:
            return pipe
        key = os.path.realpath(target)
        if key not in files:
            handle = open(target, "w", encoding="utf-8")
            files[key] = Sink(target, handle, owned=True)
            opened.append(files[key])
        return files[key]

    try:
        return OutputRouter(
            out=sink_for(stdout_to, stdout_sink),
            err=sink_for(stderr_to, stderr_sink),
            results=sink_for(results_to, stdout_sink),
        )
    except OSError:
        for sink in opened:
            sink.close()
        raise
